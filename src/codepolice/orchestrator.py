from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
import json
import logging
import os
import socket
import threading
import time
from typing import Callable

from codepolice.analyzer import CodeAnalyzer
from codepolice.config import AppConfig, RepoConfig
from codepolice.errors import ConflictError, InvalidTransitionError, JobLeaseLostError
from codepolice.fix_planner import FixPlanner
from codepolice.github_gateway import GitHubGateway
from codepolice.llm import CodexLLMClient, LLMClient, as_object_dict
from codepolice.models import (
    TERMINAL_STATUSES,
    AnalysisContext,
    AnalysisReport,
    FixPlan,
    Job,
    JobStatus,
    NotificationResult,
    PullRequestRef,
)
from codepolice.monitor import RepositoryMonitor
from codepolice.notifier import (
    EmailSender,
    LogEmailSender,
    NotificationDispatcher,
    SmtpEmailSender,
    resolve_outcome,
)
from codepolice.observability import log_event, log_warning, logging_job_context
from codepolice.publisher import PRPublisher, decode_pull_request, pr_effect_key
from codepolice.retry import RetryExecutor, RetryPolicy
from codepolice.state import StateStore


LOGGER = logging.getLogger("codepolice.orchestrator")

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    "pending": frozenset({"fetching", "failed"}),
    "fetching": frozenset({"analyzing", "failed"}),
    "analyzing": frozenset({"fixing", "notifying", "failed"}),
    "fixing": frozenset({"publishing", "notifying", "failed"}),
    "publishing": frozenset({"notifying", "failed"}),
    "notifying": frozenset({"completed", "completed_with_warning", "failed"}),
    "completed": frozenset(),
    "completed_with_warning": frozenset(),
    "failed": frozenset(),
}


def validate_transition(from_status: JobStatus, to_status: JobStatus) -> None:
    if to_status not in ALLOWED_TRANSITIONS[from_status]:
        raise InvalidTransitionError(f"Job cannot move from {from_status} to {to_status}")


def analyze_effect_key(job_id: str) -> str:
    return f"analyze:{job_id}"


def fix_effect_key(job_id: str) -> str:
    return f"fix:{job_id}"


def conflict_effect_key(job_id: str) -> str:
    return f"conflict:{job_id}"


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


@dataclass(frozen=True)
class PipelineServices:
    repo: RepoConfig
    monitor: RepositoryMonitor
    analyzer: CodeAnalyzer
    planner: FixPlanner
    publisher: PRPublisher
    notifier: NotificationDispatcher


ServicesFactory = Callable[[RepoConfig], PipelineServices]


@dataclass
class _JobScratch:
    """Per-run values that are cheap to re-derive after a restart and so are never persisted."""

    context: AnalysisContext | None = None
    report: AnalysisReport | None = None
    plan: FixPlan | None = None
    pr: PullRequestRef | None = None
    conflict: ConflictError | None = None
    notification: NotificationResult | None = None


def build_services_factory(
    config: AppConfig,
    *,
    state: StateStore,
    llm: LLMClient | None = None,
    email_sender: EmailSender | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ServicesFactory:
    timeout = float(config.runtime.request_timeout_seconds)
    policy = RetryPolicy.from_config(config.retry)
    shared_llm = llm or CodexLLMClient(config.llm, timeout_seconds=timeout)
    if email_sender is not None:
        sender = email_sender
    elif config.email.enabled:
        sender = SmtpEmailSender(config.email, timeout_seconds=timeout)
    else:
        sender = LogEmailSender()

    def factory(repo: RepoConfig) -> PipelineServices:
        retry = RetryExecutor(policy, sleep=sleep)
        gateway = GitHubGateway(repo.owner, repo.name, timeout_seconds=timeout)
        return PipelineServices(
            repo=repo,
            monitor=RepositoryMonitor(repo=repo, host=gateway, retry=retry),
            analyzer=CodeAnalyzer(
                llm=shared_llm,
                retry=retry,
                repo_full_name=repo.full_name,
                token_budget=config.llm.token_budget,
            ),
            planner=FixPlanner(
                llm=shared_llm, retry=retry, context_lines=config.llm.fix_context_lines
            ),
            publisher=PRPublisher(host=gateway, state=state, retry=retry),
            # Email gets its own executor so its attempts never count against the job.
            notifier=NotificationDispatcher(
                sender=sender, state=state, retry=RetryExecutor(policy, sleep=sleep)
            ),
        )

    return factory


class JobOrchestrator:
    def __init__(
        self,
        config: AppConfig,
        *,
        state: StateStore,
        services_factory: ServicesFactory,
        worker_id: str | None = None,
    ) -> None:
        self._config = config
        self._state = state
        self._services_factory = services_factory
        self._worker_id = worker_id or default_worker_id()
        self._running: dict[str, Future[Job]] = {}
        self._running_lock = threading.Lock()

    @property
    def worker_id(self) -> str:
        return self._worker_id

    def run(self, *, once: bool) -> None:
        with ThreadPoolExecutor(max_workers=self._config.runtime.worker_count) as pool:
            while True:
                log_event(LOGGER, "poll_started", once=once, worker_id=self._worker_id)
                self._reap_finished()
                claimed = self._enqueue_claimed_jobs(pool)
                log_event(
                    LOGGER,
                    "poll_completed",
                    claimed_count=claimed,
                    running_job_count=len(self._running),
                )

                if once:
                    self._wait_for_all(pool)
                    break

                time.sleep(self._config.runtime.poll_interval_seconds)

    def _enqueue_claimed_jobs(self, pool: ThreadPoolExecutor) -> int:
        with self._running_lock:
            capacity = self._config.runtime.worker_count - len(self._running)
        if capacity < 1:
            return 0
        serialized = frozenset(repo.repo_id for repo in self._config.repos if repo.serialize_jobs)
        jobs = self._state.claim_jobs(
            worker_id=self._worker_id,
            limit=capacity,
            lease_seconds=self._config.runtime.lease_seconds,
            serialized_repository_ids=serialized,
        )
        with self._running_lock:
            for job in jobs:
                if job.id in self._running:
                    continue
                log_event(
                    LOGGER,
                    "job_claimed",
                    job_id=job.id,
                    repository_id=job.repository_id,
                    status=job.status,
                    retry_count=job.retry_count,
                )
                self._running[job.id] = pool.submit(self.process_job, job)
        return len(jobs)

    def _reap_finished(self) -> None:
        with self._running_lock:
            finished = [job_id for job_id, fut in self._running.items() if fut.done()]
            for job_id in finished:
                fut = self._running.pop(job_id)
                try:
                    job = fut.result()
                except Exception as exc:  # noqa: BLE001
                    # process_job handles stage failures itself; this is an infrastructure crash.
                    self._state.release_job(job_id=job_id, worker_id=self._worker_id)
                    log_warning(
                        LOGGER,
                        "job_processing_crashed",
                        job_id=job_id,
                        error_type=type(exc).__name__,
                    )
                    continue
                log_event(LOGGER, "job_processing_finished", job_id=job.id, status=job.status)

    def _wait_for_all(self, pool: ThreadPoolExecutor) -> None:
        while True:
            self._reap_finished()
            with self._running_lock:
                if not self._running:
                    return
            time.sleep(0.2)

    def process_job(self, job: Job) -> Job:
        """Drive one leased job stage by stage until it is terminal or parked for a retry."""
        with logging_job_context(job.id, job.repository_id):
            scratch = _JobScratch()
            while not job.is_terminal:
                try:
                    job = self.advance(job, scratch)
                except JobLeaseLostError:
                    log_warning(LOGGER, "job_lease_lost", status=job.status)
                    return job
                except Exception as exc:  # noqa: BLE001
                    return self._handle_stage_failure(job, exc, scratch)
            return job

    def advance(self, job: Job, scratch: _JobScratch | None = None) -> Job:
        """Run the stage named by ``job.status`` and durably move to the next status."""
        scratch = scratch or _JobScratch()
        if job.status in TERMINAL_STATUSES:
            raise InvalidTransitionError(f"Job {job.id} is already {job.status}")
        if job.status == "pending":
            return self._transition(job, "fetching")

        services = self._services_factory(self._config.repo_by_id(job.repository_id))
        if job.status == "fetching":
            scratch.context = services.monitor.fetch_analysis_context(job)
            return self._transition(job, "analyzing")
        if job.status == "analyzing":
            report = self._run_analysis(job, services, scratch)
            return self._transition(job, "fixing" if report.fixable_issues else "notifying")
        if job.status == "fixing":
            plan = self._run_fix_planning(job, services, scratch)
            return self._transition(job, "publishing" if plan.files else "notifying")
        if job.status == "publishing":
            self._run_publish(job, services, scratch)
            return self._transition(job, "notifying")
        return self._run_notify(job, services, scratch)

    def _transition(
        self,
        job: Job,
        to_status: JobStatus,
        *,
        error_message: str | None = None,
        warning: str | None = None,
        retry_count: int | None = None,
        detail: str | None = None,
    ) -> Job:
        validate_transition(job.status, to_status)
        updated = self._state.transition_job(
            job_id=job.id,
            from_status=job.status,
            to_status=to_status,
            worker_id=self._worker_id,
            lease_seconds=self._config.runtime.lease_seconds,
            error_message=error_message,
            warning=warning,
            retry_count=retry_count,
            detail=detail,
        )
        log_event(LOGGER, "job_transition", from_status=job.status, to_status=to_status)
        return updated

    def _heartbeat(self, job: Job) -> Callable[[], None]:
        """Lease renewal run between model calls so a slow stage is not reclaimed mid-flight."""

        def renew() -> None:
            self._state.renew_lease(
                job_id=job.id,
                status=job.status,
                worker_id=self._worker_id,
                lease_seconds=self._config.runtime.lease_seconds,
            )

        return renew

    def _context_for(
        self, job: Job, services: PipelineServices, scratch: _JobScratch
    ) -> AnalysisContext:
        if scratch.context is None:
            # Resumed mid-pipeline: the fetch has no side effects, so redo it.
            scratch.context = services.monitor.fetch_analysis_context(job)
        return scratch.context

    def _report_for(self, job: Job, scratch: _JobScratch) -> AnalysisReport | None:
        if scratch.report is None:
            scratch.report = self._state.get_report_for_job(job.id)
        return scratch.report

    def _run_analysis(
        self, job: Job, services: PipelineServices, scratch: _JobScratch
    ) -> AnalysisReport:
        if self._state.get_effect(job.id, analyze_effect_key(job.id)) is not None:
            stored = self._report_for(job, scratch)
            if stored is not None:
                log_event(LOGGER, "stage_skipped", stage="analyzing", report_id=stored.id)
                return stored
        context = self._context_for(job, services, scratch)
        report = self._state.save_report(
            services.analyzer.analyze(context, job_id=job.id, heartbeat=self._heartbeat(job))
        )
        self._state.record_effect(job.id, analyze_effect_key(job.id), report.id)
        scratch.report = report
        return report

    def _run_fix_planning(
        self, job: Job, services: PipelineServices, scratch: _JobScratch
    ) -> FixPlan:
        if self._state.get_effect(job.id, fix_effect_key(job.id)) is not None:
            stored = self._state.get_fix_plan(job.id)
            if stored is not None:
                log_event(LOGGER, "stage_skipped", stage="fixing")
                scratch.plan = stored
                return stored
        report = self._require_report(job, scratch)
        context = self._context_for(job, services, scratch)
        plan = self._state.save_fix_plan(
            job.id,
            services.planner.plan(report.fixable_issues, context, heartbeat=self._heartbeat(job)),
        )
        self._state.record_effect(job.id, fix_effect_key(job.id), str(len(plan.files)))
        scratch.plan = plan
        return plan

    def _run_publish(self, job: Job, services: PipelineServices, scratch: _JobScratch) -> None:
        report = self._require_report(job, scratch)
        plan = scratch.plan or self._state.get_fix_plan(job.id)
        if plan is None:
            raise InvalidTransitionError(f"Job {job.id} reached publishing without a fix plan")
        scratch.plan = plan
        try:
            scratch.pr = services.publisher.publish(job, plan, report)
        except ConflictError as exc:
            # Conflicts need a human; they never consume the job's retry budget.
            self._state.record_effect(job.id, conflict_effect_key(job.id), encode_conflict(exc))
            scratch.conflict = exc
            log_warning(
                LOGGER,
                "publish_conflict",
                file_path=exc.file_path,
                base_sha=exc.base_sha,
                head_sha=exc.head_sha,
            )

    def _run_notify(self, job: Job, services: PipelineServices, scratch: _JobScratch) -> Job:
        report = self._report_for(job, scratch)
        plan = scratch.plan or self._state.get_fix_plan(job.id)
        pr = scratch.pr or decode_pull_request(self._effect_ref(job.id, pr_effect_key(job.id)))
        conflict = scratch.conflict or decode_conflict(
            self._effect_ref(job.id, conflict_effect_key(job.id))
        )
        result = services.notifier.notify(
            job,
            to=services.repo.owner_email,
            repo_full_name=services.repo.full_name,
            report=report,
            outcome=resolve_outcome(report, conflict=conflict),
            plan=plan,
            pr=pr,
            conflict=conflict,
        )
        scratch.notification = result

        warnings: list[str] = []
        if conflict is not None:
            warnings.append(f"publish conflict: {conflict.detail}")
        if not result.delivered:
            warnings.append(f"notification failed: {result.error or 'unknown error'}")
        if warnings:
            updated = self._transition(job, "completed_with_warning", warning="; ".join(warnings))
        else:
            updated = self._transition(job, "completed")
        log_event(
            LOGGER,
            "job_completed",
            status=updated.status,
            outcome=result.outcome,
            pr_number=pr.number if pr is not None else None,
        )
        return updated

    def _handle_stage_failure(self, job: Job, exc: Exception, scratch: _JobScratch) -> Job:
        retry_count = job.retry_count + 1
        error_message = f"{job.status}: {type(exc).__name__}: {exc}"
        budget = self._config.runtime.job_retry_budget
        log_warning(
            LOGGER,
            "job_stage_failed",
            status=job.status,
            retry_count=retry_count,
            retry_budget=budget,
            error_type=type(exc).__name__,
        )
        if retry_count < budget:
            delay = self._config.runtime.job_retry_backoff_seconds * (2 ** (retry_count - 1))
            log_warning(
                LOGGER,
                "job_retry_scheduled",
                status=job.status,
                retry_count=retry_count,
                delay_seconds=delay,
                error_type=type(exc).__name__,
            )
            try:
                return self._state.schedule_job_retry(
                    job_id=job.id,
                    status=job.status,
                    worker_id=self._worker_id,
                    retry_count=retry_count,
                    delay_seconds=delay,
                    error_message=error_message,
                )
            except JobLeaseLostError:
                log_warning(LOGGER, "job_lease_lost", status=job.status)
                return job

        try:
            failed = self._transition(
                job, "failed", error_message=error_message, retry_count=retry_count
            )
        except JobLeaseLostError:
            log_warning(LOGGER, "job_lease_lost", status=job.status)
            return job
        log_warning(
            LOGGER,
            "job_failed",
            status=job.status,
            retry_count=retry_count,
            error_type=type(exc).__name__,
        )
        self._notify_failure(failed, scratch)
        return failed

    def _notify_failure(self, job: Job, scratch: _JobScratch) -> None:
        try:
            services = self._services_factory(self._config.repo_by_id(job.repository_id))
        except ValueError as exc:
            log_warning(LOGGER, "notification_failed", outcome="job-failed", reason=str(exc))
            return
        services.notifier.notify(
            job,
            to=services.repo.owner_email,
            repo_full_name=services.repo.full_name,
            report=self._report_for(job, scratch),
            outcome="job-failed",
        )

    def _require_report(self, job: Job, scratch: _JobScratch) -> AnalysisReport:
        report = self._report_for(job, scratch)
        if report is None:
            raise InvalidTransitionError(f"Job {job.id} has no stored analysis report")
        return report

    def _effect_ref(self, job_id: str, key: str) -> str | None:
        record = self._state.get_effect(job_id, key)
        return None if record is None else record.result_ref


def encode_conflict(exc: ConflictError) -> str:
    return json.dumps(
        {
            "detail": exc.detail,
            "file_path": exc.file_path,
            "base_sha": exc.base_sha,
            "head_sha": exc.head_sha,
        },
        sort_keys=True,
    )


def decode_conflict(raw: str | None) -> ConflictError | None:
    if raw is None:
        return None
    try:
        payload = as_object_dict(json.loads(raw))
    except json.JSONDecodeError:
        return None
    if payload is None:
        return None
    file_path = payload.get("file_path")
    return ConflictError(
        str(payload.get("detail", "")),
        file_path=file_path if isinstance(file_path, str) else None,
        base_sha=str(payload.get("base_sha", "")),
        head_sha=str(payload.get("head_sha", "")),
    )
