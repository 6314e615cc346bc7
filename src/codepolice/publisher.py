from __future__ import annotations

import json
import logging
import re
from typing import Callable, Protocol, TypeVar

from codepolice.errors import ConflictError, FatalExternalError
from codepolice.fix_planner import natural_issue_key
from codepolice.github_gateway import CompareResult
from codepolice.llm import as_object_dict
from codepolice.models import AnalysisReport, FixPlan, Issue, Job, PullRequestRef
from codepolice.observability import log_event, log_warning
from codepolice.retry import RetryExecutor
from codepolice.state import StateStore


LOGGER = logging.getLogger("codepolice.publisher")
BRANCH_PREFIX = "code-police/fix-"
FIXED_LABELS: tuple[str, ...] = ("automated-fix", "code-quality")
_MAX_SLUG_CHARS = 40
_SLUG_INVALID = re.compile(r"[^a-z0-9]+")
T = TypeVar("T")


class PullRequestHost(Protocol):
    def get_branch_head_sha(self, branch: str) -> str | None: ...

    def create_branch(self, name: str, base_sha: str) -> str: ...

    def commit_file(self, *, branch: str, path: str, content: str, message: str) -> str: ...

    def open_pull_request(
        self,
        *,
        head: str,
        base: str,
        title: str,
        body: str,
        labels: tuple[str, ...],
    ) -> PullRequestRef: ...

    def compare_commits(self, base_sha: str, head_sha: str) -> CompareResult: ...


def branch_effect_key(job_id: str) -> str:
    return f"branch:{job_id}"


def commit_effect_key(job_id: str, path: str) -> str:
    return f"commit:{job_id}:{path}"


def pr_effect_key(job_id: str) -> str:
    return f"pr:{job_id}"


def kebab_case(text: str) -> str:
    slug = _SLUG_INVALID.sub("-", text.lower()).strip("-")
    return slug[:_MAX_SLUG_CHARS].rstrip("-") or "fixes"


def basic_timestamp(iso_timestamp: str) -> str:
    """``2026-10-19T12:00:00.000000Z`` becomes ``20261019T120000Z`` (colons are illegal in refs)."""
    date_part, _, time_part = iso_timestamp.partition("T")
    clock = time_part.split(".", 1)[0].rstrip("Z")
    return f"{date_part.replace('-', '')}T{clock.replace(':', '')}Z"


def branch_name_for(report: AnalysisReport, plan: FixPlan) -> str:
    issues = _issues_by_id(report)
    applied = [issues[issue_id] for issue_id in plan.applied_issue_ids if issue_id in issues]
    if applied:
        first = applied[0]
        stem = first.file.rsplit("/", 1)[-1]
        description = f"{first.type} {stem}"
        if len(plan.files) > 1:
            description += f" and {len(plan.files) - 1} more"
    else:
        description = "code fixes"
    return f"{BRANCH_PREFIX}{basic_timestamp(report.timestamp)}-{kebab_case(description)}"


def labels_for(report: AnalysisReport) -> tuple[str, ...]:
    severity = report.max_severity()
    if severity is None:
        return FIXED_LABELS
    return (*FIXED_LABELS, f"severity:{severity}")


def commit_message_for(path: str, issue_ids: tuple[str, ...], report: AnalysisReport) -> str:
    issues = _issues_by_id(report)
    count = len(issue_ids)
    lines = [f"Fix {count} issue{'s' if count != 1 else ''} in {path}", ""]
    for issue_id in issue_ids:
        issue = issues.get(issue_id)
        if issue is None:
            lines.append(f"- {issue_id} {path}")
            continue
        lines.append(f"- [{issue.type}] {path}:{issue.line} {issue.id}: {_one_line(issue.description)}")
    return "\n".join(lines)


def pull_request_title(job: Job, plan: FixPlan) -> str:
    count = len(plan.applied_issue_ids)
    return f"Code Police: {count} automated fix{'es' if count != 1 else ''} for {job.branch}"


def pull_request_body(job: Job, plan: FixPlan, report: AnalysisReport) -> str:
    """Rendered from the report and plan alone so a resumed job produces the same text."""
    issues = _issues_by_id(report)
    sections = [
        "## Summary",
        report.summary,
        "",
        f"Analyzed commit `{job.head_sha}` on `{job.branch}`.",
        "",
        "## Applied fixes",
        *_issue_lines(plan.applied_issue_ids, issues),
    ]
    if plan.superseded_issue_ids:
        sections.extend(
            ["", "## Superseded fixes", *_issue_lines(plan.superseded_issue_ids, issues)]
        )
    if plan.not_fixed_issue_ids:
        sections.extend(
            [
                "",
                "## Fixable but not fixed",
                *_issue_lines(plan.not_fixed_issue_ids, issues),
            ]
        )
    not_fixable = tuple(issue.id for issue in report.issues if not issue.fixable)
    if not_fixable:
        sections.extend(["", "## Needs manual attention", *_issue_lines(not_fixable, issues)])
    sections.extend(["", "## Labels", ", ".join(labels_for(report))])
    return "\n".join(sections)


def encode_pull_request(pr: PullRequestRef) -> str:
    return json.dumps(
        {"number": pr.number, "url": pr.html_url, "branch": pr.branch, "labels": list(pr.labels)},
        sort_keys=True,
    )


def decode_pull_request(raw: str | None) -> PullRequestRef | None:
    if raw is None:
        return None
    try:
        payload = as_object_dict(json.loads(raw))
    except json.JSONDecodeError:
        return None
    if payload is None:
        return None
    number = payload.get("number")
    url = payload.get("url")
    branch = payload.get("branch")
    labels = payload.get("labels", [])
    if not isinstance(number, int) or not isinstance(url, str) or not isinstance(branch, str):
        return None
    if not isinstance(labels, list):
        labels = []
    return PullRequestRef(
        number=number,
        html_url=url,
        branch=branch,
        labels=tuple(label for label in labels if isinstance(label, str)),
    )


class PRPublisher:
    def __init__(self, *, host: PullRequestHost, state: StateStore, retry: RetryExecutor) -> None:
        self._host = host
        self._state = state
        self._retry = retry

    def publish(self, job: Job, plan: FixPlan, report: AnalysisReport) -> PullRequestRef:
        existing = decode_pull_request(self._effect_ref(job.id, pr_effect_key(job.id)))
        if existing is not None:
            log_event(LOGGER, "pr_reused", pr_number=existing.number, branch=existing.branch)
            return existing
        if not plan.files:
            raise FatalExternalError("Nothing to publish: fix plan has no files")

        base_sha = self._check_for_conflict(job, plan)
        branch = self._ensure_branch(job, plan, report, base_sha=base_sha)
        for consolidated in plan.files:
            key = commit_effect_key(job.id, consolidated.path)
            if self._state.get_effect(job.id, key) is not None:
                continue
            message = commit_message_for(consolidated.path, consolidated.applied_issue_ids, report)
            commit_sha = self._guard_conflict(
                job,
                consolidated.path,
                base_sha,
                lambda: self._retry.call(
                    "github.commit_file",
                    lambda: self._host.commit_file(
                        branch=branch,
                        path=consolidated.path,
                        content=consolidated.content,
                        message=message,
                    ),
                ),
            )
            self._state.record_effect(job.id, key, commit_sha)

        labels = labels_for(report)
        pr = self._guard_conflict(
            job,
            None,
            base_sha,
            lambda: self._retry.call(
                "github.open_pull_request",
                lambda: self._host.open_pull_request(
                    head=branch,
                    base=job.branch,
                    title=pull_request_title(job, plan),
                    body=pull_request_body(job, plan, report),
                    labels=labels,
                ),
            ),
        )
        record, inserted = self._state.record_effect(
            job.id, pr_effect_key(job.id), encode_pull_request(pr)
        )
        stored = decode_pull_request(record.result_ref) or pr
        if inserted:
            log_event(
                LOGGER,
                "pr_opened",
                pr_number=stored.number,
                branch=stored.branch,
                base=job.branch,
                applied_count=len(plan.applied_issue_ids),
            )
        return stored

    def _effect_ref(self, job_id: str, key: str) -> str | None:
        record = self._state.get_effect(job_id, key)
        return None if record is None else record.result_ref

    def _ensure_branch(
        self, job: Job, plan: FixPlan, report: AnalysisReport, *, base_sha: str
    ) -> str:
        recorded = self._effect_ref(job.id, branch_effect_key(job.id))
        if recorded:
            return recorded
        name = branch_name_for(report, plan)
        self._guard_conflict(
            job,
            None,
            base_sha,
            lambda: self._retry.call(
                "github.create_branch", lambda: self._host.create_branch(name, job.head_sha)
            ),
        )
        record, _ = self._state.record_effect(job.id, branch_effect_key(job.id), name)
        return record.result_ref or name

    def _check_for_conflict(self, job: Job, plan: FixPlan) -> str:
        """Return the current base head, raising ConflictError if a fixed file moved upstream."""
        base_head = self._retry.call(
            "github.get_branch_head_sha", lambda: self._host.get_branch_head_sha(job.branch)
        )
        if base_head is None:
            raise FatalExternalError(f"Base branch {job.branch} no longer exists")
        if base_head == job.head_sha:
            return base_head
        comparison = self._retry.call(
            "github.compare_commits", lambda: self._host.compare_commits(job.head_sha, base_head)
        )
        if comparison.status in {"behind", "diverged"}:
            raise ConflictError(
                f"{job.branch} was rewritten after {job.head_sha}",
                file_path=None,
                base_sha=base_head,
                head_sha=job.head_sha,
            )
        touched = set(comparison.changed_files)
        for consolidated in plan.files:
            if consolidated.path in touched:
                raise ConflictError(
                    f"{consolidated.path} changed on {job.branch} after analysis",
                    file_path=consolidated.path,
                    base_sha=base_head,
                    head_sha=job.head_sha,
                )
        log_event(LOGGER, "base_advanced", base_sha=base_head, changed_file_count=len(touched))
        return base_head

    def _guard_conflict(
        self, job: Job, path: str | None, base_sha: str, fn: Callable[[], T]
    ) -> T:
        try:
            return fn()
        except FatalExternalError as exc:
            if exc.status_code != 409:
                raise
            log_warning(LOGGER, "publish_conflict_detected", path=path, status_code=409)
            raise ConflictError(
                str(exc), file_path=path, base_sha=base_sha, head_sha=job.head_sha
            ) from exc


def _issues_by_id(report: AnalysisReport) -> dict[str, Issue]:
    return {issue.id: issue for issue in report.issues}


def _issue_lines(issue_ids: tuple[str, ...], issues: dict[str, Issue]) -> list[str]:
    if not issue_ids:
        return ["- none"]
    lines: list[str] = []
    for issue_id in sorted(issue_ids, key=natural_issue_key):
        issue = issues.get(issue_id)
        if issue is None:
            lines.append(f"- `{issue_id}`")
            continue
        lines.append(
            f"- `{issue.id}` {issue.severity} {issue.type} at `{issue.file}:{issue.line}`: "
            f"{_one_line(issue.description)}"
        )
    return lines


def _one_line(text: str) -> str:
    return " ".join(text.split())
