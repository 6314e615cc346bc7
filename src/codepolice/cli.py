from __future__ import annotations

import argparse
import json
from pathlib import Path
import sys
from typing import cast

from codepolice.config import AppConfig, load_config
from codepolice.errors import ValidationError
from codepolice.events import enqueue_push_event
from codepolice.jobs_tui import run_jobs_tui
from codepolice.models import JOB_STATUSES, AnalysisReport, Job, JobStatus
from codepolice.observability import configure_logging
from codepolice.orchestrator import JobOrchestrator, build_services_factory
from codepolice.state import StateStore, format_timestamp, utc_now


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=Path("codepolice.toml"))
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        default=None,
        choices=("low", "high"),
        help="Enable runtime logging to stderr (low: lifecycle events only)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="codepolice")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init", help="Initialize base dir and state DB")
    _add_common_arguments(init_parser)

    run_parser = subparsers.add_parser("run", help="Claim queued jobs and run the review pipeline")
    _add_common_arguments(run_parser)
    run_parser.add_argument(
        "--once", action="store_true", help="Claim once and wait for active jobs"
    )
    run_parser.add_argument("--worker-id", type=str, help="Lease owner name (default host:pid)")

    enqueue_parser = subparsers.add_parser("enqueue", help="Queue a job from a push event")
    _add_common_arguments(enqueue_parser)
    enqueue_parser.add_argument(
        "--event",
        type=str,
        required=True,
        help="Path to a GitHub push payload JSON file, or - for stdin",
    )

    jobs_parser = subparsers.add_parser("jobs", help="Inspect job status")
    _add_common_arguments(jobs_parser)
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", required=True)
    jobs_list_parser = jobs_subparsers.add_parser("list", help="List recent jobs")
    jobs_list_parser.add_argument("--status", choices=JOB_STATUSES)
    jobs_list_parser.add_argument("--limit", type=int, default=50)
    jobs_list_parser.add_argument("--json", action="store_true", help="Print jobs as JSON")
    jobs_show_parser = jobs_subparsers.add_parser("show", help="Show one job and its history")
    jobs_show_parser.add_argument("job_id")
    jobs_watch_parser = jobs_subparsers.add_parser("watch", help="Live terminal job view")
    jobs_watch_parser.add_argument("--refresh-seconds", type=int, default=2)
    jobs_watch_parser.add_argument("--status", choices=JOB_STATUSES)

    reports_parser = subparsers.add_parser("reports", help="Inspect analysis history")
    _add_common_arguments(reports_parser)
    reports_subparsers = reports_parser.add_subparsers(dest="reports_command", required=True)
    reports_list_parser = reports_subparsers.add_parser(
        "list", help="List reports for a repository branch, newest first"
    )
    reports_list_parser.add_argument("--repo", type=str, required=True, help="Repo id or owner/name")
    reports_list_parser.add_argument("--branch", type=str, required=True)
    reports_list_parser.add_argument("--limit", type=int, default=20)
    reports_list_parser.add_argument("--json", action="store_true", help="Print reports as JSON")

    return parser


def main() -> None:
    args = build_parser().parse_args()
    config = load_config(args.config)
    state_dir = config.runtime.base_dir if args.command == "run" else None
    configure_logging(getattr(args, "verbose", None), state_dir=state_dir)

    if args.command == "init":
        _cmd_init(config)
        return
    if args.command == "run":
        _cmd_run(config, once=bool(args.once), worker_id=args.worker_id)
        return
    if args.command == "enqueue":
        _cmd_enqueue(config, event_path=str(args.event))
        return
    if args.command == "jobs":
        _cmd_jobs(config, args)
        return
    if args.command == "reports":
        _cmd_reports(config, args)
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_init(config: AppConfig) -> None:
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    StateStore(config.runtime.state_db_path)
    print(f"Initialized Code Police base dir: {config.runtime.base_dir}")
    print(f"State DB: {config.runtime.state_db_path}")
    for repo in config.repos:
        print(f"Repo: {repo.repo_id} ({repo.full_name}) -> {repo.owner_email}")


def _cmd_run(config: AppConfig, *, once: bool, worker_id: str | None) -> None:
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    state = StateStore(config.runtime.state_db_path)
    orchestrator = JobOrchestrator(
        config,
        state=state,
        services_factory=build_services_factory(config, state=state),
        worker_id=worker_id,
    )
    orchestrator.run(once=once)


def _cmd_enqueue(config: AppConfig, *, event_path: str) -> None:
    raw = sys.stdin.read() if event_path == "-" else Path(event_path).read_text(encoding="utf-8")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Push event is not valid JSON: {exc}") from exc
    state = StateStore(config.runtime.state_db_path)
    job, created = enqueue_push_event(
        state, config, payload, now=format_timestamp(utc_now())
    )
    if job is None:
        print("Push ignored: nothing to review.")
        return
    if created:
        print(f"Queued {job.id} for {job.repository_id}@{job.branch} ({job.head_sha[:12]})")
        return
    print(f"Already queued: {job.id}")


def _cmd_jobs(config: AppConfig, args: argparse.Namespace) -> None:
    state = StateStore(config.runtime.state_db_path)
    if args.jobs_command == "list":
        status = cast(JobStatus, args.status) if args.status else None
        _cmd_jobs_list(state, status=status, limit=int(args.limit), as_json=bool(args.json))
        return
    if args.jobs_command == "show":
        _cmd_jobs_show(state, job_id=str(args.job_id))
        return
    if args.jobs_command == "watch":
        run_jobs_tui(
            db_path=config.runtime.state_db_path,
            refresh_seconds=max(1, int(args.refresh_seconds)),
            status_filter=cast(JobStatus, args.status) if args.status else None,
        )
        return
    raise RuntimeError(f"Unknown jobs command: {args.jobs_command}")


def _cmd_jobs_list(
    state: StateStore, *, status: JobStatus | None, limit: int, as_json: bool
) -> None:
    jobs = state.list_jobs(status=status, limit=limit)
    if as_json:
        print(json.dumps([_job_payload(job) for job in jobs], indent=2))
        return
    if not jobs:
        print("No jobs found.")
        return
    for job in jobs:
        print(
            f"{job.id} repo={job.repository_id} branch={job.branch} status={job.status} "
            f"retries={job.retry_count} created_at={job.created_at}"
        )
        if job.error_message:
            print(f"  error={_summarize(job.error_message)}")
        if job.warning:
            print(f"  warning={_summarize(job.warning)}")


def _cmd_jobs_show(state: StateStore, *, job_id: str) -> None:
    job = state.get_job(job_id)
    if job is None:
        raise RuntimeError(f"Unknown job id: {job_id}")
    payload = _job_payload(job)
    payload["transitions"] = [
        {
            "from": item.from_status,
            "to": item.to_status,
            "detail": item.detail,
            "changed_at": item.changed_at,
        }
        for item in state.list_transitions(job_id)
    ]
    payload["effects"] = [
        {"key": item.effect_key, "result_ref": item.result_ref, "completed_at": item.completed_at}
        for item in state.list_effects(job_id)
    ]
    report = state.get_report_for_job(job_id)
    payload["report"] = _report_payload(report) if report is not None else None
    print(json.dumps(payload, indent=2))


def _cmd_reports(config: AppConfig, args: argparse.Namespace) -> None:
    if args.reports_command != "list":
        raise RuntimeError(f"Unknown reports command: {args.reports_command}")
    repo_id = _resolve_repo_id(config, str(args.repo))
    state = StateStore(config.runtime.state_db_path)
    reports = state.list_reports(
        repository_id=repo_id, branch=str(args.branch), limit=int(args.limit)
    )
    if args.json:
        print(json.dumps([_report_payload(report) for report in reports], indent=2))
        return
    if not reports:
        print("No reports found.")
        return
    for report in reports:
        print(
            f"{report.timestamp} {report.id} commit={report.commit_sha[:12]} "
            f"issues={len(report.issues)} max_severity={report.max_severity() or '-'}"
        )
        print(f"  {report.summary}")


def _resolve_repo_id(config: AppConfig, raw: str) -> str:
    candidate = raw.strip()
    for repo in config.repos:
        if candidate == repo.repo_id or candidate.lower() == repo.full_name.lower():
            return repo.repo_id
    available = ", ".join(sorted(repo.repo_id for repo in config.repos))
    raise RuntimeError(f"Unknown --repo value {candidate!r}. Expected one of: {available}")


def _job_payload(job: Job) -> dict[str, object]:
    return {
        "id": job.id,
        "repository_id": job.repository_id,
        "branch": job.branch,
        "head_sha": job.head_sha,
        "status": job.status,
        "retry_count": job.retry_count,
        "created_at": job.created_at,
        "started_at": job.started_at,
        "completed_at": job.completed_at,
        "error_message": job.error_message,
        "warning": job.warning,
        "commit_count": len(job.commits),
    }


def _report_payload(report: AnalysisReport) -> dict[str, object]:
    return {
        "id": report.id,
        "job_id": report.job_id,
        "commit_sha": report.commit_sha,
        "branch": report.branch,
        "timestamp": report.timestamp,
        "summary": report.summary,
        "failed_chunks": list(report.failed_chunks),
        "issues": [
            {
                "id": issue.id,
                "severity": issue.severity,
                "type": issue.type,
                "file": issue.file,
                "line": issue.line,
                "column": issue.column,
                "description": issue.description,
                "suggestion": issue.suggestion,
                "fixable": issue.fixable,
            }
            for issue in report.issues
        ],
    }


def _summarize(text: str) -> str:
    first_line = text.strip().splitlines()[0] if text.strip() else ""
    if len(first_line) <= 200:
        return first_line or "<none>"
    return f"{first_line[:197]}..."
