from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
import json
import logging
from pathlib import Path
import sqlite3
import threading
from typing import Callable, cast

from codepolice.errors import JobLeaseLostError
from codepolice.models import (
    ISSUE_TYPES,
    JOB_STATUSES,
    SEVERITIES,
    TERMINAL_STATUSES,
    AnalysisReport,
    Commit,
    ConsolidatedFile,
    FixPlan,
    IdempotencyRecord,
    Issue,
    IssueType,
    Job,
    JobStatus,
    JobTransitionRecord,
    Severity,
)
from codepolice.observability import log_event


LOGGER = logging.getLogger("codepolice.state")
_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
_TERMINAL_SQL = "('completed', 'completed_with_warning', 'failed')"
_JOB_COLUMNS = """
    id,
    repository_id,
    commits_json,
    branch,
    head_sha,
    status,
    retry_count,
    created_at,
    started_at,
    completed_at,
    error_message,
    warning
"""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime(_TIMESTAMP_FORMAT)


class StateStore:
    def __init__(self, db_path: Path, *, clock: Callable[[], datetime] = utc_now) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._clock = clock
        self._lock = threading.Lock()
        self._init_schema()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path, timeout=30.0)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _now(self) -> str:
        return format_timestamp(self._clock())

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    repository_id TEXT NOT NULL,
                    commits_json TEXT NOT NULL,
                    branch TEXT NOT NULL,
                    head_sha TEXT NOT NULL,
                    status TEXT NOT NULL,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    started_at TEXT NULL,
                    completed_at TEXT NULL,
                    error_message TEXT NULL,
                    warning TEXT NULL,
                    claimed_by TEXT NULL,
                    lease_expires_at TEXT NULL,
                    not_before TEXT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS jobs_status_created ON jobs(status, created_at)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS job_transitions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id TEXT NOT NULL,
                    from_status TEXT NULL,
                    to_status TEXT NOT NULL,
                    detail TEXT NULL,
                    changed_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS idempotency_records (
                    job_id TEXT NOT NULL,
                    effect_key TEXT NOT NULL,
                    completed_at TEXT NOT NULL,
                    result_ref TEXT NULL,
                    PRIMARY KEY (job_id, effect_key)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS analysis_reports (
                    id TEXT PRIMARY KEY,
                    job_id TEXT NOT NULL UNIQUE,
                    repository_id TEXT NOT NULL,
                    commit_sha TEXT NOT NULL,
                    branch TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    issues_json TEXT NOT NULL,
                    summary TEXT NOT NULL,
                    failed_chunks_json TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS analysis_reports_history
                ON analysis_reports(repository_id, branch, timestamp)
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS fix_plans (
                    job_id TEXT PRIMARY KEY,
                    files_json TEXT NOT NULL,
                    superseded_json TEXT NOT NULL,
                    not_fixed_json TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )

    # Jobs

    def enqueue_job(self, job: Job) -> bool:
        """Insert a pending job; a redelivered job id is ignored."""
        now = self._now()
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO jobs(
                    id,
                    repository_id,
                    commits_json,
                    branch,
                    head_sha,
                    status,
                    retry_count,
                    created_at,
                    updated_at
                )
                VALUES(?, ?, ?, ?, ?, 'pending', 0, ?, ?)
                ON CONFLICT(id) DO NOTHING
                """,
                (
                    job.id,
                    job.repository_id,
                    _commits_to_json(job.commits),
                    job.branch,
                    job.head_sha,
                    job.created_at,
                    now,
                ),
            )
            inserted = cursor.rowcount == 1
            if inserted:
                _insert_transition(conn, job.id, None, "pending", "enqueued", now)
        return inserted

    def get_job(self, job_id: str) -> Job | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?",
                (job_id,),
            ).fetchone()
        if row is None:
            return None
        return _parse_job_row(row)

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        repository_id: str | None = None,
        limit: int = 100,
    ) -> tuple[Job, ...]:
        clauses: list[str] = []
        params: list[object] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if repository_id is not None:
            clauses.append("repository_id = ?")
            params.append(repository_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_JOB_COLUMNS}
                FROM jobs
                {where}
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                tuple(params),
            ).fetchall()
        return tuple(_parse_job_row(row) for row in rows)

    def claim_jobs(
        self,
        *,
        worker_id: str,
        limit: int,
        lease_seconds: int,
        serialized_repository_ids: frozenset[str] = frozenset(),
    ) -> tuple[Job, ...]:
        """Lease up to ``limit`` runnable jobs, oldest first.

        A job is runnable when it is non-terminal, past its ``not_before`` and either
        unclaimed or holding an expired lease (the previous worker died). For
        repositories in ``serialized_repository_ids`` only the oldest non-terminal
        job is ever runnable.
        """
        if limit < 1:
            return ()
        now = self._now()
        lease_expires_at = format_timestamp(self._clock() + timedelta(seconds=lease_seconds))
        serialized = sorted(serialized_repository_ids)
        serialized_clause = ""
        if serialized:
            placeholders = ", ".join("?" for _ in serialized)
            serialized_clause = f"""
                AND NOT (
                    jobs.repository_id IN ({placeholders})
                    AND EXISTS (
                        SELECT 1 FROM jobs AS older
                        WHERE older.repository_id = jobs.repository_id
                          AND older.status NOT IN {_TERMINAL_SQL}
                          AND (
                              older.created_at < jobs.created_at
                              OR (older.created_at = jobs.created_at AND older.id < jobs.id)
                          )
                    )
                )
            """
        claimed: list[Job] = []
        with self._lock, self._connect() as conn:
            candidates = conn.execute(
                f"""
                SELECT id, status
                FROM jobs
                WHERE status NOT IN {_TERMINAL_SQL}
                  AND (claimed_by IS NULL OR lease_expires_at < ?)
                  AND (not_before IS NULL OR not_before <= ?)
                  {serialized_clause}
                ORDER BY created_at ASC, id ASC
                LIMIT ?
                """,
                (now, now, *serialized, limit),
            ).fetchall()
            for job_id, status in candidates:
                cursor = conn.execute(
                    """
                    UPDATE jobs
                    SET claimed_by = ?, lease_expires_at = ?, updated_at = ?
                    WHERE id = ?
                      AND status = ?
                      AND (claimed_by IS NULL OR lease_expires_at < ?)
                    """,
                    (worker_id, lease_expires_at, now, job_id, status, now),
                )
                if cursor.rowcount != 1:
                    continue
                row = conn.execute(
                    f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)
                ).fetchone()
                if row is not None:
                    claimed.append(_parse_job_row(row))
        return tuple(claimed)

    def transition_job(
        self,
        *,
        job_id: str,
        from_status: JobStatus,
        to_status: JobStatus,
        worker_id: str,
        lease_seconds: int,
        error_message: str | None = None,
        warning: str | None = None,
        retry_count: int | None = None,
        detail: str | None = None,
    ) -> Job:
        """Conditionally move a leased job between statuses and extend its lease."""
        now = self._now()
        terminal = to_status in TERMINAL_STATUSES
        lease_expires_at = format_timestamp(self._clock() + timedelta(seconds=lease_seconds))
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE jobs
                SET status = ?,
                    started_at = CASE WHEN ? = 'pending' THEN started_at
                                      ELSE COALESCE(started_at, ?) END,
                    completed_at = CASE WHEN ? THEN ? ELSE completed_at END,
                    error_message = COALESCE(?, error_message),
                    warning = COALESCE(?, warning),
                    retry_count = COALESCE(?, retry_count),
                    claimed_by = CASE WHEN ? THEN NULL ELSE claimed_by END,
                    lease_expires_at = CASE WHEN ? THEN NULL ELSE ? END,
                    not_before = NULL,
                    updated_at = ?
                WHERE id = ? AND status = ? AND claimed_by = ?
                """,
                (
                    to_status,
                    to_status,
                    now,
                    terminal,
                    now,
                    error_message,
                    warning,
                    retry_count,
                    terminal,
                    terminal,
                    lease_expires_at,
                    now,
                    job_id,
                    from_status,
                    worker_id,
                ),
            )
            if cursor.rowcount != 1:
                raise JobLeaseLostError(
                    f"Job {job_id} is no longer {from_status} under worker {worker_id}"
                )
            _insert_transition(conn, job_id, from_status, to_status, detail, now)
            row = conn.execute(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            raise RuntimeError("jobs row disappeared after transition")
        return _parse_job_row(row)

    def renew_lease(
        self,
        *,
        job_id: str,
        status: JobStatus,
        worker_id: str,
        lease_seconds: int,
    ) -> None:
        """Push the lease forward without a status change, for long-running stages."""
        now = self._now()
        lease_expires_at = format_timestamp(self._clock() + timedelta(seconds=lease_seconds))
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE jobs
                SET lease_expires_at = ?, updated_at = ?
                WHERE id = ? AND status = ? AND claimed_by = ?
                """,
                (lease_expires_at, now, job_id, status, worker_id),
            )
            if cursor.rowcount != 1:
                raise JobLeaseLostError(f"Job {job_id} is no longer {status} under worker {worker_id}")

    def schedule_job_retry(
        self,
        *,
        job_id: str,
        status: JobStatus,
        worker_id: str,
        retry_count: int,
        delay_seconds: float,
        error_message: str,
    ) -> Job:
        """Record a failed stage attempt and release the lease until ``delay_seconds`` pass."""
        now = self._now()
        not_before = format_timestamp(self._clock() + timedelta(seconds=delay_seconds))
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE jobs
                SET retry_count = ?,
                    error_message = ?,
                    claimed_by = NULL,
                    lease_expires_at = NULL,
                    not_before = ?,
                    updated_at = ?
                WHERE id = ? AND status = ? AND claimed_by = ?
                """,
                (retry_count, error_message, not_before, now, job_id, status, worker_id),
            )
            if cursor.rowcount != 1:
                raise JobLeaseLostError(f"Job {job_id} is no longer leased by {worker_id}")
            _insert_transition(
                conn, job_id, status, status, f"retry {retry_count}: {error_message}", now
            )
            row = conn.execute(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            raise RuntimeError("jobs row disappeared after retry scheduling")
        return _parse_job_row(row)

    def release_job(self, *, job_id: str, worker_id: str) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                UPDATE jobs
                SET claimed_by = NULL, lease_expires_at = NULL, updated_at = ?
                WHERE id = ? AND claimed_by = ?
                """,
                (self._now(), job_id, worker_id),
            )

    def list_transitions(self, job_id: str) -> tuple[JobTransitionRecord, ...]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT job_id, from_status, to_status, detail, changed_at
                FROM job_transitions
                WHERE job_id = ?
                ORDER BY id ASC
                """,
                (job_id,),
            ).fetchall()
        return tuple(
            JobTransitionRecord(
                job_id=str(row_job_id),
                from_status=None if from_status is None else _parse_job_status(from_status),
                to_status=_parse_job_status(to_status),
                detail=detail if isinstance(detail, str) else None,
                changed_at=str(changed_at),
            )
            for row_job_id, from_status, to_status, detail, changed_at in rows
        )

    # Idempotency

    def get_effect(self, job_id: str, effect_key: str) -> IdempotencyRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT job_id, effect_key, completed_at, result_ref
                FROM idempotency_records
                WHERE job_id = ? AND effect_key = ?
                """,
                (job_id, effect_key),
            ).fetchone()
        if row is None:
            return None
        return _parse_effect_row(row)

    def record_effect(
        self, job_id: str, effect_key: str, result_ref: str | None
    ) -> tuple[IdempotencyRecord, bool]:
        """Insert-if-absent; returns the stored record and whether this call wrote it.

        When another worker already recorded the effect, its record (and result_ref)
        wins and is returned unchanged.
        """
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO idempotency_records(job_id, effect_key, completed_at, result_ref)
                VALUES(?, ?, ?, ?)
                ON CONFLICT(job_id, effect_key) DO NOTHING
                """,
                (job_id, effect_key, self._now(), result_ref),
            )
            inserted = cursor.rowcount == 1
            row = conn.execute(
                """
                SELECT job_id, effect_key, completed_at, result_ref
                FROM idempotency_records
                WHERE job_id = ? AND effect_key = ?
                """,
                (job_id, effect_key),
            ).fetchone()
        if row is None:
            raise RuntimeError("idempotency_records row disappeared after insert")
        log_event(
            LOGGER,
            "effect_recorded" if inserted else "effect_reused",
            job_id=job_id,
            effect_key=effect_key,
        )
        return _parse_effect_row(row), inserted

    def list_effects(self, job_id: str) -> tuple[IdempotencyRecord, ...]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT job_id, effect_key, completed_at, result_ref
                FROM idempotency_records
                WHERE job_id = ?
                ORDER BY completed_at ASC, effect_key ASC
                """,
                (job_id,),
            ).fetchall()
        return tuple(_parse_effect_row(row) for row in rows)

    # Reports

    def save_report(self, report: AnalysisReport) -> AnalysisReport:
        """Store the report for its job once; later saves return the first one."""
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO analysis_reports(
                    id,
                    job_id,
                    repository_id,
                    commit_sha,
                    branch,
                    timestamp,
                    issues_json,
                    summary,
                    failed_chunks_json
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT DO NOTHING
                """,
                (
                    report.id,
                    report.job_id,
                    report.repository_id,
                    report.commit_sha,
                    report.branch,
                    report.timestamp,
                    _issues_to_json(report.issues),
                    report.summary,
                    json.dumps(list(report.failed_chunks)),
                ),
            )
            row = conn.execute(
                f"SELECT {_REPORT_COLUMNS} FROM analysis_reports WHERE job_id = ?",
                (report.job_id,),
            ).fetchone()
        if row is None:
            raise RuntimeError("analysis_reports row disappeared after insert")
        return _parse_report_row(row)

    def get_report_for_job(self, job_id: str) -> AnalysisReport | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                f"SELECT {_REPORT_COLUMNS} FROM analysis_reports WHERE job_id = ?",
                (job_id,),
            ).fetchone()
        if row is None:
            return None
        return _parse_report_row(row)

    def list_reports(
        self, *, repository_id: str, branch: str, limit: int = 50
    ) -> tuple[AnalysisReport, ...]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_REPORT_COLUMNS}
                FROM analysis_reports
                WHERE repository_id = ? AND branch = ?
                ORDER BY timestamp DESC, id DESC
                LIMIT ?
                """,
                (repository_id, branch, limit),
            ).fetchall()
        return tuple(_parse_report_row(row) for row in rows)

    # Fix plans

    def save_fix_plan(self, job_id: str, plan: FixPlan) -> FixPlan:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO fix_plans(job_id, files_json, superseded_json, not_fixed_json, created_at)
                VALUES(?, ?, ?, ?, ?)
                ON CONFLICT(job_id) DO NOTHING
                """,
                (
                    job_id,
                    json.dumps(
                        [
                            {
                                "path": item.path,
                                "content": item.content,
                                "applied_issue_ids": list(item.applied_issue_ids),
                            }
                            for item in plan.files
                        ]
                    ),
                    json.dumps(list(plan.superseded_issue_ids)),
                    json.dumps(list(plan.not_fixed_issue_ids)),
                    self._now(),
                ),
            )
            row = conn.execute(
                "SELECT files_json, superseded_json, not_fixed_json FROM fix_plans WHERE job_id = ?",
                (job_id,),
            ).fetchone()
        if row is None:
            raise RuntimeError("fix_plans row disappeared after insert")
        return _parse_fix_plan_row(row)

    def get_fix_plan(self, job_id: str) -> FixPlan | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT files_json, superseded_json, not_fixed_json FROM fix_plans WHERE job_id = ?",
                (job_id,),
            ).fetchone()
        if row is None:
            return None
        return _parse_fix_plan_row(row)


_REPORT_COLUMNS = """
    id,
    job_id,
    repository_id,
    commit_sha,
    branch,
    timestamp,
    issues_json,
    summary,
    failed_chunks_json
"""


def _insert_transition(
    conn: sqlite3.Connection,
    job_id: str,
    from_status: JobStatus | None,
    to_status: JobStatus,
    detail: str | None,
    changed_at: str,
) -> None:
    conn.execute(
        """
        INSERT INTO job_transitions(job_id, from_status, to_status, detail, changed_at)
        VALUES(?, ?, ?, ?, ?)
        """,
        (job_id, from_status, to_status, detail, changed_at),
    )


def _commits_to_json(commits: tuple[Commit, ...]) -> str:
    return json.dumps(
        [
            {
                "sha": commit.sha,
                "message": commit.message,
                "author": commit.author,
                "timestamp": commit.timestamp,
                "added": list(commit.added),
                "modified": list(commit.modified),
                "removed": list(commit.removed),
            }
            for commit in commits
        ]
    )


def _commits_from_json(raw: object) -> tuple[Commit, ...]:
    if not isinstance(raw, str):
        raise RuntimeError("Invalid commits_json value stored in jobs")
    payload = json.loads(raw)
    if not isinstance(payload, list):
        raise RuntimeError("Invalid commits_json value stored in jobs")
    commits: list[Commit] = []
    for item in payload:
        if not isinstance(item, dict):
            raise RuntimeError("Invalid commit entry stored in jobs")
        commits.append(
            Commit(
                sha=str(item["sha"]),
                message=str(item.get("message", "")),
                author=str(item.get("author", "")),
                timestamp=str(item.get("timestamp", "")),
                added=tuple(str(path) for path in item.get("added", [])),
                modified=tuple(str(path) for path in item.get("modified", [])),
                removed=tuple(str(path) for path in item.get("removed", [])),
            )
        )
    return tuple(commits)


def _issues_to_json(issues: tuple[Issue, ...]) -> str:
    return json.dumps(
        [
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
            for issue in issues
        ]
    )


def _issues_from_json(raw: object) -> tuple[Issue, ...]:
    if not isinstance(raw, str):
        raise RuntimeError("Invalid issues_json value stored in analysis_reports")
    payload = json.loads(raw)
    if not isinstance(payload, list):
        raise RuntimeError("Invalid issues_json value stored in analysis_reports")
    issues: list[Issue] = []
    for item in payload:
        severity = item["severity"]
        issue_type = item["type"]
        if severity not in SEVERITIES or issue_type not in ISSUE_TYPES:
            raise RuntimeError("Unknown severity or type stored in analysis_reports")
        issues.append(
            Issue(
                id=str(item["id"]),
                severity=cast(Severity, severity),
                type=cast(IssueType, issue_type),
                file=str(item["file"]),
                line=int(item["line"]),
                column=int(item["column"]),
                description=str(item["description"]),
                suggestion=str(item["suggestion"]),
                fixable=bool(item["fixable"]),
            )
        )
    return tuple(issues)


def _parse_job_row(row: tuple[object, ...]) -> Job:
    (
        job_id,
        repository_id,
        commits_json,
        branch,
        head_sha,
        status,
        retry_count,
        created_at,
        started_at,
        completed_at,
        error_message,
        warning,
    ) = row
    if not isinstance(job_id, str):
        raise RuntimeError("Invalid id value stored in jobs")
    if not isinstance(repository_id, str):
        raise RuntimeError("Invalid repository_id value stored in jobs")
    if not isinstance(branch, str) or not isinstance(head_sha, str):
        raise RuntimeError("Invalid branch/head_sha value stored in jobs")
    if not isinstance(retry_count, int):
        raise RuntimeError("Invalid retry_count value stored in jobs")
    if not isinstance(created_at, str):
        raise RuntimeError("Invalid created_at value stored in jobs")
    return Job(
        id=job_id,
        repository_id=repository_id,
        commits=_commits_from_json(commits_json),
        branch=branch,
        head_sha=head_sha,
        status=_parse_job_status(status),
        retry_count=retry_count,
        created_at=created_at,
        started_at=_optional_text(started_at),
        completed_at=_optional_text(completed_at),
        error_message=_optional_text(error_message),
        warning=_optional_text(warning),
    )


def _parse_effect_row(row: tuple[object, ...]) -> IdempotencyRecord:
    job_id, effect_key, completed_at, result_ref = row
    if not isinstance(job_id, str) or not isinstance(effect_key, str):
        raise RuntimeError("Invalid key stored in idempotency_records")
    if not isinstance(completed_at, str):
        raise RuntimeError("Invalid completed_at value stored in idempotency_records")
    return IdempotencyRecord(
        job_id=job_id,
        effect_key=effect_key,
        completed_at=completed_at,
        result_ref=_optional_text(result_ref),
    )


def _parse_report_row(row: tuple[object, ...]) -> AnalysisReport:
    (
        report_id,
        job_id,
        repository_id,
        commit_sha,
        branch,
        timestamp,
        issues_json,
        summary,
        failed_chunks_json,
    ) = row
    failed_chunks = json.loads(str(failed_chunks_json))
    return AnalysisReport(
        id=str(report_id),
        job_id=str(job_id),
        repository_id=str(repository_id),
        commit_sha=str(commit_sha),
        branch=str(branch),
        timestamp=str(timestamp),
        issues=_issues_from_json(issues_json),
        summary=str(summary),
        failed_chunks=tuple(str(chunk) for chunk in failed_chunks),
    )


def _parse_fix_plan_row(row: tuple[object, ...]) -> FixPlan:
    files_json, superseded_json, not_fixed_json = row
    files_payload = json.loads(str(files_json))
    return FixPlan(
        files=tuple(
            ConsolidatedFile(
                path=str(item["path"]),
                content=str(item["content"]),
                applied_issue_ids=tuple(str(issue_id) for issue_id in item["applied_issue_ids"]),
            )
            for item in files_payload
        ),
        superseded_issue_ids=tuple(str(item) for item in json.loads(str(superseded_json))),
        not_fixed_issue_ids=tuple(str(item) for item in json.loads(str(not_fixed_json))),
    )


def _parse_job_status(value: object) -> JobStatus:
    if not isinstance(value, str):
        raise RuntimeError("Invalid status value stored in jobs")
    if value not in JOB_STATUSES:
        raise RuntimeError(f"Unknown status value stored in jobs: {value}")
    return cast(JobStatus, value)


def _optional_text(value: object) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise RuntimeError("Invalid text value stored in state DB")
    return value
