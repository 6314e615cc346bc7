from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal


JobStatus = Literal[
    "pending",
    "fetching",
    "analyzing",
    "fixing",
    "publishing",
    "notifying",
    "completed",
    "completed_with_warning",
    "failed",
]
Severity = Literal["critical", "high", "medium", "low", "info"]
IssueType = Literal[
    "bug",
    "security",
    "performance",
    "error-handling",
    "maintainability",
    "style",
]
NotificationOutcome = Literal["issues-found", "zero-issues", "publish-conflict", "job-failed"]

JOB_STATUSES: tuple[JobStatus, ...] = (
    "pending",
    "fetching",
    "analyzing",
    "fixing",
    "publishing",
    "notifying",
    "completed",
    "completed_with_warning",
    "failed",
)
TERMINAL_STATUSES: frozenset[JobStatus] = frozenset(
    {"completed", "completed_with_warning", "failed"}
)
# Ordered most to least severe.
SEVERITIES: tuple[Severity, ...] = ("critical", "high", "medium", "low", "info")
ISSUE_TYPES: tuple[IssueType, ...] = (
    "bug",
    "security",
    "performance",
    "error-handling",
    "maintainability",
    "style",
)


@dataclass(frozen=True)
class Commit:
    sha: str
    message: str
    author: str
    timestamp: str
    added: tuple[str, ...] = ()
    modified: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()


@dataclass(frozen=True)
class Job:
    id: str
    repository_id: str
    commits: tuple[Commit, ...]
    branch: str
    head_sha: str
    status: JobStatus
    retry_count: int
    created_at: str
    started_at: str | None = None
    completed_at: str | None = None
    error_message: str | None = None
    warning: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def changed_paths(self) -> tuple[str, ...]:
        """Paths added or modified by the push, in first-seen order, minus later removals."""
        seen: dict[str, None] = {}
        for commit in self.commits:
            for path in (*commit.added, *commit.modified):
                seen[path] = None
            for path in commit.removed:
                seen.pop(path, None)
        return tuple(seen)


@dataclass(frozen=True)
class SourceFile:
    path: str
    content: str | None
    binary: bool = False
    depth: int = 0

    @property
    def is_import(self) -> bool:
        return self.depth > 0


@dataclass(frozen=True)
class AnalysisContext:
    repository_id: str
    commit_sha: str
    branch: str
    changed_files: tuple[SourceFile, ...]
    imported_files: tuple[SourceFile, ...]
    commits: tuple[Commit, ...]
    skipped_paths: tuple[str, ...] = ()

    def file(self, path: str) -> SourceFile | None:
        for source in (*self.changed_files, *self.imported_files):
            if source.path == path:
                return source
        return None


@dataclass(frozen=True)
class Issue:
    id: str
    severity: Severity
    type: IssueType
    file: str
    line: int
    column: int
    description: str
    suggestion: str
    fixable: bool


@dataclass(frozen=True)
class AnalysisReport:
    id: str
    job_id: str
    repository_id: str
    commit_sha: str
    branch: str
    timestamp: str
    issues: tuple[Issue, ...]
    summary: str
    failed_chunks: tuple[str, ...] = ()

    @property
    def fixable_issues(self) -> tuple[Issue, ...]:
        return tuple(issue for issue in self.issues if issue.fixable)

    def max_severity(self) -> Severity | None:
        present = {issue.severity for issue in self.issues}
        for severity in SEVERITIES:
            if severity in present:
                return severity
        return None


@dataclass(frozen=True)
class FixProposal:
    issue_id: str
    file: str
    original_code: str
    fixed_code: str
    start_line: int
    end_line: int
    explanation: str


@dataclass(frozen=True)
class ConsolidatedFile:
    path: str
    content: str
    applied_issue_ids: tuple[str, ...]


@dataclass(frozen=True)
class FixPlan:
    files: tuple[ConsolidatedFile, ...]
    superseded_issue_ids: tuple[str, ...] = ()
    not_fixed_issue_ids: tuple[str, ...] = ()

    @property
    def applied_issue_ids(self) -> tuple[str, ...]:
        return tuple(issue_id for item in self.files for issue_id in item.applied_issue_ids)


@dataclass(frozen=True)
class IdempotencyRecord:
    job_id: str
    effect_key: str
    completed_at: str
    result_ref: str | None


@dataclass(frozen=True)
class PullRequestRef:
    number: int
    html_url: str
    branch: str
    labels: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class NotificationResult:
    job_id: str
    outcome: NotificationOutcome
    delivered: bool
    reused: bool = False
    error: str | None = None


@dataclass(frozen=True)
class JobTransitionRecord:
    job_id: str
    from_status: JobStatus | None
    to_status: JobStatus
    detail: str | None
    changed_at: str
