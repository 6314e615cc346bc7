from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, replace
from datetime import datetime, timezone
import logging
from typing import Callable, cast

from codepolice.errors import CodePoliceError, ValidationError
from codepolice.llm import LLMClient, as_object_dict, estimate_tokens, parse_json_reply
from codepolice.models import (
    ISSUE_TYPES,
    SEVERITIES,
    AnalysisContext,
    AnalysisReport,
    Issue,
    IssueType,
    Severity,
    SourceFile,
)
from codepolice.observability import log_event, log_warning
from codepolice.prompts import build_analysis_prompt
from codepolice.retry import RetryExecutor


LOGGER = logging.getLogger("codepolice.analyzer")
REQUIRED_ISSUE_FIELDS: tuple[str, ...] = (
    "severity",
    "type",
    "file",
    "line",
    "column",
    "description",
    "suggestion",
    "fixable",
)


class AnalysisFailedError(CodePoliceError):
    """No chunk of the analysis produced a usable model response."""


@dataclass(frozen=True)
class ValidIssue:
    issue: Issue


@dataclass(frozen=True)
class DroppedIssue:
    index: int
    reason: str


CandidateIssue = ValidIssue | DroppedIssue


@dataclass(frozen=True)
class AnalysisChunk:
    id: str
    files: tuple[SourceFile, ...]

    @property
    def changed_paths(self) -> frozenset[str]:
        return frozenset(source.path for source in self.files if not source.is_import)


def validate_candidate(
    raw: object,
    *,
    index: int,
    issue_id: str,
    line_counts: dict[str, int],
) -> CandidateIssue:
    """Turn one untrusted element of the model's array into a typed issue or a drop reason.

    ``line_counts`` maps every file the issue may point at to its number of lines.
    """
    item = as_object_dict(raw)
    if item is None:
        return DroppedIssue(index=index, reason="not an object")
    missing = [name for name in REQUIRED_ISSUE_FIELDS if name not in item or item[name] is None]
    if missing:
        return DroppedIssue(index=index, reason=f"missing fields: {', '.join(missing)}")

    severity = item["severity"]
    if not isinstance(severity, str) or severity.strip().lower() not in SEVERITIES:
        return DroppedIssue(index=index, reason=f"unknown severity: {severity!r}")
    issue_type = item["type"]
    if not isinstance(issue_type, str) or issue_type.strip().lower() not in ISSUE_TYPES:
        return DroppedIssue(index=index, reason=f"unknown type: {issue_type!r}")

    path = item["file"]
    if not isinstance(path, str) or path not in line_counts:
        return DroppedIssue(index=index, reason=f"file not under analysis: {path!r}")
    line = item["line"]
    column = item["column"]
    if not _is_int(line) or not _is_int(column):
        return DroppedIssue(index=index, reason="line and column must be integers")
    line_number = cast(int, line)
    column_number = cast(int, column)
    if line_number < 1 or line_number > max(line_counts[path], 1) or column_number < 0:
        return DroppedIssue(index=index, reason=f"position out of range: {line}:{column}")

    description = item["description"]
    suggestion = item["suggestion"]
    if not isinstance(description, str) or not description.strip():
        return DroppedIssue(index=index, reason="description must be a non-empty string")
    if not isinstance(suggestion, str):
        return DroppedIssue(index=index, reason="suggestion must be a string")
    fixable = item["fixable"]
    if not isinstance(fixable, bool):
        return DroppedIssue(index=index, reason="fixable must be a boolean")

    return ValidIssue(
        issue=Issue(
            id=issue_id,
            severity=cast(Severity, severity.strip().lower()),
            type=cast(IssueType, issue_type.strip().lower()),
            file=path,
            line=line_number,
            column=column_number,
            description=description.strip(),
            suggestion=suggestion.strip(),
            fixable=fixable,
        )
    )


def parse_issue_response(
    raw_text: str,
    *,
    line_counts: dict[str, int],
    next_issue_id: Callable[[], str],
) -> tuple[CandidateIssue, ...]:
    payload = parse_json_reply(raw_text)
    if not isinstance(payload, list):
        raise ValidationError("Model reply must be a JSON array of issues")
    candidates: list[CandidateIssue] = []
    for index, raw in enumerate(payload):
        # Ids are only consumed by valid issues so numbering stays dense.
        candidate = validate_candidate(raw, index=index, issue_id="", line_counts=line_counts)
        if isinstance(candidate, ValidIssue):
            candidate = ValidIssue(issue=replace(candidate.issue, id=next_issue_id()))
        candidates.append(candidate)
    return tuple(candidates)


def chunk_files(
    context: AnalysisContext,
    *,
    token_budget: int,
    overhead_tokens: int,
) -> tuple[tuple[AnalysisChunk, ...], tuple[str, ...]]:
    """Pack whole files into chunks under the budget.

    Returns the chunks and the changed paths too large to fit any chunk on their own.
    Chunks holding only imported files are dropped since nothing in them is reviewed.
    """
    available = token_budget - overhead_tokens
    chunks: list[list[SourceFile]] = []
    current: list[SourceFile] = []
    current_tokens = 0
    oversize: list[str] = []
    for source in (*context.changed_files, *context.imported_files):
        cost = _file_tokens(source)
        if cost > available:
            if not source.is_import:
                oversize.append(source.path)
            continue
        if current and current_tokens + cost > available:
            chunks.append(current)
            current = []
            current_tokens = 0
        current.append(source)
        current_tokens += cost
    if current:
        chunks.append(current)

    reviewed = [files for files in chunks if any(not source.is_import for source in files)]
    return (
        tuple(
            AnalysisChunk(id=f"chunk-{index}", files=tuple(files))
            for index, files in enumerate(reviewed, start=1)
        ),
        tuple(oversize),
    )


class CodeAnalyzer:
    def __init__(
        self,
        *,
        llm: LLMClient,
        retry: RetryExecutor,
        repo_full_name: str,
        token_budget: int,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._llm = llm
        self._retry = retry
        self._repo_full_name = repo_full_name
        self._token_budget = token_budget
        self._clock = clock

    def analyze(
        self,
        context: AnalysisContext,
        *,
        job_id: str,
        heartbeat: Callable[[], None] | None = None,
    ) -> AnalysisReport:
        """Review every chunk; ``heartbeat`` runs before each model call and may abort the run."""
        overhead = estimate_tokens(
            build_analysis_prompt(
                repo_full_name=self._repo_full_name,
                branch=context.branch,
                commits=context.commits,
                files=(),
            )
        )
        chunks, oversize = chunk_files(
            context, token_budget=self._token_budget, overhead_tokens=overhead
        )
        for path in oversize:
            log_warning(LOGGER, "file_skipped", path=path, reason="exceeds_token_budget")
        # Changed files the monitor refused to fetch were never reviewed either.
        unreviewed = tuple(dict.fromkeys((*context.skipped_paths, *oversize)))

        counter = 0

        def next_issue_id() -> str:
            nonlocal counter
            counter += 1
            return f"issue-{counter:04d}"

        issues: list[Issue] = []
        failed_chunks: list[str] = [f"oversize:{path}" for path in unreviewed]
        for chunk in chunks:
            if heartbeat is not None:
                heartbeat()
            try:
                candidates = self._analyze_chunk(chunk, context=context, next_issue_id=next_issue_id)
            except CodePoliceError as exc:
                failed_chunks.append(chunk.id)
                log_warning(
                    LOGGER,
                    "analysis_chunk_failed",
                    chunk_id=chunk.id,
                    file_count=len(chunk.files),
                    error_type=type(exc).__name__,
                )
                continue
            for candidate in candidates:
                if isinstance(candidate, DroppedIssue):
                    log_warning(
                        LOGGER,
                        "issue_dropped",
                        chunk_id=chunk.id,
                        index=candidate.index,
                        reason=candidate.reason,
                    )
                    continue
                issues.append(candidate.issue)

        chunk_failures = len(failed_chunks) - len(unreviewed)
        if chunks and chunk_failures == len(chunks):
            raise AnalysisFailedError(f"All {len(chunks)} analysis chunks failed")

        report = AnalysisReport(
            id=f"report-{job_id}",
            job_id=job_id,
            repository_id=context.repository_id,
            commit_sha=context.commit_sha,
            branch=context.branch,
            timestamp=self._clock().strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            issues=tuple(issues),
            summary=summarize_issues(tuple(issues), failed_chunks=tuple(failed_chunks)),
            failed_chunks=tuple(failed_chunks),
        )
        log_event(
            LOGGER,
            "analysis_completed",
            chunk_count=len(chunks),
            failed_chunk_count=len(failed_chunks),
            issue_count=len(issues),
            fixable_count=len(report.fixable_issues),
        )
        return report

    def _analyze_chunk(
        self,
        chunk: AnalysisChunk,
        *,
        context: AnalysisContext,
        next_issue_id: Callable[[], str],
    ) -> tuple[CandidateIssue, ...]:
        prompt = build_analysis_prompt(
            repo_full_name=self._repo_full_name,
            branch=context.branch,
            commits=context.commits,
            files=chunk.files,
        )
        reply = self._retry.call("llm.analyze", lambda: self._llm.complete(prompt))
        line_counts = {
            source.path: _line_count(source.content or "")
            for source in chunk.files
            if source.path in chunk.changed_paths and source.content is not None
        }
        return parse_issue_response(reply, line_counts=line_counts, next_issue_id=next_issue_id)


def summarize_issues(issues: tuple[Issue, ...], *, failed_chunks: tuple[str, ...] = ()) -> str:
    if not issues:
        summary = "No issues found."
    else:
        by_severity = Counter(issue.severity for issue in issues)
        parts = [f"{by_severity[severity]} {severity}" for severity in SEVERITIES if by_severity[severity]]
        file_count = len({issue.file for issue in issues})
        fixable = sum(1 for issue in issues if issue.fixable)
        noun = "issue" if len(issues) == 1 else "issues"
        summary = (
            f"Found {len(issues)} {noun} ({', '.join(parts)}) across {file_count} "
            f"file{'s' if file_count != 1 else ''}; {fixable} fixable."
        )
    if failed_chunks:
        summary += f" Incomplete analysis: {', '.join(failed_chunks)} failed."
    return summary


def _file_tokens(source: SourceFile) -> int:
    header = estimate_tokens(f"--- {source.path} (imported by a changed file)\n")
    return header + estimate_tokens(source.content or "")


def _line_count(content: str) -> int:
    return len(content.splitlines())


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)
