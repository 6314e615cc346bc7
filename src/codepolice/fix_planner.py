from __future__ import annotations

import ast
from dataclasses import dataclass
import json
import logging
import re
import tomllib
from typing import Callable, Iterable, Mapping, Sequence

from codepolice.errors import CodePoliceError, ValidationError
from codepolice.llm import LLMClient, as_object_dict, parse_json_reply
from codepolice.models import (
    AnalysisContext,
    ConsolidatedFile,
    FixPlan,
    FixProposal,
    Issue,
)
from codepolice.observability import log_event, log_warning
from codepolice.prompts import build_fix_prompt
from codepolice.retry import RetryExecutor


LOGGER = logging.getLogger("codepolice.fix_planner")
_DIGITS = re.compile(r"(\d+)")


def natural_issue_key(issue_id: str) -> tuple[object, ...]:
    """Sort key that orders ``issue-2`` before ``issue-10``."""
    return tuple(int(part) if part.isdigit() else part for part in _DIGITS.split(issue_id))


def _validate_python(content: str) -> None:
    ast.parse(content)


def _validate_json(content: str) -> None:
    json.loads(content)


def _validate_toml(content: str) -> None:
    tomllib.loads(content)


SYNTAX_VALIDATORS: dict[str, Callable[[str], None]] = {
    ".py": _validate_python,
    ".json": _validate_json,
    ".toml": _validate_toml,
}


def syntax_error_for(path: str, content: str) -> str | None:
    """Parser error message for files with a known parser, ``None`` when well-formed or unknown."""
    for suffix, validator in SYNTAX_VALIDATORS.items():
        if not path.endswith(suffix):
            continue
        try:
            validator(content)
        except (SyntaxError, ValueError) as exc:
            return f"{type(exc).__name__}: {exc}"
        return None
    return None


def ranges_overlap(left: FixProposal, right: FixProposal) -> bool:
    return left.start_line <= right.end_line and right.start_line <= left.end_line


def splice(original: str, proposals: Sequence[FixProposal]) -> str:
    """Replace each proposal's inclusive line range; ranges must not overlap."""
    lines = original.splitlines(keepends=True)
    pieces: list[str] = []
    cursor = 0
    for proposal in sorted(proposals, key=lambda item: item.start_line):
        start = proposal.start_line - 1
        if start < cursor:
            raise ValueError(f"Overlapping fix for {proposal.issue_id} at line {proposal.start_line}")
        pieces.extend(lines[cursor:start])
        replaced = lines[start : proposal.end_line]
        replacement = proposal.fixed_code
        if replacement and replaced and replaced[-1].endswith("\n") and not replacement.endswith("\n"):
            replacement += "\n"
        pieces.append(replacement)
        cursor = proposal.end_line
    pieces.extend(lines[cursor:])
    return "".join(pieces)


def original_matches(proposal: FixProposal, original: str) -> bool:
    lines = original.splitlines()
    if proposal.start_line < 1 or proposal.end_line < proposal.start_line:
        return False
    if proposal.end_line > len(lines):
        return False
    actual = "\n".join(lines[proposal.start_line - 1 : proposal.end_line])
    return _collapse_whitespace(actual) == _collapse_whitespace(proposal.original_code)


@dataclass(frozen=True)
class _FileOutcome:
    consolidated: ConsolidatedFile | None
    superseded: tuple[str, ...]
    not_fixed: tuple[str, ...]


def consolidate(
    proposals: Iterable[FixProposal],
    originals: Mapping[str, str],
) -> FixPlan:
    """Merge independent per-issue proposals into one body per file.

    Proposals are taken in issue id order; a later proposal evicts every accepted proposal
    whose line range it overlaps. The whole earlier proposal goes, not only its overlapping
    lines: ``fixed_code`` is a replacement block with no line-by-line correspondence to
    the original span, so it cannot be cut at the overlap. Survivors are spliced in range
    order and the result is parsed where a parser exists. Fixes that break the file on
    their own are excluded; if the remaining set still fails, the whole file is left
    untouched.
    """
    by_file: dict[str, list[FixProposal]] = {}
    for proposal in proposals:
        by_file.setdefault(proposal.file, []).append(proposal)

    files: list[ConsolidatedFile] = []
    superseded: list[str] = []
    not_fixed: list[str] = []
    for path in sorted(by_file):
        original = originals.get(path)
        if original is None:
            not_fixed.extend(item.issue_id for item in by_file[path])
            log_warning(LOGGER, "fix_file_unavailable", path=path)
            continue
        outcome = _consolidate_file(path, original, by_file[path])
        if outcome.consolidated is not None:
            files.append(outcome.consolidated)
        superseded.extend(outcome.superseded)
        not_fixed.extend(outcome.not_fixed)

    return FixPlan(
        files=tuple(files),
        superseded_issue_ids=tuple(sorted(superseded, key=natural_issue_key)),
        not_fixed_issue_ids=tuple(sorted(not_fixed, key=natural_issue_key)),
    )


def _consolidate_file(path: str, original: str, proposals: list[FixProposal]) -> _FileOutcome:
    not_fixed: list[str] = []
    superseded: list[str] = []
    accepted: list[FixProposal] = []
    for proposal in sorted(proposals, key=lambda item: natural_issue_key(item.issue_id)):
        if not original_matches(proposal, original):
            not_fixed.append(proposal.issue_id)
            log_warning(
                LOGGER,
                "fix_rejected",
                path=path,
                issue_id=proposal.issue_id,
                reason="original_code_mismatch",
            )
            continue
        kept: list[FixProposal] = []
        for earlier in accepted:
            if ranges_overlap(earlier, proposal):
                superseded.append(earlier.issue_id)
                log_event(
                    LOGGER,
                    "fix_superseded",
                    path=path,
                    issue_id=earlier.issue_id,
                    superseded_by=proposal.issue_id,
                    start_line=earlier.start_line,
                    end_line=earlier.end_line,
                )
            else:
                kept.append(earlier)
        kept.append(proposal)
        accepted = kept

    if not accepted:
        return _FileOutcome(consolidated=None, superseded=tuple(superseded), not_fixed=tuple(not_fixed))

    content = splice(original, accepted)
    error = syntax_error_for(path, content)
    if error is not None:
        broken = [item for item in accepted if syntax_error_for(path, splice(original, [item]))]
        for item in broken:
            log_warning(LOGGER, "fix_rejected", path=path, issue_id=item.issue_id, reason="syntax")
        accepted = [item for item in accepted if item not in broken]
        not_fixed.extend(item.issue_id for item in broken)
        content = splice(original, accepted)
        if accepted and syntax_error_for(path, content) is not None:
            log_warning(
                LOGGER,
                "fix_file_reverted",
                path=path,
                issue_ids=",".join(item.issue_id for item in accepted),
            )
            not_fixed.extend(item.issue_id for item in accepted)
            accepted = []

    if not accepted or content == original:
        not_fixed.extend(item.issue_id for item in accepted)
        return _FileOutcome(consolidated=None, superseded=tuple(superseded), not_fixed=tuple(not_fixed))

    applied = tuple(
        item.issue_id for item in sorted(accepted, key=lambda item: natural_issue_key(item.issue_id))
    )
    return _FileOutcome(
        consolidated=ConsolidatedFile(path=path, content=content, applied_issue_ids=applied),
        superseded=tuple(superseded),
        not_fixed=tuple(not_fixed),
    )


def parse_fix_response(raw_text: str, *, issue: Issue) -> FixProposal:
    item = as_object_dict(parse_json_reply(raw_text))
    if item is None:
        raise ValidationError("Fix reply must be a JSON object")
    start_line = item.get("start_line")
    end_line = item.get("end_line")
    if not isinstance(start_line, int) or isinstance(start_line, bool):
        raise ValidationError("Fix reply start_line must be an integer")
    if not isinstance(end_line, int) or isinstance(end_line, bool):
        raise ValidationError("Fix reply end_line must be an integer")
    original_code = item.get("original_code")
    fixed_code = item.get("fixed_code")
    if not isinstance(original_code, str) or not isinstance(fixed_code, str):
        raise ValidationError("Fix reply original_code and fixed_code must be strings")
    explanation = item.get("explanation", "")
    if not isinstance(explanation, str):
        raise ValidationError("Fix reply explanation must be a string")
    return FixProposal(
        issue_id=issue.id,
        file=issue.file,
        original_code=original_code,
        fixed_code=fixed_code,
        start_line=start_line,
        end_line=end_line,
        explanation=explanation.strip(),
    )


class FixPlanner:
    def __init__(self, *, llm: LLMClient, retry: RetryExecutor, context_lines: int = 10) -> None:
        self._llm = llm
        self._retry = retry
        self._context_lines = context_lines

    def propose(
        self,
        issues: Sequence[Issue],
        context: AnalysisContext,
        *,
        heartbeat: Callable[[], None] | None = None,
    ) -> tuple[FixProposal, ...]:
        """One independent model call per fixable issue; failed proposals are logged and skipped."""
        proposals: list[FixProposal] = []
        for issue in issues:
            if not issue.fixable:
                continue
            source = context.file(issue.file)
            if source is None or source.content is None:
                log_warning(LOGGER, "fix_proposal_failed", issue_id=issue.id, reason="no_source")
                continue
            if heartbeat is not None:
                heartbeat()
            snippet, start_line = self.snippet_for(source.content, issue.line)
            prompt = build_fix_prompt(issue=issue, snippet=snippet, snippet_start_line=start_line)
            try:
                reply = self._retry.call("llm.propose_fix", lambda: self._llm.complete(prompt))
                proposals.append(parse_fix_response(reply, issue=issue))
            except CodePoliceError as exc:
                log_warning(
                    LOGGER,
                    "fix_proposal_failed",
                    issue_id=issue.id,
                    error_type=type(exc).__name__,
                )
        return tuple(proposals)

    def snippet_for(self, content: str, line: int) -> tuple[str, int]:
        lines = content.splitlines()
        start = max(1, line - self._context_lines)
        end = min(len(lines), line + self._context_lines)
        return "\n".join(lines[start - 1 : end]), start

    def plan(
        self,
        issues: Sequence[Issue],
        context: AnalysisContext,
        *,
        heartbeat: Callable[[], None] | None = None,
    ) -> FixPlan:
        proposals = self.propose(issues, context, heartbeat=heartbeat)
        originals = {
            source.path: source.content
            for source in context.changed_files
            if source.content is not None
        }
        plan = consolidate(proposals, originals)
        accounted = set(plan.applied_issue_ids) | set(plan.superseded_issue_ids)
        not_fixed = set(plan.not_fixed_issue_ids)
        for issue in issues:
            if issue.fixable and issue.id not in accounted:
                not_fixed.add(issue.id)
        plan = FixPlan(
            files=plan.files,
            superseded_issue_ids=plan.superseded_issue_ids,
            not_fixed_issue_ids=tuple(sorted(not_fixed, key=natural_issue_key)),
        )
        log_event(
            LOGGER,
            "fix_plan_built",
            proposal_count=len(proposals),
            file_count=len(plan.files),
            applied_count=len(plan.applied_issue_ids),
            superseded_count=len(plan.superseded_issue_ids),
            not_fixed_count=len(plan.not_fixed_issue_ids),
        )
        return plan


def _collapse_whitespace(text: str) -> str:
    return " ".join(text.split())
