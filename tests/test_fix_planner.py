from __future__ import annotations

import json

from hypothesis import given, settings, strategies as st
import pytest

from codepolice.errors import ValidationError
from codepolice.fix_planner import (
    FixPlanner,
    consolidate,
    natural_issue_key,
    original_matches,
    parse_fix_response,
    ranges_overlap,
    splice,
    syntax_error_for,
)
from codepolice.llm import LLMClient
from codepolice.models import AnalysisContext, FixProposal, Issue, SourceFile
from codepolice.observability import configure_logging
from codepolice.retry import RetryExecutor


def _numbered_file(count: int, prefix: str = "v") -> str:
    return "".join(f"{prefix}{i} = {i}\n" for i in range(1, count + 1))


def _proposal(
    issue_id: str,
    path: str,
    original: str,
    start: int,
    end: int,
    *,
    fixed: str | None = None,
) -> FixProposal:
    lines = original.splitlines()[start - 1 : end]
    return FixProposal(
        issue_id=issue_id,
        file=path,
        original_code="\n".join(lines),
        fixed_code=fixed if fixed is not None else "\n".join(line.replace("v", "w", 1) for line in lines),
        start_line=start,
        end_line=end,
        explanation="rename",
    )


def test_disjoint_fixes_in_one_file_are_both_applied() -> None:
    original = _numbered_file(50)
    plan = consolidate(
        [
            _proposal("issue-0002", "a.py", original, 40, 42),
            _proposal("issue-0001", "a.py", original, 10, 12),
        ],
        {"a.py": original},
    )

    (consolidated,) = plan.files
    assert consolidated.path == "a.py"
    assert consolidated.applied_issue_ids == ("issue-0001", "issue-0002")
    lines = consolidated.content.splitlines()
    assert lines[9:12] == ["w10 = 10", "w11 = 11", "w12 = 12"]
    assert lines[39:42] == ["w40 = 40", "w41 = 41", "w42 = 42"]
    assert lines[12] == "v13 = 13"
    assert len(lines) == 50
    assert plan.superseded_issue_ids == ()
    assert plan.not_fixed_issue_ids == ()


def test_later_issue_supersedes_overlapping_fix(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose=True)
    original = _numbered_file(20)
    plan = consolidate(
        [
            _proposal("issue-0003", "b.py", original, 10, 15),
            _proposal("issue-0004", "b.py", original, 10, 15, fixed="merged = True"),
        ],
        {"b.py": original},
    )

    (consolidated,) = plan.files
    assert consolidated.applied_issue_ids == ("issue-0004",)
    assert plan.superseded_issue_ids == ("issue-0003",)
    assert "merged = True\nv16 = 16\n" in consolidated.content
    assert "event=fix_superseded" in capsys.readouterr().err


def test_later_issue_evicts_every_overlapped_fix() -> None:
    original = _numbered_file(30)
    plan = consolidate(
        [
            _proposal("issue-0001", "c.py", original, 10, 12),
            _proposal("issue-0002", "c.py", original, 15, 16),
            _proposal("issue-0003", "c.py", original, 25, 25),
            _proposal("issue-0010", "c.py", original, 11, 20),
        ],
        {"c.py": original},
    )

    assert plan.files[0].applied_issue_ids == ("issue-0003", "issue-0010")
    assert plan.superseded_issue_ids == ("issue-0001", "issue-0002")
    # The non-overlapping head of an evicted fix is not kept either.
    assert "v9 = 9\nv10 = 10\nw11 = 11\n" in plan.files[0].content


def test_fix_that_breaks_syntax_is_rejected_alone() -> None:
    original = _numbered_file(10)
    plan = consolidate(
        [
            _proposal("issue-0001", "d.py", original, 2, 2, fixed="def broken(:"),
            _proposal("issue-0002", "d.py", original, 5, 5),
        ],
        {"d.py": original},
    )

    assert plan.files[0].applied_issue_ids == ("issue-0002",)
    assert plan.not_fixed_issue_ids == ("issue-0001",)
    assert "def broken" not in plan.files[0].content


def test_fixes_that_only_fail_together_revert_the_file(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose=True)
    original = "a = 1\nb = 2\n"
    plan = consolidate(
        [
            _proposal("issue-0001", "config.toml", original, 1, 1, fixed="c = 1"),
            _proposal("issue-0002", "config.toml", original, 2, 2, fixed="c = 2"),
        ],
        {"config.toml": original},
    )

    assert plan.files == ()
    assert plan.not_fixed_issue_ids == ("issue-0001", "issue-0002")
    assert "event=fix_file_reverted" in capsys.readouterr().err


def test_mismatched_original_code_and_unknown_files_are_not_fixed() -> None:
    original = _numbered_file(5)
    stale = FixProposal(
        issue_id="issue-0001",
        file="e.py",
        original_code="something_else = 1",
        fixed_code="x = 1",
        start_line=1,
        end_line=1,
        explanation="",
    )
    plan = consolidate(
        [stale, _proposal("issue-0002", "gone.py", original, 1, 1)],
        {"e.py": original},
    )

    assert plan.files == ()
    assert plan.not_fixed_issue_ids == ("issue-0001", "issue-0002")


def test_noop_fix_is_not_applied() -> None:
    original = _numbered_file(3)
    plan = consolidate(
        [_proposal("issue-0001", "f.py", original, 2, 2, fixed="v2 = 2")],
        {"f.py": original},
    )
    assert plan.files == ()
    assert plan.not_fixed_issue_ids == ("issue-0001",)


def test_splice_keeps_line_endings_and_rejects_overlap() -> None:
    original = "a\nb\nc\n"
    replace_b = FixProposal("i1", "x.txt", "b", "B", 2, 2, "")
    delete_c = FixProposal("i2", "x.txt", "c", "", 3, 3, "")
    assert splice(original, [replace_b]) == "a\nB\nc\n"
    assert splice(original, [delete_c, replace_b]) == "a\nB\n"
    with pytest.raises(ValueError, match="Overlapping"):
        splice(original, [replace_b, FixProposal("i3", "x.txt", "b\nc", "bc", 2, 3, "")])


def test_original_matches_ignores_whitespace_differences() -> None:
    original = "def f():\n    return  1\n"
    proposal = FixProposal("i1", "f.py", "def f():\n  return 1", "", 1, 2, "")
    assert original_matches(proposal, original)
    assert not original_matches(FixProposal("i1", "f.py", "x", "", 3, 3, ""), original)
    assert not original_matches(FixProposal("i1", "f.py", "x", "", 2, 1, ""), original)


def test_syntax_error_for_known_parsers_only() -> None:
    assert syntax_error_for("a.py", "x = (") is not None
    assert syntax_error_for("a.json", "{") is not None
    assert syntax_error_for("a.toml", "a = ") is not None
    assert syntax_error_for("a.py", "x = 1\n") is None
    assert syntax_error_for("a.rb", "def (") is None


def test_natural_issue_key_orders_numbers() -> None:
    ids = ["issue-10", "issue-2", "issue-1"]
    assert sorted(ids, key=natural_issue_key) == ["issue-1", "issue-2", "issue-10"]


@st.composite
def _proposal_sets(draw: st.DrawFn) -> list[FixProposal]:
    original = _numbered_file(40, prefix="x")
    count = draw(st.integers(min_value=1, max_value=8))
    proposals: list[FixProposal] = []
    for index in range(1, count + 1):
        start = draw(st.integers(min_value=1, max_value=40))
        end = draw(st.integers(min_value=start, max_value=min(40, start + 6)))
        lines = original.splitlines()[start - 1 : end]
        proposals.append(
            FixProposal(
                issue_id=f"issue-{index:04d}",
                file="p.py",
                original_code="\n".join(lines),
                fixed_code="\n".join(line.replace("x", "z", 1) for line in lines),
                start_line=start,
                end_line=end,
                explanation="",
            )
        )
    return draw(st.permutations(proposals))


@settings(max_examples=60, deadline=None)
@given(proposals=_proposal_sets())
def test_consolidation_never_applies_overlapping_fixes(proposals: list[FixProposal]) -> None:
    original = _numbered_file(40, prefix="x")
    plan = consolidate(proposals, {"p.py": original})

    applied = set(plan.applied_issue_ids)
    superseded = set(plan.superseded_issue_ids)
    not_fixed = set(plan.not_fixed_issue_ids)
    all_ids = {proposal.issue_id for proposal in proposals}
    assert applied | superseded | not_fixed == all_ids
    assert not applied & superseded
    assert not applied & not_fixed

    kept = [proposal for proposal in proposals if proposal.issue_id in applied]
    for left in kept:
        for right in kept:
            if left is not right:
                assert not ranges_overlap(left, right)
    last = max(proposals, key=lambda proposal: natural_issue_key(proposal.issue_id))
    assert last.issue_id in applied
    assert plan.files[0].content == splice(original, kept)


class FakeFixLLM(LLMClient):
    def __init__(self, replies: dict[str, str]) -> None:
        self.replies = replies
        self.prompts: list[str] = []

    def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        for marker, reply in self.replies.items():
            if marker in prompt:
                return reply
        raise AssertionError("unexpected prompt")


def _issue(issue_id: str, line: int, description: str, *, fixable: bool = True, path: str = "app.py") -> Issue:
    return Issue(
        id=issue_id,
        severity="medium",
        type="bug",
        file=path,
        line=line,
        column=1,
        description=description,
        suggestion="fix it",
        fixable=fixable,
    )


def test_fix_planner_plans_and_tracks_unfixed_issues() -> None:
    original = _numbered_file(30)
    llm = FakeFixLLM(
        {
            "rename v3": json.dumps(
                {
                    "start_line": 3,
                    "end_line": 3,
                    "original_code": "v3 = 3",
                    "fixed_code": "w3 = 3",
                    "explanation": " renamed ",
                }
            ),
            "rename v20": "sorry, I cannot help",
        }
    )
    context = AnalysisContext(
        repository_id="web",
        commit_sha="head1",
        branch="main",
        changed_files=(SourceFile(path="app.py", content=original),),
        imported_files=(),
        commits=(),
    )
    planner = FixPlanner(llm=llm, retry=RetryExecutor(sleep=lambda _: None), context_lines=2)
    issues = (
        _issue("issue-0001", 3, "rename v3"),
        _issue("issue-0002", 20, "rename v20"),
        _issue("issue-0003", 25, "not fixable", fixable=False),
        _issue("issue-0004", 1, "missing file", path="gone.py"),
    )

    plan = planner.plan(issues, context)

    assert len(llm.prompts) == 2
    assert "v1 = 1\nv2 = 2\nv3 = 3\nv4 = 4\nv5 = 5" in llm.prompts[0]
    assert "starts at line 1" in llm.prompts[0]
    assert plan.applied_issue_ids == ("issue-0001",)
    assert plan.not_fixed_issue_ids == ("issue-0002", "issue-0004")
    assert plan.files[0].content.splitlines()[2] == "w3 = 3"


def test_snippet_for_clamps_to_file_bounds() -> None:
    planner = FixPlanner(llm=FakeFixLLM({}), retry=RetryExecutor(), context_lines=3)
    content = _numbered_file(10)
    assert planner.snippet_for(content, 9) == ("v6 = 6\nv7 = 7\nv8 = 8\nv9 = 9\nv10 = 10", 6)


def test_parse_fix_response_validates_fields() -> None:
    issue = _issue("issue-0001", 1, "d")
    proposal = parse_fix_response(
        '{"start_line": 1, "end_line": 2, "original_code": "a", "fixed_code": "b"}', issue=issue
    )
    assert proposal.issue_id == "issue-0001"
    assert proposal.file == "app.py"
    assert proposal.explanation == ""
    with pytest.raises(ValidationError, match="JSON object"):
        parse_fix_response("[]", issue=issue)
    with pytest.raises(ValidationError, match="start_line"):
        parse_fix_response('{"start_line": "1"}', issue=issue)
    with pytest.raises(ValidationError, match="must be strings"):
        parse_fix_response('{"start_line": 1, "end_line": 1, "original_code": 3}', issue=issue)
