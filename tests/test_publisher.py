from __future__ import annotations

from pathlib import Path
import re

from hypothesis import given, strategies as st
import pytest

from codepolice.errors import ConflictError, FatalExternalError, TransientExternalError
from codepolice.github_gateway import CompareResult
from codepolice.models import (
    AnalysisReport,
    Commit,
    ConsolidatedFile,
    FixPlan,
    Issue,
    Job,
    PullRequestRef,
)
from codepolice.publisher import (
    PRPublisher,
    basic_timestamp,
    branch_effect_key,
    branch_name_for,
    commit_effect_key,
    commit_message_for,
    decode_pull_request,
    encode_pull_request,
    kebab_case,
    labels_for,
    pr_effect_key,
    pull_request_body,
    pull_request_title,
)
from codepolice.retry import RetryExecutor, RetryExhaustedError
from codepolice.state import StateStore


class FakePullRequestHost:
    def __init__(
        self,
        *,
        base_head: str | None = "head1",
        compare: CompareResult | None = None,
    ) -> None:
        self.base_head = base_head
        self.compare = compare or CompareResult(status="identical", changed_files=())
        self.created_branches: list[tuple[str, str]] = []
        self.commits: list[tuple[str, str, str]] = []
        self.opened: list[dict[str, object]] = []
        self.compared: list[tuple[str, str]] = []
        self.pr_failures: list[Exception] = []
        self.commit_failures: list[Exception] = []

    def get_branch_head_sha(self, branch: str) -> str | None:
        return self.base_head

    def create_branch(self, name: str, base_sha: str) -> str:
        self.created_branches.append((name, base_sha))
        return base_sha

    def commit_file(self, *, branch: str, path: str, content: str, message: str) -> str:
        if self.commit_failures:
            raise self.commit_failures.pop(0)
        self.commits.append((branch, path, content))
        return f"commit-{len(self.commits)}"

    def open_pull_request(
        self,
        *,
        head: str,
        base: str,
        title: str,
        body: str,
        labels: tuple[str, ...],
    ) -> PullRequestRef:
        if self.pr_failures:
            raise self.pr_failures.pop(0)
        self.opened.append({"head": head, "base": base, "title": title, "body": body})
        return PullRequestRef(number=42, html_url="https://gh/acme/web/pull/42", branch=head, labels=labels)

    def compare_commits(self, base_sha: str, head_sha: str) -> CompareResult:
        self.compared.append((base_sha, head_sha))
        return self.compare


def _job() -> Job:
    return Job(
        id="job-1",
        repository_id="web",
        commits=(Commit(sha="head1", message="m", author="dev", timestamp="t", modified=("src/app.py",)),),
        branch="main",
        head_sha="head1",
        status="publishing",
        retry_count=0,
        created_at="t",
    )


def _issue(issue_id: str, path: str, *, fixable: bool = True, severity: str = "high") -> Issue:
    return Issue(
        id=issue_id,
        severity=severity,  # type: ignore[arg-type]
        type="bug",
        file=path,
        line=3,
        column=1,
        description=f"Problem {issue_id}",
        suggestion="s",
        fixable=fixable,
    )


def _report() -> AnalysisReport:
    return AnalysisReport(
        id="report-job-1",
        job_id="job-1",
        repository_id="web",
        commit_sha="head1",
        branch="main",
        timestamp="2026-10-19T12:00:00.000000Z",
        issues=(
            _issue("issue-0001", "src/app.py"),
            _issue("issue-0002", "src/app.py", severity="low"),
            _issue("issue-0003", "lib/util.py", severity="medium"),
            _issue("issue-0004", "lib/util.py", fixable=False),
            _issue("issue-0005", "lib/util.py"),
        ),
        summary="Found 5 issues",
    )


def _plan() -> FixPlan:
    return FixPlan(
        files=(
            ConsolidatedFile(path="lib/util.py", content="u = 2\n", applied_issue_ids=("issue-0003",)),
            ConsolidatedFile(
                path="src/app.py", content="a = 2\n", applied_issue_ids=("issue-0001", "issue-0002")
            ),
        ),
        not_fixed_issue_ids=("issue-0005",),
    )


@pytest.fixture()
def state(tmp_path: Path) -> StateStore:
    return StateStore(tmp_path / "state.db")


def _publisher(host: FakePullRequestHost, state: StateStore) -> PRPublisher:
    return PRPublisher(host=host, state=state, retry=RetryExecutor(sleep=lambda _: None))


def test_publish_creates_branch_commits_and_pull_request(state: StateStore) -> None:
    host = FakePullRequestHost()

    pr = _publisher(host, state).publish(_job(), _plan(), _report())

    branch = "code-police/fix-20261019T120000Z-bug-util-py-and-1-more"
    assert host.created_branches == [(branch, "head1")]
    assert [(b, path) for b, path, _ in host.commits] == [
        (branch, "lib/util.py"),
        (branch, "src/app.py"),
    ]
    assert host.compared == []
    assert host.opened[0]["base"] == "main"
    assert host.opened[0]["title"] == "Code Police: 3 automated fixes for main"
    assert pr.number == 42
    assert pr.labels == ("automated-fix", "code-quality", "severity:high")
    assert state.get_effect("job-1", branch_effect_key("job-1")).result_ref == branch  # type: ignore[union-attr]
    assert state.get_effect("job-1", commit_effect_key("job-1", "src/app.py")) is not None
    assert decode_pull_request(state.get_effect("job-1", pr_effect_key("job-1")).result_ref) == pr  # type: ignore[union-attr]

    again_host = FakePullRequestHost()
    again = _publisher(again_host, state).publish(_job(), _plan(), _report())
    assert again == pr
    assert again_host.created_branches == []
    assert again_host.opened == []


def test_publish_resumes_without_repeating_completed_effects(state: StateStore) -> None:
    host = FakePullRequestHost()
    host.pr_failures = [TransientExternalError("502", status_code=502) for _ in range(3)]

    with pytest.raises(RetryExhaustedError):
        _publisher(host, state).publish(_job(), _plan(), _report())
    assert len(host.created_branches) == 1
    assert len(host.commits) == 2

    pr = _publisher(host, state).publish(_job(), _plan(), _report())

    assert pr.number == 42
    assert len(host.created_branches) == 1
    assert len(host.commits) == 2
    assert len(host.opened) == 1


def test_publish_conflict_when_fixed_file_changed_upstream(state: StateStore) -> None:
    host = FakePullRequestHost(
        base_head="head2",
        compare=CompareResult(status="ahead", changed_files=("README.md", "src/app.py")),
    )

    with pytest.raises(ConflictError) as exc_info:
        _publisher(host, state).publish(_job(), _plan(), _report())

    assert exc_info.value.file_path == "src/app.py"
    assert exc_info.value.base_sha == "head2"
    assert exc_info.value.head_sha == "head1"
    assert host.compared == [("head1", "head2")]
    assert host.created_branches == []


def test_publish_conflict_when_base_was_rewritten(state: StateStore) -> None:
    host = FakePullRequestHost(
        base_head="rewritten", compare=CompareResult(status="diverged", changed_files=())
    )
    with pytest.raises(ConflictError, match="rewritten after head1") as exc_info:
        _publisher(host, state).publish(_job(), _plan(), _report())
    assert exc_info.value.file_path is None


def test_publish_proceeds_when_base_advanced_elsewhere(state: StateStore) -> None:
    host = FakePullRequestHost(
        base_head="head2", compare=CompareResult(status="ahead", changed_files=("docs/index.md",))
    )

    _publisher(host, state).publish(_job(), _plan(), _report())

    assert host.created_branches[0][1] == "head1"
    assert len(host.opened) == 1


def test_publish_maps_http_409_to_conflict(state: StateStore) -> None:
    host = FakePullRequestHost()
    host.commit_failures = [FatalExternalError("sha does not match", status_code=409)]

    with pytest.raises(ConflictError) as exc_info:
        _publisher(host, state).publish(_job(), _plan(), _report())
    assert exc_info.value.file_path == "lib/util.py"


def test_publish_rejects_empty_plan_and_missing_base(state: StateStore) -> None:
    with pytest.raises(FatalExternalError, match="no files"):
        _publisher(FakePullRequestHost(), state).publish(_job(), FixPlan(files=()), _report())
    with pytest.raises(FatalExternalError, match="no longer exists"):
        _publisher(FakePullRequestHost(base_head=None), state).publish(_job(), _plan(), _report())


def test_pull_request_text_helpers() -> None:
    report = _report()
    plan = _plan()

    body = pull_request_body(_job(), plan, report)
    assert body.startswith("## Summary\nFound 5 issues\n")
    assert "Analyzed commit `head1` on `main`." in body
    applied = body.split("## Applied fixes\n", 1)[1].split("\n\n", 1)[0].splitlines()
    assert [line.split("`")[1] for line in applied] == ["issue-0001", "issue-0002", "issue-0003"]
    assert "## Fixable but not fixed\n- `issue-0005` high bug at `lib/util.py:3`: Problem issue-0005" in body
    assert "## Needs manual attention\n- `issue-0004`" in body
    assert "## Superseded fixes" not in body
    assert body.endswith("## Labels\nautomated-fix, code-quality, severity:high")

    assert pull_request_title(_job(), FixPlan(files=(ConsolidatedFile("a", "", ("issue-0001",)),))) == (
        "Code Police: 1 automated fix for main"
    )
    message = commit_message_for("src/app.py", ("issue-0001", "issue-9999"), report)
    assert message.splitlines() == [
        "Fix 2 issues in src/app.py",
        "",
        "- [bug] src/app.py:3 issue-0001: Problem issue-0001",
        "- issue-9999 src/app.py",
    ]


def test_branch_and_label_helpers() -> None:
    assert basic_timestamp("2026-10-19T12:00:00.000000Z") == "20261019T120000Z"
    assert kebab_case("Error-Handling  main.py!") == "error-handling-main-py"
    assert kebab_case("???") == "fixes"
    assert len(kebab_case("x" * 100)) == 40
    assert branch_name_for(_report(), FixPlan(files=())) == (
        "code-police/fix-20261019T120000Z-code-fixes"
    )
    empty = AnalysisReport(
        id="r", job_id="j", repository_id="web", commit_sha="c", branch="main",
        timestamp="2026-10-19T12:00:00.000000Z", issues=(), summary="",
    )  # fmt: skip
    assert labels_for(empty) == ("automated-fix", "code-quality")


def test_pull_request_encoding() -> None:
    pr = PullRequestRef(number=7, html_url="u", branch="b", labels=("x",))
    assert decode_pull_request(encode_pull_request(pr)) == pr
    assert decode_pull_request(None) is None
    assert decode_pull_request("not json") is None
    assert decode_pull_request('{"number": "7"}') is None


@given(st.text(max_size=120))
def test_kebab_case_always_yields_a_legal_ref_component(text: str) -> None:
    slug = kebab_case(text)
    assert re.fullmatch(r"[a-z0-9]+(-[a-z0-9]+)*", slug)
    assert len(slug) <= 40
