from __future__ import annotations

from codepolice.models import ISSUE_TYPES, SEVERITIES, Commit, Issue, SourceFile


def _render_files(files: tuple[SourceFile, ...]) -> str:
    blocks: list[str] = []
    for source in files:
        if source.binary or source.content is None:
            blocks.append(f"--- {source.path} (binary, content omitted)")
            continue
        role = "imported by a changed file" if source.is_import else "changed"
        blocks.append(f"--- {source.path} ({role})\n{source.content}")
    return "\n\n".join(blocks)


def _render_commits(commits: tuple[Commit, ...]) -> str:
    lines: list[str] = []
    for commit in commits:
        subject = commit.message.splitlines()[0] if commit.message else ""
        lines.append(f"- {commit.sha[:12]} {subject}")
    return "\n".join(lines)


def build_analysis_prompt(
    *,
    repo_full_name: str,
    branch: str,
    commits: tuple[Commit, ...],
    files: tuple[SourceFile, ...],
) -> str:
    return f"""
You are a code reviewer for repository {repo_full_name} (branch {branch}).

Review the changed files below. Imported files are context only; report issues in
changed files.

Response format:
- Return a JSON array only, no prose.
- Each element is an object with keys: severity, type, file, line, column,
  description, suggestion, fixable.
- severity is one of: {", ".join(SEVERITIES)}
- type is one of: {", ".join(ISSUE_TYPES)}
- line and column are 1-based integers; fixable is a boolean.
- Return [] when there is nothing to report.

Commits:
{_render_commits(commits)}

Files:
{_render_files(files)}
""".strip()


def build_fix_prompt(
    *,
    issue: Issue,
    snippet: str,
    snippet_start_line: int,
) -> str:
    return f"""
You are fixing one code issue in {issue.file}.

Issue ({issue.severity}, {issue.type}) at line {issue.line}, column {issue.column}:
{issue.description}

Suggested direction:
{issue.suggestion}

The snippet below starts at line {snippet_start_line} of the file.

Response format:
- Return a single JSON object only, no prose.
- Keys: start_line, end_line, original_code, fixed_code, explanation.
- start_line/end_line are 1-based inclusive file line numbers of the region you replace.
- original_code must be exactly those lines from the file; fixed_code replaces them.

Snippet:
{snippet}
""".strip()
