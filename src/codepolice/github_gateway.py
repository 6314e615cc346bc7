from __future__ import annotations

import base64
from dataclasses import dataclass
import json
import logging
from typing import Literal, cast
from urllib.parse import quote, urlencode

from codepolice.errors import (
    FatalExternalError,
    ResourceLimitError,
    TransientExternalError,
    classify_http_status,
)
from codepolice.models import PullRequestRef
from codepolice.observability import log_event
from codepolice.shell import run


LOGGER = logging.getLogger("codepolice.github_gateway")
CompareCommitsStatus = Literal["ahead", "identical", "behind", "diverged"]


@dataclass(frozen=True)
class RepoFile:
    path: str
    sha: str
    size: int
    data: bytes


@dataclass(frozen=True)
class CompareResult:
    status: CompareCommitsStatus
    changed_files: tuple[str, ...]


@dataclass(frozen=True)
class GitHubGateway:
    owner: str
    name: str
    timeout_seconds: float = 120.0

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def get_file_at(self, path: str, ref: str) -> RepoFile | None:
        query = urlencode({"ref": ref})
        api_path = f"/repos/{self.owner}/{self.name}/contents/{quote(path)}?{query}"
        status, payload = self._api_json("GET", api_path, allow_statuses=(404,))
        if status == 404:
            log_event(LOGGER, "github_read", endpoint="contents", path=path, found=False)
            return None
        payload_obj = _as_object_dict(payload)
        if payload_obj is None or payload_obj.get("type") != "file":
            # Directories and submodules come back as lists or non-file objects.
            return None
        size = _as_int(payload_obj.get("size"), field="size")
        encoding = payload_obj.get("encoding")
        if encoding != "base64":
            raise ResourceLimitError(f"{path} is too large for the contents API ({size} bytes)")
        raw_content = _as_string(payload_obj.get("content"))
        data = base64.b64decode(raw_content.encode("ascii"))
        log_event(LOGGER, "github_read", endpoint="contents", path=path, found=True, size=size)
        return RepoFile(
            path=path,
            sha=_as_string(payload_obj.get("sha")),
            size=size,
            data=data,
        )

    def get_branch_head_sha(self, branch: str) -> str | None:
        api_path = f"/repos/{self.owner}/{self.name}/git/ref/heads/{quote(branch)}"
        status, payload = self._api_json("GET", api_path, allow_statuses=(404,))
        if status == 404:
            return None
        payload_obj = _as_object_dict(payload)
        object_obj = _as_object_dict(payload_obj.get("object")) if payload_obj else None
        if object_obj is None:
            raise FatalExternalError("Unexpected GitHub response: expected ref object")
        return _as_string(object_obj.get("sha"))

    def create_branch(self, name: str, base_sha: str) -> str:
        api_path = f"/repos/{self.owner}/{self.name}/git/refs"
        status, payload = self._api_json(
            "POST",
            api_path,
            payload={"ref": f"refs/heads/{name}", "sha": base_sha},
            allow_statuses=(422,),
        )
        if status == 422:
            existing = self.get_branch_head_sha(name)
            if existing is None:
                raise FatalExternalError(
                    f"GitHub rejected branch {name}: {_error_message(payload)}", status_code=422
                )
            log_event(LOGGER, "github_branch_exists", branch=name, sha=existing)
            return existing
        log_event(LOGGER, "github_branch_created", branch=name, base_sha=base_sha)
        return base_sha

    def commit_file(self, *, branch: str, path: str, content: str, message: str) -> str:
        existing = self.get_file_at(path, branch)
        encoded = content.encode("utf-8")
        if existing is not None and existing.data == encoded:
            # Resumed after the commit landed but before it was recorded.
            head = self.get_branch_head_sha(branch)
            log_event(LOGGER, "github_file_unchanged", branch=branch, path=path)
            return head or existing.sha
        body: dict[str, object] = {
            "message": message,
            "content": base64.b64encode(encoded).decode("ascii"),
            "branch": branch,
        }
        if existing is not None:
            body["sha"] = existing.sha
        api_path = f"/repos/{self.owner}/{self.name}/contents/{quote(path)}"
        _, payload = self._api_json("PUT", api_path, payload=body)
        payload_obj = _as_object_dict(payload)
        commit_obj = _as_object_dict(payload_obj.get("commit")) if payload_obj else None
        if commit_obj is None:
            raise FatalExternalError("Unexpected GitHub response: expected commit object")
        commit_sha = _as_string(commit_obj.get("sha"))
        log_event(LOGGER, "github_file_committed", branch=branch, path=path, sha=commit_sha)
        return commit_sha

    def open_pull_request(
        self,
        *,
        head: str,
        base: str,
        title: str,
        body: str,
        labels: tuple[str, ...],
    ) -> PullRequestRef:
        api_path = f"/repos/{self.owner}/{self.name}/pulls"
        status, payload = self._api_json(
            "POST",
            api_path,
            payload={"title": title, "head": head, "base": base, "body": body},
            allow_statuses=(422,),
        )
        if status == 422:
            existing = self.find_pull_request_by_head(head=head, base=base)
            if existing is None:
                raise FatalExternalError(
                    f"GitHub rejected pull request: {_error_message(payload)}", status_code=422
                )
            pr = existing
        else:
            payload_obj = _as_object_dict(payload)
            if payload_obj is None:
                raise FatalExternalError("Unexpected GitHub response: expected object for PR")
            pr = PullRequestRef(
                number=_as_int(payload_obj.get("number"), field="number"),
                html_url=_as_string(payload_obj.get("html_url")),
                branch=head,
            )
        if labels:
            self._api_json(
                "POST",
                f"/repos/{self.owner}/{self.name}/issues/{pr.number}/labels",
                payload={"labels": list(labels)},
            )
        log_event(
            LOGGER,
            "github_pr_created",
            repo_full_name=self.full_name,
            pr_number=pr.number,
            base=base,
            head=head,
        )
        return PullRequestRef(number=pr.number, html_url=pr.html_url, branch=head, labels=labels)

    def find_pull_request_by_head(self, *, head: str, base: str | None = None) -> PullRequestRef | None:
        query_items = {"state": "all", "head": f"{self.owner}:{head}", "per_page": "100"}
        if base is not None:
            query_items["base"] = base
        api_path = f"/repos/{self.owner}/{self.name}/pulls?{urlencode(query_items)}"
        _, payload = self._api_json("GET", api_path)
        if not isinstance(payload, list):
            raise FatalExternalError("Unexpected GitHub response: expected list for PR lookup")
        for item in payload:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            return PullRequestRef(
                number=_as_int(item_obj.get("number"), field="number"),
                html_url=_as_string(item_obj.get("html_url")),
                branch=head,
            )
        return None

    def compare_commits(self, base_sha: str, head_sha: str) -> CompareResult:
        api_path = f"/repos/{self.owner}/{self.name}/compare/{base_sha}...{head_sha}"
        _, payload = self._api_json("GET", api_path)
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise FatalExternalError("Unexpected GitHub response: expected compare object")
        status = payload_obj.get("status")
        if status not in {"ahead", "identical", "behind", "diverged"}:
            raise FatalExternalError(f"Unexpected compare status: {status!r}")
        files: list[str] = []
        files_obj = payload_obj.get("files")
        if isinstance(files_obj, list):
            for entry in files_obj:
                entry_obj = _as_object_dict(entry)
                if entry_obj is not None and isinstance(entry_obj.get("filename"), str):
                    files.append(cast(str, entry_obj["filename"]))
        return CompareResult(status=cast(CompareCommitsStatus, status), changed_files=tuple(files))

    def _api_json(
        self,
        method: str,
        path: str,
        *,
        payload: dict[str, object] | None = None,
        allow_statuses: tuple[int, ...] = (),
    ) -> tuple[int, object]:
        method_upper = method.upper()
        cmd = ["gh", "api", "--method", method_upper, "--include", path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)
        raw = run(cmd, input_text=stdin_payload, check=False, timeout_seconds=self.timeout_seconds)
        try:
            status_code, _headers, body = _parse_http_response(raw)
        except ValueError as exc:
            # gh exits before printing a status line when the request never reached GitHub.
            raise TransientExternalError(f"GitHub request {method_upper} {path} failed: {exc}") from exc

        parsed: object = None
        if body.strip():
            try:
                parsed = json.loads(body)
            except json.JSONDecodeError:
                parsed = body
        if 200 <= status_code < 300 or status_code in allow_statuses:
            return status_code, parsed

        message = f"GitHub {method_upper} {path} returned {status_code}: {_error_message(parsed)}"
        log_event(
            LOGGER,
            "github_request_failed",
            method=method_upper,
            path=path,
            status_code=status_code,
            raw_preview=_preview_for_log(raw),
        )
        raise classify_http_status(status_code, message)


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index

    if status_line_index < 0:
        raise ValueError("Unexpected GitHub response: missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise ValueError(f"Unexpected GitHub response status line: {status_line!r}")

    try:
        status_code = int(status_parts[1])
    except ValueError as exc:
        raise ValueError(f"Unexpected GitHub response status line: {status_line!r}") from exc

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    body = "\n".join(lines[body_start:])
    return status_code, headers, body


def _error_message(payload: object) -> str:
    payload_obj = _as_object_dict(payload)
    if payload_obj is not None and isinstance(payload_obj.get("message"), str):
        return cast(str, payload_obj["message"])
    if isinstance(payload, str) and payload.strip():
        return payload.strip()
    return "<empty>"


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise FatalExternalError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise FatalExternalError(
                f"Unexpected GitHub response value for {field}: {value}"
            ) from exc
    raise FatalExternalError(f"Unexpected GitHub response type for {field}")
