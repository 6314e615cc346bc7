from __future__ import annotations

import hashlib
import logging
from typing import cast

from codepolice.config import AppConfig
from codepolice.errors import ValidationError
from codepolice.llm import as_object_dict
from codepolice.models import Commit, Job
from codepolice.observability import log_event
from codepolice.state import StateStore


LOGGER = logging.getLogger("codepolice.events")
_BRANCH_REF_PREFIX = "refs/heads/"
_NULL_SHA = "0" * 40


def job_id_for(repository_id: str, branch: str, head_sha: str) -> str:
    """Same push delivered twice maps to the same job."""
    digest = hashlib.sha256(f"{repository_id}\n{branch}\n{head_sha}".encode("utf-8")).hexdigest()
    return f"job-{digest[:20]}"


def job_from_push_event(payload: object, config: AppConfig, *, now: str) -> Job | None:
    """Build a pending job from a GitHub push payload.

    Returns ``None`` for pushes that carry nothing to review: tag pushes, branch
    deletions and pushes without commits.
    """
    event = as_object_dict(payload)
    if event is None:
        raise ValidationError("Push payload must be a JSON object")

    ref = _require_str(event, "ref")
    if not ref.startswith(_BRANCH_REF_PREFIX):
        log_event(LOGGER, "push_ignored", ref=ref, reason="not_a_branch")
        return None
    branch = ref[len(_BRANCH_REF_PREFIX) :]
    head_sha = _require_str(event, "after")
    if event.get("deleted") is True or head_sha == _NULL_SHA:
        log_event(LOGGER, "push_ignored", ref=ref, reason="branch_deleted")
        return None

    repository = as_object_dict(event.get("repository"))
    if repository is None:
        raise ValidationError("Push payload is missing repository")
    full_name = _require_str(repository, "full_name")
    repo = config.repo_by_full_name(full_name)
    if repo is None:
        raise ValidationError(f"Push for unconfigured repository {full_name}")

    raw_commits = event.get("commits")
    if not isinstance(raw_commits, list):
        raise ValidationError("Push payload commits must be a list")
    commits = tuple(_parse_commit(item, index=index) for index, item in enumerate(raw_commits))
    if not commits:
        log_event(LOGGER, "push_ignored", ref=ref, reason="no_commits")
        return None

    return Job(
        id=job_id_for(repo.repo_id, branch, head_sha),
        repository_id=repo.repo_id,
        commits=commits,
        branch=branch,
        head_sha=head_sha,
        status="pending",
        retry_count=0,
        created_at=now,
    )


def enqueue_push_event(
    state: StateStore, config: AppConfig, payload: object, *, now: str
) -> tuple[Job | None, bool]:
    """Returns the job (if the push is reviewable) and whether it was newly queued."""
    job = job_from_push_event(payload, config, now=now)
    if job is None:
        return None, False
    created = state.enqueue_job(job)
    log_event(
        LOGGER,
        "job_enqueued",
        job_id=job.id,
        repository_id=job.repository_id,
        branch=job.branch,
        head_sha=job.head_sha,
        commit_count=len(job.commits),
        duplicate=not created,
    )
    return job, created


def _parse_commit(raw: object, *, index: int) -> Commit:
    item = as_object_dict(raw)
    if item is None:
        raise ValidationError(f"Push commit {index} must be an object")
    author_obj = as_object_dict(item.get("author")) or {}
    author = author_obj.get("username") or author_obj.get("name") or ""
    return Commit(
        sha=_require_str(item, "id"),
        message=_optional_str(item.get("message")),
        author=author if isinstance(author, str) else "",
        timestamp=_optional_str(item.get("timestamp")),
        added=_path_list(item, "added"),
        modified=_path_list(item, "modified"),
        removed=_path_list(item, "removed"),
    )


def _path_list(item: dict[str, object], key: str) -> tuple[str, ...]:
    value = item.get(key, [])
    if not isinstance(value, list) or not all(isinstance(path, str) for path in value):
        raise ValidationError(f"Push commit {key} must be a list of paths")
    return tuple(cast(list[str], value))


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"Push payload field {key} must be a non-empty string")
    return value


def _optional_str(value: object) -> str:
    return value if isinstance(value, str) else ""
