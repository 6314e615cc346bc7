from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import tomllib
from typing import cast


@dataclass(frozen=True)
class RuntimeConfig:
    base_dir: Path
    worker_count: int
    poll_interval_seconds: int
    job_retry_budget: int = 3
    job_retry_backoff_seconds: int = 30
    lease_seconds: int = 900
    request_timeout_seconds: int = 120

    @property
    def state_db_path(self) -> Path:
        return self.base_dir / "state.db"


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    base_delay_seconds: float = 1.0


@dataclass(frozen=True)
class LLMConfig:
    enabled: bool
    model: str | None
    profile: str | None
    extra_args: tuple[str, ...]
    token_budget: int = 24000
    fix_context_lines: int = 10


@dataclass(frozen=True)
class EmailConfig:
    enabled: bool
    smtp_host: str | None
    smtp_port: int = 587
    use_starttls: bool = True
    sender: str | None = None
    username: str | None = None
    password_env: str | None = None


@dataclass(frozen=True)
class RepoConfig:
    repo_id: str
    owner: str
    name: str
    owner_email: str
    serialize_jobs: bool = False
    max_file_bytes: int = 200_000

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    repos: tuple[RepoConfig, ...]
    llm: LLMConfig
    email: EmailConfig
    retry: RetryConfig = RetryConfig()

    def repo_by_id(self, repo_id: str) -> RepoConfig:
        for repo in self.repos:
            if repo.repo_id == repo_id:
                return repo
        raise ConfigError(f"Unknown repository id: {repo_id}")

    def repo_by_full_name(self, full_name: str) -> RepoConfig | None:
        normalized = full_name.strip().lower()
        for repo in self.repos:
            if repo.full_name.lower() == normalized:
                return repo
        return None


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    runtime_data = _require_table(data, "runtime")
    repo_data = _require_table(data, "repo")
    llm_data = _optional_table(data, "llm") or {}
    email_data = _optional_table(data, "email") or {}
    retry_data = _optional_table(data, "retry") or {}

    runtime = RuntimeConfig(
        base_dir=Path(_require_str(runtime_data, "base_dir")).expanduser(),
        worker_count=_require_int(runtime_data, "worker_count"),
        poll_interval_seconds=_require_int(runtime_data, "poll_interval_seconds"),
        job_retry_budget=_int_with_default(runtime_data, "job_retry_budget", 3),
        job_retry_backoff_seconds=_int_with_default(
            runtime_data, "job_retry_backoff_seconds", 30
        ),
        lease_seconds=_int_with_default(runtime_data, "lease_seconds", 900),
        request_timeout_seconds=_int_with_default(runtime_data, "request_timeout_seconds", 120),
    )

    if runtime.worker_count < 1:
        raise ConfigError("runtime.worker_count must be >= 1")
    if runtime.poll_interval_seconds < 1:
        raise ConfigError("runtime.poll_interval_seconds must be >= 1")
    if runtime.job_retry_budget < 1:
        raise ConfigError("runtime.job_retry_budget must be >= 1")
    if runtime.job_retry_backoff_seconds < 0:
        raise ConfigError("runtime.job_retry_backoff_seconds must be >= 0")
    if runtime.lease_seconds < 1:
        raise ConfigError("runtime.lease_seconds must be >= 1")
    if runtime.request_timeout_seconds < 1:
        raise ConfigError("runtime.request_timeout_seconds must be >= 1")

    retry = RetryConfig(
        max_attempts=_int_with_default(retry_data, "max_attempts", 3),
        base_delay_seconds=_float_with_default(retry_data, "base_delay_seconds", 1.0),
    )
    if retry.max_attempts < 1:
        raise ConfigError("retry.max_attempts must be >= 1")
    if retry.base_delay_seconds < 0:
        raise ConfigError("retry.base_delay_seconds must be >= 0")

    llm = LLMConfig(
        enabled=_bool_with_default(llm_data, "enabled", True),
        model=_optional_str(llm_data, "model"),
        profile=_optional_str(llm_data, "profile"),
        extra_args=_tuple_of_str(llm_data, "extra_args"),
        token_budget=_int_with_default(llm_data, "token_budget", 24000),
        fix_context_lines=_int_with_default(llm_data, "fix_context_lines", 10),
    )
    if llm.token_budget < 256:
        raise ConfigError("llm.token_budget must be >= 256")
    if llm.fix_context_lines < 0:
        raise ConfigError("llm.fix_context_lines must be >= 0")

    email = _parse_email_config(email_data)
    repos = _load_repo_configs(repo_data)

    return AppConfig(runtime=runtime, repos=repos, llm=llm, email=email, retry=retry)


def _parse_email_config(email_data: dict[str, object]) -> EmailConfig:
    email = EmailConfig(
        enabled=_bool_with_default(email_data, "enabled", False),
        smtp_host=_optional_str(email_data, "smtp_host"),
        smtp_port=_int_with_default(email_data, "smtp_port", 587),
        use_starttls=_bool_with_default(email_data, "use_starttls", True),
        sender=_optional_str(email_data, "sender"),
        username=_optional_str(email_data, "username"),
        password_env=_optional_str(email_data, "password_env"),
    )
    if email.enabled and (email.smtp_host is None or email.sender is None):
        raise ConfigError("email.smtp_host and email.sender are required when email is enabled")
    if not 0 < email.smtp_port < 65536:
        raise ConfigError("email.smtp_port must be a valid TCP port")
    return email


def _load_repo_configs(repo_data: dict[str, object]) -> tuple[RepoConfig, ...]:
    if not repo_data:
        raise ConfigError("[repo] must define at least one [repo.<id>] table")

    repos: list[RepoConfig] = []
    for repo_id, raw_value in sorted(repo_data.items()):
        repo_table = _require_repo_table(raw_value, table_name=f"[repo.{repo_id}]")
        repos.append(_parse_repo_config(repo_id=repo_id, repo_data=repo_table))
    _ensure_unique_full_names(repos)
    return tuple(repos)


def _parse_repo_config(*, repo_id: str, repo_data: dict[str, object]) -> RepoConfig:
    owner_email = _require_str(repo_data, "owner_email")
    if "@" not in owner_email:
        raise ConfigError(f"repo.{repo_id}.owner_email must be an email address")
    repo = RepoConfig(
        repo_id=repo_id,
        owner=_require_str(repo_data, "owner"),
        name=_require_str(repo_data, "name"),
        owner_email=owner_email,
        serialize_jobs=_bool_with_default(repo_data, "serialize_jobs", False),
        max_file_bytes=_int_with_default(repo_data, "max_file_bytes", 200_000),
    )
    if repo.max_file_bytes < 1:
        raise ConfigError(f"repo.{repo_id}.max_file_bytes must be >= 1")
    return repo


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _require_repo_table(value: object, *, table_name: str) -> dict[str, object]:
    if not isinstance(value, dict):
        raise ConfigError(f"{table_name} must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"{table_name} must have string keys")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _require_int(data: dict[str, object], key: str) -> int:
    value = data.get(key)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"{key} is required and must be an integer")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer")
    return value


def _float_with_default(data: dict[str, object], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigError(f"{key} must be a number")
    return float(value)


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _tuple_of_str(data: dict[str, object], key: str) -> tuple[str, ...]:
    value = data.get(key, [])
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{key} must be a list of strings")
        out.append(item)
    return tuple(out)


def _ensure_unique_full_names(repos: list[RepoConfig]) -> None:
    seen: dict[str, str] = {}
    for repo in repos:
        key = repo.full_name.lower()
        if key in seen:
            raise ConfigError(
                f"Duplicate repository {repo.full_name} in [repo.{seen[key]}] and "
                f"[repo.{repo.repo_id}]"
            )
        seen[key] = repo.repo_id
