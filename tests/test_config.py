from __future__ import annotations

from dataclasses import fields
from pathlib import Path

import pytest

from codepolice import config
from codepolice.config import ConfigError, RepoConfig, load_config


def _write(path: Path, content: str) -> Path:
    path.write_text(content, encoding="utf-8")
    return path


_MINIMAL = """
[runtime]
base_dir = "{base_dir}"
worker_count = 2
poll_interval_seconds = 5

[repo.web]
owner = "acme"
name = "web"
owner_email = "owner@acme.test"
"""


def test_load_config_applies_defaults(tmp_path: Path) -> None:
    cfg_path = _write(tmp_path / "codepolice.toml", _MINIMAL.format(base_dir=tmp_path / "state"))

    loaded = load_config(cfg_path)

    assert loaded.runtime.base_dir == tmp_path / "state"
    assert loaded.runtime.state_db_path == tmp_path / "state" / "state.db"
    assert loaded.runtime.worker_count == 2
    assert loaded.runtime.job_retry_budget == 3
    assert loaded.runtime.job_retry_backoff_seconds == 30
    assert loaded.runtime.lease_seconds == 900
    assert loaded.runtime.request_timeout_seconds == 120
    assert loaded.retry.max_attempts == 3
    assert loaded.retry.base_delay_seconds == 1.0
    assert loaded.llm.enabled is True
    assert loaded.llm.model is None
    assert loaded.llm.extra_args == ()
    assert loaded.llm.token_budget == 24000
    assert loaded.llm.fix_context_lines == 10
    assert loaded.email.enabled is False
    assert loaded.email.smtp_port == 587

    (repo,) = loaded.repos
    assert repo.repo_id == "web"
    assert repo.full_name == "acme/web"
    assert repo.serialize_jobs is False
    assert repo.max_file_bytes == 200_000


def test_load_config_full_multi_repo(tmp_path: Path) -> None:
    cfg_path = _write(
        tmp_path / "codepolice.toml",
        """
[runtime]
base_dir = "~/codepolice"
worker_count = 4
poll_interval_seconds = 10
job_retry_budget = 5
job_retry_backoff_seconds = 0
lease_seconds = 60
request_timeout_seconds = 30

[retry]
max_attempts = 4
base_delay_seconds = 0.5

[llm]
model = "gpt-5-codex"
profile = "review"
extra_args = ["--full-auto"]
token_budget = 8000
fix_context_lines = 4

[email]
enabled = true
smtp_host = "smtp.acme.test"
smtp_port = 2525
use_starttls = false
sender = "police@acme.test"
username = "police"
password_env = "SMTP_PASSWORD"

[repo.web]
owner = "acme"
name = "web"
owner_email = "web@acme.test"
serialize_jobs = true

[repo.api]
owner = "acme"
name = "api"
owner_email = "api@acme.test"
max_file_bytes = 1000
""",
    )

    loaded = load_config(cfg_path)

    assert loaded.runtime.base_dir == Path("~/codepolice").expanduser()
    assert loaded.runtime.job_retry_budget == 5
    assert loaded.retry.max_attempts == 4
    assert loaded.retry.base_delay_seconds == 0.5
    assert loaded.llm.model == "gpt-5-codex"
    assert loaded.llm.extra_args == ("--full-auto",)
    assert loaded.email.enabled is True
    assert loaded.email.password_env == "SMTP_PASSWORD"
    assert [repo.repo_id for repo in loaded.repos] == ["api", "web"]
    assert loaded.repo_by_id("web").serialize_jobs is True
    assert loaded.repo_by_id("api").max_file_bytes == 1000
    assert [field.name for field in fields(RepoConfig)] == [
        "repo_id",
        "owner",
        "name",
        "owner_email",
        "serialize_jobs",
        "max_file_bytes",
    ]
    assert loaded.repo_by_full_name("ACME/Api") == loaded.repo_by_id("api")
    assert loaded.repo_by_full_name("acme/missing") is None
    with pytest.raises(ConfigError, match="Unknown repository id"):
        loaded.repo_by_id("missing")


@pytest.mark.parametrize(
    ("extra", "message"),
    [
        ("[retry]\nmax_attempts = 0\n", "retry.max_attempts"),
        ("[llm]\ntoken_budget = 10\n", "llm.token_budget"),
        ("[email]\nenabled = true\n", "email.smtp_host"),
        ("[email]\nsmtp_port = 70000\n", "email.smtp_port"),
        ("[llm]\nextra_args = [1]\n", "extra_args must be a list of strings"),
    ],
)
def test_load_config_rejects_invalid_sections(tmp_path: Path, extra: str, message: str) -> None:
    cfg_path = _write(
        tmp_path / "codepolice.toml",
        _MINIMAL.format(base_dir=tmp_path) + "\n" + extra,
    )
    with pytest.raises(ConfigError, match=message):
        load_config(cfg_path)


def test_load_config_rejects_bad_runtime_and_repos(tmp_path: Path) -> None:
    bad_worker = _MINIMAL.format(base_dir=tmp_path).replace("worker_count = 2", "worker_count = 0")
    with pytest.raises(ConfigError, match="worker_count"):
        load_config(_write(tmp_path / "a.toml", bad_worker))

    bad_email = _MINIMAL.format(base_dir=tmp_path).replace("owner@acme.test", "nobody")
    with pytest.raises(ConfigError, match="owner_email"):
        load_config(_write(tmp_path / "b.toml", bad_email))

    duplicate = _MINIMAL.format(base_dir=tmp_path) + (
        '\n[repo.web2]\nowner = "ACME"\nname = "WEB"\nowner_email = "x@acme.test"\n'
    )
    with pytest.raises(ConfigError, match="Duplicate repository"):
        load_config(_write(tmp_path / "c.toml", duplicate))

    no_repos = f'[runtime]\nbase_dir = "{tmp_path}"\nworker_count = 1\npoll_interval_seconds = 1\n'
    with pytest.raises(ConfigError, match=r"\[repo\] is required"):
        load_config(_write(tmp_path / "d.toml", no_repos))

    empty_repos = no_repos + "[repo]\n"
    with pytest.raises(ConfigError, match="at least one"):
        load_config(_write(tmp_path / "e.toml", empty_repos))


def test_config_helpers_validate_types() -> None:
    assert config._float_with_default({"x": 2}, "x", 1.0) == 2.0
    with pytest.raises(ConfigError):
        config._float_with_default({"x": True}, "x", 1.0)
    with pytest.raises(ConfigError):
        config._bool_with_default({"x": "yes"}, "x", False)
    with pytest.raises(ConfigError):
        config._optional_str({"x": ""}, "x")
    with pytest.raises(ConfigError):
        config._require_repo_table("nope", table_name="[repo.x]")
    assert config._tuple_of_str({}, "x") == ()
