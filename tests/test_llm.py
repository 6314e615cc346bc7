from __future__ import annotations

from pathlib import Path

import pytest

from codepolice.config import LLMConfig
from codepolice.errors import FatalExternalError, ResourceLimitError, ValidationError
from codepolice.llm import CodexLLMClient, estimate_tokens, parse_json_reply


def _config(**overrides: object) -> LLMConfig:
    values: dict[str, object] = {
        "enabled": True,
        "model": "gpt-5-codex",
        "profile": None,
        "extra_args": ("--full-auto",),
        "token_budget": 1000,
    }
    values.update(overrides)
    return LLMConfig(**values)  # type: ignore[arg-type]


def test_complete_runs_codex_and_reads_last_message(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: dict[str, object] = {}

    def fake_run(argv: list[str], **kwargs: object) -> str:
        calls["argv"] = argv
        calls["kwargs"] = kwargs
        output = Path(argv[argv.index("--output-last-message") + 1])
        output.write_text("  [] \n", encoding="utf-8")
        return '{"type":"turn.completed"}\n'

    monkeypatch.setattr("codepolice.llm.run", fake_run)

    reply = CodexLLMClient(_config(), timeout_seconds=30).complete("review this")

    assert reply == "[]"
    argv = calls["argv"]
    assert isinstance(argv, list)
    assert argv[:2] == ["codex", "exec"]
    assert argv[argv.index("--model") + 1] == "gpt-5-codex"
    assert "--profile" not in argv
    assert argv[-2:] == ["--full-auto", "-"]
    kwargs = calls["kwargs"]
    assert isinstance(kwargs, dict)
    assert kwargs["input_text"] == "review this"
    assert kwargs["timeout_seconds"] == 30


def test_complete_without_output_file_is_validation_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("codepolice.llm.run", lambda argv, **kwargs: "")
    with pytest.raises(ValidationError, match="did not write"):
        CodexLLMClient(_config(), timeout_seconds=30).complete("p")


def test_complete_guards(monkeypatch: pytest.MonkeyPatch) -> None:
    def fail_run(argv: list[str], **kwargs: object) -> str:
        raise AssertionError("codex must not run")

    monkeypatch.setattr("codepolice.llm.run", fail_run)

    with pytest.raises(FatalExternalError, match="disabled"):
        CodexLLMClient(_config(enabled=False), timeout_seconds=1).complete("p")
    with pytest.raises(ResourceLimitError, match="exceeds budget 1000"):
        CodexLLMClient(_config(), timeout_seconds=1).complete("x" * 4001)


def test_parse_json_reply() -> None:
    assert parse_json_reply('  [{"a": 1}] ') == [{"a": 1}]
    assert parse_json_reply("```json\n{\"a\": 1}\n```") == {"a": 1}
    with pytest.raises(ValidationError):
        parse_json_reply("```\nnope\n```")


def test_estimate_tokens_rounds_up() -> None:
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcde") == 2
