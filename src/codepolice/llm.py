from __future__ import annotations

from abc import ABC, abstractmethod
import json
import logging
import math
from pathlib import Path
import tempfile
from typing import cast

from codepolice.config import LLMConfig
from codepolice.errors import FatalExternalError, ResourceLimitError, ValidationError
from codepolice.observability import log_event
from codepolice.shell import run


LOGGER = logging.getLogger("codepolice.llm")


class LLMClient(ABC):
    @abstractmethod
    def complete(self, prompt: str) -> str:
        """Return the model's raw text reply. Output is untrusted and may be malformed."""


class CodexLLMClient(LLMClient):
    """Runs one non-interactive ``codex exec`` turn per completion."""

    def __init__(self, config: LLMConfig, *, timeout_seconds: float) -> None:
        self._config = config
        self._timeout_seconds = timeout_seconds

    def complete(self, prompt: str) -> str:
        if not self._config.enabled:
            raise FatalExternalError("LLM is disabled in config")
        tokens = estimate_tokens(prompt)
        if tokens > self._config.token_budget:
            raise ResourceLimitError(
                f"Prompt of ~{tokens} tokens exceeds budget {self._config.token_budget}"
            )

        with tempfile.TemporaryDirectory(prefix="codepolice_llm_") as tmp:
            output_path = Path(tmp) / "last_message.txt"
            cmd = [
                "codex",
                "exec",
                "--json",
                "--skip-git-repo-check",
                "--sandbox",
                "read-only",
                "--output-last-message",
                str(output_path),
            ]
            self._append_common_options(cmd)
            cmd.append("-")

            log_event(LOGGER, "llm_call_started", prompt_tokens=tokens)
            run(cmd, cwd=Path(tmp), input_text=prompt, timeout_seconds=self._timeout_seconds)
            if not output_path.exists():
                raise ValidationError("Codex did not write a final message")
            reply = output_path.read_text(encoding="utf-8").strip()
        log_event(LOGGER, "llm_call_completed", reply_chars=len(reply))
        return reply

    def _append_common_options(self, cmd: list[str]) -> None:
        if self._config.model:
            cmd.extend(["--model", self._config.model])
        if self._config.profile:
            cmd.extend(["--profile", self._config.profile])
        if self._config.extra_args:
            cmd.extend(self._config.extra_args)


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def parse_json_reply(raw: str) -> object:
    """Decode a model reply as JSON, tolerating a surrounding markdown fence."""
    text = raw.strip()
    if text.startswith("```"):
        lines = text.splitlines()
        if lines and lines[0].startswith("```"):
            lines = lines[1:]
        if lines and lines[-1].startswith("```"):
            lines = lines[:-1]
        text = "\n".join(lines).strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Model reply is not valid JSON: {exc}") from exc


def as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)
