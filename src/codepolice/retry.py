from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Callable, Literal, TypeVar

from codepolice.config import RetryConfig
from codepolice.errors import (
    CodePoliceError,
    ConflictError,
    FatalExternalError,
    ResourceLimitError,
    TransientExternalError,
    ValidationError,
)
from codepolice.observability import log_event, log_warning
from codepolice.shell import CommandError, CommandTimeoutError


LOGGER = logging.getLogger("codepolice.retry")
T = TypeVar("T")
FailureClass = Literal["retryable", "fatal"]


class RetryExhaustedError(CodePoliceError):
    """Every attempt failed with a retryable error."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(
            f"{operation} failed after {attempts} attempts: "
            f"{type(last_error).__name__}: {last_error}"
        )
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 1.0

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(max_attempts=config.max_attempts, base_delay_seconds=config.base_delay_seconds)

    def delay_after_attempt(self, attempt: int) -> float:
        """Backoff slept after the given (1-based) failed attempt: 1s, 2s, 4s, ..."""
        if attempt < 1:
            raise ValueError("attempt must be >= 1")
        return self.base_delay_seconds * (2 ** (attempt - 1))


def classify_failure(exc: BaseException) -> FailureClass:
    if isinstance(exc, (FatalExternalError, ValidationError, ConflictError, ResourceLimitError)):
        return "fatal"
    if isinstance(exc, (TransientExternalError, CommandTimeoutError, TimeoutError)):
        return "retryable"
    if isinstance(exc, CommandError):
        # Non-zero exit without an HTTP status: the CLI itself crashed or lost the network.
        return "retryable"
    if isinstance(exc, (ConnectionError, OSError)):
        return "retryable"
    return "fatal"


class RetryExecutor:
    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._policy = policy or RetryPolicy()
        self._sleep = sleep

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def call(self, operation: str, fn: Callable[[], T]) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn()
            except Exception as exc:
                if classify_failure(exc) == "fatal":
                    log_warning(
                        LOGGER,
                        "external_call_failed",
                        operation=operation,
                        attempt=attempt,
                        failure_class="fatal",
                        error_type=type(exc).__name__,
                    )
                    raise
                if attempt >= self._policy.max_attempts:
                    log_warning(
                        LOGGER,
                        "external_call_failed",
                        operation=operation,
                        attempt=attempt,
                        failure_class="exhausted",
                        error_type=type(exc).__name__,
                    )
                    raise RetryExhaustedError(operation, attempt, exc) from exc
                delay = self._policy.delay_after_attempt(attempt)
                log_event(
                    LOGGER,
                    "external_call_retry",
                    operation=operation,
                    attempt=attempt,
                    delay_seconds=delay,
                    error_type=type(exc).__name__,
                )
                self._sleep(delay)
