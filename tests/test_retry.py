from __future__ import annotations

import pytest
from hypothesis import given, strategies as st

from codepolice.config import RetryConfig
from codepolice.errors import (
    ConflictError,
    FatalExternalError,
    ResourceLimitError,
    TransientExternalError,
    ValidationError,
    classify_http_status,
)
from codepolice.observability import configure_logging
from codepolice.retry import (
    RetryExecutor,
    RetryExhaustedError,
    RetryPolicy,
    classify_failure,
)
from codepolice.shell import CommandError, CommandTimeoutError


class FlakyCall:
    def __init__(self, failures: list[Exception], result: str = "ok") -> None:
        self.failures = list(failures)
        self.result = result
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.result


def test_retry_executor_backs_off_then_succeeds() -> None:
    sleeps: list[float] = []
    executor = RetryExecutor(sleep=sleeps.append)
    call = FlakyCall([TransientExternalError("rate limited", status_code=429)])

    assert executor.call("github.get", call) == "ok"
    assert call.calls == 2
    assert sleeps == [1.0]


def test_retry_executor_gives_up_after_three_attempts(
    capsys: pytest.CaptureFixture[str],
) -> None:
    configure_logging(verbose=True)
    sleeps: list[float] = []
    executor = RetryExecutor(RetryPolicy(max_attempts=3, base_delay_seconds=1.0), sleep=sleeps.append)
    call = FlakyCall([TransientExternalError(f"503 #{i}", status_code=503) for i in range(5)])

    with pytest.raises(RetryExhaustedError, match="llm.analyze failed after 3 attempts") as exc_info:
        executor.call("llm.analyze", call)

    assert call.calls == 3
    assert sleeps == [1.0, 2.0]
    assert exc_info.value.attempts == 3
    assert isinstance(exc_info.value.last_error, TransientExternalError)
    stderr = capsys.readouterr().err
    assert "event=external_call_retry" in stderr
    assert "failure_class=exhausted" in stderr


@pytest.mark.parametrize(
    "error",
    [
        FatalExternalError("forbidden", status_code=403),
        ValidationError("bad json"),
        ResourceLimitError("too big"),
        ConflictError("diverged", file_path=None, base_sha="b", head_sha="h"),
    ],
)
def test_retry_executor_does_not_retry_fatal_errors(error: Exception) -> None:
    sleeps: list[float] = []
    call = FlakyCall([error])

    with pytest.raises(type(error)):
        RetryExecutor(sleep=sleeps.append).call("op", call)

    assert call.calls == 1
    assert sleeps == []


def test_classify_failure_covers_transport_errors() -> None:
    assert classify_failure(CommandTimeoutError("slow")) == "retryable"
    assert classify_failure(CommandError("gh crashed", returncode=1)) == "retryable"
    assert classify_failure(TimeoutError()) == "retryable"
    assert classify_failure(ConnectionResetError()) == "retryable"
    assert classify_failure(KeyError("x")) == "fatal"


def test_classify_http_status() -> None:
    assert isinstance(classify_http_status(429, "slow down"), TransientExternalError)
    assert isinstance(classify_http_status(503, "unavailable"), TransientExternalError)
    not_found = classify_http_status(404, "missing")
    assert isinstance(not_found, FatalExternalError)
    assert not_found.status_code == 404


def test_retry_policy_from_config_and_validation() -> None:
    policy = RetryPolicy.from_config(RetryConfig(max_attempts=5, base_delay_seconds=0.5))
    assert policy == RetryPolicy(max_attempts=5, base_delay_seconds=0.5)
    assert RetryExecutor(policy).policy is policy
    with pytest.raises(ValueError, match="attempt must be >= 1"):
        policy.delay_after_attempt(0)


@given(
    attempt=st.integers(min_value=1, max_value=12),
    base=st.floats(min_value=0.0, max_value=10.0, allow_nan=False),
)
def test_delay_doubles_each_attempt(attempt: int, base: float) -> None:
    policy = RetryPolicy(max_attempts=20, base_delay_seconds=base)
    assert policy.delay_after_attempt(attempt + 1) == pytest.approx(
        2 * policy.delay_after_attempt(attempt)
    )
