from __future__ import annotations


class CodePoliceError(RuntimeError):
    """Root of the pipeline error taxonomy."""


class TransientExternalError(CodePoliceError):
    """Rate limit, timeout or 5xx from an external service; safe to retry."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class FatalExternalError(CodePoliceError):
    """Auth, permission or other non-retryable 4xx failure from an external service."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ValidationError(CodePoliceError):
    """Malformed model response or webhook payload."""


class ResourceLimitError(CodePoliceError):
    """File too large or token budget exceeded."""


class ConflictError(CodePoliceError):
    """Base branch diverged from the analyzed commit; needs a human."""

    def __init__(
        self,
        detail: str,
        *,
        file_path: str | None,
        base_sha: str,
        head_sha: str,
    ) -> None:
        super().__init__(detail)
        self.detail = detail
        self.file_path = file_path
        self.base_sha = base_sha
        self.head_sha = head_sha


class InvalidTransitionError(CodePoliceError):
    """Requested job status change is not an allowed edge of the state machine."""


class JobLeaseLostError(CodePoliceError):
    """Another worker owns the job; this worker must stop touching it."""


def classify_http_status(status_code: int, message: str) -> CodePoliceError:
    if status_code == 429 or status_code >= 500:
        return TransientExternalError(message, status_code=status_code)
    return FatalExternalError(message, status_code=status_code)
