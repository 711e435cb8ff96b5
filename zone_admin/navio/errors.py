"""Error taxonomy shared by every Navio pipeline step."""

from __future__ import annotations


class NavioPipelineError(RuntimeError):
    """
    Base error for pipeline failures.

    Loop drivers fill in ``completed`` and ``remaining`` when a failure stops
    a multi-step run, so callers can report how far it got.
    """

    completed: int | None = None
    remaining: int | None = None

    def progress(self) -> dict[str, int]:
        if self.completed is None or self.remaining is None:
            return {}
        return {"completed": self.completed, "remaining": self.remaining}


class NetworkTransient(NavioPipelineError):
    """Connection reset, timeout or an upstream 5xx. Retryable."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UpstreamRateLimited(NavioPipelineError):
    """Provider or classifier answered 429. Retryable with backoff."""

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ValidationError(NavioPipelineError):
    """Malformed input or an illegal transition. Not retryable."""


class DataIntegrityError(NavioPipelineError):
    """Stored rows are inconsistent, e.g. an area pointing at a deleted district. Not retryable."""


class PartialBatchFailure(NavioPipelineError):
    """
    Some units of a batch completed and the remainder is still pending.

    This is a resumable state: re-invoking the same driver finishes the rest.
    """

    def __init__(
        self,
        message: str,
        *,
        completed: int,
        remaining: int,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.completed = completed
        self.remaining = remaining
        self.cause = cause

    def as_dict(self) -> dict[str, object]:
        return {
            "error": str(self),
            "completed": self.completed,
            "remaining": self.remaining,
            "cause": str(self.cause) if self.cause else None,
        }


class CorruptBatchCache(ValidationError):
    """The local batch cache file exists but cannot be read back."""

    def __init__(self, message: str, *, path: str) -> None:
        super().__init__(message)
        self.path = path
