"""Domain exceptions translated to JSON responses by the handlers in ``main``."""
from __future__ import annotations


class UnderwritingError(ValueError):
    """Inputs that cannot produce a finite deal calculation."""


class IRRConvergenceError(UnderwritingError):
    """No internal rate of return could be found for a cash-flow series."""


class UpstreamError(Exception):
    """
    Failure reported by a third-party API.

    ``code`` is one of the typed strings surfaced to clients
    (``QUOTA_EXCEEDED``, ``MEMORY_LIMIT``, ``RUN_FAILED``, ``POLL_TIMEOUT``,
    ``UPSTREAM_ERROR``); ``status_code`` is the HTTP status returned to them.
    """

    def __init__(self, message: str, code: str = "UPSTREAM_ERROR", status_code: int = 502) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code

    def __repr__(self) -> str:
        return f"UpstreamError(code={self.code!r}, status={self.status_code}, message={self.message!r})"


class SignatureError(Exception):
    """Webhook signature missing (401) or not matching (403)."""

    def __init__(self, message: str, status_code: int = 403) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class RateLimitExceeded(Exception):
    def __init__(self, key: str, retry_after: int) -> None:
        super().__init__(f"Rate limit exceeded for {key}. Try again in {retry_after}s.")
        self.key = key
        self.retry_after = retry_after
