from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    VALIDATION = "VALIDATION"
    RATE_LIMITED = "RATE_LIMITED"
    AUTH = "AUTH"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    BUDGET_EXCEEDED = "BUDGET_EXCEEDED"
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"
    INTERNAL = "INTERNAL"
    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"


class RetryCategory(str, Enum):
    NETWORK = "network"
    UPSTREAM = "upstream"
    RATE_LIMIT = "rate_limit"


# Lower rank wins when several provider failures compete for the job-level error.
ERROR_SEVERITY: dict[ErrorCode, int] = {
    ErrorCode.BUDGET_EXCEEDED: 0,
    ErrorCode.QUOTA_EXCEEDED: 1,
    ErrorCode.AUTH: 2,
    ErrorCode.RATE_LIMITED: 3,
    ErrorCode.VALIDATION: 4,
    ErrorCode.UPSTREAM_UNAVAILABLE: 5,
    ErrorCode.INTERNAL: 6,
}


class SearchError(Exception):
    """Base error for the search workflow. Never carries raw upstream payloads."""

    code: ErrorCode = ErrorCode.INTERNAL
    retryable: bool = False
    category: RetryCategory | None = None

    def __init__(
        self,
        message: str,
        *,
        retry_after_seconds: float | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.retry_after_seconds = retry_after_seconds
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "code": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.retry_after_seconds is not None:
            payload["retry_after"] = self.retry_after_seconds
        return payload


class ValidationFailedError(SearchError):
    """Raised when input fails validation; never retried."""

    code = ErrorCode.VALIDATION


class RateLimitedError(SearchError):
    """Raised when a caller or an upstream is over its request budget."""

    code = ErrorCode.RATE_LIMITED
    retryable = True
    category = RetryCategory.RATE_LIMIT


class AuthenticationFailedError(SearchError):
    """Raised when credentials are rejected; requires re-authentication or reconfiguration."""

    code = ErrorCode.AUTH


class QuotaExceededError(SearchError):
    """Raised when an upstream plan quota is exhausted."""

    code = ErrorCode.QUOTA_EXCEEDED


class BudgetExceededError(SearchError):
    """Raised when the cost ledger reports a hard budget limit."""

    code = ErrorCode.BUDGET_EXCEEDED


class UpstreamUnavailableError(SearchError):
    """Raised for transient upstream failures (5xx, timeouts, transport errors)."""

    code = ErrorCode.UPSTREAM_UNAVAILABLE
    retryable = True
    category = RetryCategory.UPSTREAM


class NetworkError(UpstreamUnavailableError):
    """Raised when the upstream could not be reached at all."""

    category = RetryCategory.NETWORK


class CircuitOpenError(UpstreamUnavailableError):
    """Raised when a circuit breaker rejects a call without invoking it."""

    retryable = False
    category = None


class RetryExhaustedError(SearchError):
    """Raised when every retry attempt failed; `last_error` holds the final failure."""

    def __init__(self, last_error: SearchError, attempts: int) -> None:
        super().__init__(
            f"{last_error.message} (after {attempts} attempts)",
            retry_after_seconds=last_error.retry_after_seconds,
            details={"attempts": attempts},
        )
        self.last_error = last_error
        self.attempts = attempts
        self.code = last_error.code


class InternalError(SearchError):
    """Raised for unexpected failures; callers only see a generic message."""

    code = ErrorCode.INTERNAL


class JobNotFoundError(SearchError):
    """Raised when a search job id is unknown."""

    code = ErrorCode.NOT_FOUND


class JobAccessDeniedError(SearchError):
    """Raised when a principal tries to act on another user's job."""

    code = ErrorCode.FORBIDDEN


def error_severity(code: ErrorCode) -> int:
    return ERROR_SEVERITY.get(code, len(ERROR_SEVERITY))
