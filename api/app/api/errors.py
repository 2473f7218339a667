import math

from fastapi import HTTPException, status

from app.core.errors import ErrorCode, SearchError

STATUS_BY_CODE = {
    ErrorCode.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorCode.AUTH: status.HTTP_401_UNAUTHORIZED,
    ErrorCode.BUDGET_EXCEEDED: status.HTTP_402_PAYMENT_REQUIRED,
    ErrorCode.QUOTA_EXCEEDED: status.HTTP_402_PAYMENT_REQUIRED,
    ErrorCode.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorCode.UPSTREAM_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.INTERNAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def http_error(exc: SearchError, headers: dict[str, str] | None = None) -> HTTPException:
    detail = exc.to_dict()
    if exc.code is ErrorCode.INTERNAL:
        detail["message"] = "internal error"

    merged = dict(headers or {})
    if exc.retry_after_seconds is not None and "Retry-After" not in merged:
        merged["Retry-After"] = str(max(0, math.ceil(exc.retry_after_seconds)))

    return HTTPException(
        status_code=STATUS_BY_CODE.get(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR),
        detail=detail,
        headers=merged or None,
    )
