from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can branch on:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    - tool_* (502-504) for failures of the tool execution backend
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied, e.g. the resource belongs to another user (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. a step against a terminal workflow (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class RequestCancelledError(ServiceError):
    """The caller went away or cancelled the request while a tool was running."""
    status_code = 499
    error_code = "cancelled"


class AdapterError(ServiceError):
    """Failure reported while talking to the tool execution backend.

    ``retryable`` tells the caller whether resubmitting the same step can
    succeed. The workflow is only failed for non-retryable errors.
    """

    status_code = 502
    error_code = "tool_failed"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        tool: Optional[str] = None,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        merged = {"retryable": self.retryable}
        if tool:
            merged["tool"] = tool
        merged.update(detail or {})
        super().__init__(
            message, status_code=status_code, detail=merged, error_code=error_code
        )
        self.tool = tool


class AdapterTimeoutError(AdapterError):
    """The backend did not answer within the configured timeout (504)."""
    status_code = 504
    error_code = "tool_timeout"
    retryable = True


class AdapterUnavailableError(AdapterError):
    """The backend could not be reached or is overloaded (503)."""
    status_code = 503
    error_code = "tool_unavailable"
    retryable = True


class AdapterResponseError(AdapterError):
    """The backend rejected the request or sent something that is not a tool response (502)."""
    status_code = 502
    error_code = "tool_bad_response"
    retryable = True


class ToolExecutionError(AdapterError):
    """The backend reported a permanent failure for this step (502)."""
    status_code = 502
    error_code = "tool_failed"
    retryable = False


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "RequestCancelledError",
    "AdapterError",
    "AdapterTimeoutError",
    "AdapterUnavailableError",
    "AdapterResponseError",
    "ToolExecutionError",
]
