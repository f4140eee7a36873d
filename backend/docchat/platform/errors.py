"""
Error types and the error-handling middleware for the document chat API.

Every error leaving the API has the shape:

    {"error": {"code": "...", "message": "...", "details": {...}}}

Status codes in use:
- 400 VALIDATION_ERROR       bad input (unknown setting key, empty value)
- 401 UNAUTHORIZED           no session, expired session, no stored credentials
- 403 FORBIDDEN              authenticated but missing a required role
- 404 NOT_FOUND              missing resource
- 404 BRAND_NOT_SUPPORTED    unknown or inactive brand
- 500 CONFIGURATION_ERROR    server misconfigured (e.g. SERVER_KEY unset)
- 500 INTERNAL_ERROR         anything unexpected
- 503 SERVICE_UNAVAILABLE    credential store or identity provider down

Messages for 500s are fixed strings; exception text and stack traces stay
in the server log.
"""

import logging
import uuid
from typing import Any, Optional

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from docchat.utils.encryption import ConfigurationError

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


class AppError(Exception):
    """
    Base class for errors that map onto an API response.

    Subclasses set `code`, `status_code` and `default_message`; callers
    usually only pass a message and optional details.
    """

    code = "INTERNAL_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "An unexpected error occurred"

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        self.message = message or self.default_message
        self.details = details or {}
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


class ValidationError(AppError):
    code = "VALIDATION_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid request"


class AuthenticationError(AppError):
    """The caller must sign in (again)."""

    code = "UNAUTHORIZED"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Unauthorized"


class PermissionDeniedError(AppError):
    code = "FORBIDDEN"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "You don't have the required role to access this resource"


class NotFoundError(AppError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, resource: str, identifier: Optional[str] = None):
        if identifier:
            message = f"{resource} '{identifier}' not found"
        else:
            message = f"{resource} not found"
        super().__init__(message)


class BrandNotSupportedError(AppError):
    """Brand code is unknown or its company is inactive."""

    code = "BRAND_NOT_SUPPORTED"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Brand not supported or inactive"

    def __init__(self, brand_code: Optional[str] = None):
        super().__init__(details={"brand_code": brand_code} if brand_code else None)


class ServiceUnavailableError(AppError):
    code = "SERVICE_UNAVAILABLE"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Service temporarily unavailable"


class ServerMisconfiguredError(AppError):
    code = "CONFIGURATION_ERROR"
    default_message = "Server is not configured for this operation"


def get_correlation_id(request: Request) -> str:
    """Use the caller's X-Correlation-ID when present, otherwise mint one."""
    return request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())


def to_app_error(exc: Exception, correlation_id: str) -> AppError:
    """Map any exception raised by a handler onto an AppError."""
    if isinstance(exc, AppError):
        return exc
    if isinstance(exc, HTTPException):
        return AppError(str(exc.detail), code="HTTP_ERROR", status_code=exc.status_code)
    if isinstance(exc, ConfigurationError):
        return ServerMisconfiguredError()
    return AppError(details={"correlation_id": correlation_id})


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Turns exceptions into the standard error body and tags every response."""

    async def dispatch(self, request: Request, call_next):
        correlation_id = get_correlation_id(request)
        request.state.correlation_id = correlation_id

        try:
            response = await call_next(request)
        except Exception as exc:
            error = to_app_error(exc, correlation_id)
            log_extra = {
                "correlation_id": correlation_id,
                "error_code": error.code,
                "status_code": error.status_code,
                "path": request.url.path,
                "method": request.method,
            }
            if isinstance(exc, ConfigurationError):
                logger.error("Server encryption is not configured", extra=log_extra)
            elif error.status_code >= 500 and not isinstance(exc, AppError):
                logger.exception(
                    "Unhandled exception",
                    extra={**log_extra, "error_type": type(exc).__name__},
                )
            else:
                logger.warning("Request failed", extra=log_extra)

            response = JSONResponse(status_code=error.status_code, content=error.to_dict())

        response.headers[CORRELATION_HEADER] = correlation_id
        return response
