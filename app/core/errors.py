"""
Error Handling
==============

Standardized error codes, premium reconciliation errors and exception handlers.
"""

import logging
from typing import Optional

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# =============================================================================
# Error Codes
# =============================================================================

class ErrorCodes:
    """Standardized error codes."""

    # Premium reconciliation
    INVALID_PAYLOAD = "INVALID_PAYLOAD"
    SUBSCRIBER_NOT_FOUND = "SUBSCRIBER_NOT_FOUND"
    IDENTITY_UNRESOLVABLE = "IDENTITY_UNRESOLVABLE"
    APP_USER_ID_MISSING = "APP_USER_ID_MISSING"
    RESTORE_SOURCE_NOT_FOUND = "RESTORE_SOURCE_NOT_FOUND"
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"
    TRANSACTION_CONFLICT = "TRANSACTION_CONFLICT"

    # General
    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"


# =============================================================================
# Custom Exceptions
# =============================================================================

class AppException(HTTPException):
    """Base application exception with structured error response."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        field: Optional[str] = None,
        **extra,
    ):
        self.code = code
        self.message = message
        self.field = field
        self.extra = extra

        detail = {
            "code": code,
            "message": message,
        }

        if field:
            detail["field"] = field

        detail.update(extra)

        super().__init__(status_code=status_code, detail=detail)

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class InvalidPayloadError(AppException):
    """Malformed client-submitted snapshot. No record is mutated."""

    def __init__(self, message: str = "customerInfo payload is required", **extra):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            code=ErrorCodes.INVALID_PAYLOAD,
            message=message,
            **extra,
        )


class IdentityUnresolvableError(AppException):
    """A billing event could not be mapped to exactly one account."""

    def __init__(self, message: str = "Missing user ID in payload", **extra):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            code=ErrorCodes.IDENTITY_UNRESOLVABLE,
            message=message,
            **extra,
        )


class AppUserIdMissingError(AppException):
    """No billing identity could be derived for a restore."""

    def __init__(self, message: str = "RevenueCat app user id could not be determined"):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            code=ErrorCodes.APP_USER_ID_MISSING,
            message=message,
        )


class RestoreSourceNotFoundError(AppException):
    """No deleted-account record and no email to restore from."""

    def __init__(
        self,
        code: str = ErrorCodes.RESTORE_SOURCE_NOT_FOUND,
        message: str = "No previous premium record found",
        status_code: int = status.HTTP_404_NOT_FOUND,
    ):
        super().__init__(status_code=status_code, code=code, message=message)


class SubscriberNotFoundError(AppException):
    """The billing provider has no subscriber for this app user id."""

    def __init__(self, app_user_id: str):
        self.app_user_id = app_user_id
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            code=ErrorCodes.SUBSCRIBER_NOT_FOUND,
            message="Subscriber not found at billing provider",
        )


class ProviderUnavailableError(AppException):
    """Transient billing provider failure. Callers retry the whole operation."""

    def __init__(
        self,
        message: str = "Billing provider temporarily unavailable",
        upstream_status: Optional[int] = None,
    ):
        self.upstream_status = upstream_status
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            code=ErrorCodes.PROVIDER_UNAVAILABLE,
            message=message,
        )


class TransactionConflictError(AppException):
    """Store-level contention. The reconcile call must be re-run as a whole."""

    def __init__(self, message: str = "Concurrent premium update, retry"):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            code=ErrorCodes.TRANSACTION_CONFLICT,
            message=message,
        )


# =============================================================================
# Exception Handlers
# =============================================================================

async def app_exception_handler(
    request: Request,
    exc: AppException,
) -> JSONResponse:
    """Handler for AppException."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": exc.detail,
        },
    )


async def http_exception_handler(
    request: Request,
    exc: HTTPException,
) -> JSONResponse:
    """Handler for standard HTTPException."""
    if isinstance(exc.detail, dict) and "code" in exc.detail:
        error = exc.detail
    else:
        error = {
            "code": "HTTP_ERROR",
            "message": str(exc.detail),
        }

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": error,
        },
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handler for request validation errors."""
    errors = exc.errors() if hasattr(exc, "errors") else []
    if errors:
        first_error = errors[0]
        field = ".".join(str(loc) for loc in first_error.get("loc", []))
        message = first_error.get("msg", "Validation error")
    else:
        field = None
        message = str(exc) or "Validation error"

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "success": False,
            "error": {
                "code": ErrorCodes.VALIDATION_ERROR,
                "message": message,
                "field": field,
            },
        },
    )


async def global_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled error: %s: %s", type(exc).__name__, exc)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error": {
                "code": ErrorCodes.INTERNAL_ERROR,
                "message": "An unexpected error occurred",
            },
        },
    )


def setup_exception_handlers(app):
    """
    Register exception handlers with FastAPI app.

    Usage:
        from app.core.errors import setup_exception_handlers
        setup_exception_handlers(app)
    """
    from fastapi.exceptions import RequestValidationError

    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
