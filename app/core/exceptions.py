from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse
from pymongo.errors import PyMongoError


class AppError(Exception):
    """Base application error with consistent schema."""

    def __init__(
        self,
        message: str,
        code: str = "ERROR",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, code="UNAUTHORIZED", status_code=status.HTTP_401_UNAUTHORIZED)


class ForbiddenError(AppError):
    def __init__(self, message: str = "Forbidden"):
        super().__init__(message, code="FORBIDDEN", status_code=status.HTTP_403_FORBIDDEN)


class NotFoundError(AppError):
    def __init__(self, message: str = "Not found"):
        super().__init__(message, code="NOT_FOUND", status_code=status.HTTP_404_NOT_FOUND)


class ConflictError(AppError):
    def __init__(self, message: str = "Conflict", details: dict[str, Any] | None = None):
        super().__init__(message, code="CONFLICT", status_code=status.HTTP_409_CONFLICT, details=details)


class BadRequestError(AppError):
    def __init__(self, message: str = "Bad request", details: dict[str, Any] | None = None):
        super().__init__(message, code="BAD_REQUEST", status_code=status.HTTP_400_BAD_REQUEST, details=details)


# Credit policy errors: returned to the caller, never retried by the service.


class AccountSuspendedError(AppError):
    def __init__(self, message: str = "Account is suspended"):
        super().__init__(message, code="ACCOUNT_SUSPENDED", status_code=status.HTTP_403_FORBIDDEN)


class DailyLimitReachedError(AppError):
    def __init__(self, daily_usage: int, daily_limit: int):
        super().__init__(
            "Daily limit reached",
            code="DAILY_LIMIT_REACHED",
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            details={"daily_usage": daily_usage, "daily_limit": daily_limit},
        )


class InsufficientCreditsError(AppError):
    def __init__(self, message: str = "Insufficient credits", details: dict[str, Any] | None = None):
        super().__init__(
            message,
            code="INSUFFICIENT_CREDITS",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            details=details,
        )


class ServiceUnavailableError(AppError):
    def __init__(self, message: str = "AI service is temporarily unavailable"):
        super().__init__(message, code="SERVICE_UNAVAILABLE", status_code=status.HTTP_503_SERVICE_UNAVAILABLE)


class AlreadyRolledBackError(ConflictError):
    def __init__(self, request_id: str):
        super().__init__("Reservation was already rolled back", details={"request_id": request_id})
        self.code = "ALREADY_ROLLED_BACK"


class AlreadyCompletedError(ConflictError):
    def __init__(self, request_id: str):
        super().__init__("Reservation was already completed", details={"request_id": request_id})
        self.code = "ALREADY_COMPLETED"


def _error_body(request: Request, message: str, code: str, details: dict[str, Any]) -> dict[str, Any]:
    body: dict[str, Any] = {
        "error": {
            "message": message,
            "code": code,
            "details": details,
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return body


def error_response(request: Request, exc: AppError) -> ORJSONResponse:
    return ORJSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, exc.message, exc.code, exc.details),
    )


async def app_exception_handler(request: Request, exc: AppError) -> ORJSONResponse:
    return error_response(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=_error_body(request, "Validation error", "VALIDATION_ERROR", {"errors": exc.errors()}),
    )


async def storage_exception_handler(request: Request, exc: PyMongoError) -> ORJSONResponse:
    """Transient storage failures surface as 503 so clients retry with the same request id."""
    from app.core.logging import get_logger
    get_logger(__name__).error("storage_error", error=str(exc), error_type=type(exc).__name__)
    return error_response(request, ServiceUnavailableError("Storage temporarily unavailable"))


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from app.core.logging import get_logger
    get_logger(__name__).exception("unhandled_exception", exc_info=exc)
    return ORJSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body(request, "Internal server error", "INTERNAL_ERROR", {}),
    )
