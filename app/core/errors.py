import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    RATE_LIMIT = "rate_limit"
    DATA_ACCESS = "data_access"


# One row per kind; the boundary never inspects exception classes.
STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.AUTHENTICATION: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.RATE_LIMIT: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorKind.DATA_ACCESS: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


class AppError(Exception):
    """
    Base for every business and infrastructure outcome the API reports.

    Subclasses pin `kind` and a default machine-readable `error_code`;
    instances add the human-readable message and optional field errors,
    structured details and response headers.
    """

    kind: ErrorKind = ErrorKind.DATA_ACCESS
    default_message: str = "Application error"
    default_code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str | None = None,
        *,
        error_code: str | None = None,
        errors: list[dict[str, Any]] | None = None,
        details: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ):
        self.message = message or self.default_message
        super().__init__(self.message)
        self.error_code = error_code or self.default_code
        self.errors = errors or []
        self.details = details or {}
        self.headers = headers or {}
        self.timestamp = datetime.now(timezone.utc)

    @property
    def status_code(self) -> int:
        return STATUS_BY_KIND[self.kind]

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "status": "fail" if self.status_code < 500 else "error",
            "error_code": self.error_code,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.errors:
            body["errors"] = self.errors
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(AppError):
    kind = ErrorKind.VALIDATION
    default_message = "Validation failed"
    default_code = "VALIDATION_ERROR"


class AuthenticationError(AppError):
    kind = ErrorKind.AUTHENTICATION
    default_message = "Authentication failed"
    default_code = "AUTH_FAILED"


class NotFoundError(AppError):
    kind = ErrorKind.NOT_FOUND
    default_message = "Resource not found"
    default_code = "RESOURCE_NOT_FOUND"


class ConflictError(AppError):
    kind = ErrorKind.CONFLICT
    default_message = "Resource already exists"
    default_code = "CONFLICT"


class RateLimitError(AppError):
    kind = ErrorKind.RATE_LIMIT
    default_message = "Too many requests"
    default_code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, message: str | None = None, *, retry_after: int, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after
        self.details.setdefault("retry_after", retry_after)
        self.headers.setdefault("Retry-After", str(retry_after))


class DataAccessError(AppError):
    kind = ErrorKind.DATA_ACCESS
    default_message = "Database operation failed"
    default_code = "DB_ERROR"


def invalid_date_error(field: str = "dueDate") -> ValidationError:
    return ValidationError(
        "Invalid due date format",
        errors=[{"field": field, "message": "Date format is invalid"}],
    )


def register_exception_handlers(app: FastAPI, *, expose_errors: bool) -> None:
    """
    Install the error boundary.

    expose_errors controls whether internal failure detail (the underlying
    exception text) is echoed back; only development deployments enable it.
    """

    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        body = exc.to_dict()
        if exc.kind is ErrorKind.DATA_ACCESS:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}", exc_info=exc.__cause__)
            cause = exc.__cause__
            body["error"] = str(cause) if expose_errors and cause else "Something went wrong"
        return JSONResponse(status_code=exc.status_code, content=body, headers=exc.headers or None)

    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            {
                "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body") or "body",
                "message": err.get("msg", "Invalid value"),
            }
            for err in exc.errors()
        ]
        error = ValidationError("Validation failed", error_code="REQUEST_VALIDATION_ERROR", errors=errors)
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "status": "error",
                "error_code": "INTERNAL_ERROR",
                "message": "Internal Server Error",
                "error": str(exc) if expose_errors else "Something went wrong",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
