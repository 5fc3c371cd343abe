"""Exception handlers producing the JSON error envelope.

Every failure leaves the API as::

    {"success": false,
     "error": {"code", "message", "statusCode", "correlationId", "details"?, "stack"?}}
"""

import traceback
from typing import Any, Optional
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from authledger.errors import AppError
from authledger.repositories.base import DuplicateKeyError, InvalidIdentifierError

logger = structlog.get_logger(__name__)

_STATUS_TO_CODE = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    423: "ACCOUNT_LOCKED",
    500: "INTERNAL_ERROR",
}


def _correlation_id(request: Request) -> str:
    return getattr(request.state, "correlation_id", None) or str(uuid4())


def error_response(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    details: Optional[Any] = None,
    exc: Optional[BaseException] = None,
) -> JSONResponse:
    """Build the error envelope; stack traces are included outside production."""
    correlation_id = _correlation_id(request)
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "statusCode": status_code,
        "correlationId": correlation_id,
    }
    if details is not None:
        error["details"] = details

    settings = getattr(request.app.state, "settings", None)
    if exc is not None and settings is not None and not settings.is_production:
        error["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))

    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": error},
        headers={"X-Correlation-Id": correlation_id},
    )


def _field_errors(exc: RequestValidationError) -> list[dict[str, str]]:
    errors = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        message = err.get("msg", "Invalid value")
        # pydantic prefixes messages raised from validators
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        errors.append({"field": ".".join(loc) or "body", "message": message})
    return errors


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers for domain, storage, validation and uncaught errors."""

    @app.exception_handler(AppError)
    async def handle_app_error(request: Request, exc: AppError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "app_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.code,
            message=exc.message,
        )
        return error_response(
            request, exc.status_code, exc.code, exc.message, exc.details, exc=exc
        )

    @app.exception_handler(DuplicateKeyError)
    async def handle_duplicate_key(request: Request, exc: DuplicateKeyError):
        logger.warning("duplicate_key", path=request.url.path, field=exc.field)
        return error_response(
            request,
            409,
            "CONFLICT",
            f"{exc.field} already exists",
            {"field": exc.field},
        )

    @app.exception_handler(InvalidIdentifierError)
    async def handle_invalid_identifier(request: Request, exc: InvalidIdentifierError):
        logger.warning("invalid_identifier", path=request.url.path, field=exc.field)
        return error_response(
            request,
            400,
            "VALIDATION_ERROR",
            f"Invalid {exc.field}",
            {"field": exc.field, "value": str(exc.value)},
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        errors = _field_errors(exc)
        logger.warning(
            "validation_error",
            path=request.url.path,
            method=request.method,
            fields=[e["field"] for e in errors],
        )
        message = errors[0]["message"] if len(errors) == 1 else "Validation failed"
        return error_response(
            request, 400, "VALIDATION_ERROR", message, {"errors": errors}
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        code = _STATUS_TO_CODE.get(exc.status_code, "HTTP_ERROR")
        message = exc.detail if isinstance(exc.detail, str) else "HTTP error"
        return error_response(request, exc.status_code, code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return error_response(
            request, 500, "INTERNAL_ERROR", "Internal server error", exc=exc
        )
