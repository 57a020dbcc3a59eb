from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from psycopg import OperationalError
from redis.exceptions import RedisError
from starlette.exceptions import HTTPException

from lexgate.api.schemas import Envelope
from lexgate.logging import get_logger
from lexgate.service.errors import ERROR_TABLE, ErrorKind, ServiceError
from lexgate.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# Transport statuses raised outside the service layer, mapped to numeric codes
_STATUS_TO_KIND = {
    400: ErrorKind.INVALID_PARAM,
    401: ErrorKind.UNAUTHORIZED,
    403: ErrorKind.FORBIDDEN,
    404: ErrorKind.NOT_FOUND,
    405: ErrorKind.INVALID_PARAM,
    409: ErrorKind.CONFLICT,
    422: ErrorKind.INVALID_PARAM,
    429: ErrorKind.RATE_LIMITED,
    501: ErrorKind.NOT_IMPLEMENTED,
}


def _code_for_status(status_code: int) -> int:
    kind = _STATUS_TO_KIND.get(status_code, ErrorKind.INTERNAL)
    return ERROR_TABLE[kind].code


def _error_response(
    status_code: int,
    code: int,
    message: str,
    data: Any = None,
) -> JSONResponse:
    """Render a failure as the standard envelope."""
    envelope = Envelope(code=code, message=message, data=data)
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def error_response_for(kind: ErrorKind, message: str | None = None) -> JSONResponse:
    spec = ERROR_TABLE[kind]
    return _error_response(spec.status_code, spec.code, message or spec.message)


def _log_client_or_server(event: str, request: Request, status_code: int, **fields) -> None:
    log_fn = logger.error if status_code >= 500 else logger.warning
    log_fn(event, path=request.url.path, method=request.method, status_code=status_code, **fields)


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return ERROR_TABLE[ErrorKind.INVALID_PARAM].message
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = str(first.get("msg", "invalid value"))
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    return f"{location}: {message}" if location else message


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers so every failure leaves as a ``{code, message, data}`` envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        _log_client_or_server(
            "service_error",
            request,
            exc.status_code,
            error_kind=exc.kind.value,
            error_code=exc.code,
            message=exc.message,
        )
        return _error_response(exc.status_code, exc.code, exc.message, exc.detail or None)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        spec = ERROR_TABLE[ErrorKind.CONFLICT]
        return _error_response(spec.status_code, spec.code, exc.message, exc.detail)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        message = _validation_message(exc)
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            error_count=len(exc.errors()),
        )
        spec = ERROR_TABLE[ErrorKind.INVALID_PARAM]
        return _error_response(spec.status_code, spec.code, message)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        _log_client_or_server("http_error", request, exc.status_code, message=message)
        return _error_response(exc.status_code, _code_for_status(exc.status_code), message)

    @app.exception_handler(RedisError)
    async def handle_redis_error(request: Request, exc: RedisError):
        # Backend detail stays in the log, never in the response
        logger.error(
            "session_store_unavailable",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return error_response_for(ErrorKind.STORE_UNAVAILABLE)

    @app.exception_handler(OperationalError)
    async def handle_database_error(request: Request, exc: OperationalError):
        logger.error(
            "database_unavailable",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return error_response_for(ErrorKind.STORE_UNAVAILABLE)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return error_response_for(ErrorKind.INTERNAL)
