from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from realmauth.api.schemas import Envelope, ErrorBody
from realmauth.logging import get_logger
from realmauth.service.errors import ServiceError
from realmauth.service.results import ErrorKind, OperationResult
from realmauth.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: ErrorKind.INVALID_INPUT.value,
    401: ErrorKind.UNAUTHORIZED.value,
    403: ErrorKind.UNAUTHORIZED.value,
    404: ErrorKind.NOT_FOUND.value,
    405: ErrorKind.INVALID_INPUT.value,
    409: ErrorKind.CONFLICT.value,
    410: ErrorKind.EXPIRED.value,
    422: ErrorKind.INVALID_INPUT.value,
    429: ErrorKind.RATE_LIMITED.value,
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, ErrorKind.INTERNAL.value)


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    error_body = ErrorBody(
        code=code or _error_code_for_status(status_code),
        message=message,
        details=details,
    )
    envelope = Envelope(status="error", message=message, error=error_body)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(envelope))


def result_response(result: OperationResult, *, success_status: int = 200) -> JSONResponse:
    """Render an ``OperationResult`` as an envelope with a matching status code."""
    if result.ok:
        envelope = Envelope(status="ok", message=result.message or None, data=result.data)
        return JSONResponse(status_code=success_status, content=jsonable_encoder(envelope))
    return _error_response(
        result.status_code,
        result.message,
        result.detail or None,
        code=result.kind.value,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install envelope-producing handlers for errors raised outside the services."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, exc.detail, code=ErrorKind.CONFLICT.value)

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        return _error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", [])), "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        logger.info("request_validation_failed", path=request.url.path, errors=len(errors))
        return _error_response(
            400, "request validation failed", errors, code=ErrorKind.INVALID_INPUT.value
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        details = exc.detail if isinstance(exc.detail, (dict, list)) else None
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message, details)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code=ErrorKind.INTERNAL.value)


__all__ = ["register_exception_handlers", "result_response"]
