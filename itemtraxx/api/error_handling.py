from __future__ import annotations

from typing import Optional
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from itemtraxx.api.schemas import Envelope
from itemtraxx.logging import get_correlation_id, get_logger, sanitize_error_message
from itemtraxx.service.errors import ErrorKind, RateLimitedError, ServiceError
from itemtraxx.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: ErrorKind.VALIDATION.value,
    401: ErrorKind.UNAUTHENTICATED.value,
    403: ErrorKind.ACCESS_DENIED.value,
    404: ErrorKind.NOT_FOUND.value,
    409: ErrorKind.CONFLICT.value,
    422: ErrorKind.VALIDATION.value,
    429: ErrorKind.RATE_LIMITED.value,
    500: ErrorKind.SERVER.value,
    503: ErrorKind.UNAVAILABLE.value,
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, ErrorKind.SERVER.value)


def error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    *,
    retry_after_seconds: Optional[int] = None,
) -> JSONResponse:
    """Build the error envelope; 429s also carry a Retry-After header."""
    envelope = Envelope(
        status="error",
        error=message,
        code=code or _error_code_for_status(status_code),
        details=details or None,
        retry_after_seconds=retry_after_seconds,
        request_id=get_correlation_id() or str(uuid4()),
    )
    headers = None
    if retry_after_seconds is not None:
        headers = {"Retry-After": str(retry_after_seconds)}
    return JSONResponse(status_code=status_code, content=envelope.model_dump(), headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for domain and storage errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return error_response(409, exc.message, exc.detail, code=ErrorKind.CONFLICT.value)

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
            detail=exc.detail,
        )
        retry_after = None
        if isinstance(exc, RateLimitedError):
            retry_after = exc.retry_after_seconds
        message = exc.message
        if exc.error_code == ErrorKind.VALIDATION.value:
            message = sanitize_error_message(message)
        return error_response(
            exc.status_code,
            message,
            exc.detail,
            code=exc.error_code,
            retry_after_seconds=retry_after,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        logger.warning(
            "request_validation_error",
            path=request.url.path,
            method=request.method,
            errors=errors,
        )
        message = sanitize_error_message(errors[0]["msg"]) if errors else "Invalid request"
        return error_response(400, message, errors, code=ErrorKind.VALIDATION.value)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        # Routes raise HTTPException with {"error": {"code", "message", "details"}}
        if isinstance(exc.detail, dict) and isinstance(exc.detail.get("error"), dict):
            error_obj = exc.detail["error"]
            message = error_obj.get("message", "http error")
            code = error_obj.get("code")
            log_fn = logger.error if exc.status_code >= 500 else logger.warning
            log_fn(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                error_code=code,
                message=message,
            )
            return error_response(exc.status_code, message, error_obj.get("details"), code=code)
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error_fallback",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return error_response(exc.status_code, message)

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
        return error_response(500, "internal server error", code=ErrorKind.SERVER.value)
