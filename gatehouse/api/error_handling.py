from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from gatehouse.api.schemas import Envelope, ErrorBody
from gatehouse.logging import get_logger, sanitize_error_message
from gatehouse.service.errors import ErrorKind, RateLimited, ServiceError

logger = get_logger(__name__)

# The only place a service failure kind becomes an HTTP status
KIND_STATUS: Dict[ErrorKind, int] = {
    ErrorKind.INVALID_CREDENTIALS: 401,
    ErrorKind.ACCOUNT_LOCKED: 401,
    ErrorKind.ACCOUNT_INACTIVE: 401,
    ErrorKind.OTP_SESSION_NOT_FOUND: 400,
    ErrorKind.OTP_MISMATCH: 400,
    ErrorKind.OTP_ATTEMPTS_EXHAUSTED: 400,
    ErrorKind.OTP_RESEND_EXHAUSTED: 400,
    ErrorKind.TOKEN_EXPIRED: 401,
    ErrorKind.TOKEN_INVALID: 401,
    ErrorKind.TOKEN_REVOKED: 401,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.DEPENDENCY_UNAVAILABLE: 503,
}

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    422: "validation_error",
    429: "rate_limited",
    500: "server_error",
    503: "dependency_unavailable",
}


def status_for(exc: ServiceError) -> int:
    return KIND_STATUS.get(exc.kind, 500)


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: Any = None,
    code: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    error_body = ErrorBody(
        code=code or _error_code_for_status(status_code),
        message=message,
        details=details,
    )
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(envelope.model_dump()),
        headers=headers,
    )


def _log_for_status(status_code: int):
    return logger.error if status_code >= 500 else logger.warning


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as the standard error envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        status_code = status_for(exc)
        _log_for_status(status_code)(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        headers = None
        if isinstance(exc, RateLimited):
            headers = {"Retry-After": str(exc.retry_after)}
        return _error_response(
            status_code,
            exc.message,
            exc.detail or None,
            code=exc.error_code,
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            error_count=len(errors),
        )
        return _error_response(422, "request validation failed", errors, code="validation_error")

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        if isinstance(exc.detail, dict) and isinstance(exc.detail.get("error"), dict):
            error_obj = exc.detail["error"]
            message = error_obj.get("message", "http error")
            code = error_obj.get("code")
            details = error_obj.get("details")
        else:
            message = str(exc.detail) if exc.detail else "http error"
            code = None
            details = None
        if exc.status_code >= 400:
            _log_for_status(exc.status_code)(
                "http_client_error" if exc.status_code < 500 else "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                error_code=code,
                message=message,
            )
        return _error_response(
            exc.status_code,
            sanitize_error_message(message),
            details,
            code=code,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="server_error")
