from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from accountia_auth.api.schemas import Envelope, ErrorBody
from accountia_auth.logging import get_logger, sanitize_error_message
from accountia_auth.service.errors import AuthError, AuthErrorKind
from accountia_auth.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_KIND_TO_STATUS = {
    AuthErrorKind.VALIDATION: 400,
    AuthErrorKind.AUTHENTICATION: 401,
    AuthErrorKind.AUTHORIZATION: 403,
    AuthErrorKind.NOT_FOUND: 404,
    AuthErrorKind.CONFLICT: 409,
    AuthErrorKind.RATE_LIMITED: 429,
    AuthErrorKind.INFRA: 500,
}

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
    500: "server_error",
}


def status_for_kind(kind: AuthErrorKind) -> int:
    return _KIND_TO_STATUS.get(kind, 500)


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(
        status_code=status_code, content=envelope.model_dump(), headers=headers
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Render domain, validation and unexpected errors as error envelopes."""

    @app.exception_handler(AuthError)
    async def handle_auth_error(request: Request, exc: AuthError):
        status_code = status_for_kind(exc.kind)
        if exc.kind is AuthErrorKind.INFRA:
            logger.error(
                "auth_infra_error",
                path=request.url.path,
                method=request.method,
                message=exc.message,
                cause=sanitize_error_message(str(exc.__cause__ or "")),
            )
            return _error_response(status_code, exc.message)

        logger.warning(
            "auth_error",
            path=request.url.path,
            method=request.method,
            kind=exc.kind.value,
            message=exc.message,
        )
        headers = None
        retry_after = exc.detail.get("retry_after_seconds")
        if exc.kind is AuthErrorKind.RATE_LIMITED and retry_after is not None:
            headers = {"Retry-After": str(retry_after)}
        return _error_response(
            status_code, exc.message, exc.detail or None, headers=headers
        )

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {
                "loc": [str(part) for part in err.get("loc", ())],
                "msg": err.get("msg", ""),
                "type": err.get("type", ""),
            }
            for err in exc.errors()
        ]
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            error_count=len(errors),
        )
        return _error_response(400, "Invalid request", errors, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message, headers=exc.headers)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
        return _error_response(500, "internal server error", code="server_error")


__all__ = ["register_exception_handlers", "status_for_kind"]
