from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from movieauth.api.schemas import Envelope, ErrorBody
from movieauth.config import get_settings
from movieauth.logging import get_logger, sanitize_error_message
from movieauth.service.errors import RateLimitedError, ServiceError
from movieauth.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# stable error codes for bare HTTPExceptions raised by FastAPI itself
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    423: "account_locked",
    429: "rate_limited",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    if status_code in _STATUS_TO_CODE:
        return _STATUS_TO_CODE[status_code]
    return "validation_error" if 400 <= status_code < 500 else "server_error"


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details or None)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(
        status_code=status_code, content=envelope.model_dump(mode="json"), headers=headers
    )


def _validation_details(exc: RequestValidationError) -> list[dict]:
    return [
        {
            "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
            "message": err.get("msg", "invalid value"),
            "type": err.get("type"),
        }
        for err in exc.errors()
    ]


def _log_failure(request: Request, event: str, status_code: int, **fields) -> None:
    emit = logger.error if status_code >= 500 else logger.warning
    emit(event, path=request.url.path, method=request.method, status_code=status_code, **fields)


def register_exception_handlers(app: FastAPI) -> None:
    """Install envelope-producing handlers for service, storage and framework errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        _log_failure(request, "constraint_violation", 409, field=exc.field)
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        _log_failure(request, "service_error", exc.status_code, error_code=exc.error_code)
        headers = (
            {"Retry-After": str(exc.retry_after)} if isinstance(exc, RateLimitedError) else None
        )
        return _error_response(
            exc.status_code, exc.message, exc.detail, code=exc.error_code, headers=headers
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _validation_details(exc)
        _log_failure(
            request, "request_validation_failed", 400, fields=[d["field"] for d in details]
        )
        return _error_response(
            400, "Validation failed", {"errors": details}, code="validation_error"
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        # routers raise HTTPException with a prebuilt {"error": {...}} payload
        payload = exc.detail.get("error") if isinstance(exc.detail, dict) else None
        if isinstance(payload, dict):
            message = payload.get("message", "http error")
            code, details = payload.get("code"), payload.get("details")
        else:
            message = exc.detail if isinstance(exc.detail, str) else "http error"
            code, details = None, None
        _log_failure(request, "http_error", exc.status_code, error_code=code)
        return _error_response(exc.status_code, message, details, code=code, headers=exc.headers)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        details = None
        if get_settings().dev_mode:
            details = {
                "error_type": type(exc).__name__,
                "error": sanitize_error_message(str(exc)),
            }
        return _error_response(500, "An internal error occurred", details, code="server_error")
