from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from warden.api.schemas import Envelope, ErrorBody
from warden.logging import get_logger
from warden.service.errors import ServiceError
from warden.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    429: "rate_limited",
    500: "server_error",
}

# pydantic prefixes messages raised from field validators
_VALUE_ERROR_PREFIX = "Value error, "
_LOCATION_ROOTS = ("body", "query", "path")


def _error_code_for_status(status_code: int) -> str:
    default = "server_error" if status_code >= 500 else "validation_error"
    return _STATUS_TO_CODE.get(status_code, default)


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    body = ErrorBody(
        code=code or _error_code_for_status(status_code),
        message=message,
        details=details or None,
    )
    return JSONResponse(
        status_code=status_code,
        content=Envelope(status="error", error=body).model_dump(),
        headers=headers,
    )


def _log_failure(request: Request, event: str, status_code: int, **fields: Any) -> None:
    """Server faults log at error level, client mistakes at warning."""
    emit = logger.error if status_code >= 500 else logger.warning
    emit(event, path=request.url.path, method=request.method, status_code=status_code, **fields)


def _field_errors(exc: RequestValidationError) -> list[dict]:
    fields = []
    for err in exc.errors():
        location = ".".join(str(p) for p in err.get("loc", ()) if p not in _LOCATION_ROOTS)
        message = str(err.get("msg", "invalid value")).removeprefix(_VALUE_ERROR_PREFIX)
        fields.append({"field": location or None, "message": message})
    return fields


def register_exception_handlers(app: FastAPI) -> None:
    """Every failure leaves the API as an error envelope."""

    @app.exception_handler(ConstraintViolation)
    async def on_constraint_violation(request: Request, exc: ConstraintViolation):
        _log_failure(request, "constraint_violation", 409, message=exc.message, detail=exc.detail)
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(ServiceError)
    async def on_service_error(request: Request, exc: ServiceError):
        _log_failure(
            request, "service_error", exc.status_code, error_code=exc.error_code, message=exc.message
        )
        return _error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)

    @app.exception_handler(RequestValidationError)
    async def on_invalid_request(request: Request, exc: RequestValidationError):
        fields = _field_errors(exc)
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[f["field"] for f in fields],
        )
        message = fields[0]["message"] if fields else "invalid request"
        return _error_response(400, message, fields, code="validation_error")

    @app.exception_handler(StarletteHTTPException)
    async def on_http_exception(request: Request, exc: StarletteHTTPException):
        headers = getattr(exc, "headers", None)
        error = exc.detail.get("error") if isinstance(exc.detail, dict) else None
        if isinstance(error, dict):
            # raised by routes with a prebuilt envelope
            message = error.get("message", "http error")
            code = error.get("code")
            details = error.get("details")
        else:
            # router 404/405 and other framework errors
            message = exc.detail if isinstance(exc.detail, str) else "http error"
            code = None
            details = None
        if code is not None or exc.status_code >= 500:
            _log_failure(request, "http_error", exc.status_code, error_code=code, message=message)
        return _error_response(exc.status_code, message, details, code=code, headers=headers)

    @app.exception_handler(Exception)
    async def on_unhandled(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="server_error")


__all__ = ["register_exception_handlers"]
