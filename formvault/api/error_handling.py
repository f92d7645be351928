from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from formvault.api.schemas import Envelope, ErrorBody
from formvault.logging import get_logger
from formvault.service.errors import ServiceError
from formvault.storage.errors import (
    ConstraintViolation,
    FieldOverflow,
    PersistenceFailure,
    QuotaExceeded,
)

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    404: "not_found",
    409: "conflict",
    500: "server_error",
    503: "storage_unavailable",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump(mode="json"))


def register_exception_handlers(app: FastAPI) -> None:
    """Install the envelope-rendering handlers for service and storage errors."""

    @app.exception_handler(FieldOverflow)
    async def handle_field_overflow(request: Request, exc: FieldOverflow):
        logger.warning(
            "field_overflow",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(400, exc.message, exc.detail, code="validation_error")

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

    @app.exception_handler(QuotaExceeded)
    async def handle_quota_exceeded(request: Request, exc: QuotaExceeded):
        logger.error(
            "datastore_quota_exceeded",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(503, exc.message, exc.detail, code="quota_exceeded")

    @app.exception_handler(PersistenceFailure)
    async def handle_persistence_failure(request: Request, exc: PersistenceFailure):
        logger.error(
            "datastore_unavailable",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(503, exc.message, exc.detail, code="storage_unavailable")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        error_code = getattr(exc, "error_code", None)
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=error_code,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(exc.status_code, exc.message, exc.detail, code=error_code)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        # envelope-shaped detail built by routes._http_error
        if isinstance(exc.detail, dict) and isinstance(exc.detail.get("error"), dict):
            error_obj = exc.detail["error"]
            message = error_obj.get("message", "http error")
            code = error_obj.get("code")
            details = error_obj.get("details")
            log_fn = logger.error if exc.status_code >= 500 else logger.warning
            log_fn(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                error_code=code,
                message=message,
            )
            return _error_response(exc.status_code, message, details, code=code)
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error_fallback",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message)

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
        return _error_response(500, "internal server error", code="server_error")
