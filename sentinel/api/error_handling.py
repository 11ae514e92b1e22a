from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from sentinel.api.schemas import Envelope, ErrorBody
from sentinel.logging import get_correlation_id, get_logger
from sentinel.service.errors import ServiceError, StoreUnavailableError
from sentinel.storage.errors import ConstraintViolation, StoreUnavailable

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    429: "rate_limited",
    503: "store_unavailable",
}


def error_response(
    status_code: int,
    message: str,
    details: Any = None,
    code: Optional[str] = None,
) -> JSONResponse:
    """Render an error envelope, reusing the request's correlation id when set."""
    body = ErrorBody(
        code=code or _STATUS_TO_CODE.get(status_code, "server_error"),
        message=message,
        details=details,
    )
    envelope = Envelope(status="error", error=body)
    request_id = get_correlation_id()
    if request_id:
        envelope.request_id = request_id
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def _log_rejection(request: Request, event: str, status_code: int, **context: Any) -> None:
    log = logger.error if status_code >= 500 else logger.warning
    log(event, path=request.url.path, method=request.method, status_code=status_code, **context)


def register_exception_handlers(app: FastAPI) -> None:
    """Render storage, service and HTTP errors as envelopes."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        _log_rejection(request, "constraint_violation", 409, message=exc.message)
        return error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(StoreUnavailable)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailable):
        # backend detail stays in the log
        _log_rejection(request, "store_unavailable", 503, message=exc.message, detail=exc.detail)
        public = StoreUnavailableError()
        return error_response(public.status_code, public.message, code=public.error_code)

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        _log_rejection(
            request,
            "service_error",
            exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        return error_response(exc.status_code, exc.message, exc.detail or None, code=exc.error_code)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        detail = exc.detail
        if isinstance(detail, dict) and isinstance(detail.get("error"), dict):
            # raised by routes._http_error
            error = detail["error"]
            message = error.get("message", "http error")
            code = error.get("code")
            details = error.get("details")
        else:
            message = detail if isinstance(detail, str) else "http error"
            code = None
            details = None if isinstance(detail, str) else detail
        _log_rejection(request, "http_error", exc.status_code, error_code=code, message=message)
        return error_response(exc.status_code, message, details, code=code)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return error_response(500, "internal server error", code="server_error")
