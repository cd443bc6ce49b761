from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from authkeep.api.schemas import Envelope, ErrorBody
from authkeep.logging import get_logger
from authkeep.service.errors import ServiceError
from authkeep.storage.errors import ConstraintViolation, StoreUnavailable

logger = get_logger(__name__)

GENERIC_SERVER_MESSAGE = "internal server error"

# Error codes for statuses raised without a ServiceError
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    404: "not_found",
    409: "conflict",
    429: "rate_limited",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: Any = None,
    code: Optional[str] = None,
) -> JSONResponse:
    body = ErrorBody(
        code=code or _error_code_for_status(status_code), message=message, details=details
    )
    return JSONResponse(
        status_code=status_code,
        content=Envelope(status="error", error=body).model_dump(),
    )


def _validation_details(exc: RequestValidationError) -> list[dict]:
    # Field locations and messages only; submitted values may be passwords.
    return [
        {
            "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
            "message": err.get("msg", "invalid value"),
        }
        for err in exc.errors()
    ]


def _log(request: Request, level: str, event: str, **fields: Any) -> None:
    getattr(logger, level)(event, path=request.url.path, method=request.method, **fields)


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain, storage and framework errors onto the error envelope.

    Only stable codes and fixed messages reach the client for 5xx responses;
    the underlying error is logged.
    """

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _validation_details(exc)
        _log(request, "info", "request_validation_failed", fields=[d["field"] for d in details])
        return _error_response(400, "invalid request body", details, code="validation_error")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        level = "error" if exc.status_code >= 500 else "info"
        _log(request, level, "service_error", error_code=exc.error_code, status_code=exc.status_code)
        return _error_response(
            exc.status_code, exc.message, exc.detail or None, code=exc.error_code
        )

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        _log(request, "warning", "constraint_violation", error=exc.message)
        return _error_response(409, exc.message, exc.detail or None, code="conflict")

    @app.exception_handler(StoreUnavailable)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailable):
        _log(request, "error", "store_unavailable", store=exc.store, error=exc.message)
        return _error_response(500, GENERIC_SERVER_MESSAGE)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if exc.status_code >= 500:
            _log(request, "error", "http_error", status_code=exc.status_code)
            return _error_response(exc.status_code, GENERIC_SERVER_MESSAGE)
        message = exc.detail if isinstance(exc.detail, str) else "request failed"
        return _error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, GENERIC_SERVER_MESSAGE)
