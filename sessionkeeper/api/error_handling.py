from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from sessionkeeper.api.schemas import Envelope, ErrorBody
from sessionkeeper.logging import get_logger, sanitize_error_message
from sessionkeeper.service.errors import AuthenticationError, ServiceError
from sessionkeeper.storage.errors import ConstraintViolation, StorageError, StoreUnavailable

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "validation_error",
    409: "conflict",
    422: "validation_error",
    500: "server_error",
    503: "store_unavailable",
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
    headers = {"Retry-After": "1"} if status_code == 503 else None
    return JSONResponse(
        status_code=status_code, content=envelope.model_dump(mode="json"), headers=headers
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install envelope-producing handlers for service, storage and framework errors."""

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
        # Token failures carry no details back to the client
        details = None if isinstance(exc, AuthenticationError) else exc.detail or None
        return _error_response(
            exc.status_code, exc.client_message, details, code=exc.error_code
        )

    @app.exception_handler(StorageError)
    async def handle_storage_error(request: Request, exc: StorageError):
        if isinstance(exc, ConstraintViolation):
            logger.warning(
                "constraint_violation",
                path=request.url.path,
                method=request.method,
                message=exc.message,
                detail=exc.detail,
            )
            return _error_response(409, "conflicting write", code="conflict")
        logger.error(
            "storage_error",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            message=exc.message,
        )
        if isinstance(exc, StoreUnavailable):
            return _error_response(503, "token store unavailable", code="store_unavailable")
        return _error_response(500, "internal server error", code="server_error")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        logger.warning(
            "request_validation_error",
            path=request.url.path,
            method=request.method,
            errors=len(exc.errors()),
        )
        details = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg")} for err in exc.errors()
        ]
        return _error_response(400, "invalid request", details, code="validation_error")

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
        return _error_response(exc.status_code, message)

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
