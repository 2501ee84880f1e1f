from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from walletauth.api.schemas import Envelope, ErrorBody
from walletauth.logging import get_logger, sanitize_error_message
from walletauth.service.errors import ServerError, ServiceError
from walletauth.storage.errors import ConstraintViolation, StorageUnavailable

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    423: "account_locked",
    429: "rate_limited",
    500: "server_error",
    503: "service_unavailable",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(success=False, message=message, error=error_body)
    return JSONResponse(
        status_code=status_code, content=envelope.model_dump(mode="json"), headers=headers
    )


def _retry_after_header(details) -> dict | None:
    if isinstance(details, dict) and details.get("retry_after"):
        return {"Retry-After": str(int(details["retry_after"]))}
    return None


def _validation_details(exc: RequestValidationError) -> list:
    details = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part != "body"]
        details.append(
            {
                "field": ".".join(location) or None,
                "message": error.get("msg", "invalid value"),
                "type": error.get("type"),
            }
        )
    return details


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as an error envelope with a stable code."""

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _validation_details(exc)
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[d["field"] for d in details],
        )
        return _error_response(400, "request validation failed", details, code="validation_error")

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

    @app.exception_handler(StorageUnavailable)
    async def handle_storage_unavailable(request: Request, exc: StorageUnavailable):
        logger.error(
            "storage_unavailable",
            path=request.url.path,
            method=request.method,
            operation=exc.operation,
        )
        return _error_response(503, "service temporarily unavailable", code="service_unavailable")

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
        )
        message = exc.message
        if exc.status_code == 500:
            message = sanitize_error_message(message)
        return _error_response(
            exc.status_code,
            message,
            exc.detail or None,
            code=error_code,
            headers=_retry_after_header(exc.detail),
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
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
            return _error_response(
                exc.status_code,
                message,
                details,
                code=code,
                headers=exc.headers or _retry_after_header(details),
            )
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error_fallback",
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
        )
        error = ServerError("internal server error")
        return _error_response(error.status_code, error.message, code=error.error_code)
