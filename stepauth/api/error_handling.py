from __future__ import annotations

from typing import Any, List

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from stepauth.api.schemas import envelope
from stepauth.config import get_settings
from stepauth.logging import get_logger
from stepauth.service.errors import ServiceError, ValidationError

logger = get_logger(__name__)

INTERNAL_ERROR_MESSAGE = "Internal server error"


def _error_response(status_code: int, message: str, error: Any = None) -> JSONResponse:
    body = envelope(status_code, message)
    # detail only leaves the process in development
    if error is not None and get_settings().is_development:
        body["error"] = error
    return JSONResponse(status_code=status_code, content=body)


def _validation_response(message: str, errors: List[str]) -> JSONResponse:
    return JSONResponse(status_code=400, content=envelope(400, message, {"errors": errors}))


def _describe_validation_error(err: dict) -> str:
    loc = [str(part) for part in err.get("loc", ()) if part != "body"]
    field = ".".join(loc) or "body"
    return f"{field}: {err.get('msg', 'invalid value')}"


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as a ``{status, message, ...}`` envelope."""

    @app.exception_handler(ValidationError)
    async def handle_validation_error(request: Request, exc: ValidationError):
        logger.warning(
            "validation_failed",
            path=request.url.path,
            method=request.method,
            errors=exc.errors,
        )
        return _validation_response(exc.message, exc.errors)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError):
        errors = [_describe_validation_error(err) for err in exc.errors()]
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            errors=errors,
        )
        return _validation_response("Validation failed", errors)

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
        if exc.status_code >= 500:
            return _error_response(exc.status_code, INTERNAL_ERROR_MESSAGE, exc.message)
        return _error_response(exc.status_code, exc.message)

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
            error=str(exc),
        )
        return _error_response(500, INTERNAL_ERROR_MESSAGE, str(exc))
