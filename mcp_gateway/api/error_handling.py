from __future__ import annotations

import traceback

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from mcp_gateway.api.schemas import ErrorEnvelope
from mcp_gateway.config import get_settings
from mcp_gateway.logging import get_logger
from mcp_gateway.service.errors import InternalError, InvalidParams, ServiceError

logger = get_logger(__name__)


def _error_response(request: Request, exc: ServiceError) -> JSONResponse:
    """Render a ServiceError as the stable failure envelope.

    Production-like environments only see ``user_message``; elsewhere the
    internal message, metadata and traceback are included for debugging.
    """
    log_fn = logger.error if exc.reportable else logger.warning
    log_fn(
        "service_error_reported" if exc.reportable else "service_error",
        path=request.url.path,
        method=request.method,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        metadata=exc.metadata,
    )
    if get_settings().is_prod_like:
        envelope = ErrorEnvelope(message=exc.user_message, code=exc.code)
    else:
        envelope = ErrorEnvelope(
            message=exc.message,
            code=exc.code,
            metadata=exc.metadata,
            stack=traceback.format_exception(type(exc), exc, exc.__traceback__),
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=envelope.model_dump(mode="json", exclude_none=True),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install exception handlers mapping every failure to the error envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        return _error_response(request, exc)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        error = InvalidParams(
            "Request validation failed",
            metadata={"errors": [str(item.get("msg")) for item in exc.errors()]},
        )
        return _error_response(request, error)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if exc.status_code < 500:
            error: ServiceError = InvalidParams(
                str(exc.detail), status_code=exc.status_code
            )
        else:
            error = InternalError(str(exc.detail), status_code=exc.status_code)
        return _error_response(request, error)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        error = InternalError(str(exc) or type(exc).__name__, metadata={"raw": repr(exc)})
        return _error_response(request, error)
