"""
HTTP middleware and exception handlers.

Every error leaves the API as ``{"error": {code, kind, message, details}}``
with the request's correlation id echoed in ``X-Correlation-ID``.
"""
import time
from typing import Any, Callable, Dict

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from lastmile.core.exceptions import AppException, ErrorCode
from lastmile.core.logging import get_correlation_id, get_logger, set_correlation_id

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"

# SSE connections stay open for minutes
_UNLOGGED_SUFFIXES = ("/stream",)


def _error_response(status_code: int, code: str, kind: str, message: str, details: Dict[str, Any]) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "kind": kind, "message": message, "details": details}},
        headers={CORRELATION_HEADER: get_correlation_id()},
    )


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Reuse the caller's correlation id or mint one, and echo it back."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = set_correlation_id(request.headers.get(CORRELATION_HEADER))
        request.state.correlation_id = correlation_id
        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        method, path = request.method, request.url.path
        if path.endswith(_UNLOGGED_SUFFIXES):
            return await call_next(request)

        started = time.perf_counter()
        logger.info(
            f"Request started: {method} {path}",
            extra_data={
                "method": method,
                "path": path,
                "query_params": dict(request.query_params),
                "client_host": request.client.host if request.client else None,
            },
        )
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Request failed: {method} {path}",
                extra_data={
                    "method": method,
                    "path": path,
                    "duration_seconds": round(time.perf_counter() - started, 4),
                    "error": str(e),
                },
                exc_info=True,
            )
            raise

        log = logger.info if response.status_code < 400 else logger.warning
        log(
            f"Request completed: {method} {path}",
            extra_data={
                "method": method,
                "path": path,
                "status_code": response.status_code,
                "duration_seconds": round(time.perf_counter() - started, 4),
            },
        )
        return response


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    logger.warning(
        f"Application exception: {exc.kind}",
        extra_data={
            "error_code": exc.error_code.value,
            "kind": exc.kind,
            "message": exc.message,
            "details": exc.details,
            "path": request.url.path,
        },
    )
    return _error_response(exc.status_code, exc.error_code.value, exc.kind, exc.message, exc.details)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed payloads and query strings; stays a 422 in the common error shape."""
    errors = [
        {
            "field": ".".join(str(part) for part in error.get("loc", ())),
            "message": error.get("msg", ""),
            "type": error.get("type", ""),
        }
        for error in exc.errors()
    ]
    logger.info(
        "Request validation failed",
        extra_data={"path": request.url.path, "errors": errors},
    )
    return _error_response(
        422, ErrorCode.VALIDATION_ERROR.value, "Validation", "Request validation failed", {"errors": errors}
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything unexpected becomes an opaque 500; the detail only goes to the log."""
    logger.error(
        f"Unhandled exception: {type(exc).__name__}",
        extra_data={
            "exception_type": type(exc).__name__,
            "message": str(exc),
            "path": request.url.path,
        },
        exc_info=True,
    )
    return _error_response(500, ErrorCode.INTERNAL_ERROR.value, "Internal", "An unexpected error occurred", {})


def setup_middleware(app: FastAPI) -> None:
    # added last runs first, so the correlation id is set before request logging
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
