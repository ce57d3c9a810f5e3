"""
Structured logging.

Every line is a JSON object carrying the correlation id of the current request
or Celery task and whatever context fields (delivery_id, courier_id) were
bound around the current dispatch or tracking operation. ``DEBUG=true``
switches to a single-line text format for local work.

    logger = get_logger(__name__)
    logger.info("Courier claimed", extra_data={"delivery_id": 12, "courier_id": 3})
"""
import json
import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Iterator

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")
log_context_var: ContextVar[dict[str, Any]] = ContextVar("log_context", default={})

_TEXT_FORMAT = "%(asctime)s | {app} | %(levelname)-8s | %(name)s | [%(correlation_id)s] | %(message)s"

# third-party loggers that are chatty at INFO
_QUIET_LOGGERS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "aiosqlite": logging.WARNING,
    "celery": logging.INFO,
}


class JSONFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        optional = {
            "correlation_id": correlation_id_var.get(),
            "context": log_context_var.get(),
            "extra": getattr(record, "extra_data", None),
            "exception": self.formatException(record.exc_info) if record.exc_info else None,
        }
        entry.update((key, value) for key, value in optional.items() if value)
        return json.dumps(entry, ensure_ascii=False, default=str)


class StructuredLogger(logging.Logger):
    """Logger whose level methods accept ``extra_data={...}``."""

    def _log(  # type: ignore[override]
        self,
        level: int,
        msg: object,
        args: Any,
        exc_info: Any = None,
        extra: dict[str, Any] | None = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        extra_data: dict[str, Any] | None = None,
    ) -> None:
        if extra_data:
            extra = {**(extra or {}), "extra_data": extra_data}
        # +1 so module/funcName name the caller, not this override
        super()._log(
            level, msg, args,
            exc_info=exc_info, extra=extra, stack_info=stack_info, stacklevel=stacklevel + 1,
        )


logging.setLoggerClass(StructuredLogger)


class CorrelationIdFilter(logging.Filter):
    """Exposes ``%(correlation_id)s`` to the text format."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get() or "-"
        return True


def setup_logging(level: str = "INFO", json_format: bool = True, app_name: str = "lastmile") -> None:
    """Replace root handlers with a single stdout handler."""
    numeric_level = logging.getLevelName(level.upper())

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT.format(app=app_name), datefmt="%Y-%m-%d %H:%M:%S"))
        handler.addFilter(CorrelationIdFilter())

    root = logging.getLogger()
    root.setLevel(numeric_level)
    root.handlers.clear()
    root.addHandler(handler)

    for name, quiet_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)


def generate_correlation_id() -> str:
    return uuid.uuid4().hex[:8]


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Use the given id or mint one; returns the id now in effect."""
    cid = correlation_id or generate_correlation_id()
    correlation_id_var.set(cid)
    return cid


def get_correlation_id() -> str:
    return correlation_id_var.get() or set_correlation_id()


@contextmanager
def bind_log_context(**fields: Any) -> Iterator[None]:
    """Attach fields (e.g. delivery_id) to every log line inside the block; None values are skipped."""
    bound = {key: value for key, value in fields.items() if value is not None}
    token = log_context_var.set({**log_context_var.get(), **bound})
    try:
        yield
    finally:
        log_context_var.reset(token)


def get_logger(name: str) -> StructuredLogger:
    return logging.getLogger(name)  # type: ignore[return-value]


def log_async_operation(operation_name: str, expected: tuple[type[BaseException], ...] = ()):
    """
    Log start, failure and completion (with duration) of a coroutine.

    Exceptions listed in ``expected`` are ordinary outcomes for the caller and
    are logged at INFO without a traceback before being re-raised.
    """
    def decorator(func):
        logger = get_logger(func.__module__)

        @wraps(func)
        async def wrapper(*args, **kwargs):
            started = time.perf_counter()
            logger.debug(f"Starting {operation_name}", extra_data={"operation": operation_name})
            try:
                result = await func(*args, **kwargs)
            except expected as e:
                logger.info(
                    f"Stopped {operation_name}: {e}",
                    extra_data={
                        "operation": operation_name,
                        "status": "stopped",
                        "duration_seconds": round(time.perf_counter() - started, 4),
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
                raise
            except Exception as e:
                logger.error(
                    f"Failed {operation_name}: {e}",
                    extra_data={
                        "operation": operation_name,
                        "status": "failed",
                        "duration_seconds": round(time.perf_counter() - started, 4),
                        "error": str(e),
                    },
                    exc_info=True,
                )
                raise
            logger.info(
                f"Completed {operation_name}",
                extra_data={
                    "operation": operation_name,
                    "status": "completed",
                    "duration_seconds": round(time.perf_counter() - started, 4),
                },
            )
            return result

        return wrapper
    return decorator
