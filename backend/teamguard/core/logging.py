"""Structured logging with request correlation.

Provides:
- JSON structured output for log aggregation
- Request correlation IDs (X-Request-ID / X-Correlation-ID)
- Principal and tenant context, set once the token is resolved
- Masking of sensitive keyword fields

Usage:
    from teamguard.core.logging import get_logger

    logger = get_logger(__name__)
    logger.info("Grant created", capability="depth_chart_edit", principal_id=pid)

Free-form strings from third parties (URLs, provider errors) are not
masked here; pass them through teamguard.core.sanitizer first.
"""

import inspect
import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# Context variables for request-scoped data
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
user_id_var: ContextVar[str | None] = ContextVar("user_id", default=None)
tenant_id_var: ContextVar[str | None] = ContextVar("tenant_id", default=None)

# Keyword fields whose values never reach the log output
SENSITIVE_FIELDS = {
    "password", "secret", "token", "credential", "authorization",
    "api_key", "apikey", "access_token", "refresh_token", "cookie",
    "client_secret", "secret_key", "encryption_key",
}

# Identifiers that contain a sensitive substring but are safe to log
SAFE_FIELDS = {"token_id", "jti", "token_expires_at", "refresh_token_expires_at"}


def mask_sensitive(data: dict[str, Any]) -> dict[str, Any]:
    """Mask sensitive values in a dictionary."""
    masked = {}
    for key, value in data.items():
        key_lower = key.lower()
        if key_lower not in SAFE_FIELDS and any(s in key_lower for s in SENSITIVE_FIELDS):
            if isinstance(value, str) and len(value) > 8:
                masked[key] = f"{value[:4]}...{value[-4:]}"
            else:
                masked[key] = "[REDACTED]"
        elif isinstance(value, dict):
            masked[key] = mask_sensitive(value)
        else:
            masked[key] = value
    return masked


class StructuredFormatter(logging.Formatter):
    """JSON structured log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if request_id := request_id_var.get():
            log_entry["request_id"] = request_id
        if correlation_id := correlation_id_var.get():
            log_entry["correlation_id"] = correlation_id
        if user_id := user_id_var.get():
            log_entry["user_id"] = user_id
        if tenant_id := tenant_id_var.get():
            log_entry["tenant_id"] = tenant_id

        if hasattr(record, "extra_fields"):
            log_entry.update(mask_sensitive(record.extra_fields))

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        # Source location for warnings and above
        if record.levelno >= logging.WARNING:
            log_entry["source"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }

        return json.dumps(log_entry, default=str)


class HumanFormatter(logging.Formatter):
    """Human-readable log formatter for development."""

    COLORS = {
        "DEBUG": "\033[36m",    # Cyan
        "INFO": "\033[32m",     # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",    # Red
        "CRITICAL": "\033[35m", # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")

        prefix_parts = []
        if request_id := request_id_var.get():
            prefix_parts.append(f"req={request_id[:8]}")
        if user_id := user_id_var.get():
            prefix_parts.append(f"user={user_id[:8]}")
        if tenant_id := tenant_id_var.get():
            prefix_parts.append(f"team={tenant_id[:8]}")

        prefix = f"[{' '.join(prefix_parts)}] " if prefix_parts else ""

        extra_str = ""
        if hasattr(record, "extra_fields") and record.extra_fields:
            masked = mask_sensitive(record.extra_fields)
            extra_str = " | " + " ".join(f"{k}={v}" for k, v in masked.items())

        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        level = record.levelname[:4]

        message = (
            f"{color}{timestamp} {level}{self.RESET} "
            f"[{record.name}] {prefix}{record.getMessage()}{extra_str}"
        )

        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)

        return message


class StructuredLogger(logging.Logger):
    """Logger that accepts structured fields as keyword arguments."""

    def _log_with_extra(
        self,
        level: int,
        msg: str,
        args: tuple,
        /,
        exc_info: Any = None,
        **kwargs,
    ):
        extra = {"extra_fields": kwargs} if kwargs else {}
        super()._log(level, msg, args, exc_info=exc_info, extra=extra)

    def debug(self, msg: str, *args, **kwargs):
        if self.isEnabledFor(logging.DEBUG):
            self._log_with_extra(logging.DEBUG, msg, args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        if self.isEnabledFor(logging.INFO):
            self._log_with_extra(logging.INFO, msg, args, **kwargs)

    def warning(self, msg: str, *args, exc_info: Any = None, **kwargs):
        if self.isEnabledFor(logging.WARNING):
            self._log_with_extra(logging.WARNING, msg, args, exc_info=exc_info, **kwargs)

    def error(self, msg: str, *args, exc_info: Any = None, **kwargs):
        if self.isEnabledFor(logging.ERROR):
            self._log_with_extra(logging.ERROR, msg, args, exc_info=exc_info, **kwargs)

    def critical(self, msg: str, *args, exc_info: Any = None, **kwargs):
        if self.isEnabledFor(logging.CRITICAL):
            self._log_with_extra(logging.CRITICAL, msg, args, exc_info=exc_info, **kwargs)


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger for a module."""
    logging.setLoggerClass(StructuredLogger)
    logger = logging.getLogger(name)
    logging.setLoggerClass(logging.Logger)
    return logger


def setup_logging(json_output: bool = False, level: str = "INFO"):
    """Configure application logging.

    Args:
        json_output: Use JSON format (for production)
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(HumanFormatter())
    root_logger.addHandler(handler)

    # Reduce noise from libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Request logging and correlation ID propagation.

    Query strings are not logged: callers may put tokens in them.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = (
            request.headers.get("X-Request-ID")
            or request.headers.get("X-Correlation-ID")
            or str(uuid.uuid4())
        )
        correlation_id = request.headers.get("X-Correlation-ID") or request_id

        request_id_token = request_id_var.set(request_id)
        correlation_id_token = correlation_id_var.set(correlation_id)
        user_id_token = user_id_var.set(None)
        tenant_id_token = tenant_id_var.set(None)

        start_time = time.monotonic()
        logger = get_logger("http")

        try:
            logger.info(
                "Request started",
                method=request.method,
                path=request.url.path,
                client_ip=request.client.host if request.client else None,
            )

            response = await call_next(request)

            duration_ms = (time.monotonic() - start_time) * 1000
            logger.info(
                "Request completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
            )

            response.headers["X-Request-ID"] = request_id
            response.headers["X-Correlation-ID"] = correlation_id
            return response

        except Exception as e:
            duration_ms = (time.monotonic() - start_time) * 1000
            logger.error(
                "Request failed",
                method=request.method,
                path=request.url.path,
                error_type=type(e).__name__,
                duration_ms=round(duration_ms, 2),
                exc_info=True,
            )
            raise

        finally:
            request_id_var.reset(request_id_token)
            correlation_id_var.reset(correlation_id_token)
            user_id_var.reset(user_id_token)
            tenant_id_var.reset(tenant_id_token)


def set_user_context(user_id: str | None = None, tenant_id: str | None = None):
    """Set principal context for logging."""
    if user_id:
        user_id_var.set(user_id)
    if tenant_id:
        tenant_id_var.set(tenant_id)


def log_operation(operation: str):
    """Decorator to log execution of a coroutine with timing."""
    def decorator(func: Callable):
        logger = get_logger(func.__module__)

        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            start = time.monotonic()
            try:
                result = await func(*args, **kwargs)
                duration_ms = (time.monotonic() - start) * 1000
                logger.info(
                    f"{operation} completed",
                    operation=operation,
                    duration_ms=round(duration_ms, 2),
                )
                return result
            except Exception as e:
                duration_ms = (time.monotonic() - start) * 1000
                logger.error(
                    f"{operation} failed",
                    operation=operation,
                    error_type=type(e).__name__,
                    duration_ms=round(duration_ms, 2),
                )
                raise

        if not inspect.iscoroutinefunction(func):
            raise TypeError(f"log_operation expects a coroutine function, got {func!r}")
        return async_wrapper

    return decorator
