"""
Structured Logging for Stackforge

This module provides structured logging with correlation IDs per convergence
run, operation tracing, and redaction of sensitive variable values. Every
value registered through ``register_sensitive`` is masked in every log event,
whether it comes through structlog or the standard library.
"""

import json
import logging
import logging.handlers
import sys
import threading
import time
import uuid
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path
from typing import Any, Dict, Set

import structlog

from .config import get_config

REDACTED = "***"

# Thread-local storage for correlation context
_correlation_context = threading.local()

_sensitive_values: Set[str] = set()
_sensitive_lock = threading.Lock()


def register_sensitive(value: str):
    """Register a value that must never appear in log output."""
    if not value:
        return
    with _sensitive_lock:
        _sensitive_values.add(value)


def clear_sensitive():
    """Forget all registered sensitive values."""
    with _sensitive_lock:
        _sensitive_values.clear()


def redact_text(text: str) -> str:
    """Mask every registered sensitive value inside *text*."""
    with _sensitive_lock:
        secrets = sorted(_sensitive_values, key=len, reverse=True)
    for secret in secrets:
        if secret in text:
            text = text.replace(secret, REDACTED)
    return text


def _redact_value(value: Any) -> Any:
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, dict):
        return {k: _redact_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return type(value)(_redact_value(v) for v in value)
    return value


def redact_sensitive(logger, method_name, event_dict):
    """structlog processor that masks registered sensitive values."""
    return {key: _redact_value(value) for key, value in event_dict.items()}


class CorrelationContext:
    """Manages correlation IDs and tracing context across operations."""

    @staticmethod
    def get_correlation_id() -> str:
        """Get the current correlation ID, creating one if needed."""
        if not hasattr(_correlation_context, "correlation_id"):
            _correlation_context.correlation_id = str(uuid.uuid4())[:8]
        return _correlation_context.correlation_id

    @staticmethod
    def set_correlation_id(correlation_id: str):
        """Set the correlation ID for the current thread."""
        _correlation_context.correlation_id = correlation_id

    @staticmethod
    def clear_correlation_id():
        """Clear the correlation ID for the current thread."""
        if hasattr(_correlation_context, "correlation_id"):
            delattr(_correlation_context, "correlation_id")

    @staticmethod
    def get_trace_context() -> Dict[str, Any]:
        """Get full tracing context."""
        operation_stack = getattr(_correlation_context, "operation_stack", [])

        return {
            "correlation_id": CorrelationContext.get_correlation_id(),
            "operation_stack": list(operation_stack),
            "depth": len(operation_stack),
        }

    @staticmethod
    def push_operation(operation_name: str):
        """Push an operation onto the trace stack."""
        if not hasattr(_correlation_context, "operation_stack"):
            _correlation_context.operation_stack = []
        _correlation_context.operation_stack.append(operation_name)

    @staticmethod
    def pop_operation():
        """Pop an operation from the trace stack."""
        stack = getattr(_correlation_context, "operation_stack", None)
        if stack:
            return stack.pop()
        return None


def with_correlation_id(correlation_id: str = None):
    """Decorator to run function with specific correlation ID."""

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            old_correlation_id = getattr(_correlation_context, "correlation_id", None)

            try:
                CorrelationContext.set_correlation_id(correlation_id or str(uuid.uuid4())[:8])
                return func(*args, **kwargs)
            finally:
                if old_correlation_id:
                    CorrelationContext.set_correlation_id(old_correlation_id)
                else:
                    CorrelationContext.clear_correlation_id()

        return wrapper

    return decorator


def trace_operation(operation_name: str):
    """Decorator to trace function execution with operation stack."""

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            logger = get_logger(f"stackforge.trace.{func.__module__}")
            correlation_id = CorrelationContext.get_correlation_id()

            CorrelationContext.push_operation(operation_name)
            start_time = time.monotonic()

            try:
                logger.debug(
                    f"Starting operation: {operation_name}",
                    operation=operation_name,
                    correlation_id=correlation_id,
                )

                result = func(*args, **kwargs)

                logger.info(
                    f"Completed operation: {operation_name}",
                    operation=operation_name,
                    duration_seconds=round(time.monotonic() - start_time, 3),
                    correlation_id=correlation_id,
                    success=True,
                )
                return result

            except Exception as e:
                logger.error(
                    f"Failed operation: {operation_name}",
                    operation=operation_name,
                    duration_seconds=round(time.monotonic() - start_time, 3),
                    correlation_id=correlation_id,
                    success=False,
                    error=str(e),
                )
                raise
            finally:
                CorrelationContext.pop_operation()

        return wrapper

    return decorator


class RedactingFormatter(logging.Formatter):
    """Base formatter that adds correlation context and masks sensitive values."""

    def format(self, record: logging.LogRecord) -> str:
        trace_context = CorrelationContext.get_trace_context()
        record.correlation_id = trace_context["correlation_id"]
        record.operation_depth = trace_context["depth"]

        operation_stack = trace_context["operation_stack"]
        record.current_operation = operation_stack[-1] if operation_stack else None

        return redact_text(self.render(record))

    def render(self, record: logging.LogRecord) -> str:
        return super().format(record)


class JSONFormatter(RedactingFormatter):
    """JSON formatter for structured logging with correlation IDs."""

    def render(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
            "correlation_id": getattr(record, "correlation_id", "unknown"),
            "operation": getattr(record, "current_operation", None),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class ConsoleFormatter(RedactingFormatter):
    """Console formatter with color support and correlation IDs."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
        "RESET": "\033[0m",
        "GRAY": "\033[90m",
    }

    def render(self, record: logging.LogRecord) -> str:
        level_color = self.COLORS.get(record.levelname, "")
        reset_color = self.COLORS["RESET"]
        gray_color = self.COLORS["GRAY"]

        timestamp = datetime.now(timezone.utc).strftime("%H:%M:%S.%f")[:-3]
        correlation_id = getattr(record, "correlation_id", "unknown")
        indent = "  " * getattr(record, "operation_depth", 0)

        message = record.getMessage()
        if record.exc_info:
            message += f"\n{self.formatException(record.exc_info)}"

        return (
            f"{gray_color}{timestamp}{reset_color} "
            f"{gray_color}[{correlation_id}]{reset_color} "
            f"{level_color}{record.levelname:8}{reset_color} "
            f"{record.name:28} "
            f"{indent}{message}"
        )


def setup_logging():
    """Setup structured logging for stackforge."""
    config = get_config()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            redact_sensitive,
            (
                structlog.processors.JSONRenderer()
                if config.logging.log_format == "json"
                else structlog.dev.ConsoleRenderer(colors=False)
            ),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger("stackforge")
    root_logger.setLevel(getattr(logging, config.logging.log_level))
    root_logger.propagate = False

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stderr)
    if config.logging.log_format == "json":
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(ConsoleFormatter())
    root_logger.addHandler(console_handler)

    if config.logging.log_file:
        log_path = Path(config.logging.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_path, maxBytes=10 * 1024 * 1024, backupCount=5
        )
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    root_logger.debug(
        f"Logging initialized - log_level={config.logging.log_level}, "
        f"log_format={config.logging.log_format}"
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


# Initialize logging on module import
setup_logging()
