"""Structured logging configuration with purchase-session context.

This module provides structured JSON logging with:
- Session and service IDs for tracing one purchase across components
- Masking for payment signatures and payment-proof headers
- Consistent log formatting
"""
from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

MASK_PATTERN = "***"

# Context variables for purchase tracking
session_id_var: ContextVar[Optional[str]] = ContextVar("session_id", default=None)
service_id_var: ContextVar[Optional[str]] = ContextVar("service_id", default=None)
buyer_var: ContextVar[Optional[str]] = ContextVar("buyer", default=None)

_CONTEXT_FIELDS = ("session_id", "service_id", "buyer")

_RESERVED_ATTRS = frozenset({
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "taskName",
    "exc_info",
    "exc_text",
    "stack_info",
    *_CONTEXT_FIELDS,
})

_SENSITIVE_HEADERS = frozenset({
    "authorization",
    "x-api-key",
    "cookie",
    "set-cookie",
    "x-payment",
})


def mask_value(value: Optional[str], show_chars: int = 4) -> str:
    """Mask a sensitive value, showing only the first/last characters."""
    if not value or len(value) <= show_chars * 2:
        return MASK_PATTERN
    return f"{value[:show_chars]}...{value[-show_chars:]}"


def mask_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Mask sensitive HTTP headers (including the X-Payment proof)."""
    return {
        key: MASK_PATTERN if key.lower() in _SENSITIVE_HEADERS else value
        for key, value in headers.items()
    }


class MarketContextFilter(logging.Filter):
    """Logging filter that adds purchase context to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.session_id = session_id_var.get()
        record.service_id = service_id_var.get()
        record.buyer = buyer_var.get()
        return True


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for key in _CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Extra fields passed via ``extra=``
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                log_data[key] = value

        return json.dumps(log_data, default=str)


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure structured logging for the application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON structured logging (True) or simple format (False)
        log_file: Optional file path for logging output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - "
            "[%(session_id)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(MarketContextFilter())
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(MarketContextFilter())
        root_logger.addHandler(file_handler)


class LogContext:
    """Context manager for temporary logging context."""

    def __init__(
        self,
        session_id: Optional[str] = None,
        service_id: Optional[str] = None,
        buyer: Optional[str] = None,
    ):
        self.session_id = session_id
        self.service_id = service_id
        self.buyer = buyer
        self._tokens: list = []

    def __enter__(self) -> "LogContext":
        if self.session_id:
            self._tokens.append(session_id_var.set(self.session_id))
        if self.service_id:
            self._tokens.append(service_id_var.set(self.service_id))
        if self.buyer:
            self._tokens.append(buyer_var.set(self.buyer))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        for token in reversed(self._tokens):
            token.var.reset(token)
        self._tokens.clear()
