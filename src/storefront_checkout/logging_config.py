"""Structured logging for checkout flows.

Every record emitted while a checkout is running carries the store, order
and payment reference it belongs to, so one customer's flow can be followed
across the API client, the gateways and the callback broker.
"""
from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

store_id_var: ContextVar[Optional[str]] = ContextVar("store_id", default=None)
order_id_var: ContextVar[Optional[str]] = ContextVar("order_id", default=None)
payment_reference_var: ContextVar[Optional[str]] = ContextVar("payment_reference", default=None)

_CONTEXT_FIELDS = ("store_id", "order_id", "payment_reference")

_RESERVED = frozenset((
    "name", "msg", "args", "created", "filename", "funcName", "levelname",
    "levelno", "lineno", "module", "msecs", "message", "pathname", "process",
    "processName", "relativeCreated", "thread", "threadName", "exc_info",
    "exc_text", "stack_info", "taskName",
) + _CONTEXT_FIELDS)


class CheckoutContextFilter(logging.Filter):
    """Stamps the current checkout context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.store_id = store_id_var.get()
        record.order_id = order_id_var.get()
        record.payment_reference = payment_reference_var.get()
        return True


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for name in _CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value:
                log_data[name] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED:
                log_data[key] = value

        return json.dumps(log_data, default=str)


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure logging for a process hosting checkout flows.

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
            "[%(store_id)s/%(payment_reference)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(CheckoutContextFilter())
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(CheckoutContextFilter())
        root_logger.addHandler(file_handler)


def bind_checkout_context(
    store_id: Optional[str] = None,
    order_id: Optional[str] = None,
    payment_reference: Optional[str] = None,
) -> None:
    """Set whichever context fields are given, leaving the others alone."""
    if store_id is not None:
        store_id_var.set(store_id)
    if order_id is not None:
        order_id_var.set(order_id)
    if payment_reference is not None:
        payment_reference_var.set(payment_reference)


def clear_checkout_context() -> None:
    store_id_var.set(None)
    order_id_var.set(None)
    payment_reference_var.set(None)
