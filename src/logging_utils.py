"""Correlation-aware logging for the checkout service.

Every log line carries the correlation id of the inbound request and, when
known, the order id of the checkout being driven, so a single purchase can be
followed across start, continue and the settlement polls.
"""

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Optional

# Context variables for the current request/task
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
order_id_var: ContextVar[Optional[str]] = ContextVar("order_id", default=None)


class CheckoutContextFilter(logging.Filter):
    """Add correlation and order ids to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get() or "-"
        record.order_id = order_id_var.get() or "-"
        return True


def setup_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure the root logger once for the process.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """
    logger = logging.getLogger()
    logger.setLevel(getattr(logging, log_level.upper()))

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)

    if log_format == "json":
        formatter = logging.Formatter(
            '{"timestamp": "%(asctime)s", "level": "%(levelname)s", '
            '"correlation_id": "%(correlation_id)s", "order_id": "%(order_id)s", '
            '"name": "%(name)s", "message": "%(message)s"}'
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] [%(correlation_id)s|order=%(order_id)s] %(name)s: %(message)s"
        )

    handler.setFormatter(formatter)
    handler.addFilter(CheckoutContextFilter())
    logger.addHandler(handler)

    # httpx logs every request line at INFO, including signed URLs
    logging.getLogger("httpx").setLevel(logging.WARNING)


def generate_correlation_id() -> str:
    return f"corr-{uuid.uuid4().hex[:12]}"


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name (typically __name__)."""
    return logging.getLogger(name)


def redact(secret: Optional[str], keep: int = 6) -> str:
    """Shorten a token or key for log output."""
    if not secret:
        return "<empty>"
    if len(secret) <= keep:
        return "***"
    return f"{secret[:keep]}***"


class CheckoutLogContext:
    """Context manager binding a correlation id and order id to a block of code."""

    def __init__(self, correlation_id: Optional[str] = None, order_id: Optional[str] = None):
        self.correlation_id = correlation_id or generate_correlation_id()
        self.order_id = order_id
        self._tokens = []

    def __enter__(self) -> str:
        self._tokens.append(correlation_id_var.set(self.correlation_id))
        if self.order_id is not None:
            self._tokens.append(order_id_var.set(str(self.order_id)))
        return self.correlation_id

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        while self._tokens:
            token = self._tokens.pop()
            token.var.reset(token)


def bind_order_id(order_id: Optional[str]) -> None:
    """Attach an order id to the rest of the current task's log lines."""
    if order_id is not None:
        order_id_var.set(str(order_id))
