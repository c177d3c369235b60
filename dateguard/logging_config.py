"""
Logging configuration.

Modules log through ``logging.getLogger(__name__)``.  ``setup_logging``
installs a JSON (production) or text (development) formatter on the root
logger.  While an orchestrator operation runs, the session it concerns is
held in ``session_id_ctx`` and stamped onto every record.
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

session_id_ctx: ContextVar[Optional[str]] = ContextVar("session_id", default=None)

_STANDARD_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


@contextmanager
def session_context(session_id: str) -> Iterator[None]:
    """Bind ``session_id`` to log records emitted inside the block."""
    token = session_id_ctx.set(session_id)
    try:
        yield
    finally:
        session_id_ctx.reset(token)


def mask_destination(destination: str) -> str:
    """Mask a phone number, email or token for log output."""
    if "@" in destination:
        local, _, domain = destination.partition("@")
        return f"{local[:1]}***@{domain}"
    if len(destination) <= 4:
        return "***"
    return f"***{destination[-4:]}"


class JsonFormatter(logging.Formatter):
    """One JSON object per record; ``extra=`` fields are merged in."""

    def __init__(self, service_name: str = "dateguard"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service_name,
            "logger": record.name,
            "message": record.getMessage(),
        }

        session_id = session_id_ctx.get()
        if session_id:
            log_data["session_id"] = session_id

        for key, value in vars(record).items():
            if key not in _STANDARD_ATTRS and not key.startswith("_"):
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """timestamp - service - level - [session] - message"""

    def __init__(self, service_name: str = "dateguard"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        session_id = session_id_ctx.get() or "-"
        base_msg = (
            f"{timestamp} - {self.service_name} - {record.levelname} - "
            f"[{session_id}] - {record.getMessage()}"
        )
        if record.exc_info:
            base_msg += f"\n{self.formatException(record.exc_info)}"
        return base_msg


def setup_logging(
    log_format: str = "json",
    log_level: str = "INFO",
    service_name: str = "dateguard",
) -> None:
    """Configure the root logger.

    Args:
        log_format: 'json' for structured logging, 'text' for human-readable.
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL.
        service_name: Service name included in every record.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    if log_format.lower() == "json":
        handler.setFormatter(JsonFormatter(service_name=service_name))
    else:
        handler.setFormatter(TextFormatter(service_name=service_name))
    root_logger.addHandler(handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
