"""Logging setup for the API process.

Usage:
    from skillchat.logging_config import setup_logging, conversation_id_var

    setup_logging("Server")
    conversation_id_var.set("alice_bob")

Module loggers (``logging.getLogger(__name__)``) need no changes; the
ContextFilter stamps the active conversation onto each record.
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from contextvars import ContextVar
from pathlib import Path

conversation_id_var: ContextVar[str] = ContextVar("conversation_id_var", default="")


class ContextFilter(logging.Filter):
    """Injects ``role`` and ``conversation_id`` onto each record."""

    def __init__(self, role: str) -> None:
        super().__init__()
        self.role = role

    def filter(self, record: logging.LogRecord) -> bool:
        record.role = self.role  # type: ignore[attr-defined]
        record.conversation_id = conversation_id_var.get("")  # type: ignore[attr-defined]
        return True


class ContextFormatter(logging.Formatter):
    """Produces lines like:

    2026-10-19 14:30:00 [Server][Conv alice_bob][INFO] skillchat.services.message_log:88 - Appended seq=4
    """

    def format(self, record: logging.LogRecord) -> str:
        role = getattr(record, "role", "")
        conversation_id = getattr(record, "conversation_id", "")

        parts = [f"[{role}]"] if role else []
        if conversation_id:
            parts.append(f"[Conv {conversation_id}]")
        parts.append(f"[{record.levelname}]")

        prefix = "".join(parts)
        timestamp = self.formatTime(record, self.datefmt)
        location = f"{record.name}:{record.lineno}"
        formatted = f"{timestamp} {prefix} {location} - {record.getMessage()}"

        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            formatted += "\n" + record.exc_text
        if record.stack_info:
            formatted += "\n" + record.stack_info
        return formatted


def setup_logging(role: str) -> None:
    """Configure the root logger for *role*.

    Idempotent: a second call is a no-op once our stream handler is installed.
    """
    from skillchat.config import settings

    root = logging.getLogger()
    if any(getattr(h, "name", None) == "_skillchat_stream" for h in root.handlers):
        return

    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    ctx_filter = ContextFilter(role)
    formatter = ContextFormatter(datefmt="%Y-%m-%d %H:%M:%S")

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.name = "_skillchat_stream"
    stream_handler.addFilter(ctx_filter)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    if settings.LOG_FILE:
        log_path = Path(settings.LOG_FILE)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            str(log_path),
            maxBytes=settings.LOG_MAX_BYTES,
            backupCount=settings.LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.name = "_skillchat_file"
        file_handler.addFilter(ctx_filter)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    for name in ("pymongo", "motor", "websockets", "urllib3", "httpx"):
        logging.getLogger(name).setLevel(logging.WARNING)

    if "server" in role.lower():
        for name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
            uv_logger = logging.getLogger(name)
            uv_logger.handlers.clear()
            uv_logger.propagate = True
