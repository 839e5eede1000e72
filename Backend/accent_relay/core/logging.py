"""
Accent Relay - Unified logging
==============================
Single logging configuration for the whole service. Avoids conflicts between
uvicorn, FastAPI and the relay itself.

- Human readable lines by default, JSON lines with ``LOG_FORMAT=json``
- Optional rotating file under ``ACCENT_RELAY_LOG_DIR``
- Uncaught and asyncio exceptions end up in the log instead of stderr
"""

from __future__ import annotations

import asyncio
import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict

from pythonjsonlogger.json import JsonFormatter as _JsonFormatterBase


LOG_FILE_NAME = "accent-relay.log"
SERVICE_NAME = os.getenv("SERVICE_NAME", "accent-relay")
LOG_PREFIX = "[Relay]"
DEFAULT_MAX_BYTES = int(os.getenv("LOG_MAX_BYTES", str(10 * 1024 * 1024)))
DEFAULT_BACKUP_COUNT = int(os.getenv("LOG_BACKUP_COUNT", "5"))

_CONTEXT_KEYS = ("call_id", "stream_id", "session_id", "generation")


class UnifiedFormatter(logging.Formatter):
    """Readable formatter for local environments."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")
        level = record.levelname.upper()
        message = record.getMessage()

        context_parts: list[str] = []
        for key in _CONTEXT_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                context_parts.append(f"{key}={value}")

        log_context = getattr(record, "log_context", None)
        if log_context:
            context_parts.append(str(log_context))

        context_segment = (" | " + " ".join(context_parts)) if context_parts else ""
        line = f"[{timestamp}] {LOG_PREFIX} [{level}] [{record.name}] {message}{context_segment}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class JsonFormatter(_JsonFormatterBase):
    """JSON formatter compatible with Elastic and Loki."""

    def add_fields(
        self,
        log_record: Dict[str, Any],
        record: logging.LogRecord,
        message_dict: Dict[str, Any],
    ) -> None:  # type: ignore[override]
        super().add_fields(log_record, record, message_dict)

        if "timestamp" not in log_record:
            log_record["timestamp"] = datetime.fromtimestamp(record.created).isoformat(timespec="milliseconds")
        log_record.setdefault("service", SERVICE_NAME)
        log_record.setdefault("logger", record.name)
        log_record.setdefault("level", record.levelname.upper())

        message = log_record.get("message")
        if isinstance(message, (dict, list)):
            log_record["message"] = json.dumps(message, ensure_ascii=False, default=str)

        for key in (*_CONTEXT_KEYS, "log_context"):
            value = getattr(record, key, None)
            if value is not None and key not in log_record:
                log_record[key] = value


_logging_configured = False
_exceptions_hooked = False


def _build_log_file_path() -> Path | None:
    env_dir = os.getenv("ACCENT_RELAY_LOG_DIR")
    if not env_dir:
        return None
    base_path = Path(env_dir)
    base_path.mkdir(parents=True, exist_ok=True)
    return base_path / LOG_FILE_NAME


def _install_exception_hooks() -> None:
    global _exceptions_hooked
    if _exceptions_hooked:
        return

    def handle_exception(exc_type, exc_value, exc_traceback) -> None:
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return
        logging.getLogger("accent_relay.uncaught").error(
            "Uncaught exception", exc_info=(exc_type, exc_value, exc_traceback)
        )

    sys.excepthook = handle_exception
    _exceptions_hooked = True


def install_asyncio_exception_handler(loop: asyncio.AbstractEventLoop) -> None:
    """Route exceptions of orphaned tasks into the log."""

    def handle_async_exception(_loop, context) -> None:
        message = context.get("message", "Unhandled asyncio exception")
        exception = context.get("exception")
        logger = logging.getLogger("accent_relay.asyncio")
        if exception is not None:
            logger.error(message, exc_info=exception)
        else:
            logger.error(message, extra={"log_context": str(context)})

    loop.set_exception_handler(handle_async_exception)


def setup_unified_logging(level: str | None = None, log_format: str | None = None) -> None:
    global _logging_configured

    log_format = (log_format or os.getenv("LOG_FORMAT", "text")).lower()
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_level = logging.getLevelName(level_name)
    if not isinstance(log_level, int):
        log_level = logging.INFO

    use_json = log_format == "json"
    formatter: logging.Formatter = JsonFormatter("%(message)s") if use_json else UnifiedFormatter()

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(log_level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(log_level)
    root_logger.addHandler(console_handler)

    log_file_path = _build_log_file_path()
    if log_file_path is not None:
        file_handler = logging.handlers.RotatingFileHandler(
            log_file_path,
            maxBytes=DEFAULT_MAX_BYTES,
            backupCount=DEFAULT_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        file_handler.setLevel(log_level)
        root_logger.addHandler(file_handler)

    _install_exception_hooks()
    for name in ("uvicorn", "uvicorn.access", "uvicorn.error", "fastapi"):
        logging.getLogger(name).propagate = True

    _logging_configured = True


def ensure_logging_configured() -> None:
    if not _logging_configured:
        setup_unified_logging()


def get_logger(name: str) -> logging.Logger:
    ensure_logging_configured()
    return logging.getLogger(name)
