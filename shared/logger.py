# shared/logger.py

from __future__ import annotations

import logging
import json
import sys
import os
import uuid
import time
import socket
from contextvars import ContextVar
from datetime import datetime
from logging.handlers import RotatingFileHandler

import pytz

from shared.constants import (
    TIMEZONE,
    LOGGING_ENABLED,
    LOG_LEVEL,
    LOG_DIR,
    LOG_MAX_BYTES,
    LOG_BACKUP_COUNT,
    LOG_RETENTION_DAYS,
)
from shared.tenant import get_tenant_id
from shared.utils import format_hms

LOCAL_TZ = pytz.timezone(TIMEZONE)

RUN_ID = uuid.uuid4().hex
_RUN_START_TIME = time.monotonic()

RUN_LOG_FILE = "adsheet.log"

# ======================================================
# CONTEXT
# ======================================================

_REQUEST_ID: ContextVar[str | None] = ContextVar("request_id", default=None)
_CLIENT_ID: ContextVar[str | None] = ContextVar("client_id", default=None)
# Grid session (X-Session-Id) whose write or socket triggered the work.
_SESSION_ID: ContextVar[str | None] = ContextVar("session_id", default=None)


def set_request_id(request_id: str) -> ContextVar.Token:
    return _REQUEST_ID.set(request_id)


def reset_request_id(token: ContextVar.Token) -> None:
    _REQUEST_ID.reset(token)


def get_request_id() -> str | None:
    return _REQUEST_ID.get()


def set_client_id(client_id: str) -> ContextVar.Token:
    return _CLIENT_ID.set(client_id)


def reset_client_id(token: ContextVar.Token) -> None:
    _CLIENT_ID.reset(token)


def set_session_id(session_id: str | None) -> ContextVar.Token:
    return _SESSION_ID.set(session_id)


def reset_session_id(token: ContextVar.Token) -> None:
    _SESSION_ID.reset(token)


def get_session_id() -> str | None:
    return _SESSION_ID.get()


def _context_fields() -> dict[str, str]:
    fields = {
        "tenant_id": get_tenant_id(),
        "request_id": get_request_id(),
        "client_id": _CLIENT_ID.get(),
        "session_id": get_session_id(),
    }
    return {key: value for key, value in fields.items() if value}


class RequestIdFilter(logging.Filter):
    def __init__(self, request_id: str) -> None:
        super().__init__()
        self.request_id = request_id

    def filter(self, record: logging.LogRecord) -> bool:
        return get_request_id() == self.request_id


_LOGGER_REGISTRY: set[logging.Logger] = set()
_ACTIVE_DEBUG_HANDLERS: list[logging.Handler] = []


def _env_flag(key: str, default: str) -> bool:
    return os.getenv(key, default).strip().lower() in {"1", "true", "yes", "on"}


_HOST_CONTEXT: dict[str, str] | None = None


def _get_host_context() -> dict[str, str]:
    global _HOST_CONTEXT
    if _HOST_CONTEXT is None:
        context = {
            "host": os.getenv("HOSTNAME") or socket.gethostname(),
            "app_env": os.getenv("APP_ENV", ""),
            "service": os.getenv("SERVICE_NAME", "adsheet"),
            "deployment_id": os.getenv("DEPLOYMENT_ID", ""),
            "region": os.getenv("REGION", ""),
        }
        _HOST_CONTEXT = {key: value.strip() for key, value in context.items() if value.strip()}
    return _HOST_CONTEXT

# ======================================================
# FORMATTER
# ======================================================

class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log: dict = {
            "timestamp": datetime.now(LOCAL_TZ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "run_id": RUN_ID,
        }
        log.update(_get_host_context())
        log.update(_context_fields())

        extra_fields = getattr(record, "extra_fields", None)
        if isinstance(extra_fields, dict):
            log.update(extra_fields)

        if record.exc_info:
            log["exception"] = self.formatException(record.exc_info)

        return json.dumps(log, default=str, ensure_ascii=False)

# ======================================================
# HANDLERS
# ======================================================

def _null_handler(name: str) -> logging.Handler:
    handler = logging.NullHandler()
    handler.name = name
    return handler


def _create_file_handler() -> logging.Handler:
    if not _env_flag("LOG_FILE_ENABLED", "true"):
        return _null_handler("file-null")

    os.makedirs(LOG_DIR, exist_ok=True)
    handler = RotatingFileHandler(
        filename=os.path.join(LOG_DIR, RUN_LOG_FILE),
        maxBytes=LOG_MAX_BYTES,
        backupCount=LOG_BACKUP_COUNT,
        encoding="utf-8",
    )
    handler.setFormatter(JsonFormatter())
    # Per-request debug files carry DEBUG; the shared file stays at INFO.
    handler.setLevel(logging.INFO if LOG_LEVEL == "DEBUG" else LOG_LEVEL)
    handler.name = "file"
    return handler


def create_request_debug_handler(request_id: str) -> logging.Handler:
    if not _env_flag("LOG_FILE_ENABLED", "true"):
        return _null_handler(f"debug-null-{request_id}")

    os.makedirs(LOG_DIR, exist_ok=True)
    timestamp = datetime.now(LOCAL_TZ).strftime("%y%m%d_%H%M%S")
    handler = logging.FileHandler(
        filename=os.path.join(LOG_DIR, f"run_debug_{timestamp}_{request_id}.log"),
        encoding="utf-8",
    )
    handler.setFormatter(JsonFormatter())
    handler.setLevel(logging.DEBUG)
    handler.name = f"debug-{request_id}"
    handler.addFilter(RequestIdFilter(request_id))
    return handler


def _create_console_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    handler.setLevel(LOG_LEVEL)
    handler.name = "console"
    return handler

# ======================================================
# LOGGER FACTORY
# ======================================================

def get_logger(name: str = "app") -> logging.Logger:
    """
    Get or create a logger.

    - File logging is on unless LOG_FILE_ENABLED is false
    - Console logging is opt-in via LOG_CONSOLE_ENABLED
    """
    logger = logging.getLogger(name)
    logger.setLevel(LOG_LEVEL)

    if not LOGGING_ENABLED:
        logger.disabled = True
        return logger

    if not any(getattr(h, "name", None) == "file" for h in logger.handlers):
        handler = _create_file_handler()
        if not isinstance(handler, logging.NullHandler):
            logger.addHandler(handler)

    if _env_flag("LOG_CONSOLE_ENABLED", "false") and not any(
        getattr(h, "name", None) == "console" for h in logger.handlers
    ):
        logger.addHandler(_create_console_handler())

    for handler in _ACTIVE_DEBUG_HANDLERS:
        if handler not in logger.handlers:
            logger.addHandler(handler)

    logger.propagate = False
    _LOGGER_REGISTRY.add(logger)
    return logger


def add_debug_handler(handler: logging.Handler) -> None:
    if handler in _ACTIVE_DEBUG_HANDLERS:
        return

    _ACTIVE_DEBUG_HANDLERS.append(handler)
    for logger in _LOGGER_REGISTRY:
        if handler not in logger.handlers:
            logger.addHandler(handler)


def remove_debug_handler(handler: logging.Handler) -> None:
    if handler in _ACTIVE_DEBUG_HANDLERS:
        _ACTIVE_DEBUG_HANDLERS.remove(handler)

    for logger in _LOGGER_REGISTRY:
        if handler in logger.handlers:
            logger.removeHandler(handler)
    handler.close()

# ======================================================
# RETENTION / RUN BOUNDARIES
# ======================================================

def cleanup_old_logs() -> None:
    """
    Delete rotated and per-request debug logs older than LOG_RETENTION_DAYS.
    """
    if not LOGGING_ENABLED or not os.path.isdir(LOG_DIR):
        return

    cutoff = time.time() - LOG_RETENTION_DAYS * 24 * 60 * 60
    for entry in os.scandir(LOG_DIR):
        if not entry.is_file() or ".log" not in entry.name:
            continue
        try:
            if entry.stat().st_mtime < cutoff:
                os.remove(entry.path)
        except OSError:
            continue


def log_run_start(app_name: str = "app") -> None:
    cleanup_old_logs()
    get_logger("system").info(
        "===== RUN START =====",
        extra={"extra_fields": {"event": "run_start", "app": app_name}},
    )


def log_run_end(app_name: str = "app") -> None:
    get_logger("system").info(
        "===== RUN END =====",
        extra={
            "extra_fields": {
                "event": "run_end",
                "app": app_name,
                "duration": format_hms(time.monotonic() - _RUN_START_TIME),
            }
        },
    )
