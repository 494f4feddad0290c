"""
Structured Logging — Per-subsystem structured logging with JSON output.

Provides contextual logging with subsystem tags, request correlation IDs
(webhook request, connection, execution batch) and a JSON formatter.

Usage:
    from convertos.core.structured_logging import webhook_log, bind_context

    bind_context(request_id=generate_request_id(), connection_id="conn_abc")
    webhook_log.info("event stored", {"event_id": "evt_1"})
"""

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from enum import Enum
from typing import Any, Dict

# Context variables for request correlation
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
connection_id_var: ContextVar[str] = ContextVar("connection_id", default="")
batch_id_var: ContextVar[str] = ContextVar("batch_id", default="")


class Subsystem(str, Enum):
    WEBHOOK = "webhook"
    REGISTRY = "registry"
    NORMALIZER = "normalizer"
    AGENT = "agent"
    EXECUTOR = "executor"
    SCHEDULER = "scheduler"
    API = "api"
    DB = "db"


class StructuredFormatter(logging.Formatter):
    """JSON structured log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "subsystem": getattr(record, "subsystem", "general"),
            "message": record.getMessage(),
            "logger": record.name,
        }

        req_id = request_id_var.get("")
        if req_id:
            log_entry["request_id"] = req_id
        conn_id = connection_id_var.get("")
        if conn_id:
            log_entry["connection_id"] = conn_id
        batch_id = batch_id_var.get("")
        if batch_id:
            log_entry["batch_id"] = batch_id

        extra = getattr(record, "extra_data", None)
        if extra:
            log_entry["data"] = extra

        if record.exc_info and record.exc_info[0]:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(log_entry, default=str)


class SubsystemLogger:
    """Logger wrapper that adds subsystem context."""

    def __init__(self, subsystem: Subsystem, logger: logging.Logger):
        self._subsystem = subsystem
        self._logger = logger

    def _log(self, level: int, msg: str, extra_data: Any = None, **kwargs):
        extra = {"subsystem": self._subsystem.value}
        if extra_data:
            extra["extra_data"] = extra_data
        self._logger.log(level, msg, extra=extra, **kwargs)

    def debug(self, msg: str, data: Any = None, **kwargs):
        self._log(logging.DEBUG, msg, data, **kwargs)

    def info(self, msg: str, data: Any = None, **kwargs):
        self._log(logging.INFO, msg, data, **kwargs)

    def warning(self, msg: str, data: Any = None, **kwargs):
        self._log(logging.WARNING, msg, data, **kwargs)

    def error(self, msg: str, data: Any = None, **kwargs):
        self._log(logging.ERROR, msg, data, **kwargs)

    def exception(self, msg: str, data: Any = None):
        self._log(logging.ERROR, msg, data, exc_info=True)


# ── Logger Registry ──
_loggers: Dict[str, SubsystemLogger] = {}
_configured = False


def get_subsystem_logger(subsystem: Subsystem) -> SubsystemLogger:
    """Get a structured logger for a subsystem."""
    key = subsystem.value
    if key not in _loggers:
        logger = logging.getLogger(f"convertos.{key}")
        _loggers[key] = SubsystemLogger(subsystem, logger)
    return _loggers[key]


def configure_logging(level: str = "INFO", structured: bool = False) -> None:
    """Install a stdout handler on the ``convertos`` logger tree (idempotent)."""
    global _configured
    if _configured:
        return

    handler = logging.StreamHandler(sys.stdout)
    if structured:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))

    root = logging.getLogger("convertos")
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    _configured = True


def bind_context(request_id: str = "", connection_id: str = "", batch_id: str = ""):
    """Set correlation context for the current task."""
    if request_id:
        request_id_var.set(request_id)
    if connection_id:
        connection_id_var.set(connection_id)
    if batch_id:
        batch_id_var.set(batch_id)


def generate_request_id() -> str:
    """Generate a short unique request ID."""
    return str(uuid.uuid4())[:12]


# ── Convenience loggers ──
webhook_log = get_subsystem_logger(Subsystem.WEBHOOK)
registry_log = get_subsystem_logger(Subsystem.REGISTRY)
normalizer_log = get_subsystem_logger(Subsystem.NORMALIZER)
agent_log = get_subsystem_logger(Subsystem.AGENT)
executor_log = get_subsystem_logger(Subsystem.EXECUTOR)
scheduler_log = get_subsystem_logger(Subsystem.SCHEDULER)
api_log = get_subsystem_logger(Subsystem.API)
