# FILE: livepatch/logging.py
from __future__ import annotations

import contextvars
import datetime as _dt
import hashlib
import importlib.metadata as _metadata
import json
import logging
import os
import socket
import sys
import traceback
from typing import Any, Dict, Optional, Set

# ---------- Module-level config (env-driven, safe defaults) ----------
_LOG_SCHEMA = "livepatch.log.v1"
_LOG_SERVICE = os.environ.get("LIVEPATCH_SERVICE", "livepatch")
_LOG_ENV = os.environ.get("LIVEPATCH_ENV", os.environ.get("ENV", "dev"))
_LOG_INSTANCE = socket.gethostname()

try:
    _LOG_VERSION = _metadata.version("livepatch")
except _metadata.PackageNotFoundError:
    # Running from a source checkout.
    _LOG_VERSION = "0.0.0"

# Max chars per field (truncate to keep JSON small)
try:
    _MAX_FIELD = int(os.environ.get("LIVEPATCH_LOG_MAX_FIELD", "4096"))
    _MAX_FIELD = max(256, _MAX_FIELD)
except ValueError:
    _MAX_FIELD = 4096

# Standard LogRecord attributes that are not treated as dynamic meta
_LOG_RECORD_STD_ATTRS: Set[str] = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
    "message",
    "asctime",
}

# ---------- Context management ----------
_log_ctx: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "livepatch_log_ctx", default={}
)


def bind(**fields: Any) -> None:
    """Merge fields into the current logging context."""
    cur = dict(_log_ctx.get())
    for k, v in fields.items():
        if v is None:
            continue
        cur[str(k)] = v
    _log_ctx.set(cur)


def unbind(*keys: str) -> None:
    cur = dict(_log_ctx.get())
    for k in keys:
        cur.pop(k, None)
    _log_ctx.set(cur)


def context() -> Dict[str, Any]:
    return dict(_log_ctx.get())


# ---------- Helpers ----------
def _ts_iso() -> str:
    # RFC3339 with milliseconds, UTC Z
    now = _dt.datetime.now(_dt.timezone.utc)
    ms = int(now.microsecond / 1000)
    base = now.replace(microsecond=0).isoformat().replace("+00:00", "Z")
    return f"{base[:-1]}.{ms:03d}Z"


def _compact_json(obj: Dict[str, Any]) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)


def _truncate(v: Any) -> Any:
    if isinstance(v, str) and len(v) > _MAX_FIELD:
        return v[:_MAX_FIELD] + "...<truncated>"
    return v


def _value_digest(value: str) -> str:
    """Short, non-reversible fingerprint of a value for log correlation."""
    return hashlib.blake2s(value.encode("utf-8", "replace"), digest_size=8).hexdigest()


def _meta_from_record(record: logging.LogRecord, evt_keys: Set[str]) -> Dict[str, Any]:
    meta: Dict[str, Any] = {}
    for k, v in record.__dict__.items():
        if k in _LOG_RECORD_STD_ATTRS or k in evt_keys or k.startswith("_"):
            continue
        if v is None:
            continue
        if isinstance(v, (str, int, float, bool)):
            meta[k] = _truncate(v)
        else:
            meta[k] = _truncate(str(v))
    return meta


# ---------- JSON formatter ----------
class JSONFormatter(logging.Formatter):
    """
    JSON formatter with a stable envelope:
      - schema, service, version, env, instance
      - ts, lvl, logger, msg
      - bound context fields (patch_version, class_name, rule, ...)
      - exc_type / exc_message / stack when an exception is attached
      - meta: remaining `extra=` fields
    """

    def __init__(self, *, include_stack: bool = True):
        super().__init__()
        self.include_stack = include_stack

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        evt: Dict[str, Any] = {
            "schema": _LOG_SCHEMA,
            "service": _LOG_SERVICE,
            "version": _LOG_VERSION,
            "env": _LOG_ENV,
            "instance": _LOG_INSTANCE,
            "ts": _ts_iso(),
            "lvl": record.levelname,
            "logger": record.name,
            "msg": _truncate(str(record.getMessage())),
            "thread": record.threadName,
        }

        for k, v in context().items():
            evt.setdefault(k, _truncate(v))

        if record.exc_info and self.include_stack:
            exc_type, exc_val, exc_tb = record.exc_info
            evt["exc_type"] = getattr(exc_type, "__name__", str(exc_type))
            evt["exc_message"] = str(exc_val)[:_MAX_FIELD]
            evt["stack"] = "".join(
                traceback.format_exception(exc_type, exc_val, exc_tb)
            )[:_MAX_FIELD]

        meta = _meta_from_record(record, set(evt.keys()))
        if meta:
            evt["meta"] = meta

        return _compact_json(evt)


def _clear_handlers(logger: logging.Logger) -> None:
    for h in list(logger.handlers):
        logger.removeHandler(h)


def configure_json_logging(
    level: str = "INFO",
    *,
    stream: Any = None,
    include_stack: bool = True,
    logger_name: str = "livepatch",
) -> logging.Logger:
    """
    Attach a JSON handler to the `livepatch` logger tree.

    The root logger of the host application is left alone; records still
    propagate to it.
    """
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    stream = stream or sys.stderr

    h = logging.StreamHandler(stream=stream)
    h.setFormatter(JSONFormatter(include_stack=include_stack))
    h.setLevel(lvl)

    lg = logging.getLogger(logger_name)
    lg.setLevel(lvl)
    _clear_handlers(lg)
    lg.addHandler(h)
    return lg


def log_security_event(
    logger: logging.Logger,
    *,
    threat_label: str,
    threat_vector: str,
    value: Optional[str] = None,
    message: str = "security_event",
    extra: Optional[Dict[str, Any]] = None,
    level: int = logging.WARNING,
) -> None:
    """
    Unified security event logger for sanitization hits.

    The offending value itself is never logged, only its length and a
    short digest.
    """
    extra_dict: Dict[str, Any] = {
        "threat_label": threat_label,
        "threat_vector": threat_vector,
    }
    if value is not None:
        extra_dict["value_len"] = len(value)
        extra_dict["value_digest"] = _value_digest(value)
    if extra:
        for k, v in extra.items():
            if v is None:
                continue
            extra_dict[str(k)] = _truncate(v)
    logger.log(level, message, extra=extra_dict)


__all__ = [
    "bind",
    "unbind",
    "context",
    "configure_json_logging",
    "log_security_event",
    "JSONFormatter",
]
