"""
Structured JSON logging for the ledger engine (stdlib `logging` only).

Every line is one JSON object carrying:
- service, env: process identity (from EngineConfig / env)
- correlation_id: one per ledger write or resync pass, shared with the
  follow-up replays it triggers
- event_type, severity, message, logger
- any keyword fields passed to `log_event`
"""

from __future__ import annotations

import json
import logging
import os
import sys
import traceback
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

_CORRELATION_ID: ContextVar[Optional[str]] = ContextVar("ledger_correlation_id", default=None)

# Attributes every LogRecord carries; anything else on a record came from `extra=`.
_RECORD_ATTRS: frozenset[str] = frozenset(vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))) | {
    "message",
    "asctime",
    "taskName",
}
_ENVELOPE_KEYS: frozenset[str] = frozenset({"service", "env", "correlation_id", "event_type", "severity"})

_SEVERITY_ALIASES = {"WARN": "WARNING", "FATAL": "CRITICAL"}


def _one_line(v: Any, limit: int = 2000) -> str:
    s = "" if v is None else str(v)
    s = " ".join(s.splitlines()).strip()
    return s if len(s) <= limit else s[: limit - 1] + "…"


def _first_env(*names: str, default: str) -> str:
    for name in names:
        v = (os.getenv(name) or "").strip()
        if v:
            return _one_line(v, 128)
    return default


def get_correlation_id() -> Optional[str]:
    return _CORRELATION_ID.get()


@contextmanager
def bind_correlation_id(*, correlation_id: str | None = None) -> Iterator[str]:
    """
    Bind a correlation id for the duration of one ledger operation.

    Nested binds inherit the outer id unless an explicit one is given, so a
    write and the replay it triggers share one id.
    """
    cid = _one_line(correlation_id, 128) or get_correlation_id() or uuid.uuid4().hex
    token = _CORRELATION_ID.set(cid)
    try:
        yield cid
    finally:
        _CORRELATION_ID.reset(token)


class JsonLogFormatter(logging.Formatter):
    def __init__(self, *, service: str | None = None, env: str | None = None) -> None:
        super().__init__()
        self.service = _one_line(service, 128) or _first_env("SERVICE_NAME", "K_SERVICE", default="ledger-engine")
        self.env = _one_line(env, 64) or _first_env("ENV", "ENVIRONMENT", default="unknown")

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (format required by logging)
        severity = record.levelname.upper()
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "severity": _SEVERITY_ALIASES.get(severity, severity),
            "service": self.service,
            "env": self.env,
            "correlation_id": getattr(record, "correlation_id", None) or get_correlation_id(),
            "event_type": getattr(record, "event_type", None) or "log",
            "message": _one_line(record.getMessage(), 4000),
            "logger": record.name,
        }
        if record.exc_info:
            payload["exception"] = "".join(traceback.format_exception(*record.exc_info))[-8000:]

        for k, v in record.__dict__.items():
            if k in _RECORD_ATTRS or k in _ENVELOPE_KEYS or k.startswith("_"):
                continue
            payload[k] = v

        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)


def init_structured_logging(
    *,
    service: str | None = None,
    env: str | None = None,
    level: str | int | None = None,
) -> None:
    """
    Route the root logger to stdout as JSON lines.

    Safe to call multiple times (last call wins).
    """
    lvl = level or (os.getenv("LOG_LEVEL") or "INFO").upper()
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter(service=service, env=env))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(lvl)
    logging.captureWarnings(True)


def log_event(
    logger: logging.Logger,
    event_type: str,
    *,
    severity: str = "INFO",
    message: str | None = None,
    exc_info: bool = False,
    **fields: Any,
) -> None:
    """Emit one semantic event with a stable `event_type`."""
    lvl = logging.getLevelName(str(severity).upper())
    if not isinstance(lvl, int):
        lvl = logging.INFO
    logger.log(lvl, message or event_type, exc_info=exc_info, extra={"event_type": _one_line(event_type, 128), **fields})
