"""Logging helpers.

The runner uses Python logging with a JSON formatter for auditability (syslog)
and a timestamped key=value formatter for the operator's terminal. Handlers
and levels are wired in logging.yaml via ``logging.config.dictConfig``.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from wpcron.utils import format_rfc3339

# Structured extras carried on records (when provided).
_EXTRA_KEYS = (
    "event",
    "status",
    "path",
    "owner",
    "method",
    "duration",
    "detail",
    "reason",
    "check",
    "line_no",
    "exit_code",
    "total",
    "success",
    "failure",
    "blocked",
    "invalid",
    "max_parallel",
    "cpu_threshold",
)


def _extras(record: logging.LogRecord) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for k in _EXTRA_KEYS:
        v = getattr(record, k, None)
        if v is not None:
            out[k] = v
    return out


class JSONFormatter(logging.Formatter):
    """One JSON object per record.

    ``tag`` is prepended verbatim; syslog uses it as the program identifier
    (``wp-cron: {...}``) so journal filters like ``journalctl -t wp-cron`` work.
    """

    def __init__(self, tag: str = ""):
        super().__init__()
        self._tag = tag

    def format(self, record: logging.LogRecord) -> str:
        base: dict[str, Any] = {
            "ts": format_rfc3339(datetime.fromtimestamp(record.created, tz=timezone.utc)),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        base.update(_extras(record))

        if record.exc_info:
            base["exc_info"] = self.formatException(record.exc_info)

        return self._tag + json.dumps(base, ensure_ascii=True, sort_keys=True, default=str)


class ConsoleFormatter(logging.Formatter):
    """``2024-01-01 12:00:00 LEVEL msg key=value ...`` for stdout."""

    def __init__(self, fmt: str | None = None, datefmt: str | None = "%Y-%m-%d %H:%M:%S"):
        super().__init__(fmt or "%(asctime)s %(levelname)s %(message)s", datefmt=datefmt)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = _extras(record)
        extras.pop("event", None)
        if extras:
            line += " " + " ".join(f"{k}={v}" for k, v in extras.items())
        return line
