"""Log formatting for crawl runs: JSON lines tagged with trace and job ids."""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from pathlib import Path
import sys
from typing import Any, TextIO

import orjson

from crawl_engine.observability.context import get_trace_context


_RESERVED_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime", "taskName"}

_QUIET_LIBRARIES = ("httpx", "httpcore")

TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class JsonFormatter(logging.Formatter):
    """One JSON object per record, carrying trace_id, span_id and the bound job id."""

    REDACT_KEYS = frozenset(
        {"password", "token", "api_key", "secret", "authorization", "cookie", "auth_credentials"}
    )
    MAX_MESSAGE_LEN = 2000
    MAX_EXTRA_LEN = 500

    def format(self, record: logging.LogRecord) -> str:
        ctx = get_trace_context()
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": _clip(record.getMessage(), self.MAX_MESSAGE_LEN),
            "trace_id": ctx.get("trace_id", ""),
            "span_id": ctx.get("span_id", ""),
        }
        _, dot, component = record.name.rpartition(".")
        if dot:
            entry["component"] = component
        if ctx.get("job_id"):
            entry["job_id"] = ctx["job_id"]
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        entry.update(self._extras(record))
        return orjson.dumps(entry, default=self._json_default).decode("utf-8")

    def _extras(self, record: logging.LogRecord) -> dict[str, Any]:
        extras: dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith("_"):
                continue
            if key.lower() in self.REDACT_KEYS:
                extras[key] = "[REDACTED]"
            elif isinstance(value, str):
                extras[key] = _clip(value, self.MAX_EXTRA_LEN)
            else:
                extras[key] = value
        return extras

    def _json_default(self, value: Any) -> Any:
        if isinstance(value, (set, frozenset)):
            try:
                return sorted(value)
            except TypeError:
                return list(value)
        if isinstance(value, (bytes, bytearray)):
            return value.decode("utf-8", errors="replace")
        if isinstance(value, (Path, Exception)):
            return str(value)
        return repr(value)


def _clip(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def configure_logging(
    level: str = "INFO",
    json_output: bool = True,
    *,
    logger_levels: dict[str, str] | None = None,
    stream: TextIO | None = None,
) -> None:
    """Replace the root handlers with a single stream handler.

    Args:
        level: Root log level name.
        json_output: Use ``JsonFormatter`` instead of the plain text format.
        logger_levels: Per-logger overrides, e.g. ``{"crawl_engine.utils.fetcher": "DEBUG"}``.
        stream: Destination stream; stdout when omitted.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for existing in list(root.handlers):
        root.removeHandler(existing)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JsonFormatter() if json_output else logging.Formatter(TEXT_FORMAT))
    root.addHandler(handler)

    for name in _QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)
    for name, name_level in (logger_levels or {}).items():
        logging.getLogger(name).setLevel(getattr(logging, name_level.upper(), logging.INFO))
