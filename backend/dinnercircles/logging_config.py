"""Central logging configuration for the Dinner Circles backend.

Usage: from .logging_config import configure_logging; configure_logging()

Writes structured key=value logs to stdout (suitable for Docker); set
LOG_JSON=true to emit one JSON object per line instead.
"""
from __future__ import annotations

import json
import logging
import os
import re
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Optional

_RESERVED_ATTRS = {
    "args", "msg", "message", "exc_info", "exc_text", "stack_info", "lineno", "pathname",
    "filename", "module", "created", "msecs", "relativeCreated", "funcName", "thread",
    "threadName", "processName", "process", "taskName", "levelno", "levelname", "name", "asctime",
}


class KeyValueFormatter(logging.Formatter):
    """Minimal key=value structured formatter.

    Example output:
        2026-10-18T12:00:00.123+00:00 INFO matching matching.trigger.closed event_id=... circles=4
    """
    default_time_format = "%Y-%m-%dT%H:%M:%S%z"

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:  # type: ignore[override]
        # Always format in UTC with explicit +00:00 offset.
        dt = datetime.fromtimestamp(record.created, timezone.utc)
        return dt.strftime("%Y-%m-%dT%H:%M:%S") + f".{int(record.msecs):03d}+00:00"

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        record.asctime = self.formatTime(record, self.default_time_format)
        extras = []
        for key in ("request_id", "client_ip", "event_id"):
            val = getattr(record, key, None)
            if val is not None:
                extras.append(f"{key}={val}")
        msg = super().format(record)
        extras_s = " " + " ".join(extras) if extras else ""
        return f"{record.asctime} {record.levelname} {record.name} {msg}{extras_s}"


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        base = {
            "ts": KeyValueFormatter().formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        # Include extra attributes (simple scalars) for context
        for k, v in record.__dict__.items():
            if k.startswith('_') or k in _RESERVED_ATTRS:
                continue
            if isinstance(v, (str, int, float, bool)) or v is None:
                base.setdefault(k, v)
        if record.exc_info:
            base["exc_type"] = record.exc_info[0].__name__ if record.exc_info[0] else None
        return json.dumps(base, ensure_ascii=False)


class PiiMaskFilter(logging.Filter):
    _email_re = re.compile(r"([a-zA-Z0-9_.+-]{1,3})[a-zA-Z0-9_.+-]*@([a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+)")

    def mask_email(self, s: str) -> str:
        return self._email_re.sub(lambda m: f"{m.group(1)}***@{m.group(2)}", s)

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self.mask_email(record.msg)
        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: self.mask_email(v) if isinstance(v, str) else v for k, v in record.args.items()}
            else:
                record.args = tuple(self.mask_email(a) if isinstance(a, str) else a for a in record.args)
        return True


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() in {"1", "true", "yes"}


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root & domain loggers idempotently.

    - LEVEL from LOG_LEVEL env (default INFO)
    - LOG_JSON=true switches to JSON lines
    - LOG_TO_FILES=true additionally writes LOG_DIR/matching.log (size rotated)
    """
    if getattr(configure_logging, "_configured", False):  # type: ignore[attr-defined]
        return

    log_level = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    json_mode = _env_bool("LOG_JSON", False)
    to_files = _env_bool("LOG_TO_FILES", False)

    root = logging.getLogger()
    root.setLevel(log_level)
    # Clear handlers auto-added by basicConfig before installing ours.
    if not getattr(root, "_dc_custom", False):
        for h in list(root.handlers):
            root.removeHandler(h)

    formatter: logging.Formatter = JsonFormatter() if json_mode else KeyValueFormatter("%(message)s")
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(formatter)
    handler.addFilter(PiiMaskFilter())
    root.addHandler(handler)
    root._dc_custom = True  # type: ignore[attr-defined]

    for noisy in ["uvicorn", "httpx", "asyncio", "pymongo"]:
        logging.getLogger(noisy).setLevel(os.getenv("NOISY_LOG_LEVEL", "WARNING").upper())

    # Domain loggers used across the code base
    for name in ["auth", "request", "matching"]:
        logging.getLogger(name)

    if to_files:
        base_dir = os.getenv("LOG_DIR", "logs")
        os.makedirs(base_dir, exist_ok=True)
        fh = RotatingFileHandler(
            os.path.join(base_dir, "matching.log"),
            maxBytes=int(os.getenv("LOG_MAX_BYTES", str(10 * 1024 * 1024))),
            backupCount=int(os.getenv("LOG_BACKUP_COUNT", "7")),
            encoding="utf-8",
        )
        fh.setFormatter(formatter)
        fh.addFilter(PiiMaskFilter())
        logging.getLogger("matching").addHandler(fh)

    configure_logging._configured = True  # type: ignore[attr-defined]


__all__ = ["configure_logging", "KeyValueFormatter", "JsonFormatter", "PiiMaskFilter"]
