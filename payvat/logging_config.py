"""Logging setup driven by ``settings.logging``.

JSON lines in production-like environments, plain text for local work.
Values under sensitive keys are masked before any handler sees them.
"""
from __future__ import annotations

import json
import logging
import re
import sys
from datetime import datetime, timezone

from .config import settings

SENSITIVE_KEYS = ("password", "token", "secret", "authorization", "client_secret", "api_key")

_SENSITIVE_PATTERN = re.compile(
    r"(?i)\b(" + "|".join(SENSITIVE_KEYS) + r")(['\"]?\s*[:=]\s*['\"]?)([^\s,'\"}]+)"
)

_RESERVED_ATTRS = set(vars(logging.makeLogRecord({})).keys()) | {"message", "asctime"}


def redact(text: str) -> str:
    """Mask values that follow a sensitive key in ``key=value`` or ``key: value`` form."""
    return _SENSITIVE_PATTERN.sub(r"\1\2[REDACTED]", text)


class RedactingFilter(logging.Filter):
    """Masks secrets in the rendered message and in ``extra`` fields."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = redact(record.getMessage())
        record.args = None
        for key in list(vars(record)):
            if key in _RESERVED_ATTRS:
                continue
            if any(s in key.lower() for s in SENSITIVE_KEYS):
                setattr(record, key, "[REDACTED]")
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line; ``extra`` fields are merged into the object."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in vars(record).items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logging() -> None:
    """Configure the root logger once per process."""
    root = logging.getLogger()
    root.setLevel(settings.logging.level.upper())

    for handler in list(root.handlers):
        if getattr(handler, "_payvat", False):
            root.removeHandler(handler)

    if settings.logging.format == "json":
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if settings.logging.file:
        handlers.append(logging.FileHandler(settings.logging.file, encoding="utf-8"))

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(RedactingFilter())
        handler._payvat = True  # type: ignore[attr-defined]
        root.addHandler(handler)

    # Quiet noisy libraries
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.db.echo else logging.WARNING
    )
    logging.getLogger("pdfminer").setLevel(logging.WARNING)
