"""Logging setup: plain or JSON output with secret redaction."""

import json
import logging
import re
import sys
from datetime import datetime, timezone
from typing import Any

_SECRET_PATTERNS = [
    re.compile(r"(Bearer\s+)[A-Za-z0-9._\-]+", re.IGNORECASE),
    re.compile(r"((?:api[_-]?key|access_token|refresh_token|client_secret|x-goog-api-key)[\"']?\s*[:=]\s*[\"']?)[^\s\"',&]+", re.IGNORECASE),
    re.compile(r"()\bAIza[0-9A-Za-z_\-]{20,}"),
    re.compile(r"()\bsk-[A-Za-z0-9_\-]{16,}"),
]

_EXTRA_FIELDS = ("model", "provider", "task_type", "credential_id", "window", "iteration")


def redact(text: str) -> str:
    """Mask anything that looks like a key or token."""
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(r"\1[REDACTED]", text)
    return text


class SecretRedactionFilter(logging.Filter):
    """Rewrite log records so keys and tokens never reach a handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        cleaned = redact(message)
        if cleaned != message:
            record.msg = cleaned
            record.args = None
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line (ELK/Datadog style)."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in _EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_data[name] = value

        if record.exc_info:
            log_data["exception"] = redact(self.formatException(record.exc_info))

        return json.dumps(log_data, default=str)


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    """Install a single stderr handler on the ``switchyard`` logger.

    Calling this again replaces the handler rather than adding a second one.
    """
    logger = logging.getLogger("switchyard")
    for handler in list(logger.handlers):
        if getattr(handler, "_switchyard", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler._switchyard = True  # type: ignore[attr-defined]
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
        )
    handler.addFilter(SecretRedactionFilter())

    logger.addHandler(handler)
    logger.setLevel(level.upper())
