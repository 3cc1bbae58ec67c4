"""Observability helpers."""

from switchyard.observability.logging import (
    JSONFormatter,
    SecretRedactionFilter,
    configure_logging,
    redact,
)

__all__ = ["JSONFormatter", "SecretRedactionFilter", "configure_logging", "redact"]
