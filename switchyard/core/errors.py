"""
Error taxonomy for the orchestration core.

Per-credential and per-model failures are absorbed inside the dispatcher's
fallback loop; callers only ever see a single OrchestratorError subclass that
carries an explicit kind plus enough context (last underlying error, failing
stage) to decide whether to retry later.

Key features:
- Error kind enum (avoid typos)
- Severity levels (fatal, transient, user_error)
- Pydantic model for structured error details
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# ============================================================================
# Error Kinds and Severity
# ============================================================================


class ErrorKind(str, Enum):
    """Enumeration of all orchestrator error kinds."""

    AUTHENTICATION = "authentication"
    RATE_LIMITED = "rate_limited"
    QUOTA_EXHAUSTED = "quota_exhausted"
    TRANSIENT_NETWORK = "transient_network"
    MALFORMED_REQUEST = "malformed_request"
    ALL_BACKENDS_EXHAUSTED = "all_backends_exhausted"
    CONFIGURATION = "configuration"
    RETRIEVAL = "retrieval"
    PROVIDER = "provider"


class ErrorSeverity(str, Enum):
    """Error severity for automatic retry and alerting."""

    FATAL = "fatal"  # Unrecoverable, requires intervention
    TRANSIENT = "transient"  # Temporary, retryable
    USER_ERROR = "user_error"  # Caller mistake, not retryable


# ============================================================================
# Pydantic Error Models
# ============================================================================


class ErrorDetails(BaseModel):
    """Structured error details for serialization."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: ErrorKind = Field(..., description="Error kind enum")
    message: str = Field(..., description="Human-readable error message")
    context: dict[str, Any] = Field(default_factory=dict, description="Additional context")
    retry_after: float | None = Field(
        default=None, description="Retry after N seconds (for rate limits)"
    )
    severity: ErrorSeverity = Field(default=ErrorSeverity.FATAL, description="Error severity")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return self.model_dump(mode="json")


# ============================================================================
# Base Exception Class
# ============================================================================


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""

    kind: ErrorKind = ErrorKind.PROVIDER
    severity: ErrorSeverity = ErrorSeverity.FATAL

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.retry_after = retry_after

    def to_details(self) -> ErrorDetails:
        """Convert to structured ErrorDetails."""
        return ErrorDetails(
            kind=self.kind,
            message=self.message,
            context=self.details,
            retry_after=self.retry_after,
            severity=self.severity,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for serialization."""
        return {
            "error": self.kind.value,
            "message": self.message,
            "details": self.details,
            "severity": self.severity.value,
        }


# ============================================================================
# Provider Errors
# ============================================================================


class ProviderError(OrchestratorError):
    """Raw failure reported by a ProviderTransport.

    Transports raise this with whatever the backend told them; the
    dispatcher classifies it into one of the specific kinds below.
    """

    kind = ErrorKind.PROVIDER

    def __init__(
        self,
        message: str,
        status: int | None = None,
        name: str | None = None,
        retry_after: float | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details, retry_after=retry_after)
        self.status = status
        self.name = name or type(self).__name__


class AuthenticationError(OrchestratorError):
    """Credential invalid or unrefreshable."""

    kind = ErrorKind.AUTHENTICATION
    severity = ErrorSeverity.FATAL


class RateLimitedError(OrchestratorError):
    """Per-minute limit hit; recoverable via backoff."""

    kind = ErrorKind.RATE_LIMITED
    severity = ErrorSeverity.TRANSIENT


class QuotaExhaustedError(OrchestratorError):
    """Longer-horizon cap (daily or billing period) reached for a credential."""

    kind = ErrorKind.QUOTA_EXHAUSTED
    severity = ErrorSeverity.FATAL


class TransientNetworkError(OrchestratorError):
    """Timeout, 5xx or connection reset."""

    kind = ErrorKind.TRANSIENT_NETWORK
    severity = ErrorSeverity.TRANSIENT

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.status_code = status_code


class MalformedRequestError(OrchestratorError):
    """Request rejected as invalid; retrying repeats the identical failure."""

    kind = ErrorKind.MALFORMED_REQUEST
    severity = ErrorSeverity.USER_ERROR


class ConfigurationError(OrchestratorError):
    """Static configuration failed validation at startup."""

    kind = ErrorKind.CONFIGURATION
    severity = ErrorSeverity.USER_ERROR


class RetrievalError(OrchestratorError):
    """A retrieval collaborator (index or web search) failed."""

    kind = ErrorKind.RETRIEVAL
    severity = ErrorSeverity.TRANSIENT


class AllBackendsExhaustedError(OrchestratorError):
    """Every candidate model failed for a task.

    ``rate_limited_everywhere`` is True when every candidate was turned away by
    rate limiting, so retrying later is likely to succeed. False means at least
    one backend genuinely failed or was unavailable.
    """

    kind = ErrorKind.ALL_BACKENDS_EXHAUSTED
    severity = ErrorSeverity.TRANSIENT

    def __init__(
        self,
        message: str,
        rate_limited_everywhere: bool,
        last_error: BaseException | None = None,
        attempted_models: list[str] | None = None,
        stage: str = "dispatch",
    ) -> None:
        details = {
            "rate_limited_everywhere": rate_limited_everywhere,
            "attempted_models": list(attempted_models or []),
            "stage": stage,
            "last_error": str(last_error) if last_error is not None else None,
        }
        super().__init__(message, details=details)
        self.rate_limited_everywhere = rate_limited_everywhere
        self.last_error = last_error
        self.attempted_models = list(attempted_models or [])
        self.stage = stage
        if not rate_limited_everywhere:
            self.severity = ErrorSeverity.FATAL
