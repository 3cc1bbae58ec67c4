"""
Error classification for provider failures.

Maps a raw failure ``{status, message, name}`` to a retry verdict. Checks run
in priority order and the first match wins:

1. 4xx other than 429 -> non-retryable
2. quota / daily-limit phrasing -> non-retryable (credential unusable for the period)
3. 429 or "quota" / "rate limit" phrasing -> retryable, rate limited
4. >=500, network failure or timeout -> retryable
5. anything else -> non-retryable (fail closed)
"""

import asyncio
import re
from dataclasses import dataclass
from enum import Enum

from switchyard.core.errors import (
    AuthenticationError,
    MalformedRequestError,
    OrchestratorError,
    ProviderError,
    QuotaExhaustedError,
    RateLimitedError,
    TransientNetworkError,
)


class FailureCategory(str, Enum):
    """Why a call failed, as far as the dispatcher cares."""

    AUTHENTICATION = "authentication"
    MALFORMED = "malformed"
    QUOTA_EXHAUSTED = "quota_exhausted"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    UNRECOGNIZED = "unrecognized"


@dataclass(frozen=True)
class ErrorVerdict:
    """Classification result."""

    should_retry: bool
    is_rate_limit: bool
    category: FailureCategory


_LONG_HORIZON_QUOTA = re.compile(
    r"daily limit|per[ -]day|perday|quota exhausted|exceeded your current quota"
    r"|insufficient_quota|billing|requests per day|free tier limit",
    re.IGNORECASE,
)
_RATE_LIMIT = re.compile(
    r"quota|rate[ _-]?limit|too many requests|resource[ _]exhausted|throttl",
    re.IGNORECASE,
)
_NETWORK = re.compile(
    r"timeout|timed out|econnreset|econnrefused|etimedout|enotfound|socket hang up"
    r"|connection (reset|refused|aborted|error)|network|temporarily unavailable"
    r"|service unavailable|overloaded",
    re.IGNORECASE,
)
_NETWORK_NAMES = frozenset(
    {
        "TimeoutError",
        "ConnectError",
        "ConnectTimeout",
        "ReadTimeout",
        "WriteTimeout",
        "PoolTimeout",
        "ReadError",
        "RemoteProtocolError",
        "APIConnectionError",
        "APITimeoutError",
        "ConnectionResetError",
        "ConnectionRefusedError",
        "AbortError",
    }
)

_AUTH_STATUSES = frozenset({401, 403})


def classify(status: int | None, message: str = "", name: str | None = None) -> ErrorVerdict:
    """Classify a provider failure.

    Args:
        status: HTTP status (or equivalent) when known
        message: Error message text
        name: Exception/error type name

    Returns:
        ErrorVerdict with retry and rate-limit flags
    """
    text = message or ""

    if status is not None and 400 <= status < 500 and status != 429:
        category = (
            FailureCategory.AUTHENTICATION if status in _AUTH_STATUSES else FailureCategory.MALFORMED
        )
        return ErrorVerdict(should_retry=False, is_rate_limit=False, category=category)

    if _LONG_HORIZON_QUOTA.search(text):
        return ErrorVerdict(
            should_retry=False, is_rate_limit=False, category=FailureCategory.QUOTA_EXHAUSTED
        )

    if status == 429 or _RATE_LIMIT.search(text):
        return ErrorVerdict(
            should_retry=True, is_rate_limit=True, category=FailureCategory.RATE_LIMITED
        )

    if (
        (status is not None and status >= 500)
        or (name is not None and name in _NETWORK_NAMES)
        or _NETWORK.search(text)
    ):
        return ErrorVerdict(should_retry=True, is_rate_limit=False, category=FailureCategory.TRANSIENT)

    return ErrorVerdict(should_retry=False, is_rate_limit=False, category=FailureCategory.UNRECOGNIZED)


def classify_exception(error: BaseException) -> ErrorVerdict:
    """Classify any exception raised while issuing a provider call."""
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return ErrorVerdict(should_retry=True, is_rate_limit=False, category=FailureCategory.TRANSIENT)
    if isinstance(error, ProviderError):
        return classify(error.status, error.message, error.name)
    status = getattr(error, "status_code", None) or getattr(error, "status", None)
    return classify(status if isinstance(status, int) else None, str(error), type(error).__name__)


def to_orchestrator_error(
    error: BaseException, verdict: ErrorVerdict, model_id: str
) -> OrchestratorError:
    """Wrap a raw failure in the taxonomy exception matching its verdict."""
    message = f"{model_id}: {error}" if str(error) else f"{model_id}: {type(error).__name__}"
    status = getattr(error, "status", None)
    details = {"model": model_id, "status": status, "error_type": type(error).__name__}

    if verdict.category == FailureCategory.AUTHENTICATION:
        wrapped: OrchestratorError = AuthenticationError(message, details=details)
    elif verdict.category == FailureCategory.QUOTA_EXHAUSTED:
        wrapped = QuotaExhaustedError(message, details=details)
    elif verdict.category == FailureCategory.RATE_LIMITED:
        wrapped = RateLimitedError(
            message, details=details, retry_after=getattr(error, "retry_after", None)
        )
    elif verdict.category == FailureCategory.TRANSIENT:
        wrapped = TransientNetworkError(
            message, status_code=status if isinstance(status, int) else None, details=details
        )
    else:
        wrapped = MalformedRequestError(message, details=details)
    wrapped.__cause__ = error
    return wrapped
