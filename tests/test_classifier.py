"""Tests for provider failure classification."""

import asyncio

import pytest

from switchyard.core.errors import (
    AuthenticationError,
    ProviderError,
    QuotaExhaustedError,
    RateLimitedError,
    TransientNetworkError,
)
from switchyard.dispatch.classifier import (
    FailureCategory,
    classify,
    classify_exception,
    to_orchestrator_error,
)


class TestClassify:
    """Test the priority-ordered classification rules."""

    def test_rate_limit_is_retryable(self) -> None:
        """Test 429 with rate-limit text."""
        verdict = classify(429, "rate limit exceeded")
        assert verdict.should_retry is True
        assert verdict.is_rate_limit is True

    def test_forbidden_is_fatal(self) -> None:
        """Test 403 is neither retryable nor a rate limit."""
        verdict = classify(403, "forbidden")
        assert verdict.should_retry is False
        assert verdict.is_rate_limit is False
        assert verdict.category == FailureCategory.AUTHENTICATION

    def test_client_error_beats_quota_text(self) -> None:
        """Test that a 4xx status wins over rate-limit phrasing."""
        verdict = classify(400, "quota exceeded for this request")
        assert verdict.should_retry is False
        assert verdict.category == FailureCategory.MALFORMED

    def test_daily_quota_is_not_retryable(self) -> None:
        """Test long-horizon quota phrasing without a status."""
        verdict = classify(None, "You have hit the daily limit for this model")
        assert verdict.should_retry is False
        assert verdict.category == FailureCategory.QUOTA_EXHAUSTED

    def test_quota_text_without_status_is_rate_limit(self) -> None:
        """Test generic quota phrasing maps to a retryable rate limit."""
        verdict = classify(None, "RESOURCE_EXHAUSTED: quota")
        assert verdict.is_rate_limit is True

    @pytest.mark.parametrize("status", [500, 502, 503])
    def test_server_errors_are_transient(self, status: int) -> None:
        """Test 5xx statuses."""
        verdict = classify(status, "upstream failure")
        assert verdict.should_retry is True
        assert verdict.is_rate_limit is False

    def test_network_names_are_transient(self) -> None:
        """Test classification by error name."""
        assert classify(None, "", "ConnectTimeout").category == FailureCategory.TRANSIENT
        assert classify(None, "socket hang up").category == FailureCategory.TRANSIENT

    def test_unknown_fails_closed(self) -> None:
        """Test that unrecognized errors are not retried."""
        verdict = classify(None, "something odd happened")
        assert verdict.should_retry is False
        assert verdict.category == FailureCategory.UNRECOGNIZED


class TestClassifyException:
    """Test exception-level classification and wrapping."""

    def test_timeout(self) -> None:
        """Test asyncio timeouts are transient."""
        verdict = classify_exception(asyncio.TimeoutError())
        assert verdict.category == FailureCategory.TRANSIENT

    def test_provider_error_uses_status(self) -> None:
        """Test ProviderError status flows into classification."""
        verdict = classify_exception(ProviderError("slow down", status=429))
        assert verdict.is_rate_limit is True

    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            (ProviderError("nope", status=401), AuthenticationError),
            (ProviderError("too many requests", status=429), RateLimitedError),
            (ProviderError("insufficient_quota"), QuotaExhaustedError),
            (ProviderError("boom", status=503), TransientNetworkError),
        ],
    )
    def test_wrapping(self, error: ProviderError, expected: type) -> None:
        """Test each category maps to its taxonomy exception."""
        wrapped = to_orchestrator_error(error, classify_exception(error), "model-x")
        assert isinstance(wrapped, expected)
        assert wrapped.details["model"] == "model-x"
        assert wrapped.__cause__ is error
