"""Base provider transport with common functionality."""

import contextlib
import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx

from switchyard.core.errors import ProviderError
from switchyard.core.protocols import ChatMessage, ProviderRequest, ProviderResponse

logger = logging.getLogger(__name__)


def parse_retry_after(headers: Any) -> float | None:
    """Read a ``retry-after`` header in seconds, if present and numeric."""
    if headers is None:
        return None
    value = headers.get("retry-after")
    if not value:
        return None
    with contextlib.suppress(ValueError):
        return float(value)
    return None


def flatten_messages(messages: list[ChatMessage]) -> str:
    """Render a conversation as one prompt for single-turn backends."""
    if len(messages) == 1:
        return messages[0]["content"]
    return "\n\n".join(f"{m['role'].capitalize()}: {m['content']}" for m in messages)


class BaseTransport(ABC):
    """Abstract base class for provider transports.

    Subclasses implement ``_send_impl`` and may raise whatever their SDK
    raises; ``send`` maps anything that is not already a ProviderError into
    one carrying the status code, error name and retry-after hint.
    """

    provider_id: str = ""

    async def send(self, request: ProviderRequest) -> ProviderResponse:
        """Send a request and normalize the failure surface."""
        try:
            return await self._send_impl(request)
        except ProviderError:
            raise
        except httpx.HTTPStatusError as e:
            raise ProviderError(
                self._describe(e.response),
                status=e.response.status_code,
                name=type(e).__name__,
                retry_after=parse_retry_after(e.response.headers),
            ) from e
        except (httpx.TimeoutException, httpx.TransportError) as e:
            msg = f"{self.provider_id} network error: {type(e).__name__}"
            raise ProviderError(msg, name=type(e).__name__) from e
        except (OSError, ValueError, KeyError, TypeError) as e:
            msg = f"{self.provider_id} error: {e}"
            raise ProviderError(msg, name=type(e).__name__) from e

    @abstractmethod
    async def _send_impl(self, request: ProviderRequest) -> ProviderResponse:
        """Provider-specific request implementation.

        Raises:
            ProviderError: Backend rejected or failed the request
        """

    def _describe(self, response: httpx.Response) -> str:
        """Error text from a failed HTTP response (body message when readable)."""
        message = ""
        with contextlib.suppress(ValueError):
            body = response.json()
            if isinstance(body, dict):
                error = body.get("error", body)
                message = error.get("message", "") if isinstance(error, dict) else str(error)
        return f"{self.provider_id} HTTP {response.status_code}: {message or response.reason_phrase}"

    def sdk_error(self, error: Exception) -> ProviderError:
        """Map an SDK exception (openai / anthropic) to a ProviderError."""
        status = getattr(error, "status_code", None)
        response = getattr(error, "response", None)
        retry_after = parse_retry_after(getattr(response, "headers", None))
        msg = f"{self.provider_id} error: {error}"
        return ProviderError(
            msg,
            status=status if isinstance(status, int) else None,
            name=type(error).__name__,
            retry_after=retry_after,
        )

    async def aclose(self) -> None:
        """Release network resources (no-op by default)."""
