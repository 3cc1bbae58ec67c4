"""OpenAI-compatible chat completions transport (Mistral, Qwen)."""

import logging
from typing import Any

import openai
from openai import AsyncOpenAI

from switchyard.core.protocols import ProviderRequest, ProviderResponse, TokenUsage
from switchyard.providers.base import BaseTransport

logger = logging.getLogger(__name__)


def normalize_base_url(url: str) -> str:
    """Ensure a scheme and a trailing ``/v1`` path segment."""
    base = url.strip().rstrip("/")
    if not base.startswith(("http://", "https://")):
        base = f"https://{base}"
    return base if base.endswith("/v1") else f"{base}/v1"


class OpenAICompatibleTransport(BaseTransport):
    """Chat completions client for any OpenAI-compatible endpoint.

    The base URL may be overridden per credential through the
    ``resource_url`` metadata that some OAuth token endpoints return.
    """

    def __init__(
        self,
        provider_id: str,
        base_url: str,
        use_resource_url: bool = False,
    ) -> None:
        """Initialize transport.

        Args:
            provider_id: Provider this transport serves ("mistral", "qwen")
            base_url: Default API base URL
            use_resource_url: Prefer the credential's ``resource_url`` when present
        """
        self.provider_id = provider_id
        self.base_url = base_url
        self.use_resource_url = use_resource_url
        self._clients: dict[tuple[str, str], AsyncOpenAI] = {}

    def _base_url_for(self, request: ProviderRequest) -> str:
        resource_url = request.credential.metadata.get("resource_url")
        if self.use_resource_url and resource_url:
            return normalize_base_url(str(resource_url))
        return self.base_url

    def _get_client(self, base_url: str, secret: str) -> AsyncOpenAI:
        key = (base_url, secret)
        if key not in self._clients:
            # Retries belong to the dispatcher
            self._clients[key] = AsyncOpenAI(api_key=secret, base_url=base_url, max_retries=0)
        return self._clients[key]

    async def _send_impl(self, request: ProviderRequest) -> ProviderResponse:
        client = self._get_client(self._base_url_for(request), request.credential.secret)

        messages: list[dict[str, Any]] = []
        if request.system_instruction:
            messages.append({"role": "system", "content": request.system_instruction})
        messages.extend({"role": m["role"], "content": m["content"]} for m in request.messages)

        kwargs: dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "temperature": request.temperature,
            "timeout": request.timeout_ms / 1000.0,
        }
        if request.max_tokens:
            kwargs["max_tokens"] = request.max_tokens

        try:
            response = await client.chat.completions.create(**kwargs)
        except openai.OpenAIError as e:
            raise self.sdk_error(e) from e

        text = ""
        finish_reason = None
        if response.choices:
            text = response.choices[0].message.content or ""
            finish_reason = response.choices[0].finish_reason
        usage = TokenUsage(
            prompt_tokens=response.usage.prompt_tokens if response.usage else 0,
            completion_tokens=response.usage.completion_tokens if response.usage else 0,
        )
        return ProviderResponse(
            text=text,
            usage=usage,
            raw_metadata={"model": response.model, "finish_reason": finish_reason},
        )

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()
