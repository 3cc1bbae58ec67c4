"""Gemini transport over the ``generateContent`` REST endpoint."""

import logging
from typing import Any

import httpx

from switchyard.core.errors import ProviderError
from switchyard.core.protocols import ProviderRequest, ProviderResponse, TokenUsage
from switchyard.credentials.models import AuthMethod
from switchyard.providers.base import BaseTransport

logger = logging.getLogger(__name__)


class GeminiTransport(BaseTransport):
    """Gemini API client.

    API keys go in the ``x-goog-api-key`` header; OAuth access tokens are
    sent as a bearer token.
    """

    provider_id = "gemini"

    def __init__(
        self,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = http_client
        self._owns_client = http_client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def _send_impl(self, request: ProviderRequest) -> ProviderResponse:
        credential = request.credential
        if credential.auth_method == AuthMethod.OAUTH:
            headers = {"Authorization": f"Bearer {credential.secret}"}
        else:
            headers = {"x-goog-api-key": credential.secret}

        contents = [
            {
                "role": "model" if message["role"] == "assistant" else "user",
                "parts": [{"text": message["content"]}],
            }
            for message in request.messages
        ]
        payload: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {"temperature": request.temperature},
        }
        if request.max_tokens:
            payload["generationConfig"]["maxOutputTokens"] = request.max_tokens
        if request.system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": request.system_instruction}]}

        url = f"{self.base_url}/models/{request.model}:generateContent"
        response = await self._get_client().post(
            url, json=payload, headers=headers, timeout=request.timeout_ms / 1000.0
        )
        response.raise_for_status()
        return self._parse(response.json())

    def _parse(self, body: dict[str, Any]) -> ProviderResponse:
        candidates = body.get("candidates") or []
        if not candidates:
            feedback = body.get("promptFeedback", {})
            msg = f"gemini returned no candidates (block reason: {feedback.get('blockReason', 'unknown')})"
            raise ProviderError(msg, status=400, name="EmptyResponse")

        first = candidates[0]
        parts = (first.get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts if isinstance(part, dict))

        usage_meta = body.get("usageMetadata") or {}
        usage = TokenUsage(
            prompt_tokens=int(usage_meta.get("promptTokenCount", 0)),
            completion_tokens=int(usage_meta.get("candidatesTokenCount", 0)),
        )
        return ProviderResponse(
            text=text,
            usage=usage,
            raw_metadata={
                "finish_reason": first.get("finishReason"),
                "model_version": body.get("modelVersion"),
            },
        )

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
