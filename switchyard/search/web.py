"""Web search retrieval over the Tavily search API."""

import logging
import os
from collections.abc import Mapping
from typing import Any

import httpx

from switchyard.core.errors import RetrievalError
from switchyard.core.protocols import ContextItem, RetrievalOptions

logger = logging.getLogger(__name__)


class TavilyWebRetrieval:
    """RetrievalCollaborator backed by the Tavily ``/search`` endpoint.

    In mock mode (``TAVILY_MOCK_MODE=true``) no request is made and canned
    results are returned, for offline runs and demos.
    """

    def __init__(
        self,
        api_key: str | None,
        endpoint: str = "https://api.tavily.com/search",
        search_depth: str = "basic",
        timeout_s: float = 20.0,
        mock_mode: bool = False,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self.endpoint = endpoint
        self.search_depth = search_depth
        self.timeout_s = timeout_s
        self.mock_mode = mock_mode
        self._client = http_client
        self._owns_client = http_client is None

    @classmethod
    def from_config(
        cls, config: Mapping[str, Any], environ: Mapping[str, str] | None = None
    ) -> "TavilyWebRetrieval":
        env = os.environ if environ is None else environ
        mock_value = env.get(config.get("mock_mode_env", "TAVILY_MOCK_MODE"), "")
        return cls(
            api_key=env.get(config.get("api_key_env", "TAVILY_API_KEY")) or None,
            endpoint=config.get("endpoint", "https://api.tavily.com/search"),
            search_depth=config.get("search_depth", "basic"),
            timeout_s=float(config.get("timeout_seconds", 20)),
            mock_mode=mock_value.lower() in ("1", "true", "yes"),
        )

    @property
    def configured(self) -> bool:
        return self.mock_mode or bool(self._api_key)

    async def search(
        self, query: str, options: RetrievalOptions | None = None
    ) -> list[ContextItem]:
        """Run a web search.

        Raises:
            RetrievalError: Missing API key, HTTP failure or unreadable body
        """
        opts = options or RetrievalOptions(max_results=5)
        if self.mock_mode:
            return self._mock_results(query, opts.max_results)
        if not self._api_key:
            msg = "Web search is not configured (missing API key)"
            raise RetrievalError(msg)

        payload = {
            "api_key": self._api_key,
            "query": query,
            "search_depth": self.search_depth,
            "max_results": opts.max_results,
        }
        client = self._get_client()
        try:
            response = await client.post(self.endpoint, json=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as e:
            msg = f"Web search failed with status {e.response.status_code}"
            raise RetrievalError(msg, details={"status": e.response.status_code}) from e
        except (httpx.HTTPError, ValueError) as e:
            msg = f"Web search failed: {type(e).__name__}"
            raise RetrievalError(msg) from e

        results = body.get("results", []) if isinstance(body, dict) else []
        items = [
            ContextItem(
                source_id=str(result.get("url") or f"web:{query}:{i}"),
                content=str(result.get("content", "")),
                relevance_score=float(result.get("score", 0.5) or 0.5),
                metadata={"type": "web", "title": result.get("title", ""), "url": result.get("url")},
            )
            for i, result in enumerate(results[: opts.max_results])
            if isinstance(result, dict)
        ]
        logger.info("Web search returned %d result(s)", len(items))
        return items

    def _mock_results(self, query: str, max_results: int) -> list[ContextItem]:
        return [
            ContextItem(
                source_id=f"https://example.com/mock/{i}",
                content=f"Mock web result {i + 1} for: {query}",
                relevance_score=0.5,
                metadata={"type": "web", "title": f"Mock result {i + 1}", "mock": True},
            )
            for i in range(min(max_results, 2))
        ]

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_s)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "TavilyWebRetrieval":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()
