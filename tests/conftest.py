"""Shared fixtures: synthetic clock, scripted transports and an in-memory index."""

from collections.abc import Callable
from typing import Any

import pytest

from switchyard.core.errors import ProviderError
from switchyard.core.protocols import (
    ContextItem,
    ProviderRequest,
    ProviderResponse,
    RetrievalOptions,
    TokenUsage,
)
from switchyard.credentials.models import AuthMethod, Credential
from switchyard.credentials.store import CredentialStore
from switchyard.dispatch.dispatcher import TaskDispatcher
from switchyard.dispatch.rate_limiter import RateLimiter
from switchyard.dispatch.registry import ModelRegistry


class FakeClock:
    """Deterministic clock; ``sleep`` advances time instead of waiting."""

    def __init__(self, start: float = 1_000.0, wall: float = 1_700_000_000.0) -> None:
        self.now = start
        self.wall = wall
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def time(self) -> float:
        return self.wall + self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)

    def advance(self, seconds: float) -> None:
        self.now += max(0.0, seconds)


Behaviour = Callable[[ProviderRequest], Any]


class FakeTransport:
    """Transport whose replies are scripted per model.

    A behaviour is either a string (returned as text), an exception (raised),
    or a callable taking the request and returning either of those.
    """

    def __init__(self, provider_id: str, default: Any = "ok", journal: list[str] | None = None) -> None:
        self.provider_id = provider_id
        self.default = default
        self.behaviours: dict[str, Any] = {}
        self.requests: list[ProviderRequest] = []
        self.journal = journal if journal is not None else []

    def on(self, model: str, behaviour: Any) -> "FakeTransport":
        self.behaviours[model] = behaviour
        return self

    def calls_for(self, model: str) -> int:
        return sum(1 for r in self.requests if r.model == model)

    async def send(self, request: ProviderRequest) -> ProviderResponse:
        self.requests.append(request)
        self.journal.append(request.model)
        behaviour = self.behaviours.get(request.model, self.default)
        if callable(behaviour) and not isinstance(behaviour, type):
            behaviour = behaviour(request)
        if isinstance(behaviour, BaseException):
            raise behaviour
        return ProviderResponse(text=str(behaviour), usage=TokenUsage(10, 5))


class FakeIndex:
    """In-memory retrieval collaborator keyed by exact query."""

    def __init__(self, results: dict[str, list[ContextItem]] | None = None) -> None:
        self.results = results or {}
        self.queries: list[str] = []
        self.error: BaseException | None = None

    async def search(self, query: str, options: RetrievalOptions | None = None) -> list[ContextItem]:
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        items = self.results.get(query, [])
        limit = options.max_results if options else len(items)
        return [ContextItem(i.source_id, i.content, i.relevance_score, dict(i.metadata)) for i in items[:limit]]


def server_error(message: str = "internal error") -> ProviderError:
    return ProviderError(message, status=500)


def api_key(provider_id: str, index: int = 0, secret: str | None = None) -> Credential:
    return Credential(
        provider_id=provider_id,
        credential_id=f"{provider_id}:key:{index}",
        auth_method=AuthMethod.API_KEY,
        secret=secret or f"{provider_id}-secret-{index}",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transports() -> dict[str, FakeTransport]:
    journal: list[str] = []
    return {p: FakeTransport(p, journal=journal) for p in ("gemini", "mistral", "claude", "qwen")}


@pytest.fixture
def credentials(clock: FakeClock) -> CredentialStore:
    store = CredentialStore(clock)
    for provider_id in ("gemini", "mistral", "claude", "qwen"):
        store.add_static_keys(provider_id, [api_key(provider_id)])
    return store


@pytest.fixture
def registry() -> ModelRegistry:
    registry = ModelRegistry.default()
    registry.apply_availability(lambda model: True)
    return registry


@pytest.fixture
def rate_limiter(clock: FakeClock) -> RateLimiter:
    return RateLimiter(clock)


@pytest.fixture
def dispatcher(
    registry: ModelRegistry,
    credentials: CredentialStore,
    rate_limiter: RateLimiter,
    transports: dict[str, FakeTransport],
    clock: FakeClock,
) -> TaskDispatcher:
    return TaskDispatcher(
        registry=registry,
        credentials=credentials,
        rate_limiter=rate_limiter,
        transports=transports,
        clock=clock,
        backoff_base_ms=100,
    )
