"""
Protocol interfaces for the external collaborators of the orchestration core.

The dispatcher, repair pipeline and search controller depend only on these
interfaces, never on concrete backends. Every backend-specific payload is
normalized into ``ProviderResponse`` before it leaves a transport.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, TypedDict, runtime_checkable

if TYPE_CHECKING:
    from switchyard.credentials.models import Credential


class ChatMessage(TypedDict):
    """One conversational turn sent to a provider."""

    role: str  # "user" | "assistant"
    content: str


@dataclass(frozen=True)
class TokenUsage:
    """Token accounting reported by a provider (zeros when unknown)."""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class ProviderRequest:
    """Normalized request handed to a ProviderTransport."""

    model: str
    messages: list[ChatMessage]
    credential: Credential
    system_instruction: str | None = None
    timeout_ms: int = 30000
    temperature: float = 0.2
    max_tokens: int | None = None


@dataclass(frozen=True)
class ProviderResponse:
    """Normalized response every transport returns."""

    text: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    raw_metadata: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class ProviderTransport(Protocol):
    """One implementation per backend, treated uniformly by the dispatcher."""

    provider_id: str

    async def send(self, request: ProviderRequest) -> ProviderResponse:
        """Send a request to the backend.

        Cancellation of the awaiting task aborts the in-flight call.

        Args:
            request: Normalized request including the credential to use

        Returns:
            ProviderResponse with text and usage

        Raises:
            ProviderError: Backend rejected or failed the request
        """
        ...


@dataclass
class ContextItem:
    """A unit of retrieved context.

    ``source_id`` is the identity used for deduplication across iterations.
    """

    source_id: str
    content: str
    relevance_score: float = 0.5
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def source_type(self) -> str:
        return str(self.metadata.get("type", "index"))


@dataclass(frozen=True)
class RetrievalOptions:
    """Options passed to a RetrievalCollaborator."""

    max_results: int = 10
    filters: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class RetrievalCollaborator(Protocol):
    """Index or web search used by the iterative search loop."""

    async def search(
        self, query: str, options: RetrievalOptions | None = None
    ) -> list[ContextItem]:
        """Return context items ordered by relevance, best first."""
        ...


@runtime_checkable
class CredentialPersistence(Protocol):
    """Durable storage for refreshed OAuth credentials."""

    def load(self, provider_id: str) -> Credential | None: ...

    def save(self, provider_id: str, credential: Credential) -> None: ...


@runtime_checkable
class Clock(Protocol):
    """Time source.

    ``monotonic`` drives rate windows and latency; ``time`` is wall-clock
    epoch seconds used for credential expiry.
    """

    def monotonic(self) -> float: ...

    def time(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...
