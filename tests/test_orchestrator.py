"""Smoke tests for the orchestrator facade wired from the packaged defaults."""

import json

import pytest

from conftest import FakeClock, FakeIndex, FakeTransport
from switchyard import Orchestrator
from switchyard.config.loader import load_core_config
from switchyard.core.protocols import ContextItem
from switchyard.credentials.models import Credential
from switchyard.dispatch.dispatcher import BatchItem
from switchyard.dispatch.registry import CLAUDE_HAIKU, GEMINI_FLASH_LITE, MISTRAL_MEDIUM, TaskType
from switchyard.repair.pipeline import RepairStrategy
from switchyard.search.state import TerminationReason


class MemoryPersistence:
    def __init__(self) -> None:
        self.saved: dict[str, Credential] = {}

    def load(self, provider_id: str) -> Credential | None:
        return self.saved.get(provider_id)

    def save(self, provider_id: str, credential: Credential) -> None:
        self.saved[provider_id] = credential


@pytest.fixture
def fake_transports() -> dict[str, FakeTransport]:
    return {p: FakeTransport(p) for p in ("gemini", "mistral", "claude", "qwen")}


@pytest.fixture
def orchestrator(clock: FakeClock, fake_transports: dict[str, FakeTransport]) -> Orchestrator:
    return Orchestrator.from_config(
        load_core_config(),
        clock=clock,
        transports=fake_transports,
        persistence=MemoryPersistence(),
        index=FakeIndex({"how is auth wired": [ContextItem("auth.py", "def login(): ...")]}),
        environ={"GEMINI_API_KEY": "gemini-test-key", "MISTRAL_API_KEY": "mistral-test-key"},
        detect_cli=False,
    )


class TestWiring:
    """Test the object graph built from configuration."""

    def test_availability_follows_credentials(self, orchestrator: Orchestrator) -> None:
        """Test only providers with credentials have available models."""
        available = orchestrator.get_available_models()
        assert GEMINI_FLASH_LITE in available
        assert MISTRAL_MEDIUM in available
        assert CLAUDE_HAIKU not in available

    def test_oauth_status_empty(self, orchestrator: Orchestrator) -> None:
        """Test no OAuth credentials are reported when none were persisted."""
        assert orchestrator.get_oauth_status() == {}

    async def test_dispatch_and_status(
        self, orchestrator: Orchestrator, fake_transports: dict[str, FakeTransport]
    ) -> None:
        """Test a dispatch lands on the preferred model and is counted."""
        result = await orchestrator.dispatch(TaskType.QUERY_REWRITING, "rewrite this")

        assert result.model_used == GEMINI_FLASH_LITE
        assert fake_transports["gemini"].requests[0].credential.secret == "gemini-test-key"
        assert orchestrator.get_model_stats()[GEMINI_FLASH_LITE]["success"] == 1
        status = orchestrator.get_rate_limit_status(f"gemini:key:0/{GEMINI_FLASH_LITE}")
        assert status["current"] == 1
        assert status["limit"] == 15  # noqa: PLR2004

    async def test_batch_uses_configured_spacing(self, orchestrator: Orchestrator, clock: FakeClock) -> None:
        """Test batch defaults come from the dispatch section."""
        items = [BatchItem(TaskType.CLASSIFICATION, str(i)) for i in range(11)]

        results = await orchestrator.dispatch_batch(items)

        assert len(results) == 11  # noqa: PLR2004
        assert clock.sleeps == [pytest.approx(1.0)]


class TestRepairAndSearch:
    """Test the repair and search entry points."""

    async def test_repair_json(self, orchestrator: Orchestrator) -> None:
        """Test model-free repair through the facade."""
        result = await orchestrator.repair_json('```json\n{"files": ["a.py",],}\n```', {"files": []})
        assert result.value == {"files": ["a.py"]}
        assert result.strategy_used == RepairStrategy.HEURISTIC

    async def test_iterative_search(
        self, orchestrator: Orchestrator, fake_transports: dict[str, FakeTransport]
    ) -> None:
        """Test a full search over injected transports."""

        def reply(request) -> str:  # noqa: ANN001
            prompt = request.messages[-1]["content"]
            if "Assess how relevant" in prompt:
                return json.dumps({"overallConfidence": 0.2, "contextAnalyses": []})
            if "Decide one of" in prompt:
                return json.dumps({"decision": "ANSWER", "reasoning": "enough"})
            return "Auth is wired in auth.py"

        for transport in fake_transports.values():
            transport.default = reply

        result = await orchestrator.run_iterative_search("how is auth wired")

        assert result.final_answer == "Auth is wired in auth.py"
        assert result.termination_reason == TerminationReason.ANSWER
        assert result.search_metrics.total_iterations == 1

    async def test_search_requires_index(self, clock: FakeClock, fake_transports: dict[str, FakeTransport]) -> None:
        """Test a missing index collaborator is reported."""
        orchestrator = Orchestrator.from_config(
            load_core_config(),
            clock=clock,
            transports=fake_transports,
            persistence=MemoryPersistence(),
            environ={},
            detect_cli=False,
        )
        with pytest.raises(ValueError, match="index retrieval collaborator"):
            await orchestrator.run_iterative_search("anything")
