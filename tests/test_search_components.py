"""Tests for the search loop building blocks: quality, cache, decisions, web."""

import json

import httpx
import pytest

from conftest import FakeClock
from switchyard.core.errors import RetrievalError
from switchyard.core.protocols import ContextItem, RetrievalOptions
from switchyard.search.cache import RetrievalCache
from switchyard.search.decisions import DecisionLabelMap, interpret_decision, parse_decision_text
from switchyard.search.quality import (
    context_quality,
    extract_query_terms,
    is_repetitive,
    jaccard_similarity,
)
from switchyard.search.state import Decision, SearchState
from switchyard.search.web import TavilyWebRetrieval


class TestQuality:
    """Test context scoring and repetition detection."""

    def test_query_terms(self) -> None:
        """Test stopwords and short words are dropped."""
        assert extract_query_terms("How does the auth module work in it?") == ["auth", "module", "work"]

    def test_empty_context(self) -> None:
        """Test no context scores zero."""
        assert context_quality([], "anything") == 0.0

    def test_richer_context_scores_higher(self) -> None:
        """Test relevant structured context beats a weak snippet."""
        weak = [ContextItem("a.txt", "misc notes", 0.1)]
        strong = [
            ContextItem(
                "auth.py",
                "import jwt\n\ndef authenticate(token):\n    # auth module\n" + "x = 1\n" * 40,
                0.9,
                {"type": "function", "entity_name": "authenticate"},
            )
        ]
        assert context_quality(strong, "auth module") > context_quality(weak, "auth module")
        assert 0.1 <= context_quality(weak, "auth module") <= 1.0

    def test_jaccard(self) -> None:
        """Test word-set similarity."""
        assert jaccard_similarity("auth flow", "auth flow") == 1.0
        assert jaccard_similarity("auth flow", "token store") == 0.0

    def test_recent_refinements_not_repetitive(self) -> None:
        """Test the previous two queries are excluded from the comparison."""
        assert not is_repetitive(["auth flow"], "auth flow")
        assert not is_repetitive(["auth flow", "token store"], "token store")
        assert is_repetitive(["auth flow", "token store"], "auth flow")


class TestSearchState:
    """Test context merging."""

    def test_merge_keeps_higher_relevance(self) -> None:
        """Test deduplication by source id."""
        state = SearchState(query="q")
        assert state.merge([ContextItem("a", "x", 0.3), ContextItem("b", "y", 0.6)]) == 2  # noqa: PLR2004
        assert state.merge([ContextItem("a", "x2", 0.9), ContextItem("b", "y2", 0.1)]) == 0

        ranked = state.ranked_context()
        assert [i.source_id for i in ranked] == ["a", "b"]
        assert ranked[0].content == "x2"
        assert ranked[1].content == "y"
        assert state.metrics.context_items_added == 2  # noqa: PLR2004

    def test_pending_query_defaults_to_query(self) -> None:
        """Test the first search uses the user query."""
        assert SearchState(query="q").pending_query == "q"


class TestRetrievalCache:
    """Test TTL and eviction."""

    def test_hit_and_expiry(self, clock: FakeClock) -> None:
        """Test entries expire after the TTL."""
        cache = RetrievalCache(clock, ttl_seconds=10)
        cache.put("index", "Auth Flow ", [ContextItem("a", "x")])

        assert cache.get("index", "auth flow") is not None
        assert cache.get("web", "auth flow") is None
        clock.advance(11)
        assert cache.get("index", "auth flow") is None

    def test_evicts_oldest_when_full(self, clock: FakeClock) -> None:
        """Test the oldest 30% are evicted when the cache is full."""
        cache = RetrievalCache(clock, max_entries=10)
        for i in range(10):
            cache.put("index", f"q{i}", [])
            clock.advance(1)

        cache.put("index", "q10", [])

        assert len(cache) == 8  # noqa: PLR2004
        assert cache.get("index", "q0") is None
        assert cache.get("index", "q3") is not None

    def test_entries_are_copies(self, clock: FakeClock) -> None:
        """Test changes to stored or returned items do not reach the cache."""
        cache = RetrievalCache(clock)
        original = ContextItem("a", "x", 0.5)
        cache.put("index", "auth", [original])
        original.relevance_score = 0.9

        first = cache.get("index", "auth")
        assert first is not None
        first[0].metadata["insights"] = "changed"

        second = cache.get("index", "auth")
        assert second is not None
        assert second[0].relevance_score == 0.5  # noqa: PLR2004
        assert second[0].metadata == {}

    def test_invalid_settings(self, clock: FakeClock) -> None:
        """Test validation."""
        with pytest.raises(ValueError, match="ttl_seconds"):
            RetrievalCache(clock, ttl_seconds=0)


class TestDecisions:
    """Test label canonicalization and decision parsing."""

    @pytest.mark.parametrize(
        ("label", "expected"),
        [
            ("ANSWER", Decision.ANSWER),
            ("search again", Decision.SEARCH_AGAIN),
            ("refine-query", Decision.SEARCH_AGAIN),
            ("WEB_SEARCH", Decision.SEARCH_WEB),
            ("look it up online", Decision.SEARCH_WEB),
            ("final response", Decision.ANSWER),
            ("ponder", Decision.SEARCH_AGAIN),
        ],
    )
    def test_canonicalize(self, label: str, expected: Decision) -> None:
        """Test mapped, guessed and defaulted labels."""
        decision, _ = DecisionLabelMap().canonicalize(label)
        assert decision == expected

    def test_exact_flag(self) -> None:
        """Test only canonical labels are exact."""
        labels = DecisionLabelMap()
        assert labels.canonicalize("SEARCH_WEB") == (Decision.SEARCH_WEB, True)
        assert labels.canonicalize("FINAL_ANSWER") == (Decision.ANSWER, False)

    def test_configured_default(self) -> None:
        """Test the unknown-label default is configurable."""
        labels = DecisionLabelMap.from_config({"unknown_label_default": "ANSWER"})
        assert labels.canonicalize("ponder") == (Decision.ANSWER, False)

    def test_bad_mapping_target(self) -> None:
        """Test a mapping to a non-canonical target is rejected."""
        with pytest.raises(ValueError, match="non-canonical"):
            DecisionLabelMap({"GO": "SOMEWHERE"})

    def test_interpret_camel_case_and_web_query(self) -> None:
        """Test camelCase keys and the web query preference."""
        payload = {
            "Decision": "SEARCH_WEB",
            "nextCodebaseSearchQuery": "local query",
            "nextWebSearchQuery": "web query",
            "confidence": "1.7",
        }
        parsed = interpret_decision(payload, DecisionLabelMap())
        assert parsed is not None
        assert parsed.refined_query == "web query"
        assert parsed.confidence == 1.0

    def test_interpret_missing_label(self) -> None:
        """Test a payload without a decision is rejected."""
        assert interpret_decision({"reasoning": "hmm"}, DecisionLabelMap()) is None
        assert interpret_decision(["ANSWER"], DecisionLabelMap()) is None

    def test_parse_decision_text(self) -> None:
        """Test labelled prose decisions."""
        text = "**Decision**: SEARCH_WEB\nReasoning: need docs\nNext Web Search Query: httpx timeouts\nConfidence: 0.7"
        parsed = parse_decision_text(text)
        assert parsed == {
            "decision": "SEARCH_WEB",
            "reasoning": "need docs",
            "next_web_search_query": "httpx timeouts",
            "confidence": 0.7,
        }
        assert parse_decision_text("Reasoning: no decision given") is None


class TestTavilyWebRetrieval:
    """Test the web collaborator."""

    async def test_mock_mode(self) -> None:
        """Test canned results without a network call."""
        web = TavilyWebRetrieval.from_config({}, environ={"TAVILY_MOCK_MODE": "true"})
        items = await web.search("httpx timeouts")
        assert web.configured
        assert len(items) == 2  # noqa: PLR2004
        assert all(i.source_type == "web" for i in items)

    async def test_unconfigured(self) -> None:
        """Test a missing key is a retrieval error."""
        web = TavilyWebRetrieval.from_config({}, environ={})
        assert not web.configured
        with pytest.raises(RetrievalError, match="not configured"):
            await web.search("q")

    async def test_search_request(self) -> None:
        """Test request payload and result mapping."""
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(
                200,
                json={"results": [{"url": "https://docs.test/a", "content": "Timeouts...", "score": 0.8, "title": "A"}]},
            )

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        web = TavilyWebRetrieval(api_key="tvly-test", http_client=client)

        items = await web.search("httpx timeouts", RetrievalOptions(max_results=3))

        assert seen[0]["query"] == "httpx timeouts"
        assert seen[0]["max_results"] == 3  # noqa: PLR2004
        assert items[0].source_id == "https://docs.test/a"
        assert items[0].relevance_score == pytest.approx(0.8)

    async def test_http_failure(self) -> None:
        """Test HTTP errors become retrieval errors."""
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(502)))
        web = TavilyWebRetrieval(api_key="tvly-test", http_client=client)
        with pytest.raises(RetrievalError, match="502"):
            await web.search("q")
