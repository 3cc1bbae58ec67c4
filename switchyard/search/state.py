"""State, log entries and step results of the iterative search loop."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from switchyard.core.errors import OrchestratorError
from switchyard.core.protocols import ContextItem


class Decision(str, Enum):
    """The three canonical outcomes of a DECIDE step."""

    ANSWER = "ANSWER"
    SEARCH_AGAIN = "SEARCH_AGAIN"
    SEARCH_WEB = "SEARCH_WEB"


class SearchPhase(str, Enum):
    SEARCH = "search"
    WEB_SEARCH = "web_search"
    ANALYZE = "analyze"
    DECIDE = "decide"
    ANSWER = "answer"


class TerminationReason(str, Enum):
    ANSWER = "answer"
    MAX_ITERATIONS = "max_iterations"
    CONFIDENCE_THRESHOLD = "confidence_threshold"
    DISPATCH_FAILURE = "dispatch_failure"
    NO_NEW_CONTEXT = "no_new_context"
    REPETITIVE_QUERY = "repetitive_query"
    DECISION_UNPARSEABLE = "decision_unparseable"
    NO_VALID_NEXT_ACTION = "no_valid_next_action"
    RETRIEVAL_FAILURE = "retrieval_failure"


@dataclass(frozen=True)
class DecisionEntry:
    """One entry of the decision log."""

    iteration: int
    decision: Decision
    reasoning: str
    refined_query: str | None
    confidence: float
    timestamp: float
    raw_label: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "decision": self.decision.value,
            "reasoning": self.reasoning,
            "refined_query": self.refined_query,
            "confidence": self.confidence,
            "timestamp": self.timestamp,
            "raw_label": self.raw_label,
        }


@dataclass(frozen=True)
class TurnRecord:
    """What one SEARCH step retrieved."""

    iteration: int
    query: str
    source: str  # "index" | "web"
    retrieved: int
    new_items: int


@dataclass
class SearchMetrics:
    total_iterations: int = 0
    context_items_added: int = 0
    index_searches_performed: int = 0
    web_searches_performed: int = 0
    analysis_failures: int = 0
    verification_passed: bool | None = None
    early_termination_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_iterations": self.total_iterations,
            "context_items_added": self.context_items_added,
            "index_searches_performed": self.index_searches_performed,
            "web_searches_performed": self.web_searches_performed,
            "analysis_failures": self.analysis_failures,
            "verification_passed": self.verification_passed,
            "early_termination_reason": self.early_termination_reason,
        }


@dataclass
class SearchState:
    """Mutable state of one search request.

    Context is keyed by ``source_id``; on conflict the higher relevance wins.
    """

    query: str
    iteration: int = 0
    context: dict[str, ContextItem] = field(default_factory=dict)
    decision_log: list[DecisionEntry] = field(default_factory=list)
    turns: list[TurnRecord] = field(default_factory=list)
    queries_issued: list[str] = field(default_factory=list)
    pending_query: str = ""
    pending_source: str = "index"
    termination_reason: TerminationReason | None = None
    confidence: float = 0.0
    quality_score: float = 0.0
    analysis_summary: str = ""
    metrics: SearchMetrics = field(default_factory=SearchMetrics)

    def __post_init__(self) -> None:
        if not self.pending_query:
            self.pending_query = self.query

    def merge(self, items: list[ContextItem]) -> int:
        """Merge retrieved items; returns how many were new sources."""
        added = 0
        for item in items:
            existing = self.context.get(item.source_id)
            if existing is None:
                self.context[item.source_id] = item
                added += 1
            elif item.relevance_score > existing.relevance_score:
                self.context[item.source_id] = item
        self.metrics.context_items_added += added
        return added

    def ranked_context(self) -> list[ContextItem]:
        return sorted(self.context.values(), key=lambda i: i.relevance_score, reverse=True)


@dataclass(frozen=True)
class SearchResult:
    """Final output of an iterative search."""

    final_answer: str
    accumulated_context: list[ContextItem]
    decision_log: list[DecisionEntry]
    search_metrics: SearchMetrics
    termination_reason: TerminationReason
    confidence: float = 0.0
    partial: bool = False
    turns: list[TurnRecord] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "final_answer": self.final_answer,
            "accumulated_context": [
                {
                    "source_id": item.source_id,
                    "relevance_score": item.relevance_score,
                    "content": item.content,
                    "metadata": item.metadata,
                }
                for item in self.accumulated_context
            ],
            "decision_log": [entry.to_dict() for entry in self.decision_log],
            "search_metrics": self.search_metrics.to_dict(),
            "termination_reason": self.termination_reason.value,
            "confidence": self.confidence,
            "partial": self.partial,
        }


# ============================================================================
# Step results
# ============================================================================


@dataclass(frozen=True)
class Continue:
    """Move on to ``next_phase``."""

    next_phase: SearchPhase


@dataclass(frozen=True)
class Complete:
    """Search finished normally with ``value``."""

    value: SearchResult


@dataclass(frozen=True)
class Fail:
    """A step failed in a way the loop cannot recover from."""

    error: OrchestratorError
    stage: SearchPhase


StepResult = Continue | Complete | Fail
