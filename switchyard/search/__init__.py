"""Iterative retrieval-augmented search."""

from switchyard.search.cache import RetrievalCache
from switchyard.search.controller import IterativeSearchController, SearchOptions
from switchyard.search.decisions import DecisionLabelMap, interpret_decision, parse_decision_text
from switchyard.search.state import (
    Decision,
    DecisionEntry,
    SearchMetrics,
    SearchPhase,
    SearchResult,
    TerminationReason,
)
from switchyard.search.web import TavilyWebRetrieval

__all__ = [
    "Decision",
    "DecisionEntry",
    "DecisionLabelMap",
    "IterativeSearchController",
    "RetrievalCache",
    "SearchMetrics",
    "SearchOptions",
    "SearchPhase",
    "SearchResult",
    "TavilyWebRetrieval",
    "TerminationReason",
    "interpret_decision",
    "parse_decision_text",
]
