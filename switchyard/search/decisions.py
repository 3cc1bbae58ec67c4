"""Decision parsing and label canonicalization.

Models do not always answer with one of the three canonical labels. Labels
are resolved through a mapping table (configurable under
``search.decision_labels``); anything still unknown falls back to a keyword
guess and finally to ``unknown_label_default``.
"""

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from switchyard.repair.textual import normalize_label, parse_labelled_text
from switchyard.search.state import Decision

logger = logging.getLogger(__name__)

DEFAULT_LABELS: dict[str, str] = {
    "ANSWER": "ANSWER",
    "FINAL_ANSWER": "ANSWER",
    "RESPOND": "ANSWER",
    "SEARCH_AGAIN": "SEARCH_AGAIN",
    "SEARCH": "SEARCH_AGAIN",
    "REFINE_QUERY": "SEARCH_AGAIN",
    "SEARCH_WEB": "SEARCH_WEB",
    "WEB_SEARCH": "SEARCH_WEB",
}

_QUERY_KEYS = (
    "next_query",
    "refined_query",
    "query",
    "next_codebase_search_query",
    "next_web_search_query",
    "search_query",
)
_WEB_QUERY_KEYS = ("next_web_search_query", "web_query")
_DECISION_TEXT_KEYS = [
    "decision",
    "reasoning",
    "next_codebase_search_query",
    "next_web_search_query",
    "next_query",
    "confidence",
]


def _normalize(label: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9]+", "_", label.strip()).strip("_")
    return cleaned.upper()


class DecisionLabelMap:
    """Resolve free-form decision labels to canonical decisions."""

    def __init__(
        self,
        labels: Mapping[str, str] | None = None,
        unknown_default: Decision | str = Decision.SEARCH_AGAIN,
    ) -> None:
        """Initialize the map.

        Raises:
            ValueError: If a mapping target is not a canonical decision
        """
        table = labels if labels is not None else DEFAULT_LABELS
        self._labels: dict[str, Decision] = {}
        for label, target in table.items():
            try:
                self._labels[_normalize(label)] = Decision(_normalize(target))
            except ValueError:
                msg = f"Decision label '{label}' maps to non-canonical target '{target}'"
                raise ValueError(msg) from None
        self.unknown_default = Decision(unknown_default)

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "DecisionLabelMap":
        return cls(
            labels=config.get("decision_labels") or None,
            unknown_default=config.get("unknown_label_default", Decision.SEARCH_AGAIN.value),
        )

    def canonicalize(self, label: str | None) -> tuple[Decision, bool]:
        """Resolve ``label``.

        Returns:
            (decision, exact) where ``exact`` is False when the label had to
            be mapped or guessed
        """
        normalized = _normalize(label or "")
        for decision in Decision:
            if normalized == decision.value:
                return decision, True
        if normalized in self._labels:
            return self._labels[normalized], False
        if "WEB" in normalized or "INTERNET" in normalized or "ONLINE" in normalized:
            return Decision.SEARCH_WEB, False
        if "ANSWER" in normalized or "FINAL" in normalized:
            return Decision.ANSWER, False
        if "SEARCH" in normalized or "QUERY" in normalized:
            return Decision.SEARCH_AGAIN, False
        logger.info("Unknown decision label %r, using %s", label, self.unknown_default.value)
        return self.unknown_default, False


@dataclass(frozen=True)
class ParsedDecision:
    decision: Decision
    reasoning: str
    refined_query: str | None
    confidence: float
    raw_label: str | None
    exact_label: bool


def parse_decision_text(text: str) -> dict[str, Any] | None:
    """Parse the labelled-prose decision format.

    Example::

        Decision: SEARCH_WEB
        Reasoning: Need the library's changelog.
        Next Web Search Query: httpx 0.28 changelog
        Confidence: 0.7
    """
    parsed = parse_labelled_text(text, _DECISION_TEXT_KEYS)
    if not parsed or parsed.get("decision") in (None, ""):
        return None
    return parsed


def _clamp(value: Any, default: float = 0.5) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return min(1.0, max(0.0, number))


def interpret_decision(payload: Any, labels: DecisionLabelMap) -> ParsedDecision | None:
    """Turn a repaired decision payload into a ParsedDecision.

    Accepts snake_case or camelCase keys. Returns None when the payload has
    no decision label at all.
    """
    if not isinstance(payload, dict):
        return None

    flat = {normalize_label(str(k)): v for k, v in payload.items()}
    raw = flat.get("decision") or flat.get("action") or flat.get("next_action")
    if raw is None or str(raw).strip() == "":
        return None

    decision, exact = labels.canonicalize(str(raw))
    keys = _WEB_QUERY_KEYS + _QUERY_KEYS if decision == Decision.SEARCH_WEB else _QUERY_KEYS
    refined = next(
        (str(flat[k]).strip() for k in keys if flat.get(k) not in (None, "") and str(flat[k]).strip()),
        None,
    )

    return ParsedDecision(
        decision=decision,
        reasoning=str(flat.get("reasoning") or flat.get("rationale") or ""),
        refined_query=refined,
        confidence=_clamp(flat.get("confidence")),
        raw_label=str(raw),
        exact_label=exact,
    )
