"""Context quality scoring and query repetition detection."""

import re

from switchyard.core.protocols import ContextItem

STOPWORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with",
        "by", "is", "are", "was", "were", "be", "been", "have", "has", "had", "do", "does",
        "did", "will", "would", "could", "should", "may", "might", "can", "this", "that",
        "these", "those", "how", "what", "where", "when", "why", "which", "who", "from",
        "into", "about", "not", "all", "any", "its", "it",
    }
)

_WORD = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_CODE_SHAPE = re.compile(r"\b(class|def|function|interface|struct|fn)\b")
_MODULE_SHAPE = re.compile(r"\b(import|export|from|require)\b")
_STRUCTURED_TYPES = frozenset({"function", "class", "method", "interface", "module"})


def extract_query_terms(query: str, limit: int = 10) -> list[str]:
    """Meaningful lowercase terms of a query (stopwords and short words dropped)."""
    terms: list[str] = []
    for word in _WORD.findall(query.lower()):
        if len(word) > 2 and word not in STOPWORDS and word not in terms:
            terms.append(word)
    return terms[:limit]


def _item_score(item: ContextItem, terms: list[str]) -> float:
    content = item.content.lower()
    relevance = min(1.0, max(0.0, item.relevance_score))

    term_match = sum(1 for t in terms if t in content) / len(terms) if terms else 0.0

    indicators = 0.0
    if len(item.content) > 200:
        indicators += 0.25
    if _CODE_SHAPE.search(item.content):
        indicators += 0.25
    if _MODULE_SHAPE.search(item.content):
        indicators += 0.25
    if item.metadata.get("entity_name"):
        indicators += 0.25

    type_bonus = 0.1 if item.source_type in _STRUCTURED_TYPES else 0.0
    return relevance * 0.4 + term_match * 0.3 + indicators * 0.2 + type_bonus


def context_quality(items: list[ContextItem], query: str) -> float:
    """Overall quality of accumulated context for ``query``, in [0.1, 1.0]."""
    if not items:
        return 0.0
    terms = extract_query_terms(query)
    average = sum(_item_score(item, terms) for item in items) / len(items)
    sources = {str(item.metadata.get("source_path", item.source_id)) for item in items}
    diversity = min(len(sources) / 10.0, 0.2)
    return round(min(1.0, max(0.1, average + diversity)), 3)


def jaccard_similarity(a: str, b: str) -> float:
    words_a = set(_WORD.findall(a.lower()))
    words_b = set(_WORD.findall(b.lower()))
    if not words_a and not words_b:
        return 1.0
    return len(words_a & words_b) / len(words_a | words_b)


def is_repetitive(history: list[str], candidate: str, threshold: float = 0.8) -> bool:
    """True when ``candidate`` nearly repeats an earlier query.

    The two most recent queries are excluded from the comparison so that a
    refinement of the previous query is never flagged; at least three
    queries (history plus candidate) are needed before anything is compared.
    """
    queries = [*history, candidate]
    if len(queries) < 3:
        return False
    return any(jaccard_similarity(candidate, q) > threshold for q in queries[:-2])
