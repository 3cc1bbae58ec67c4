"""Prompt builders for the iterative search loop."""

import json

from switchyard.core.protocols import ContextItem
from switchyard.search.state import DecisionEntry

PREVIEW_CHARS = 400

ANALYSIS_SHAPE = {
    "overallAnalysis": "",
    "overallConfidence": 0.0,
    "contextAnalyses": [
        {"contextIndex": 0, "relevanceScore": 0.0, "insights": "", "confidence": 0.0}
    ],
}

DECISION_SHAPE = {
    "decision": "ANSWER | SEARCH_AGAIN | SEARCH_WEB",
    "reasoning": "",
    "next_query": "",
    "confidence": 0.0,
}

VERIFICATION_SHAPE = {"verdict": "VERIFIED | HALLUCINATION_DETECTED", "groundedness": 0.0}


def _summaries(items: list[ContextItem], preview_chars: int = PREVIEW_CHARS) -> str:
    lines = []
    for index, item in enumerate(items):
        entity = item.metadata.get("entity_name", "")
        lines.append(
            f"[{index}] source={item.source_id} type={item.source_type}"
            f"{f' entity={entity}' if entity else ''} score={item.relevance_score:.2f}\n"
            f"{item.content[:preview_chars]}"
        )
    return "\n\n".join(lines)


def build_analysis_prompt(query: str, items: list[ContextItem]) -> str:
    return (
        f"Question: {query}\n\n"
        "Assess how relevant each retrieved context item is to the question.\n\n"
        f"{_summaries(items)}\n\n"
        "Respond with JSON only, in this shape:\n"
        f"{json.dumps(ANALYSIS_SHAPE, indent=2)}"
    )


def build_decision_prompt(
    query: str,
    items: list[ContextItem],
    history: list[DecisionEntry],
    analysis_summary: str,
    iteration: int,
    max_iterations: int,
    web_enabled: bool,
) -> str:
    options = "ANSWER, SEARCH_AGAIN" + (", SEARCH_WEB" if web_enabled else "")
    previous = "\n".join(
        f"- iteration {e.iteration}: {e.decision.value} ({e.refined_query or 'no query'})"
        for e in history
    )
    return (
        f"Question: {query}\n"
        f"Iteration {iteration} of {max_iterations}.\n\n"
        f"Analysis so far: {analysis_summary or 'none'}\n\n"
        f"Previous decisions:\n{previous or '- none'}\n\n"
        f"Context:\n{_summaries(items, 200)}\n\n"
        f"Decide one of: {options}. SEARCH_AGAIN and SEARCH_WEB need a refined query.\n"
        "Respond with JSON only, in this shape:\n"
        f"{json.dumps(DECISION_SHAPE, indent=2)}"
    )


def build_answer_prompt(query: str, items: list[ContextItem]) -> str:
    return (
        f"Answer the question using only the context below. Cite sources by id.\n\n"
        f"Question: {query}\n\n"
        f"Context:\n{_summaries(items, 1500)}"
    )


def build_verification_prompt(query: str, answer: str, items: list[ContextItem]) -> str:
    return (
        "Check whether every claim in the answer is supported by the context.\n\n"
        f"Question: {query}\n\nAnswer:\n{answer}\n\n"
        f"Context:\n{_summaries(items, 800)}\n\n"
        "Respond with JSON only, in this shape:\n"
        f"{json.dumps(VERIFICATION_SHAPE, indent=2)}"
    )
