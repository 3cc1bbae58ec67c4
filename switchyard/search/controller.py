"""
Iterative search controller.

Drives a bounded SEARCH -> ANALYZE -> DECIDE loop over retrieval
collaborators and the task dispatcher:

- SEARCH retrieves from the index (or the web) and merges results,
  deduplicated by source id with the higher relevance kept
- ANALYZE scores all accumulated items in a single dispatch
- DECIDE resolves ANSWER, SEARCH_AGAIN or SEARCH_WEB and logs the decision
- ANSWER generates the final answer from the ranked context

Each phase returns a tagged step result (Continue, Complete or Fail) that the
run loop consumes; dispatch failures degrade to a partial answer instead of
propagating.
"""

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, replace
from typing import Any, Protocol

from switchyard.core.errors import OrchestratorError, RetrievalError
from switchyard.core.protocols import (
    Clock,
    ContextItem,
    RetrievalCollaborator,
    RetrievalOptions,
)
from switchyard.dispatch.dispatcher import DispatchOptions, DispatchResult
from switchyard.dispatch.registry import TaskType
from switchyard.repair.pipeline import ResponseRepairPipeline
from switchyard.search import prompts
from switchyard.search.cache import RetrievalCache
from switchyard.search.decisions import (
    DecisionLabelMap,
    interpret_decision,
    parse_decision_text,
)
from switchyard.search.quality import context_quality, is_repetitive
from switchyard.search.state import (
    Complete,
    Continue,
    Decision,
    DecisionEntry,
    Fail,
    SearchPhase,
    SearchResult,
    SearchState,
    StepResult,
    TerminationReason,
    TurnRecord,
)

logger = logging.getLogger(__name__)


class Dispatcher(Protocol):
    async def dispatch(
        self,
        task_type: TaskType | str,
        prompt: str,
        system_instruction: str | None = None,
        options: DispatchOptions | None = None,
    ) -> DispatchResult: ...


@dataclass(frozen=True)
class SearchOptions:
    """Options for one iterative search.

    Attributes:
        max_iterations: Ceiling on SEARCH steps (and therefore DECIDE steps)
        enable_web_search: Allow SEARCH_WEB decisions to reach the web collaborator
        confidence_threshold: Answer early once analysis confidence and context
            quality both reach this value
        stop_on_no_new_context: Answer when an iteration after the first adds nothing
        repetition_threshold: Jaccard similarity above which a query is a repeat
        web_relevance: Relevance assigned to web results
        index_max_results: Results requested per index search
        web_max_results: Results requested per web search
        verify_answer: Run a groundedness check on the final answer
        verification_threshold: Minimum groundedness for the check to pass
        retrieval_timeout_seconds: Wall-clock limit on each retrieval call
    """

    max_iterations: int = 3
    enable_web_search: bool = False
    confidence_threshold: float = 0.85
    stop_on_no_new_context: bool = True
    repetition_threshold: float = 0.8
    web_relevance: float = 0.95
    index_max_results: int = 10
    web_max_results: int = 5
    verify_answer: bool = False
    verification_threshold: float = 0.8
    retrieval_timeout_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            msg = f"max_iterations must be >= 1, got {self.max_iterations}"
            raise ValueError(msg)
        for name in ("confidence_threshold", "repetition_threshold", "web_relevance", "verification_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                msg = f"{name} must be between 0 and 1, got {value}"
                raise ValueError(msg)
        if self.retrieval_timeout_seconds <= 0:
            msg = f"retrieval_timeout_seconds must be positive, got {self.retrieval_timeout_seconds}"
            raise ValueError(msg)

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "SearchOptions":
        return cls(
            max_iterations=int(config.get("max_iterations", 3)),
            enable_web_search=bool(config.get("enable_web_search", False)),
            confidence_threshold=float(config.get("confidence_threshold", 0.85)),
            stop_on_no_new_context=bool(config.get("stop_on_no_new_context", True)),
            repetition_threshold=float(config.get("repetition_threshold", 0.8)),
            web_relevance=float(config.get("web_relevance", 0.95)),
            index_max_results=int(config.get("index_max_results", 10)),
            web_max_results=int(config.get("web_max_results", 5)),
            verify_answer=bool(config.get("verify_answer", False)),
            verification_threshold=float(config.get("hallucination_threshold", 0.8)),
            retrieval_timeout_seconds=float(config.get("retrieval_timeout_seconds", 30)),
        )


class IterativeSearchController:
    """Bounded retrieve/analyze/decide loop producing an answer and its trace."""

    def __init__(
        self,
        dispatcher: Dispatcher,
        repair: ResponseRepairPipeline,
        index: RetrievalCollaborator,
        clock: Clock,
        web: RetrievalCollaborator | None = None,
        labels: DecisionLabelMap | None = None,
        options: SearchOptions | None = None,
        cache: RetrievalCache | None = None,
    ) -> None:
        self.dispatcher = dispatcher
        self.repair = repair
        self.index = index
        self.web = web
        self.clock = clock
        self.labels = labels or DecisionLabelMap()
        self.options = options or SearchOptions()
        self.cache = cache

    async def run(self, query: str, options: SearchOptions | None = None, **overrides: Any) -> SearchResult:
        """Run an iterative search for ``query``.

        Args:
            query: User question
            options: Search options (defaults to the controller's)
            **overrides: Individual option overrides, e.g. ``max_iterations=2``

        Returns:
            SearchResult with answer, ranked context, decision log and metrics
        """
        opts = options or self.options
        if overrides:
            opts = replace(opts, **overrides)

        state = SearchState(query=query)
        phase = SearchPhase.SEARCH
        logger.info("Iterative search started (max %d iterations)", opts.max_iterations)

        while True:
            step = await self._step(phase, state, opts)
            if isinstance(step, Complete):
                return step.value
            if isinstance(step, Fail):
                return self._degrade(state, step)
            phase = step.next_phase

    async def _step(self, phase: SearchPhase, state: SearchState, opts: SearchOptions) -> StepResult:
        if phase in (SearchPhase.SEARCH, SearchPhase.WEB_SEARCH):
            return await self._search(state, opts, web=phase == SearchPhase.WEB_SEARCH)
        if phase == SearchPhase.ANALYZE:
            return await self._analyze(state, opts)
        if phase == SearchPhase.DECIDE:
            return await self._decide(state, opts)
        return await self._answer(state, opts)

    # ------------------------------------------------------------------
    # SEARCH
    # ------------------------------------------------------------------

    async def _search(self, state: SearchState, opts: SearchOptions, web: bool) -> StepResult:
        state.iteration += 1
        state.metrics.total_iterations = state.iteration
        query = state.pending_query
        state.queries_issued.append(query)

        source = "web" if web else "index"
        try:
            items = await self._retrieve(query, source, opts)
        except RetrievalError as e:
            if not web:
                return Fail(e, SearchPhase.SEARCH)
            logger.warning("Web search failed (%s), falling back to index search", e.message)
            source = "index"
            try:
                items = await self._retrieve(query, source, opts)
            except RetrievalError as index_error:
                return Fail(index_error, SearchPhase.SEARCH)

        if source == "web" and not items:
            logger.info("Web search returned nothing, falling back to index search")
            source = "index"
            try:
                items = await self._retrieve(query, source, opts)
            except RetrievalError as e:
                return Fail(e, SearchPhase.SEARCH)

        if source == "web":
            state.metrics.web_searches_performed += 1
            items = [
                replace(item, relevance_score=opts.web_relevance, metadata={**item.metadata, "type": "web"})
                for item in items
            ]
        else:
            state.metrics.index_searches_performed += 1

        added = state.merge(items)
        state.turns.append(TurnRecord(state.iteration, query, source, len(items), added))
        logger.info(
            "Iteration %d: %s search returned %d item(s), %d new",
            state.iteration,
            source,
            len(items),
            added,
        )

        if added == 0 and state.iteration > 1 and opts.stop_on_no_new_context:
            state.termination_reason = TerminationReason.NO_NEW_CONTEXT
            return Continue(SearchPhase.ANSWER)
        return Continue(SearchPhase.ANALYZE)

    async def _retrieve(self, query: str, source: str, opts: SearchOptions) -> list[ContextItem]:
        if self.cache is not None:
            cached = self.cache.get(source, query)
            if cached is not None:
                return cached

        collaborator = self.web if source == "web" else self.index
        if collaborator is None:
            msg = f"No {source} retrieval collaborator configured"
            raise RetrievalError(msg)
        max_results = opts.web_max_results if source == "web" else opts.index_max_results
        try:
            items = await asyncio.wait_for(
                collaborator.search(query, RetrievalOptions(max_results=max_results)),
                timeout=opts.retrieval_timeout_seconds,
            )
        except RetrievalError:
            raise
        except TimeoutError as e:
            msg = f"{source} retrieval timed out after {opts.retrieval_timeout_seconds}s"
            raise RetrievalError(msg) from e
        except Exception as e:
            msg = f"{source} retrieval failed: {type(e).__name__}: {e}"
            raise RetrievalError(msg) from e

        if self.cache is not None:
            self.cache.put(source, query, items)
        return items

    # ------------------------------------------------------------------
    # ANALYZE
    # ------------------------------------------------------------------

    async def _analyze(self, state: SearchState, opts: SearchOptions) -> StepResult:
        items = state.ranked_context()
        if not items:
            return Continue(SearchPhase.DECIDE)

        prompt = prompts.build_analysis_prompt(state.query, items)
        try:
            response = await self.dispatcher.dispatch(TaskType.COMPLEX_ANALYSIS, prompt)
        except OrchestratorError as e:
            return Fail(e, SearchPhase.ANALYZE)

        result = await self.repair.repair(
            response.content,
            prompts.ANALYSIS_SHAPE,
            context_description="relevance analysis of retrieved context items",
        )
        analyses = result.value.get("contextAnalyses") if isinstance(result.value, dict) else None
        if not result.success or not isinstance(analyses, list):
            state.metrics.analysis_failures += 1
            logger.warning("Analysis response unusable; keeping previous relevance scores")
        else:
            self._apply_analysis(state, items, result.value, analyses)

        state.quality_score = context_quality(state.ranked_context(), state.query)
        if state.confidence >= opts.confidence_threshold and state.quality_score >= opts.confidence_threshold:
            logger.info(
                "Confidence %.2f and quality %.2f reached threshold, answering",
                state.confidence,
                state.quality_score,
            )
            state.termination_reason = TerminationReason.CONFIDENCE_THRESHOLD
            return Continue(SearchPhase.ANSWER)
        return Continue(SearchPhase.DECIDE)

    def _apply_analysis(
        self,
        state: SearchState,
        items: list[ContextItem],
        payload: dict[str, Any],
        analyses: list[Any],
    ) -> None:
        confidences: list[float] = []
        for analysis in analyses:
            if not isinstance(analysis, dict):
                continue
            try:
                index = int(analysis.get("contextIndex", -1))
                score = float(analysis.get("relevanceScore"))
            except (TypeError, ValueError):
                continue
            if not 0 <= index < len(items):
                continue
            item = state.context[items[index].source_id]
            metadata = dict(item.metadata)
            if analysis.get("insights"):
                metadata["insights"] = str(analysis["insights"])
            state.context[item.source_id] = replace(
                item,
                relevance_score=max(item.relevance_score, min(1.0, max(0.0, score))),
                metadata=metadata,
            )
            confidence = analysis.get("confidence")
            if isinstance(confidence, (int, float)):
                confidences.append(float(confidence))

        try:
            overall = float(payload.get("overallConfidence"))
        except (TypeError, ValueError):
            overall = sum(confidences) / len(confidences) if confidences else None
        if overall is not None:
            state.confidence = min(1.0, max(0.0, overall))
        state.analysis_summary = str(payload.get("overallAnalysis") or state.analysis_summary)

    # ------------------------------------------------------------------
    # DECIDE
    # ------------------------------------------------------------------

    async def _decide(self, state: SearchState, opts: SearchOptions) -> StepResult:
        web_enabled = opts.enable_web_search and self.web is not None
        prompt = prompts.build_decision_prompt(
            state.query,
            state.ranked_context(),
            state.decision_log,
            state.analysis_summary,
            state.iteration,
            opts.max_iterations,
            web_enabled,
        )
        try:
            response = await self.dispatcher.dispatch(TaskType.DECISION_MAKING, prompt)
        except OrchestratorError as e:
            return Fail(e, SearchPhase.DECIDE)

        result = await self.repair.repair(
            response.content,
            prompts.DECISION_SHAPE,
            context_description="search loop decision",
            text_parser=parse_decision_text,
        )
        parsed = interpret_decision(result.value, self.labels) if result.success else None
        now = self.clock.time()

        if parsed is None:
            state.decision_log.append(
                DecisionEntry(
                    state.iteration,
                    Decision.ANSWER,
                    "Decision response could not be parsed; answering with current context",
                    None,
                    0.0,
                    now,
                )
            )
            state.termination_reason = TerminationReason.DECISION_UNPARSEABLE
            return Continue(SearchPhase.ANSWER)

        decision = parsed.decision
        reasoning = parsed.reasoning
        if decision == Decision.SEARCH_WEB and not web_enabled:
            decision = Decision.SEARCH_AGAIN
            reasoning = f"{reasoning} (web search disabled, searching the index instead)".strip()

        if decision == Decision.ANSWER:
            state.confidence = max(state.confidence, parsed.confidence)
        state.decision_log.append(
            DecisionEntry(
                state.iteration,
                decision,
                reasoning,
                parsed.refined_query if decision != Decision.ANSWER else None,
                parsed.confidence,
                now,
                raw_label=parsed.raw_label,
            )
        )
        logger.info("Iteration %d decision: %s", state.iteration, decision.value)

        if decision == Decision.ANSWER:
            state.termination_reason = TerminationReason.ANSWER
            return Continue(SearchPhase.ANSWER)

        if not parsed.refined_query:
            state.termination_reason = TerminationReason.NO_VALID_NEXT_ACTION
            return Continue(SearchPhase.ANSWER)
        if state.iteration >= opts.max_iterations:
            state.termination_reason = TerminationReason.MAX_ITERATIONS
            return Continue(SearchPhase.ANSWER)
        if is_repetitive(state.queries_issued, parsed.refined_query, opts.repetition_threshold):
            logger.info("Repetitive query pattern detected, stopping search")
            state.termination_reason = TerminationReason.REPETITIVE_QUERY
            return Continue(SearchPhase.ANSWER)

        state.pending_query = parsed.refined_query
        if decision == Decision.SEARCH_WEB:
            return Continue(SearchPhase.WEB_SEARCH)
        return Continue(SearchPhase.SEARCH)

    # ------------------------------------------------------------------
    # ANSWER
    # ------------------------------------------------------------------

    async def _answer(self, state: SearchState, opts: SearchOptions) -> StepResult:
        items = state.ranked_context()
        reason = state.termination_reason or TerminationReason.ANSWER
        if reason != TerminationReason.ANSWER:
            state.metrics.early_termination_reason = reason.value

        try:
            response = await self.dispatcher.dispatch(
                TaskType.FINAL_ANSWER_GENERATION, prompts.build_answer_prompt(state.query, items)
            )
        except OrchestratorError as e:
            logger.warning("Final answer generation failed: %s", e.message)
            return Complete(self._result(state, self._extractive_answer(state, e), reason, partial=True))

        answer = response.content.strip()
        if opts.verify_answer and items:
            await self._verify(state, answer, items, opts)
        return Complete(self._result(state, answer, reason))

    async def _verify(
        self, state: SearchState, answer: str, items: list[ContextItem], opts: SearchOptions
    ) -> None:
        try:
            response = await self.dispatcher.dispatch(
                TaskType.REFLECTION, prompts.build_verification_prompt(state.query, answer, items)
            )
        except OrchestratorError as e:
            logger.warning("Answer verification skipped: %s", e.message)
            return

        result = await self.repair.repair(response.content, prompts.VERIFICATION_SHAPE, allow_model=False)
        if not result.success or not isinstance(result.value, dict):
            return
        verdict = str(result.value.get("verdict", "")).upper()
        try:
            groundedness = float(result.value.get("groundedness", 0.0))
        except (TypeError, ValueError):
            groundedness = 0.0
        passed = verdict.startswith("VERIFIED") and groundedness >= opts.verification_threshold
        state.metrics.verification_passed = passed
        if not passed:
            state.confidence = min(state.confidence, groundedness)
            logger.warning("Answer failed groundedness check (%.2f)", groundedness)

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def _degrade(self, state: SearchState, failure: Fail) -> SearchResult:
        reason = (
            TerminationReason.RETRIEVAL_FAILURE
            if failure.stage == SearchPhase.SEARCH
            else TerminationReason.DISPATCH_FAILURE
        )
        state.metrics.early_termination_reason = reason.value
        logger.warning(
            "Search degraded at %s stage: %s", failure.stage.value, failure.error.message
        )
        return self._result(state, self._extractive_answer(state, failure.error), reason, partial=True)

    def _extractive_answer(self, state: SearchState, error: OrchestratorError) -> str:
        items = state.ranked_context()[:3]
        if not items:
            return f"No answer could be produced for '{state.query}': {error.message}"
        lines = [f"Partial answer (search stopped early: {error.message}). Most relevant context:"]
        lines.extend(f"- {item.source_id}: {item.content[:300].strip()}" for item in items)
        return "\n".join(lines)

    def _result(
        self, state: SearchState, answer: str, reason: TerminationReason, partial: bool = False
    ) -> SearchResult:
        state.termination_reason = reason
        logger.info(
            "Iterative search finished after %d iteration(s): %s", state.iteration, reason.value
        )
        return SearchResult(
            final_answer=answer,
            accumulated_context=state.ranked_context(),
            decision_log=list(state.decision_log),
            search_metrics=state.metrics,
            termination_reason=reason,
            confidence=state.confidence,
            partial=partial,
            turns=list(state.turns),
        )
