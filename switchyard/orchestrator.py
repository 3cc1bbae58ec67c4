"""
Orchestrator facade.

Single entry point over the orchestration core:

    orchestrator = Orchestrator.from_config(index=my_index)
    result = await orchestrator.dispatch("code_generation", prompt)
    parsed = await orchestrator.repair_json(result.content, {"files": []})
    answer = await orchestrator.run_iterative_search("How is auth wired?")
"""

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from switchyard.config.loader import load_core_config
from switchyard.core.context import OrchestratorContext, build_context
from switchyard.core.errors import OrchestratorError
from switchyard.core.protocols import (
    Clock,
    CredentialPersistence,
    ProviderTransport,
    RetrievalCollaborator,
)
from switchyard.dispatch.dispatcher import BatchItem, DispatchOptions, DispatchResult
from switchyard.dispatch.registry import TaskType
from switchyard.observability.logging import configure_logging
from switchyard.repair.pipeline import RepairResult, ShapeHint, TextParser
from switchyard.search.controller import SearchOptions
from switchyard.search.state import SearchResult

logger = logging.getLogger(__name__)


class Orchestrator:
    """Multi-provider dispatch, response repair and iterative search."""

    def __init__(self, context: OrchestratorContext) -> None:
        self.context = context

    @classmethod
    def from_config(
        cls,
        config: dict[str, Any] | None = None,
        *,
        clock: Clock | None = None,
        transports: Mapping[str, ProviderTransport] | None = None,
        persistence: CredentialPersistence | None = None,
        index: RetrievalCollaborator | None = None,
        web: RetrievalCollaborator | None = None,
        environ: Mapping[str, str] | None = None,
        detect_cli: bool = True,
        setup_logging: bool = False,
    ) -> "Orchestrator":
        """Create an orchestrator.

        Args:
            config: Full core configuration (loaded from core_defaults.yaml and
                SWITCHYARD_* environment overrides when omitted)
            clock: Time source
            transports: Provider transports (built from config when omitted)
            persistence: OAuth credential persistence
            index: Default index retrieval collaborator
            web: Web retrieval collaborator
            environ: Environment for API key discovery
            detect_cli: Register CLI subscriptions when the binaries are installed
            setup_logging: Install the handler described by the ``logging`` section

        Returns:
            Orchestrator ready to dispatch
        """
        cfg = config if config is not None else load_core_config()
        if setup_logging:
            log_config = cfg.get("logging", {})
            configure_logging(log_config.get("level", "INFO"), bool(log_config.get("json", False)))

        context = build_context(
            cfg,
            clock=clock,
            transports=transports,
            persistence=persistence,
            index=index,
            web=web,
            environ=environ,
            detect_cli=detect_cli,
        )
        return cls(context)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(
        self,
        task_type: TaskType | str,
        prompt: str,
        system_instruction: str | None = None,
        options: DispatchOptions | None = None,
    ) -> DispatchResult:
        """Run one task through the model fallback chain.

        Raises:
            AllBackendsExhaustedError: Every candidate failed
            MalformedRequestError: Unknown task type or a fatal failure
        """
        return await self.context.dispatcher.dispatch(task_type, prompt, system_instruction, options)

    async def dispatch_batch(
        self,
        items: Sequence[BatchItem],
        batch_size: int | None = None,
        batch_delay_ms: int | None = None,
    ) -> list[DispatchResult | OrchestratorError]:
        dispatch_config = self.context.config.get("dispatch", {})
        return await self.context.dispatcher.dispatch_batch(
            items,
            batch_size=batch_size or int(dispatch_config.get("batch_size", 10)),
            batch_delay_ms=(
                batch_delay_ms
                if batch_delay_ms is not None
                else int(dispatch_config.get("batch_delay_ms", 1000))
            ),
        )

    # ------------------------------------------------------------------
    # Repair
    # ------------------------------------------------------------------

    async def repair_json(
        self,
        raw_text: str,
        expected_structure: ShapeHint = None,
        context_description: str | None = None,
        text_parser: TextParser | None = None,
    ) -> RepairResult:
        """Coerce raw model output into structured data (never raises)."""
        return await self.context.repair.repair(
            raw_text, expected_structure, context_description, text_parser
        )

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def run_iterative_search(
        self,
        query: str,
        index: RetrievalCollaborator | None = None,
        options: SearchOptions | None = None,
        **overrides: Any,
    ) -> SearchResult:
        """Answer ``query`` through the bounded retrieve/analyze/decide loop.

        Args:
            query: User question
            index: Index collaborator (defaults to the one given at construction)
            options: Search options (defaults from the ``search`` config section)
            **overrides: Individual option overrides

        Raises:
            ValueError: If no index collaborator is available
        """
        controller = self.context.search_controller(index)
        return await controller.run(query, options, **overrides)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_model_stats(self) -> dict[str, dict[str, Any]]:
        return self.context.dispatcher.get_model_stats()

    def get_oauth_status(self) -> dict[str, dict[str, Any]]:
        return self.context.credentials.get_oauth_status()

    def get_available_models(self) -> list[str]:
        return [model.model_id for model in self.context.registry.available_models()]

    def get_rate_limit_status(self, window_key: str) -> dict[str, Any]:
        """Window snapshot for a ``"<credential_id>/<model_id>"`` key."""
        return self.context.rate_limiter.status(window_key)

    async def aclose(self) -> None:
        for resource in self.context.owned_closers:
            await resource.aclose()
        self.context.owned_closers.clear()

    async def __aenter__(self) -> "Orchestrator":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()
