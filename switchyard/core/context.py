"""
Dependency wiring for the orchestration core.

``build_context`` turns the merged core configuration into the object graph
(credential store, rate limiter, registry, dispatcher, repair pipeline,
search controller). Collaborators that touch the outside world (transports,
persistence, retrieval, clock) can be injected, which is how tests run the
whole graph offline.
"""

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from switchyard.core.clock import SystemClock
from switchyard.core.protocols import (
    Clock,
    CredentialPersistence,
    ProviderTransport,
    RetrievalCollaborator,
)
from switchyard.credentials.persistence import JSONFileCredentialPersistence
from switchyard.credentials.store import CredentialStore
from switchyard.dispatch.dispatcher import DispatchOptions, TaskDispatcher
from switchyard.dispatch.rate_limiter import RateLimiter
from switchyard.dispatch.registry import ModelRegistry
from switchyard.providers import (
    availability_probe,
    build_transports,
    register_cli_subscriptions,
    timeout_caps,
)
from switchyard.repair.pipeline import ResponseRepairPipeline
from switchyard.search.cache import RetrievalCache
from switchyard.search.controller import IterativeSearchController, SearchOptions
from switchyard.search.decisions import DecisionLabelMap
from switchyard.search.web import TavilyWebRetrieval

logger = logging.getLogger(__name__)


@dataclass
class OrchestratorContext:
    """Everything one orchestrator instance runs on."""

    config: dict[str, Any]
    clock: Clock
    credentials: CredentialStore
    rate_limiter: RateLimiter
    registry: ModelRegistry
    transports: dict[str, ProviderTransport]
    dispatcher: TaskDispatcher
    repair: ResponseRepairPipeline
    search_options: SearchOptions
    labels: DecisionLabelMap
    cache: RetrievalCache
    web: RetrievalCollaborator | None = None
    index: RetrievalCollaborator | None = None
    owned_closers: list[Any] = field(default_factory=list)

    def search_controller(self, index: RetrievalCollaborator | None = None) -> IterativeSearchController:
        """Controller over ``index`` (or the context's default index).

        Raises:
            ValueError: If no index collaborator is available
        """
        collaborator = index or self.index
        if collaborator is None:
            msg = "An index retrieval collaborator is required for iterative search"
            raise ValueError(msg)
        return IterativeSearchController(
            dispatcher=self.dispatcher,
            repair=self.repair,
            index=collaborator,
            web=self.web,
            clock=self.clock,
            labels=self.labels,
            options=self.search_options,
            cache=self.cache,
        )


def _persistence_from_config(credentials_config: Mapping[str, Any]) -> JSONFileCredentialPersistence:
    providers = credentials_config.get("providers", {})
    paths = {
        provider_id: settings["oauth_file"]
        for provider_id, settings in providers.items()
        if settings.get("oauth_file")
    }
    return JSONFileCredentialPersistence(paths)


def build_context(
    config: dict[str, Any],
    clock: Clock | None = None,
    transports: Mapping[str, ProviderTransport] | None = None,
    persistence: CredentialPersistence | None = None,
    index: RetrievalCollaborator | None = None,
    web: RetrievalCollaborator | None = None,
    environ: Mapping[str, str] | None = None,
    registry: ModelRegistry | None = None,
    detect_cli: bool = True,
) -> OrchestratorContext:
    """Build the orchestrator object graph from configuration.

    Args:
        config: Merged core configuration (all sections)
        clock: Time source (system clock by default)
        transports: Provider id -> transport (built from config by default)
        persistence: OAuth credential persistence (JSON files by default)
        index: Default index retrieval collaborator for iterative search
        web: Web retrieval collaborator (Tavily from config by default, when configured)
        environ: Environment used for key discovery (``os.environ`` by default)
        registry: Model registry (built-in catalog by default)
        detect_cli: Look for CLI binaries and register subscription credentials

    Returns:
        OrchestratorContext with model availability already probed

    Raises:
        ConfigurationError: If the registry fails validation
    """
    env = os.environ if environ is None else environ
    clock = clock or SystemClock()
    owned: list[Any] = []

    credentials_config = config.get("credentials", {})
    credentials = CredentialStore.from_config(
        credentials_config,
        clock=clock,
        persistence=persistence or _persistence_from_config(credentials_config),
        environ=env,
    )

    providers_config = config.get("providers", {})
    if transports is None:
        transports = build_transports(providers_config)
        owned.extend(transports.values())
    transports = dict(transports)
    if detect_cli:
        register_cli_subscriptions(credentials, transports)

    limiter_config = config.get("rate_limiter", {})
    rate_limiter = RateLimiter(
        clock,
        window_seconds=float(limiter_config.get("window_seconds", 60)),
        default_min_interval=float(limiter_config.get("min_interval_seconds", 0)),
    )

    registry = registry or ModelRegistry.default()
    registry.validate()
    registry.apply_availability(availability_probe(credentials, transports))

    dispatch_config = config.get("dispatch", {})
    dispatcher = TaskDispatcher(
        registry=registry,
        credentials=credentials,
        rate_limiter=rate_limiter,
        transports=transports,
        clock=clock,
        default_options=DispatchOptions.from_config(dispatch_config),
        backoff_base_ms=int(dispatch_config.get("backoff_base_ms", 1000)),
        abort_on_fatal=bool(dispatch_config.get("abort_on_fatal", True)),
        timeout_caps_ms=timeout_caps(providers_config),
    )

    repair_config = config.get("repair", {})
    repair = ResponseRepairPipeline(
        dispatcher=dispatcher,
        model_assisted=bool(repair_config.get("model_assisted", True)),
        max_text_in_prompt=int(repair_config.get("max_text_in_prompt", 500)),
        max_context_in_prompt=int(repair_config.get("max_context_in_prompt", 300)),
    )

    search_config = config.get("search", {})
    if web is None:
        tavily = TavilyWebRetrieval.from_config(config.get("web", {}), environ=env)
        if tavily.configured:
            web = tavily
            owned.append(tavily)

    logger.info(
        "Orchestrator ready: %d provider(s) with credentials, %d model(s) available",
        sum(1 for p in transports if credentials.has_credentials(p)),
        len(registry.available_models()),
    )

    return OrchestratorContext(
        config=config,
        clock=clock,
        credentials=credentials,
        rate_limiter=rate_limiter,
        registry=registry,
        transports=transports,
        dispatcher=dispatcher,
        repair=repair,
        search_options=SearchOptions.from_config(search_config),
        labels=DecisionLabelMap.from_config(search_config),
        cache=RetrievalCache(
            clock,
            ttl_seconds=float(search_config.get("cache_ttl_seconds", 600)),
            max_entries=int(search_config.get("cache_max_entries", 50)),
        ),
        web=web,
        index=index,
        owned_closers=owned,
    )
