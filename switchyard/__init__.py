"""
Switchyard: multi-provider AI orchestration and iterative RAG core

Switchyard routes language-model tasks across heterogeneous backends under
provider-specific rate limits, manages credential lifecycle, repairs malformed
structured output and drives a bounded retrieve/analyze/decide search loop.

Public API modules:
- switchyard.orchestrator: Orchestrator facade (dispatch, repair_json, run_iterative_search)
- switchyard.core: errors, protocols and the OrchestratorContext
- switchyard.dispatch: rate limiting, error classification, registry and dispatcher
- switchyard.repair: ResponseRepairPipeline
- switchyard.search: IterativeSearchController
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("switchyard-orchestrator")
except PackageNotFoundError:
    # Development checkout, not installed via pip
    __version__ = "0.1.0"

from switchyard.orchestrator import Orchestrator

__all__ = ["Orchestrator", "__version__"]
