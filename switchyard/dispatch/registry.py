"""
Model registry and task rules.

Every task type has exactly one rule naming a preferred model and an ordered
fallback chain. The table is validated when a registry is built: a task type
without a rule, or a rule naming a model the catalog does not know, is a
startup error rather than a runtime surprise.
"""

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum

from switchyard.core.errors import ConfigurationError
from switchyard.credentials.models import AuthMethod

logger = logging.getLogger(__name__)


class ModelCapability(str, Enum):
    """Capability tier of a model (and complexity of a task)."""

    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"


class CostTier(str, Enum):
    FREE = "free"
    PAID = "paid"
    SUBSCRIPTION = "subscription"


class TaskType(str, Enum):
    """Every kind of task the dispatcher routes."""

    # Retrieval loop
    QUERY_REWRITING = "query_rewriting"
    CONTEXT_SUMMARIZATION = "context_summarization"
    SIMPLE_ANALYSIS = "simple_analysis"
    COMPLEX_ANALYSIS = "complex_analysis"
    DECISION_MAKING = "decision_making"
    FINAL_ANSWER_GENERATION = "final_answer_generation"
    REFLECTION = "reflection"
    PLANNING = "planning"

    # Structured output
    JSON_EXTRACTION = "json_extraction"
    JSON_REPAIR = "json_repair"
    DATA_PARSING = "data_parsing"
    CLASSIFICATION = "classification"
    ENTITY_EXTRACTION = "entity_extraction"

    # Text
    TEXT_REWRITING = "text_rewriting"
    TEXT_SUMMARIZATION = "text_summarization"
    TEXT_ANALYSIS = "text_analysis"
    TRANSLATION = "translation"
    LANGUAGE_DETECTION = "language_detection"

    # Code
    CODE_GENERATION = "code_generation"
    CODE_REVIEW = "code_review"
    CODE_EXPLANATION = "code_explanation"
    TECHNICAL_WRITING = "technical_writing"
    DEBUGGING = "debugging"

    # Creative
    CREATIVE_WRITING = "creative_writing"
    CONVERSATION_GENERATION = "conversation_generation"
    CONTENT_CREATION = "content_creation"
    STORYTELLING = "storytelling"

    # General
    QUESTION_ANSWERING = "question_answering"
    RESEARCH_ANALYSIS = "research_analysis"
    GENERAL_QUERY = "general_query"


@dataclass
class ModelDescriptor:
    """Static description of one model. Only ``available`` changes at runtime.

    Attributes:
        model_id: Identifier sent to the provider
        provider_id: Provider serving the model (selects transport and credentials)
        capability: Capability tier
        cost: Cost tier
        rate_limit_per_minute: Per-minute limit with a static API key
        oauth_rate_limit_per_minute: Per-minute limit with OAuth (None = same as key)
        api_key_only: Model cannot be used with OAuth credentials
        high_capacity: Preferred when a prompt overflows its task's context budget
    """

    model_id: str
    provider_id: str
    capability: ModelCapability
    cost: CostTier
    rate_limit_per_minute: int
    oauth_rate_limit_per_minute: int | None = None
    api_key_only: bool = False
    high_capacity: bool = False
    available: bool = field(default=False, compare=False)

    def __post_init__(self) -> None:
        if self.rate_limit_per_minute < 1:
            msg = f"{self.model_id}: rate_limit_per_minute must be >= 1"
            raise ValueError(msg)
        if self.oauth_rate_limit_per_minute is not None and self.oauth_rate_limit_per_minute < 1:
            msg = f"{self.model_id}: oauth_rate_limit_per_minute must be >= 1"
            raise ValueError(msg)

    def rate_limit_for(self, auth_method: AuthMethod) -> int:
        if auth_method == AuthMethod.OAUTH and self.oauth_rate_limit_per_minute is not None:
            return self.oauth_rate_limit_per_minute
        return self.rate_limit_per_minute


@dataclass(frozen=True)
class TaskRule:
    """Routing rule for one task type."""

    task_type: TaskType
    preferred_model: str
    fallback_models: tuple[str, ...]
    max_context_length: int
    complexity: ModelCapability

    @property
    def chain(self) -> tuple[str, ...]:
        return (self.preferred_model, *self.fallback_models)


# ============================================================================
# Catalog
# ============================================================================

GEMINI_FLASH = "gemini-2.5-flash"
GEMINI_PRO = "gemini-2.5-pro"
GEMINI_FLASH_LITE = "gemini-2.5-flash-lite"
GEMINI_2_FLASH_LITE = "gemini-2.0-flash-lite"
MISTRAL_MEDIUM = "mistral-medium-latest"
CLAUDE_SONNET = "claude-sonnet-4-20250514"
CLAUDE_OPUS = "claude-opus-4-1-20250805"
CLAUDE_HAIKU = "claude-3-5-haiku-20241022"
QWEN_CODER = "qwen3-coder-plus"


def default_catalog() -> list[ModelDescriptor]:
    """Fresh copies of the built-in model descriptors."""
    return [
        ModelDescriptor(GEMINI_FLASH, "gemini", ModelCapability.MEDIUM, CostTier.FREE, 10, 60, high_capacity=True),
        ModelDescriptor(GEMINI_PRO, "gemini", ModelCapability.COMPLEX, CostTier.FREE, 5, 60, high_capacity=True),
        ModelDescriptor(GEMINI_FLASH_LITE, "gemini", ModelCapability.SIMPLE, CostTier.FREE, 15, api_key_only=True),
        ModelDescriptor(GEMINI_2_FLASH_LITE, "gemini", ModelCapability.SIMPLE, CostTier.FREE, 25, high_capacity=True),
        ModelDescriptor(MISTRAL_MEDIUM, "mistral", ModelCapability.MEDIUM, CostTier.PAID, 100, high_capacity=True),
        ModelDescriptor(CLAUDE_SONNET, "claude", ModelCapability.COMPLEX, CostTier.SUBSCRIPTION, 30),
        ModelDescriptor(CLAUDE_OPUS, "claude", ModelCapability.COMPLEX, CostTier.SUBSCRIPTION, 20),
        ModelDescriptor(CLAUDE_HAIKU, "claude", ModelCapability.SIMPLE, CostTier.SUBSCRIPTION, 60),
        ModelDescriptor(QWEN_CODER, "qwen", ModelCapability.MEDIUM, CostTier.FREE, 60),
    ]


# High-capacity models in the order they are preferred on context overflow
HIGH_CAPACITY_ORDER: tuple[str, ...] = (
    GEMINI_FLASH,
    GEMINI_PRO,
    GEMINI_2_FLASH_LITE,
    MISTRAL_MEDIUM,
)

_SIMPLE_CHAIN = (GEMINI_FLASH_LITE, GEMINI_2_FLASH_LITE, CLAUDE_HAIKU, MISTRAL_MEDIUM)
_MEDIUM_CHAIN = (GEMINI_FLASH, CLAUDE_SONNET, MISTRAL_MEDIUM)
_COMPLEX_CHAIN = (GEMINI_PRO, GEMINI_FLASH, CLAUDE_OPUS, CLAUDE_SONNET, MISTRAL_MEDIUM)
_CODE_CHAIN = (GEMINI_PRO, QWEN_CODER, CLAUDE_SONNET, GEMINI_FLASH, MISTRAL_MEDIUM)

_CHAINS = {
    ModelCapability.SIMPLE: _SIMPLE_CHAIN,
    ModelCapability.MEDIUM: _MEDIUM_CHAIN,
    ModelCapability.COMPLEX: _COMPLEX_CHAIN,
}

# (complexity, max context length, chain override)
_RULE_TABLE: dict[TaskType, tuple[ModelCapability, int, tuple[str, ...] | None]] = {
    TaskType.QUERY_REWRITING: (ModelCapability.SIMPLE, 2000, None),
    TaskType.CONTEXT_SUMMARIZATION: (ModelCapability.SIMPLE, 4000, None),
    TaskType.SIMPLE_ANALYSIS: (ModelCapability.SIMPLE, 3000, None),
    TaskType.COMPLEX_ANALYSIS: (ModelCapability.COMPLEX, 8000, None),
    TaskType.DECISION_MAKING: (ModelCapability.COMPLEX, 10000, None),
    TaskType.FINAL_ANSWER_GENERATION: (ModelCapability.COMPLEX, 15000, None),
    TaskType.REFLECTION: (ModelCapability.MEDIUM, 6000, None),
    TaskType.PLANNING: (ModelCapability.COMPLEX, 8000, None),
    TaskType.JSON_EXTRACTION: (ModelCapability.SIMPLE, 2000, None),
    TaskType.JSON_REPAIR: (ModelCapability.SIMPLE, 4000, None),
    TaskType.DATA_PARSING: (ModelCapability.SIMPLE, 4000, None),
    TaskType.CLASSIFICATION: (ModelCapability.SIMPLE, 3000, None),
    TaskType.ENTITY_EXTRACTION: (ModelCapability.SIMPLE, 4000, None),
    TaskType.TEXT_REWRITING: (ModelCapability.SIMPLE, 3000, None),
    TaskType.TEXT_SUMMARIZATION: (ModelCapability.MEDIUM, 8000, None),
    TaskType.TEXT_ANALYSIS: (ModelCapability.MEDIUM, 5000, None),
    TaskType.TRANSLATION: (ModelCapability.MEDIUM, 5000, None),
    TaskType.LANGUAGE_DETECTION: (ModelCapability.SIMPLE, 1000, None),
    TaskType.CODE_GENERATION: (ModelCapability.COMPLEX, 10000, _CODE_CHAIN),
    TaskType.CODE_REVIEW: (ModelCapability.COMPLEX, 15000, _CODE_CHAIN),
    TaskType.CODE_EXPLANATION: (ModelCapability.MEDIUM, 8000, None),
    TaskType.TECHNICAL_WRITING: (ModelCapability.MEDIUM, 6000, None),
    TaskType.DEBUGGING: (ModelCapability.COMPLEX, 12000, _CODE_CHAIN),
    TaskType.CREATIVE_WRITING: (ModelCapability.MEDIUM, 8000, None),
    TaskType.CONVERSATION_GENERATION: (ModelCapability.MEDIUM, 6000, None),
    TaskType.CONTENT_CREATION: (ModelCapability.MEDIUM, 5000, None),
    TaskType.STORYTELLING: (ModelCapability.COMPLEX, 10000, None),
    TaskType.QUESTION_ANSWERING: (ModelCapability.MEDIUM, 8000, None),
    TaskType.RESEARCH_ANALYSIS: (ModelCapability.COMPLEX, 15000, None),
    TaskType.GENERAL_QUERY: (ModelCapability.MEDIUM, 6000, None),
}


def default_rules() -> dict[TaskType, TaskRule]:
    """Build the task rule table."""
    rules: dict[TaskType, TaskRule] = {}
    for task_type, (complexity, max_context, override) in _RULE_TABLE.items():
        chain = override or _CHAINS[complexity]
        rules[task_type] = TaskRule(
            task_type=task_type,
            preferred_model=chain[0],
            fallback_models=tuple(chain[1:]),
            max_context_length=max_context,
            complexity=complexity,
        )
    return rules


# ============================================================================
# Registry
# ============================================================================


class ModelRegistry:
    """Capability table plus task routing rules."""

    def __init__(
        self,
        models: Iterable[ModelDescriptor],
        rules: dict[TaskType, TaskRule],
        high_capacity_order: Iterable[str] = HIGH_CAPACITY_ORDER,
    ) -> None:
        self._models: dict[str, ModelDescriptor] = {}
        for model in models:
            if model.model_id in self._models:
                msg = f"Duplicate model id in catalog: {model.model_id}"
                raise ConfigurationError(msg)
            self._models[model.model_id] = model
        self._rules = dict(rules)
        self._high_capacity = tuple(high_capacity_order)
        self.validate()

    @classmethod
    def default(cls) -> "ModelRegistry":
        return cls(default_catalog(), default_rules())

    def validate(self) -> None:
        """Check the rule table against the catalog.

        Raises:
            ConfigurationError: On a missing rule, unknown model or bad limit
        """
        problems: list[str] = []

        missing = [t.value for t in TaskType if t not in self._rules]
        if missing:
            problems.append(f"task types without a rule: {', '.join(missing)}")

        for task_type, rule in self._rules.items():
            if rule.task_type != task_type:
                problems.append(f"rule for {task_type.value} is keyed as {rule.task_type.value}")
            if rule.max_context_length <= 0:
                problems.append(f"{task_type.value}: max_context_length must be positive")
            if len(set(rule.chain)) != len(rule.chain):
                problems.append(f"{task_type.value}: duplicate model in fallback chain")
            unknown = [m for m in rule.chain if m not in self._models]
            if unknown:
                problems.append(f"{task_type.value}: unknown models {', '.join(unknown)}")

        unknown_hc = [m for m in self._high_capacity if m not in self._models]
        if unknown_hc:
            problems.append(f"high-capacity list names unknown models {', '.join(unknown_hc)}")

        if problems:
            msg = "Invalid model registry: " + "; ".join(problems)
            raise ConfigurationError(msg, details={"problems": problems})

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, model_id: str) -> ModelDescriptor:
        try:
            return self._models[model_id]
        except KeyError:
            msg = f"Unknown model '{model_id}'"
            raise KeyError(msg) from None

    def rule(self, task_type: TaskType | str) -> TaskRule:
        return self._rules[TaskType(task_type)]

    def models(self) -> list[ModelDescriptor]:
        return list(self._models.values())

    def available_models(self) -> list[ModelDescriptor]:
        return [m for m in self._models.values() if m.available]

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    def set_available(self, model_id: str, available: bool) -> None:
        self.get(model_id).available = available

    def apply_availability(self, probe: Callable[[ModelDescriptor], bool]) -> None:
        """Set every model's availability from ``probe``."""
        for model in self._models.values():
            model.available = bool(probe(model))
        logger.info(
            "Model availability: %s",
            ", ".join(m.model_id for m in self.available_models()) or "none",
        )

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def select_model(self, task_type: TaskType | str, context_length: int) -> ModelDescriptor | None:
        """Pick the model a task should run on.

        When ``context_length`` exceeds the rule's budget, any available
        high-capacity model wins over the nominal preference. Otherwise the
        preferred model and then each fallback is tried in order.
        """
        rule = self.rule(task_type)
        if context_length > rule.max_context_length:
            for model_id in self._high_capacity:
                model = self._models[model_id]
                if model.available:
                    return model

        for model_id in rule.chain:
            model = self._models[model_id]
            if model.available:
                return model
        return None

    def candidates(self, task_type: TaskType | str, context_length: int) -> list[ModelDescriptor]:
        """Ordered list of available models to try for a task.

        The fallback chain filtered to available models, with the selected
        model moved to the front when overflow picks one outside the usual order.
        """
        rule = self.rule(task_type)
        ordered = [self._models[m] for m in rule.chain if self._models[m].available]
        selected = self.select_model(task_type, context_length)
        if selected is not None and (not ordered or ordered[0] is not selected):
            ordered = [selected, *[m for m in ordered if m is not selected]]
        return ordered
