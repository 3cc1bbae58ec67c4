"""Task dispatcher with admission control, retry and model fallback."""

import asyncio
import logging
from collections import deque
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from switchyard.core.errors import (
    AllBackendsExhaustedError,
    AuthenticationError,
    ConfigurationError,
    MalformedRequestError,
    OrchestratorError,
    RateLimitedError,
)
from switchyard.core.protocols import (
    ChatMessage,
    Clock,
    ProviderRequest,
    ProviderTransport,
    TokenUsage,
)
from switchyard.credentials.models import Credential
from switchyard.credentials.store import CredentialStore
from switchyard.dispatch.classifier import (
    FailureCategory,
    classify_exception,
    to_orchestrator_error,
)
from switchyard.dispatch.rate_limiter import RateLimiter
from switchyard.dispatch.registry import ModelDescriptor, ModelRegistry, TaskType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchOptions:
    """Per-call dispatch options.

    Attributes:
        max_retries: Attempts per model before moving down the chain
        timeout_ms: Hard timeout per attempt (also bounds rate-limit waits)
        context_length: Size used for overflow routing (defaults to prompt length)
        temperature: Sampling temperature passed to the provider
        max_tokens: Output cap passed to the provider
    """

    max_retries: int = 3
    timeout_ms: int = 30000
    context_length: int | None = None
    temperature: float = 0.2
    max_tokens: int | None = None

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            msg = f"max_retries must be >= 1, got {self.max_retries}"
            raise ValueError(msg)
        if self.timeout_ms <= 0:
            msg = f"timeout_ms must be positive, got {self.timeout_ms}"
            raise ValueError(msg)
        if self.context_length is not None and self.context_length < 0:
            msg = f"context_length must be non-negative, got {self.context_length}"
            raise ValueError(msg)

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "DispatchOptions":
        return cls(
            max_retries=int(config.get("max_retries", 3)),
            timeout_ms=int(config.get("timeout_ms", 30000)),
        )


@dataclass(frozen=True)
class DispatchResult:
    """Successful dispatch outcome."""

    content: str
    model_used: str
    execution_time_ms: int
    provider_id: str = ""
    attempts: int = 1
    usage: TokenUsage = field(default_factory=TokenUsage)


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    AUTHENTICATION = "authentication"
    QUOTA_EXHAUSTED = "quota_exhausted"
    FATAL = "fatal"


_OUTCOME_BY_CATEGORY = {
    FailureCategory.AUTHENTICATION: AttemptOutcome.AUTHENTICATION,
    FailureCategory.QUOTA_EXHAUSTED: AttemptOutcome.QUOTA_EXHAUSTED,
    FailureCategory.RATE_LIMITED: AttemptOutcome.RATE_LIMITED,
    FailureCategory.TRANSIENT: AttemptOutcome.TRANSIENT,
    FailureCategory.MALFORMED: AttemptOutcome.FATAL,
    FailureCategory.UNRECOGNIZED: AttemptOutcome.FATAL,
}


@dataclass(frozen=True)
class DispatchAttempt:
    """One attempt against one model, kept for statistics only."""

    model: str
    attempt_number: int
    outcome: AttemptOutcome
    latency_ms: int


@dataclass
class ModelStats:
    successes: int = 0
    failures: int = 0
    total_latency_ms: int = 0

    @property
    def average_latency_ms(self) -> float:
        return self.total_latency_ms / self.successes if self.successes else 0.0

    @property
    def success_rate(self) -> float:
        total = self.successes + self.failures
        return self.successes / total if total else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.successes,
            "failure": self.failures,
            "avg_time_ms": round(self.average_latency_ms, 1),
            "success_rate": round(self.success_rate, 3),
        }


@dataclass(frozen=True)
class BatchItem:
    """One request inside a batched dispatch."""

    task_type: TaskType | str
    prompt: str
    system_instruction: str | None = None
    options: DispatchOptions | None = None


class TaskDispatcher:
    """Route tasks across models with rate limiting and fault tolerance.

    Features:
    - Ordered fallback chain per task type (registry rules)
    - Sliding-window admission per credential and model
    - Hard per-attempt timeout
    - Linear backoff for transient failures, penalty windows for rate limits
    - Credential rotation and OAuth refresh via the credential store
    - Per-model success/latency statistics
    """

    def __init__(
        self,
        registry: ModelRegistry,
        credentials: CredentialStore,
        rate_limiter: RateLimiter,
        transports: Mapping[str, ProviderTransport],
        clock: Clock,
        default_options: DispatchOptions | None = None,
        backoff_base_ms: int = 1000,
        abort_on_fatal: bool = True,
        timeout_caps_ms: Mapping[str, int] | None = None,
    ) -> None:
        """Initialize dispatcher.

        Args:
            registry: Model registry with availability already probed
            credentials: Credential store
            rate_limiter: Shared rate limiter
            transports: Provider id -> transport
            clock: Time source for latency, backoff and admission waits
            default_options: Options used when a call passes none
            backoff_base_ms: Transient backoff unit (attempt n waits n * base)
            abort_on_fatal: Abort the whole chain on a non-retryable failure
            timeout_caps_ms: Provider id -> maximum per-attempt timeout
        """
        self.registry = registry
        self.credentials = credentials
        self.rate_limiter = rate_limiter
        self.transports = dict(transports)
        self.clock = clock
        self.default_options = default_options or DispatchOptions()
        self.backoff_base_ms = backoff_base_ms
        self.abort_on_fatal = abort_on_fatal
        self.timeout_caps_ms = dict(timeout_caps_ms or {})

        self._stats: dict[str, ModelStats] = {}
        self.recent_attempts: deque[DispatchAttempt] = deque(maxlen=500)

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
        """Run a task on the first model in its chain that succeeds.

        Args:
            task_type: Task type (selects the fallback chain)
            prompt: User prompt
            system_instruction: Optional system instruction
            options: Dispatch options (defaults to the dispatcher's)

        Returns:
            DispatchResult with content, model used and elapsed time

        Raises:
            MalformedRequestError: Unknown task type, or a non-retryable
                failure while ``abort_on_fatal`` is set
            AllBackendsExhaustedError: Every candidate failed
        """
        opts = options or self.default_options
        try:
            task = TaskType(task_type)
        except ValueError:
            msg = f"Unknown task type: {task_type}"
            raise MalformedRequestError(msg) from None

        context_length = (
            opts.context_length
            if opts.context_length is not None
            else len(prompt) + len(system_instruction or "")
        )
        candidates = self.registry.candidates(task, context_length)
        started = self.clock.monotonic()

        if not candidates:
            msg = f"No available model for task '{task.value}'"
            raise AllBackendsExhaustedError(msg, rate_limited_everywhere=False)

        messages: list[ChatMessage] = [{"role": "user", "content": prompt}]
        last_error: OrchestratorError | None = None
        rate_limited_everywhere = True
        attempted: list[str] = []

        for model in candidates:
            attempted.append(model.model_id)
            transport = self.transports.get(model.provider_id)
            if transport is None:
                last_error = ConfigurationError(
                    f"No transport registered for provider '{model.provider_id}'"
                )
                rate_limited_everywhere = False
                continue

            model_rate_limited = False
            for attempt in range(1, opts.max_retries + 1):
                credential = await self.credentials.acquire(
                    model.provider_id, allow_oauth=not model.api_key_only
                )
                if credential is None:
                    last_error = AuthenticationError(
                        f"No usable credential for provider '{model.provider_id}'",
                        details={"model": model.model_id},
                    )
                    model_rate_limited = False
                    break

                timeout_s = self._timeout_for(model, opts) / 1000.0
                window_key = self._window_key(credential, model)
                if not await self._admit(window_key, timeout_s):
                    logger.info(
                        "No admission for %s within %.1fs budget, moving on", window_key, timeout_s
                    )
                    last_error = RateLimitedError(
                        f"{model.model_id}: rate window full",
                        details={"model": model.model_id, "window": window_key},
                        retry_after=self.rate_limiter.wait_time(window_key),
                    )
                    self._record_attempt(model, attempt, AttemptOutcome.RATE_LIMITED, 0)
                    model_rate_limited = True
                    break

                request = ProviderRequest(
                    model=model.model_id,
                    messages=messages,
                    credential=credential,
                    system_instruction=system_instruction,
                    timeout_ms=int(timeout_s * 1000),
                    temperature=opts.temperature,
                    max_tokens=opts.max_tokens,
                )
                call_started = self.clock.monotonic()
                try:
                    response = await asyncio.wait_for(transport.send(request), timeout=timeout_s)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    latency_ms = self._elapsed_ms(call_started)
                    verdict = classify_exception(e)
                    error = to_orchestrator_error(e, verdict, model.model_id)
                    last_error = error
                    self._record_attempt(model, attempt, _OUTCOME_BY_CATEGORY[verdict.category], latency_ms)
                    logger.warning(
                        "Task %s failed on %s (attempt %d/%d, %s): %s",
                        task.value,
                        model.model_id,
                        attempt,
                        opts.max_retries,
                        verdict.category.value,
                        error.message,
                    )

                    if verdict.category == FailureCategory.AUTHENTICATION:
                        self.credentials.report_auth_failure(credential)
                        model_rate_limited = False
                        continue
                    if verdict.category == FailureCategory.QUOTA_EXHAUSTED:
                        self.credentials.report_quota_exhausted(credential)
                        model_rate_limited = False
                        continue
                    if verdict.category == FailureCategory.RATE_LIMITED:
                        self.rate_limiter.penalize(window_key)
                        self.credentials.rotate(model.provider_id)
                        model_rate_limited = True
                        continue
                    if verdict.should_retry:
                        model_rate_limited = False
                        if attempt < opts.max_retries:
                            delay_ms = self.backoff_base_ms * attempt
                            logger.info("Backing off %dms before retrying %s", delay_ms, model.model_id)
                            await self.clock.sleep(delay_ms / 1000.0)
                        continue

                    if self.abort_on_fatal:
                        raise error from e
                    model_rate_limited = False
                    break

                latency_ms = self._elapsed_ms(call_started)
                self._record_attempt(model, attempt, AttemptOutcome.SUCCESS, latency_ms)
                logger.info(
                    "Task %s succeeded on %s (attempt %d, %dms)",
                    task.value,
                    model.model_id,
                    attempt,
                    latency_ms,
                )
                return DispatchResult(
                    content=response.text,
                    model_used=model.model_id,
                    execution_time_ms=self._elapsed_ms(started),
                    provider_id=model.provider_id,
                    attempts=attempt,
                    usage=response.usage,
                )

            if not model_rate_limited:
                rate_limited_everywhere = False

        kind = "rate-limited" if rate_limited_everywhere else "failed"
        msg = f"All {len(attempted)} backend(s) {kind} for task '{task.value}'"
        logger.error(msg)
        raise AllBackendsExhaustedError(
            msg,
            rate_limited_everywhere=rate_limited_everywhere,
            last_error=last_error,
            attempted_models=attempted,
        ) from last_error

    async def dispatch_batch(
        self,
        items: Sequence[BatchItem],
        batch_size: int = 10,
        batch_delay_ms: int = 1000,
    ) -> list[DispatchResult | OrchestratorError]:
        """Dispatch many independent requests in fixed-size batches.

        Requests inside a batch run concurrently; batches run one after
        another with ``batch_delay_ms`` between them. Failures are returned
        in place rather than raised, so one bad item never sinks the batch.

        Returns:
            One result or error per item, in input order
        """
        if batch_size < 1:
            msg = f"batch_size must be >= 1, got {batch_size}"
            raise ValueError(msg)

        results: list[DispatchResult | OrchestratorError] = []
        for start in range(0, len(items), batch_size):
            if start:
                await self.clock.sleep(batch_delay_ms / 1000.0)
            batch = items[start : start + batch_size]
            results.extend(await asyncio.gather(*(self._dispatch_captured(item) for item in batch)))
            logger.debug("Batch %d done (%d items)", start // batch_size + 1, len(batch))
        return results

    async def _dispatch_captured(self, item: BatchItem) -> DispatchResult | OrchestratorError:
        try:
            return await self.dispatch(
                item.task_type, item.prompt, item.system_instruction, item.options
            )
        except OrchestratorError as e:
            return e

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _admit(self, window_key: str, budget_s: float) -> bool:
        """Wait for admission on a window for at most ``budget_s``.

        Admission and recording happen in one step right before the call is
        issued, so concurrent dispatches can never overfill a window.
        """
        deadline = self.clock.monotonic() + budget_s
        while not self.rate_limiter.try_admit(window_key):
            wait = self.rate_limiter.wait_time(window_key)
            if wait > deadline - self.clock.monotonic():
                return False
            await self.clock.sleep(wait)
        return True

    def _window_key(self, credential: Credential, model: ModelDescriptor) -> str:
        key = f"{credential.credential_id}/{model.model_id}"
        limit = model.rate_limit_for(credential.auth_method)
        if not self.rate_limiter.is_configured(key):
            self.rate_limiter.configure(key, limit)
        return key

    def _timeout_for(self, model: ModelDescriptor, opts: DispatchOptions) -> int:
        cap = self.timeout_caps_ms.get(model.provider_id)
        return min(opts.timeout_ms, cap) if cap else opts.timeout_ms

    def _elapsed_ms(self, since: float) -> int:
        return int((self.clock.monotonic() - since) * 1000)

    def _record_attempt(
        self, model: ModelDescriptor, attempt: int, outcome: AttemptOutcome, latency_ms: int
    ) -> None:
        self.recent_attempts.append(DispatchAttempt(model.model_id, attempt, outcome, latency_ms))
        stats = self._stats.setdefault(model.model_id, ModelStats())
        if outcome == AttemptOutcome.SUCCESS:
            stats.successes += 1
            stats.total_latency_ms += latency_ms
        else:
            stats.failures += 1

    def get_model_stats(self) -> dict[str, dict[str, Any]]:
        """Per-model success/failure counts, average latency and success rate."""
        return {model_id: stats.to_dict() for model_id, stats in self._stats.items()}
