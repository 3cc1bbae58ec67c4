"""
Response repair pipeline.

Coerces raw model output into structured data through a bounded cascade:

1. structural pre-check (JSON-like, or hand off to a textual parser)
2. strict parse of the first balanced span, fences stripped
3. heuristic repair, then strict parse again
4. one optional model-assisted repair, parsed through steps 2-3
5. fallback to an empty structure shaped like the expected value

The pipeline never raises; every outcome is a RepairResult.
"""

import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from switchyard.core.errors import OrchestratorError
from switchyard.dispatch.registry import TaskType
from switchyard.repair.heuristics import analyze, apply_fixes
from switchyard.repair.scanner import find_balanced_span, strip_code_fences
from switchyard.repair.textual import parse_labelled_text

if TYPE_CHECKING:
    from switchyard.dispatch.dispatcher import DispatchOptions, TaskDispatcher

logger = logging.getLogger(__name__)

ShapeHint = str | dict[str, Any] | list[Any] | None
TextParser = Callable[[str], Any]

_QUOTED_KEY = re.compile(r'"[^"\n]{1,80}"\s*:')
_BRACED_KEY = re.compile(r"[{\[]\s*['\"]?[A-Za-z_][\w-]*['\"]?\s*:")


class RepairStrategy(str, Enum):
    STRICT = "strict"
    HEURISTIC = "heuristic"
    MODEL_ASSISTED = "model_assisted"
    TEXTUAL = "textual"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class RepairResult:
    """Outcome of a repair attempt.

    Attributes:
        success: True when ``value`` was recovered from the text
        value: Parsed value, or a best-effort empty structure on failure
        strategy_used: Strategy that produced ``value``
        confidence: 0..1 confidence that ``value`` reflects the intended output
        error: Last parse error, for diagnostics
    """

    success: bool
    value: Any
    strategy_used: RepairStrategy
    confidence: float
    error: str | None = None


def looks_like_json(text: str) -> bool:
    """Heuristic pre-check: leading bracket, fenced block or a recognizable key."""
    stripped = text.lstrip()
    if stripped.startswith(("{", "[")):
        return True
    if "```" in text:
        return True
    return bool(_QUOTED_KEY.search(text) or _BRACED_KEY.search(text))


def empty_like(hint: ShapeHint) -> Any:
    """Best-effort empty structure with the shape of ``hint``."""
    if isinstance(hint, dict):
        return {key: _empty_value(value) for key, value in hint.items()}
    if isinstance(hint, list):
        return []
    if isinstance(hint, str):
        text = hint.strip()
        if text.startswith(("{", "[")):
            try:
                return empty_like(json.loads(text))
            except ValueError:
                pass
        if text.startswith("[") or "array" in text.lower() or "list" in text.lower():
            return []
    return {}


def _empty_value(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _empty_value(v) for key, v in value.items()}
    if isinstance(value, list):
        return []
    if isinstance(value, str):
        return ""
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return 0
    return None


def _hint_keys(hint: ShapeHint) -> list[str] | None:
    if isinstance(hint, dict):
        return list(hint.keys())
    return None


def _strict_parse(text: str) -> Any:
    """Parse the first balanced span of ``text`` (fences removed).

    Raises:
        ValueError: When no span parses
    """
    body = strip_code_fences(text)
    try:
        return json.loads(body)
    except ValueError:
        pass
    span = find_balanced_span(body)
    if span is None:
        msg = "no balanced JSON structure found"
        raise ValueError(msg)
    return json.loads(span)


class ResponseRepairPipeline:
    """Turn raw model output into structured data without ever raising."""

    def __init__(
        self,
        dispatcher: "TaskDispatcher | None" = None,
        model_assisted: bool = True,
        max_text_in_prompt: int = 500,
        max_context_in_prompt: int = 300,
        repair_options: "DispatchOptions | None" = None,
    ) -> None:
        """Initialize pipeline.

        Args:
            dispatcher: Dispatcher used for the model-assisted step (None disables it)
            model_assisted: Allow the model-assisted step at all
            max_text_in_prompt: Malformed text is truncated to this length in the repair prompt
            max_context_in_prompt: Diagnostic context is truncated to this length
            repair_options: Dispatch options for the repair task
        """
        self.dispatcher = dispatcher
        self.model_assisted = model_assisted
        self.max_text_in_prompt = max_text_in_prompt
        self.max_context_in_prompt = max_context_in_prompt
        self.repair_options = repair_options

    def repair_sync(
        self,
        raw_text: str,
        expected_structure: ShapeHint = None,
        text_parser: TextParser | None = None,
    ) -> RepairResult:
        """Run every model-free step (1-3 and 5)."""
        result = self._parse_without_model(raw_text or "", expected_structure, text_parser)
        if result is not None:
            return result
        return self._fallback(expected_structure, self._last_error(raw_text or ""))

    async def repair(
        self,
        raw_text: str,
        expected_structure: ShapeHint = None,
        context_description: str | None = None,
        text_parser: TextParser | None = None,
        allow_model: bool | None = None,
    ) -> RepairResult:
        """Run the full cascade.

        Args:
            raw_text: Raw model output expected to contain a JSON value
            expected_structure: Example value, JSON template or prose description
            context_description: What the text was supposed to be (used in the repair prompt)
            text_parser: Parser for non-JSON responses (defaults to labelled text)
            allow_model: Override whether the model-assisted step may run

        Returns:
            RepairResult (never raises)
        """
        text = raw_text or ""
        result = self._parse_without_model(text, expected_structure, text_parser)
        if result is not None:
            return result

        error = self._last_error(text)
        use_model = self.model_assisted if allow_model is None else allow_model
        if use_model and self.dispatcher is not None:
            repaired = await self._model_repair(text, expected_structure, context_description, error)
            if repaired is not None:
                return repaired

        return self._fallback(expected_structure, error)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _parse_without_model(
        self, text: str, hint: ShapeHint, text_parser: TextParser | None
    ) -> RepairResult | None:
        if not text.strip():
            return None

        if not looks_like_json(text):
            value = self._parse_textual(text, hint, text_parser)
            if value is not None:
                return RepairResult(True, value, RepairStrategy.TEXTUAL, 0.5)
            return None

        try:
            value = _strict_parse(text)
        except (ValueError, RecursionError):
            pass
        else:
            return RepairResult(True, value, RepairStrategy.STRICT, 1.0)

        report = analyze(text)
        try:
            value = json.loads(apply_fixes(text))
        except (ValueError, RecursionError) as e:
            logger.debug("Heuristic repair failed (%s): %s", ", ".join(report.error_types), e)
        else:
            logger.debug("Heuristic repair fixed: %s", ", ".join(report.error_types) or "nothing")
            return RepairResult(True, value, RepairStrategy.HEURISTIC, report.confidence)

        value = self._parse_textual(text, hint, text_parser)
        if value is not None:
            return RepairResult(True, value, RepairStrategy.TEXTUAL, 0.4)
        return None

    def _parse_textual(self, text: str, hint: ShapeHint, text_parser: TextParser | None) -> Any:
        if text_parser is not None:
            try:
                return text_parser(text)
            except (ValueError, TypeError, KeyError) as e:
                logger.debug("Textual parser rejected response: %s", e)
                return None
        return parse_labelled_text(text, _hint_keys(hint))

    async def _model_repair(
        self, text: str, hint: ShapeHint, context_description: str | None, error: str
    ) -> RepairResult | None:
        prompt = self._build_repair_prompt(text, hint, context_description, error)
        try:
            result = await self.dispatcher.dispatch(  # type: ignore[union-attr]
                TaskType.JSON_REPAIR, prompt, options=self.repair_options
            )
        except OrchestratorError as e:
            logger.warning("Model-assisted repair unavailable: %s", e.message)
            return None

        try:
            value = _strict_parse(result.content)
        except (ValueError, RecursionError):
            try:
                value = json.loads(apply_fixes(result.content))
            except (ValueError, RecursionError) as e:
                logger.warning("Model-assisted repair output still malformed: %s", e)
                return None
        logger.info("Model-assisted repair succeeded via %s", result.model_used)
        return RepairResult(True, value, RepairStrategy.MODEL_ASSISTED, 0.8)

    def _fallback(self, hint: ShapeHint, error: str | None) -> RepairResult:
        logger.warning("JSON repair failed, returning empty structure: %s", error)
        return RepairResult(False, empty_like(hint), RepairStrategy.FALLBACK, 0.0, error)

    def _last_error(self, text: str) -> str:
        if not text.strip():
            return "empty response"
        try:
            json.loads(apply_fixes(text))
        except (ValueError, RecursionError) as e:
            return str(e)
        return "response is not JSON"

    def _build_repair_prompt(
        self, text: str, hint: ShapeHint, context_description: str | None, error: str
    ) -> str:
        if hint is None:
            shape = "A single valid JSON value."
        elif isinstance(hint, str):
            shape = hint
        else:
            shape = json.dumps(hint, indent=2)

        context = (context_description or "structured model output")[: self.max_context_in_prompt]
        return f"""The following text was supposed to be valid JSON but could not be parsed.

**Parse error:** {error}

**What it should contain:** {context}

**Malformed text:**
```
{text[: self.max_text_in_prompt]}
```

**Expected structure:**
{shape}

Output valid JSON with the same content. Ensure:
1. All quotes are properly escaped
2. No trailing commas
3. Proper closing of all braces and brackets
4. Use double quotes (not single quotes)

Output ONLY the JSON, no markdown code blocks or explanations."""
