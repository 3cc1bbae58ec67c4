"""Tests for the response repair pipeline."""

from typing import Any

import pytest

from switchyard.core.errors import AllBackendsExhaustedError
from switchyard.dispatch.dispatcher import DispatchResult
from switchyard.dispatch.registry import TaskType
from switchyard.repair.heuristics import Severity, analyze
from switchyard.repair.pipeline import (
    RepairStrategy,
    ResponseRepairPipeline,
    empty_like,
    looks_like_json,
)
from switchyard.repair.textual import normalize_label, parse_labelled_text


class StubDispatcher:
    """Records repair dispatches and replies with a fixed outcome."""

    def __init__(self, outcome: str | Exception) -> None:
        self.outcome = outcome
        self.calls: list[tuple[Any, str]] = []

    async def dispatch(self, task_type: Any, prompt: str, system_instruction: Any = None, options: Any = None) -> DispatchResult:
        self.calls.append((task_type, prompt))
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return DispatchResult(content=self.outcome, model_used="stub-model", execution_time_ms=1)


class TestModelFreeRepair:
    """Test strict and heuristic parsing."""

    def test_fence_and_trailing_comma(self) -> None:
        """Test fenced JSON with a trailing comma."""
        result = ResponseRepairPipeline().repair_sync('```json\n{"a":1,}\n```')
        assert result.success is True
        assert result.value == {"a": 1}

    def test_clean_json_is_strict(self) -> None:
        """Test valid JSON parses strictly with full confidence."""
        result = ResponseRepairPipeline().repair_sync('{"files": ["a.py"], "count": 1}')
        assert result.strategy_used == RepairStrategy.STRICT
        assert result.confidence == 1.0

    def test_prose_around_json(self) -> None:
        """Test the first balanced span is extracted from surrounding prose."""
        result = ResponseRepairPipeline().repair_sync('Here you go: {"x": [1, 2]} hope that helps')
        assert result.value == {"x": [1, 2]}

    def test_python_literals_and_single_quotes(self) -> None:
        """Test single quotes and Python literals."""
        result = ResponseRepairPipeline().repair_sync("{'a': True, 'b': None}")
        assert result.value == {"a": True, "b": None}
        assert result.strategy_used == RepairStrategy.HEURISTIC

    def test_bare_keys(self) -> None:
        """Test unquoted keys are quoted."""
        result = ResponseRepairPipeline().repair_sync('{name: "x", count: 2}')
        assert result.value == {"name": "x", "count": 2}

    def test_truncated_structure_closed(self) -> None:
        """Test a truncated array and object are closed."""
        result = ResponseRepairPipeline().repair_sync('{"items": [1, 2, 3')
        assert result.value == {"items": [1, 2, 3]}

    def test_raw_newline_in_string(self) -> None:
        """Test raw control characters inside strings are escaped."""
        result = ResponseRepairPipeline().repair_sync('{"text": "line1\nline2\tend"}')
        assert result.value == {"text": "line1\nline2\tend"}

    def test_brackets_inside_strings_are_not_structure(self) -> None:
        """Test brackets inside string values do not confuse span detection."""
        result = ResponseRepairPipeline().repair_sync('{"code": "if (a) { return [b]; }",}')
        assert result.value == {"code": "if (a) { return [b]; }"}

    def test_deterministic(self) -> None:
        """Test model-free repair is a pure function of its input."""
        pipeline = ResponseRepairPipeline()
        text = "```\n{'a': [1, 2,], b: False\n```"
        assert pipeline.repair_sync(text) == pipeline.repair_sync(text)


class TestFallback:
    """Test fallback and textual parsing."""

    def test_unrecoverable_returns_shaped_empty(self) -> None:
        """Test failure returns an empty structure shaped like the hint."""
        result = ResponseRepairPipeline().repair_sync("total garbage", {"items": [], "count": 0})
        assert result.success is False
        assert result.strategy_used == RepairStrategy.FALLBACK
        assert result.value == {"items": [], "count": 0}
        assert result.error

    def test_empty_input(self) -> None:
        """Test empty text falls back with an array hint."""
        result = ResponseRepairPipeline().repair_sync("", "an array of file paths")
        assert result.success is False
        assert result.value == []

    def test_labelled_text(self) -> None:
        """Test labelled prose is parsed against the hint keys."""
        text = "Decision: ANSWER\nReasoning: enough context\nConfidence: 0.9"
        hint = {"decision": "", "reasoning": "", "confidence": 0.0}
        result = ResponseRepairPipeline().repair_sync(text, hint)
        assert result.strategy_used == RepairStrategy.TEXTUAL
        assert result.value == {"decision": "ANSWER", "reasoning": "enough context", "confidence": 0.9}

    def test_custom_text_parser(self) -> None:
        """Test a caller-supplied parser for non-JSON text."""
        result = ResponseRepairPipeline().repair_sync("a, b, c", text_parser=lambda t: t.split(", "))
        assert result.value == ["a", "b", "c"]

    def test_empty_like_nested(self) -> None:
        """Test nested hint shapes."""
        hint = {"name": "x", "tags": ["a"], "meta": {"score": 1.5, "ok": True}}
        assert empty_like(hint) == {"name": "", "tags": [], "meta": {"score": 0, "ok": False}}
        assert empty_like('{"a": [1]}') == {"a": []}


class TestModelAssisted:
    """Test the single model-assisted repair attempt."""

    async def test_model_repair_used_once(self) -> None:
        """Test an unrecoverable response goes through one JSON_REPAIR dispatch."""
        stub = StubDispatcher('```json\n{"a": 1}\n```')
        pipeline = ResponseRepairPipeline(dispatcher=stub)

        result = await pipeline.repair('{"a": ', {"a": 0}, context_description="a counter")

        assert result.success is True
        assert result.strategy_used == RepairStrategy.MODEL_ASSISTED
        assert result.value == {"a": 1}
        assert len(stub.calls) == 1
        assert stub.calls[0][0] == TaskType.JSON_REPAIR
        assert "a counter" in stub.calls[0][1]

    async def test_model_repair_failure_never_raises(self) -> None:
        """Test dispatch failure degrades to the fallback."""
        stub = StubDispatcher(AllBackendsExhaustedError("none left", rate_limited_everywhere=True))
        result = await ResponseRepairPipeline(dispatcher=stub).repair('{"a": ', {"a": 0})
        assert result.success is False
        assert result.value == {"a": 0}

    async def test_model_output_still_malformed(self) -> None:
        """Test malformed model output is not retried."""
        stub = StubDispatcher("sorry, I cannot help with that")
        result = await ResponseRepairPipeline(dispatcher=stub).repair('{"a": ', {"a": 0})
        assert result.strategy_used == RepairStrategy.FALLBACK
        assert len(stub.calls) == 1

    async def test_model_repair_can_be_disabled(self) -> None:
        """Test allow_model=False skips the dispatch."""
        stub = StubDispatcher('{"a": 1}')
        result = await ResponseRepairPipeline(dispatcher=stub).repair('{"a": ', allow_model=False)
        assert result.success is False
        assert stub.calls == []

    async def test_malformed_text_truncated_in_prompt(self) -> None:
        """Test the malformed text is bounded in the repair prompt."""
        stub = StubDispatcher('{"a": 1}')
        pipeline = ResponseRepairPipeline(dispatcher=stub, max_text_in_prompt=20)
        await pipeline.repair('{"a" ' + "x" * 200 + "}")
        assert "x" * 21 not in stub.calls[0][1]


class TestHelpers:
    """Test analysis and label helpers."""

    def test_analyze_reports_damage(self) -> None:
        """Test malformation analysis."""
        report = analyze('```json\n{"a": 1,}\n```')
        assert "markdown-code-blocks" in report.error_types
        assert "trailing-commas" in report.error_types
        assert report.severity == Severity.MEDIUM

    def test_analyze_no_structure(self) -> None:
        """Test text without brackets is critical."""
        assert analyze("nothing here").severity == Severity.CRITICAL

    @pytest.mark.parametrize(
        ("label", "expected"),
        [("Next Query", "next_query"), ("nextQuery", "next_query"), ("next-query", "next_query")],
    )
    def test_normalize_label(self, label: str, expected: str) -> None:
        """Test label normalization."""
        assert normalize_label(label) == expected

    def test_looks_like_json(self) -> None:
        """Test the structural pre-check."""
        assert looks_like_json('  {"a": 1}')
        assert looks_like_json('The answer is "result": 3')
        assert not looks_like_json("Decision: ANSWER")

    def test_parse_labelled_text_continuation(self) -> None:
        """Test continuation lines join the previous value."""
        parsed = parse_labelled_text("Reasoning: first line\nsecond line\nConfidence: 1")
        assert parsed == {"reasoning": "first line second line", "confidence": 1}
