"""Repair of malformed structured model output."""

from switchyard.repair.pipeline import (
    RepairResult,
    RepairStrategy,
    ResponseRepairPipeline,
    empty_like,
    looks_like_json,
)

__all__ = [
    "RepairResult",
    "RepairStrategy",
    "ResponseRepairPipeline",
    "empty_like",
    "looks_like_json",
]
