"""Admission control, error classification, model registry and dispatch."""

from switchyard.dispatch.classifier import ErrorVerdict, FailureCategory, classify, classify_exception
from switchyard.dispatch.dispatcher import (
    BatchItem,
    DispatchOptions,
    DispatchResult,
    TaskDispatcher,
)
from switchyard.dispatch.rate_limiter import RateLimiter
from switchyard.dispatch.registry import (
    CostTier,
    ModelCapability,
    ModelDescriptor,
    ModelRegistry,
    TaskRule,
    TaskType,
)

__all__ = [
    "BatchItem",
    "CostTier",
    "DispatchOptions",
    "DispatchResult",
    "ErrorVerdict",
    "FailureCategory",
    "ModelCapability",
    "ModelDescriptor",
    "ModelRegistry",
    "RateLimiter",
    "TaskDispatcher",
    "TaskRule",
    "TaskType",
    "classify",
    "classify_exception",
]
