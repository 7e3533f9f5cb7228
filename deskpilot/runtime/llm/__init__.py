from __future__ import annotations

from .types import (
    CallOptions,
    FinishReason,
    LLMUsage,
    Model,
    ModelOverrides,
    ProviderKind,
    ProviderProfile,
    StepResult,
    StreamEvent,
    StreamEventKind,
    UsageReport,
)

__all__ = [
    "CallOptions",
    "FinishReason",
    "LLMUsage",
    "Model",
    "ModelOverrides",
    "ProviderKind",
    "ProviderProfile",
    "StepResult",
    "StreamEvent",
    "StreamEventKind",
    "UsageReport",
]
