from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterator, Protocol

from ...context.messages import AssistantPart, ReasoningPart, TextPart
from ...errors import CancellationToken
from ..errors import LLMErrorCode, LLMRequestError
from ..types import (
    CallOptions,
    LLMUsage,
    Model,
    ModelCallRequest,
    ModelInfo,
    ProviderKind,
    ProviderProfile,
    StepResult,
    StreamEvent,
    UsageReport,
)

if TYPE_CHECKING:
    from ...tools.definitions import ToolDefinition
    from ..model_info import ModelInfoCatalog


@dataclass(frozen=True, slots=True)
class ModelListResult:
    models: list[Model] = field(default_factory=list)
    success: bool = True
    error: str | None = None


class CallableModel(Protocol):
    model: Model

    def complete(self, request: ModelCallRequest, *, cancel: CancellationToken | None = None) -> StepResult: ...

    def stream(self, request: ModelCallRequest, *, cancel: CancellationToken | None = None) -> Iterator[StreamEvent]: ...


class ProviderAdapter(Protocol):
    """
    Uniform contract every model backend implements.

    `load_models` must not raise: discovery failures come back as `success=False`.
    Optional hooks (`call_option_overrides`, `cache_hint`, `extra_tools`, `model_info`) are
    looked up with getattr by the registry.
    """

    kind: ProviderKind

    def load_models(self, profile: ProviderProfile) -> ModelListResult: ...

    def create_callable_model(
        self, profile: ProviderProfile, model: Model, call_options: CallOptions
    ) -> CallableModel: ...

    def compute_usage(
        self,
        model: Model,
        usage: LLMUsage | None,
        *,
        task_total_cost: float,
        provider_metadata: dict[str, Any] | None = None,
    ) -> UsageReport: ...


class OptionalAdapterHooks(Protocol):
    def call_option_overrides(self, profile: ProviderProfile, model: Model) -> dict[str, Any]: ...

    def cache_hint(self, profile: ProviderProfile, model: Model) -> dict[str, Any] | None: ...

    def extra_tools(self, profile: ProviderProfile, model: Model) -> list["ToolDefinition"]: ...

    def model_info(self, profile: ProviderProfile, model_id: str, catalog: "ModelInfoCatalog") -> ModelInfo | None: ...


def static_models(profile: ProviderProfile) -> list[Model]:
    return [Model(id=model_id, provider_id=profile.id) for model_id in profile.models if model_id.strip()]


def raise_if_cancelled(
    cancel: CancellationToken | None,
    *,
    provider_kind: ProviderKind,
    provider_id: str,
    model: str,
    operation: str,
) -> None:
    if cancel is not None and cancel.cancelled:
        raise LLMRequestError(
            "Request cancelled.",
            code=LLMErrorCode.CANCELLED,
            provider_kind=provider_kind,
            provider_id=provider_id,
            model=model,
            retryable=False,
            details={"operation": operation},
        )


def parse_tool_arguments(raw: str | None) -> dict[str, Any]:
    """
    Decode streamed/stringified tool arguments.

    Undecodable text is kept under `_raw_arguments` so schema validation rejects it and the
    repair path can show the model what it sent.
    """

    if raw is None or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {"_raw_arguments": raw}
    if isinstance(parsed, dict):
        return parsed
    return {"_raw_arguments": raw}


def merge_text_parts(parts: list[AssistantPart]) -> list[AssistantPart]:
    """Coalesce adjacent text/reasoning fragments produced by streaming deltas."""

    out: list[AssistantPart] = []
    for part in parts:
        prev = out[-1] if out else None
        if isinstance(part, TextPart) and isinstance(prev, TextPart):
            out[-1] = TextPart(text=prev.text + part.text)
        elif isinstance(part, ReasoningPart) and isinstance(prev, ReasoningPart) and prev.signature is None:
            out[-1] = ReasoningPart(text=prev.text + part.text, signature=part.signature)
        else:
            out.append(part)
    return [p for p in out if not _is_blank(p)]


def _is_blank(part: AssistantPart) -> bool:
    if isinstance(part, TextPart):
        return not part.text
    if isinstance(part, ReasoningPart):
        return not part.text and not part.signature
    return False
