from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

if TYPE_CHECKING:
    from ..context.messages import AssistantPart, ContextMessage


class ProviderKind(StrEnum):
    OPENAI_COMPATIBLE = "openai-compatible"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"


class FinishReason(StrEnum):
    STOP = "stop"
    LENGTH = "length"
    TOOL_CALLS = "tool-calls"
    CONTENT_FILTER = "content-filter"
    ERROR = "error"
    OTHER = "other"
    UNKNOWN = "unknown"


AMBIGUOUS_FINISH_REASONS: frozenset[FinishReason | None] = frozenset({FinishReason.UNKNOWN, FinishReason.OTHER, None})


class StreamEventKind(StrEnum):
    REASONING_START = "reasoning-start"
    REASONING_DELTA = "reasoning-delta"
    TEXT_START = "text-start"
    TEXT_DELTA = "text-delta"
    TEXT_END = "text-end"
    TOOL_INPUT_START = "tool-input-start"
    TOOL_CALL = "tool-call"
    TOOL_RESULT = "tool-result"
    FINISH = "finish"


def _clean_id(value: str, *, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{field_name} must be a non-empty string.")
    return value.strip()


class ProviderProfile(BaseModel):
    """
    One configured model provider (a base URL plus credentials and defaults).

    `options` are provider call options merged under model-level overrides; `parameters`
    are extra request-body fields passed through untouched.
    """

    model_config = ConfigDict(extra="forbid")

    id: str
    kind: ProviderKind
    name: str | None = None
    base_url: str = ""
    api_key: str | None = None
    api_key_env: str | None = None
    enabled: bool = True
    disable_streaming: bool = False
    timeout_s: float | None = 120.0
    headers: dict[str, str] = Field(default_factory=dict)
    options: dict[str, Any] = Field(default_factory=dict)
    parameters: dict[str, Any] = Field(default_factory=dict)
    models: list[str] = Field(default_factory=list)

    @field_validator("id")
    @classmethod
    def _validate_id(cls, v: str) -> str:
        return _clean_id(v, field_name="id")


class Model(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str
    provider_id: str
    max_input_tokens: int | None = None
    max_output_tokens: int | None = None
    max_output_tokens_limit: int | None = None
    input_cost_per_token: float | None = None
    output_cost_per_token: float | None = None
    cache_read_cost_per_token: float | None = None
    cache_write_cost_per_token: float | None = None
    temperature: float | None = None
    provider_overrides: dict[str, Any] = Field(default_factory=dict)
    is_custom: bool = False

    @property
    def key(self) -> str:
        return f"{self.provider_id}/{self.id}"


class ModelOverrides(BaseModel):
    """
    A user-authored override record for one model.

    Defined values win over catalog metadata. The mere presence of the record also decides
    `max_output_tokens` and `temperature`, so leaving them unset clears them back to the
    provider default.
    """

    model_config = ConfigDict(extra="forbid")

    provider_id: str
    model_id: str
    max_input_tokens: int | None = None
    max_output_tokens: int | None = None
    max_output_tokens_limit: int | None = None
    input_cost_per_token: float | None = None
    output_cost_per_token: float | None = None
    cache_read_cost_per_token: float | None = None
    cache_write_cost_per_token: float | None = None
    temperature: float | None = None
    provider_overrides: dict[str, Any] | None = None
    is_custom: bool = False

    @field_validator("provider_id", "model_id")
    @classmethod
    def _validate_ids(cls, v: str) -> str:
        return _clean_id(v, field_name="provider_id/model_id")


@dataclass(frozen=True, slots=True)
class ModelInfo:
    max_input_tokens: int | None = None
    max_output_tokens: int | None = None
    input_cost_per_token: float | None = None
    output_cost_per_token: float | None = None
    cache_read_cost_per_token: float | None = None
    cache_write_cost_per_token: float | None = None
    use_temperature: bool | None = None


@dataclass(frozen=True, slots=True)
class LLMUsage:
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None
    cache_creation_input_tokens: int | None = None
    cache_read_input_tokens: int | None = None


@dataclass(frozen=True, slots=True)
class UsageReport:
    model: str
    sent_tokens: int
    received_tokens: int
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    message_cost: float = 0.0
    agent_total_cost: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "sentTokens": self.sent_tokens,
            "receivedTokens": self.received_tokens,
            "cacheReadTokens": self.cache_read_tokens,
            "cacheWriteTokens": self.cache_write_tokens,
            "messageCost": self.message_cost,
            "agentTotalCost": self.agent_total_cost,
        }

    @staticmethod
    def from_dict(raw: dict[str, Any]) -> "UsageReport":
        def _int(key: str) -> int:
            v = raw.get(key)
            return int(v) if isinstance(v, (int, float)) else 0

        def _float(key: str) -> float:
            v = raw.get(key)
            return float(v) if isinstance(v, (int, float)) else 0.0

        return UsageReport(
            model=str(raw.get("model") or ""),
            sent_tokens=_int("sentTokens"),
            received_tokens=_int("receivedTokens"),
            cache_read_tokens=_int("cacheReadTokens"),
            cache_write_tokens=_int("cacheWriteTokens"),
            message_cost=_float("messageCost"),
            agent_total_cost=_float("agentTotalCost"),
        )

    @property
    def context_tokens(self) -> int:
        return self.sent_tokens + self.received_tokens + self.cache_read_tokens


@dataclass(frozen=True, slots=True)
class ToolDeclaration:
    name: str
    description: str
    input_schema: dict[str, Any]


@dataclass(frozen=True, slots=True)
class CallOptions:
    options: dict[str, Any] = field(default_factory=dict)
    parameters: dict[str, Any] = field(default_factory=dict)
    streaming_disabled: bool = False


@dataclass(frozen=True, slots=True)
class ModelCallRequest:
    system_prompt: str | None
    messages: list["ContextMessage"]
    tools: list[ToolDeclaration] = field(default_factory=list)
    max_output_tokens: int | None = None
    temperature: float | None = None
    options: dict[str, Any] = field(default_factory=dict)
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class StepResult:
    parts: list["AssistantPart"]
    finish_reason: FinishReason | None
    usage: LLMUsage | None = None
    raw_finish_reason: str | None = None
    provider_metadata: dict[str, Any] = field(default_factory=dict)
    response_id: str | None = None


@dataclass(frozen=True, slots=True)
class StreamEvent:
    kind: StreamEventKind
    id: str | None = None
    delta: str | None = None
    tool_name: str | None = None
    input: dict[str, Any] | None = None
    output: Any = None
    step: StepResult | None = None
