from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Iterator

import openai

from ...context.messages import (
    AssistantMessage,
    AssistantPart,
    ContextMessage,
    ReasoningPart,
    TextPart,
    ToolCallPart,
    ToolMessage,
    UserMessage,
)
from ...errors import CancellationToken
from ..costs import build_usage_report
from ..errors import wrap_provider_exception
from ..secrets import resolve_api_key
from ..types import (
    CallOptions,
    FinishReason,
    LLMUsage,
    Model,
    ModelCallRequest,
    ModelInfo,
    ProviderKind,
    ProviderProfile,
    StepResult,
    StreamEvent,
    StreamEventKind,
    UsageReport,
)
from .base import ModelListResult, merge_text_parts, parse_tool_arguments, raise_if_cancelled, static_models

logger = logging.getLogger(__name__)

_RESERVED_KEYS = {"model", "messages", "tools", "stream"}

_FINISH_REASONS: dict[str, FinishReason] = {
    "stop": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "tool_calls": FinishReason.TOOL_CALLS,
    "function_call": FinishReason.TOOL_CALLS,
    "content_filter": FinishReason.CONTENT_FILTER,
}


def map_finish_reason(raw: str | None) -> FinishReason | None:
    if raw is None:
        return None
    return _FINISH_REASONS.get(raw, FinishReason.OTHER)


def _message_to_chat(message: ContextMessage) -> list[dict[str, Any]]:
    if isinstance(message, UserMessage):
        return [{"role": "user", "content": message.text}]
    if isinstance(message, AssistantMessage):
        out: dict[str, Any] = {"role": "assistant", "content": message.text or None}
        if message.tool_calls:
            out["tool_calls"] = [
                {
                    "id": call.tool_call_id,
                    "type": "function",
                    "function": {"name": call.tool_name, "arguments": json.dumps(call.input, ensure_ascii=False)},
                }
                for call in message.tool_calls
            ]
        return [out]
    if isinstance(message, ToolMessage):
        return [
            {"role": "tool", "tool_call_id": part.tool_call_id, "content": part.output_text()}
            for part in message.parts
        ]
    return []


def build_request_payload(model: Model, request: ModelCallRequest) -> dict[str, Any]:
    """Translate a call request into chat.completions kwargs. Pure: same input, same payload."""

    messages: list[dict[str, Any]] = []
    if request.system_prompt:
        messages.append({"role": "system", "content": request.system_prompt})
    for message in request.messages:
        messages.extend(_message_to_chat(message))

    payload: dict[str, Any] = {k: v for k, v in request.options.items() if k not in _RESERVED_KEYS}
    payload["model"] = model.id
    payload["messages"] = messages
    if request.tools:
        payload["tools"] = [
            {
                "type": "function",
                "function": {"name": t.name, "description": t.description, "parameters": t.input_schema},
            }
            for t in request.tools
        ]
    if request.max_output_tokens is not None:
        payload["max_tokens"] = request.max_output_tokens
    if request.temperature is not None:
        payload["temperature"] = request.temperature
    if request.parameters:
        payload["extra_body"] = dict(request.parameters)
    return payload


def _usage_from_openai(usage: Any) -> LLMUsage | None:
    if usage is None:
        return None
    details = getattr(usage, "prompt_tokens_details", None)
    cached = getattr(details, "cached_tokens", None) if details is not None else None
    return LLMUsage(
        input_tokens=getattr(usage, "prompt_tokens", None),
        output_tokens=getattr(usage, "completion_tokens", None),
        total_tokens=getattr(usage, "total_tokens", None),
        cache_read_input_tokens=cached if isinstance(cached, int) else None,
    )


def _reasoning_of(obj: Any) -> str | None:
    # OpenAI-compatible gateways expose reasoning under vendor-specific extra fields.
    for attr in ("reasoning_content", "reasoning"):
        value = getattr(obj, attr, None)
        if isinstance(value, str) and value:
            return value
    extra = getattr(obj, "model_extra", None)
    if isinstance(extra, dict):
        for key in ("reasoning_content", "reasoning"):
            value = extra.get(key)
            if isinstance(value, str) and value:
                return value
    return None


def response_to_step(response: Any) -> StepResult:
    choices = getattr(response, "choices", None) or []
    if not choices:
        return StepResult(parts=[], finish_reason=None, usage=_usage_from_openai(getattr(response, "usage", None)))
    choice = choices[0]
    message = choice.message
    parts: list[AssistantPart] = []
    reasoning = _reasoning_of(message)
    if reasoning:
        parts.append(ReasoningPart(text=reasoning))
    if message.content:
        parts.append(TextPart(text=message.content))
    for call in message.tool_calls or []:
        parts.append(
            ToolCallPart(
                tool_call_id=call.id,
                tool_name=call.function.name,
                input=parse_tool_arguments(call.function.arguments),
            )
        )
    return StepResult(
        parts=parts,
        finish_reason=map_finish_reason(choice.finish_reason),
        raw_finish_reason=choice.finish_reason,
        usage=_usage_from_openai(getattr(response, "usage", None)),
        response_id=getattr(response, "id", None),
    )


@dataclass(slots=True)
class _PendingCall:
    tool_call_id: str
    name: str
    arguments: str = ""


class OpenAICompatibleModel:
    def __init__(self, *, profile: ProviderProfile, model: Model, call_options: CallOptions) -> None:
        self.profile = profile
        self.model = model
        self.call_options = call_options

    def _client(self) -> openai.OpenAI:
        # Retries are owned by the run loop.
        return openai.OpenAI(
            api_key=resolve_api_key(self.profile),
            base_url=self.profile.base_url or None,
            timeout=self.profile.timeout_s,
            default_headers=self.profile.headers or None,
            max_retries=0,
        )

    def _wrap(self, exc: BaseException, operation: str):
        return wrap_provider_exception(
            exc,
            provider_kind=ProviderKind.OPENAI_COMPATIBLE,
            provider_id=self.profile.id,
            model=self.model.id,
            operation=operation,
        )

    def complete(self, request: ModelCallRequest, *, cancel: CancellationToken | None = None) -> StepResult:
        raise_if_cancelled(
            cancel,
            provider_kind=ProviderKind.OPENAI_COMPATIBLE,
            provider_id=self.profile.id,
            model=self.model.id,
            operation="complete",
        )
        payload = build_request_payload(self.model, request)
        try:
            response = self._client().chat.completions.create(**payload)
        except openai.OpenAIError as e:
            raise self._wrap(e, "complete") from e
        return response_to_step(response)

    def stream(self, request: ModelCallRequest, *, cancel: CancellationToken | None = None) -> Iterator[StreamEvent]:
        raise_if_cancelled(
            cancel,
            provider_kind=ProviderKind.OPENAI_COMPATIBLE,
            provider_id=self.profile.id,
            model=self.model.id,
            operation="stream",
        )
        payload = build_request_payload(self.model, request)
        payload["stream"] = True
        payload["stream_options"] = {"include_usage": True}
        try:
            stream = self._client().chat.completions.create(**payload)
        except openai.OpenAIError as e:
            raise self._wrap(e, "stream") from e

        parts: list[AssistantPart] = []
        calls: dict[int, _PendingCall] = {}
        text_open = False
        reasoning_open = False
        finish_raw: str | None = None
        usage: LLMUsage | None = None
        response_id: str | None = None
        try:
            for chunk in stream:
                raise_if_cancelled(
                    cancel,
                    provider_kind=ProviderKind.OPENAI_COMPATIBLE,
                    provider_id=self.profile.id,
                    model=self.model.id,
                    operation="stream",
                )
                response_id = response_id or getattr(chunk, "id", None)
                if getattr(chunk, "usage", None) is not None:
                    usage = _usage_from_openai(chunk.usage)
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = choice.delta
                reasoning = _reasoning_of(delta)
                if reasoning:
                    if not reasoning_open:
                        reasoning_open = True
                        yield StreamEvent(kind=StreamEventKind.REASONING_START, id="reasoning")
                    parts.append(ReasoningPart(text=reasoning))
                    yield StreamEvent(kind=StreamEventKind.REASONING_DELTA, id="reasoning", delta=reasoning)
                if delta.content:
                    if not text_open:
                        text_open = True
                        yield StreamEvent(kind=StreamEventKind.TEXT_START, id="text")
                    parts.append(TextPart(text=delta.content))
                    yield StreamEvent(kind=StreamEventKind.TEXT_DELTA, id="text", delta=delta.content)
                for tc in delta.tool_calls or []:
                    pending = calls.get(tc.index)
                    if pending is None:
                        fn = tc.function
                        pending = _PendingCall(tool_call_id=tc.id or f"call_{tc.index}", name=(fn.name if fn else "") or "")
                        calls[tc.index] = pending
                        yield StreamEvent(
                            kind=StreamEventKind.TOOL_INPUT_START, id=pending.tool_call_id, tool_name=pending.name
                        )
                    if tc.function is not None and tc.function.arguments:
                        pending.arguments += tc.function.arguments
                if choice.finish_reason:
                    finish_raw = choice.finish_reason
        except openai.OpenAIError as e:
            raise self._wrap(e, "stream") from e
        finally:
            close = getattr(stream, "close", None)
            if callable(close):
                close()

        if text_open:
            yield StreamEvent(kind=StreamEventKind.TEXT_END, id="text")
        for index in sorted(calls):
            pending = calls[index]
            call = ToolCallPart(
                tool_call_id=pending.tool_call_id,
                tool_name=pending.name,
                input=parse_tool_arguments(pending.arguments),
            )
            parts.append(call)
            yield StreamEvent(kind=StreamEventKind.TOOL_CALL, id=call.tool_call_id, tool_name=call.tool_name, input=dict(call.input))

        step = StepResult(
            parts=merge_text_parts(parts),
            finish_reason=map_finish_reason(finish_raw),
            raw_finish_reason=finish_raw,
            usage=usage,
            response_id=response_id,
        )
        yield StreamEvent(kind=StreamEventKind.FINISH, step=step)


class OpenAICompatibleAdapter:
    kind = ProviderKind.OPENAI_COMPATIBLE

    def load_models(self, profile: ProviderProfile) -> ModelListResult:
        if profile.models:
            return ModelListResult(models=static_models(profile))
        try:
            client = openai.OpenAI(
                api_key=resolve_api_key(profile),
                base_url=profile.base_url or None,
                timeout=profile.timeout_s,
                default_headers=profile.headers or None,
                max_retries=0,
            )
            models = [Model(id=item.id, provider_id=profile.id) for item in client.models.list()]
        except Exception as e:  # discovery must never raise across the adapter boundary
            logger.warning("Model discovery failed for provider %s: %s", profile.id, e)
            return ModelListResult(success=False, error=str(e) or e.__class__.__name__)
        return ModelListResult(models=models)

    def create_callable_model(self, profile: ProviderProfile, model: Model, call_options: CallOptions) -> OpenAICompatibleModel:
        resolve_api_key(profile)
        return OpenAICompatibleModel(profile=profile, model=model, call_options=call_options)

    def compute_usage(
        self,
        model: Model,
        usage: LLMUsage | None,
        *,
        task_total_cost: float,
        provider_metadata: dict[str, Any] | None = None,
    ) -> UsageReport:
        return build_usage_report(model, usage, task_total_cost=task_total_cost)

    def call_option_overrides(self, profile: ProviderProfile, model: Model) -> dict[str, Any]:
        return dict(profile.options)

    def model_info(self, profile: ProviderProfile, model_id: str, catalog) -> ModelInfo | None:
        return catalog.lookup(model_id, vendor="openai")
