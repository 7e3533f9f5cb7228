from __future__ import annotations

import logging
from typing import Any, Iterator

import anthropic

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

DEFAULT_MAX_TOKENS = 8192
_RESERVED_KEYS = {"model", "messages", "tools", "system", "stream", "max_tokens"}

_FINISH_REASONS: dict[str, FinishReason] = {
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "max_tokens": FinishReason.LENGTH,
    "tool_use": FinishReason.TOOL_CALLS,
    "refusal": FinishReason.CONTENT_FILTER,
}


def map_finish_reason(raw: str | None) -> FinishReason | None:
    if raw is None:
        return None
    return _FINISH_REASONS.get(raw, FinishReason.OTHER)


def _assistant_blocks(message: AssistantMessage) -> list[dict[str, Any]]:
    blocks: list[dict[str, Any]] = []
    for part in message.parts:
        if isinstance(part, ReasoningPart):
            # Thinking blocks are only accepted back with their signature.
            if part.signature:
                blocks.append({"type": "thinking", "thinking": part.text, "signature": part.signature})
        elif isinstance(part, TextPart):
            if part.text:
                blocks.append({"type": "text", "text": part.text})
        elif isinstance(part, ToolCallPart):
            blocks.append({"type": "tool_use", "id": part.tool_call_id, "name": part.tool_name, "input": dict(part.input)})
    return blocks


def _append_turn(out: list[dict[str, Any]], role: str, blocks: list[dict[str, Any]]) -> None:
    if not blocks:
        return
    if out and out[-1]["role"] == role:
        out[-1]["content"].extend(blocks)
    else:
        out.append({"role": role, "content": list(blocks)})


def _to_messages(messages: list[ContextMessage]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for message in messages:
        if isinstance(message, UserMessage):
            if message.text:
                _append_turn(out, "user", [{"type": "text", "text": message.text}])
        elif isinstance(message, AssistantMessage):
            _append_turn(out, "assistant", _assistant_blocks(message))
        elif isinstance(message, ToolMessage):
            _append_turn(
                out,
                "user",
                [
                    {
                        "type": "tool_result",
                        "tool_use_id": part.tool_call_id,
                        "content": part.output_text(),
                        **({"is_error": True} if part.is_error else {}),
                    }
                    for part in message.parts
                ],
            )
    return out


def build_request_payload(
    model: Model, request: ModelCallRequest, *, cache_hint: dict[str, Any] | None = None
) -> dict[str, Any]:
    payload: dict[str, Any] = {k: v for k, v in request.options.items() if k not in _RESERVED_KEYS}
    payload["model"] = model.id
    payload["max_tokens"] = request.max_output_tokens or model.max_output_tokens_limit or DEFAULT_MAX_TOKENS
    payload["messages"] = _to_messages(request.messages)
    if request.system_prompt:
        if cache_hint:
            payload["system"] = [{"type": "text", "text": request.system_prompt, "cache_control": dict(cache_hint)}]
        else:
            payload["system"] = request.system_prompt
    if request.tools:
        tools = [{"name": t.name, "description": t.description, "input_schema": t.input_schema} for t in request.tools]
        if cache_hint:
            tools[-1] = {**tools[-1], "cache_control": dict(cache_hint)}
        payload["tools"] = tools
    if request.temperature is not None:
        payload["temperature"] = request.temperature
    if request.parameters:
        payload["extra_body"] = dict(request.parameters)
    return payload


def _usage_from_anthropic(usage: Any) -> LLMUsage | None:
    if usage is None:
        return None
    input_tokens = getattr(usage, "input_tokens", None) or 0
    cache_read = getattr(usage, "cache_read_input_tokens", None) or 0
    cache_write = getattr(usage, "cache_creation_input_tokens", None) or 0
    output = getattr(usage, "output_tokens", None) or 0
    # Anthropic reports uncached input separately; fold cache reads back into the prompt total.
    prompt = input_tokens + cache_read
    return LLMUsage(
        input_tokens=prompt,
        output_tokens=output,
        total_tokens=prompt + cache_write + output,
        cache_creation_input_tokens=cache_write,
        cache_read_input_tokens=cache_read,
    )


def response_to_step(response: Any) -> StepResult:
    parts: list[AssistantPart] = []
    for block in response.content or []:
        kind = getattr(block, "type", None)
        if kind == "text":
            parts.append(TextPart(text=block.text))
        elif kind == "thinking":
            parts.append(ReasoningPart(text=block.thinking, signature=getattr(block, "signature", None)))
        elif kind == "tool_use":
            parts.append(
                ToolCallPart(
                    tool_call_id=block.id,
                    tool_name=block.name,
                    input=dict(block.input) if isinstance(block.input, dict) else {},
                )
            )
    return StepResult(
        parts=parts,
        finish_reason=map_finish_reason(response.stop_reason),
        raw_finish_reason=response.stop_reason,
        usage=_usage_from_anthropic(response.usage),
        response_id=getattr(response, "id", None),
    )


class AnthropicModel:
    def __init__(
        self, *, profile: ProviderProfile, model: Model, call_options: CallOptions, cache_hint: dict[str, Any] | None
    ) -> None:
        self.profile = profile
        self.model = model
        self.call_options = call_options
        self.cache_hint = cache_hint

    def _client(self) -> anthropic.Anthropic:
        return anthropic.Anthropic(
            api_key=resolve_api_key(self.profile),
            base_url=self.profile.base_url or None,
            timeout=self.profile.timeout_s,
            default_headers=self.profile.headers or None,
            max_retries=0,
        )

    def _check(self, cancel: CancellationToken | None, operation: str) -> None:
        raise_if_cancelled(
            cancel,
            provider_kind=ProviderKind.ANTHROPIC,
            provider_id=self.profile.id,
            model=self.model.id,
            operation=operation,
        )

    def _wrap(self, exc: BaseException, operation: str):
        return wrap_provider_exception(
            exc,
            provider_kind=ProviderKind.ANTHROPIC,
            provider_id=self.profile.id,
            model=self.model.id,
            operation=operation,
        )

    def complete(self, request: ModelCallRequest, *, cancel: CancellationToken | None = None) -> StepResult:
        self._check(cancel, "complete")
        payload = build_request_payload(self.model, request, cache_hint=self.cache_hint)
        try:
            response = self._client().messages.create(**payload)
        except anthropic.AnthropicError as e:
            raise self._wrap(e, "complete") from e
        return response_to_step(response)

    def stream(self, request: ModelCallRequest, *, cancel: CancellationToken | None = None) -> Iterator[StreamEvent]:
        self._check(cancel, "stream")
        payload = build_request_payload(self.model, request, cache_hint=self.cache_hint)
        payload["stream"] = True
        try:
            stream = self._client().messages.create(**payload)
        except anthropic.AnthropicError as e:
            raise self._wrap(e, "stream") from e

        parts: list[AssistantPart] = []
        blocks: dict[int, dict[str, Any]] = {}
        usage_in: Any = None
        output_tokens = 0
        stop_reason: str | None = None
        response_id: str | None = None
        try:
            for event in stream:
                self._check(cancel, "stream")
                kind = event.type
                if kind == "message_start":
                    response_id = getattr(event.message, "id", None)
                    usage_in = event.message.usage
                elif kind == "content_block_start":
                    block = event.content_block
                    state: dict[str, Any] = {"type": block.type, "text": "", "signature": None, "json": ""}
                    blocks[event.index] = state
                    if block.type == "text":
                        yield StreamEvent(kind=StreamEventKind.TEXT_START, id=str(event.index))
                    elif block.type == "thinking":
                        yield StreamEvent(kind=StreamEventKind.REASONING_START, id=str(event.index))
                    elif block.type == "tool_use":
                        state["id"] = block.id
                        state["name"] = block.name
                        yield StreamEvent(kind=StreamEventKind.TOOL_INPUT_START, id=block.id, tool_name=block.name)
                elif kind == "content_block_delta":
                    state = blocks.get(event.index)
                    if state is None:
                        continue
                    delta = event.delta
                    if delta.type == "text_delta":
                        state["text"] += delta.text
                        yield StreamEvent(kind=StreamEventKind.TEXT_DELTA, id=str(event.index), delta=delta.text)
                    elif delta.type == "thinking_delta":
                        state["text"] += delta.thinking
                        yield StreamEvent(kind=StreamEventKind.REASONING_DELTA, id=str(event.index), delta=delta.thinking)
                    elif delta.type == "signature_delta":
                        state["signature"] = delta.signature
                    elif delta.type == "input_json_delta":
                        state["json"] += delta.partial_json
                elif kind == "content_block_stop":
                    state = blocks.get(event.index)
                    if state is None:
                        continue
                    if state["type"] == "text":
                        parts.append(TextPart(text=state["text"]))
                        yield StreamEvent(kind=StreamEventKind.TEXT_END, id=str(event.index))
                    elif state["type"] == "thinking":
                        parts.append(ReasoningPart(text=state["text"], signature=state["signature"]))
                    elif state["type"] == "tool_use":
                        call = ToolCallPart(
                            tool_call_id=state["id"], tool_name=state["name"], input=parse_tool_arguments(state["json"])
                        )
                        parts.append(call)
                        yield StreamEvent(
                            kind=StreamEventKind.TOOL_CALL, id=call.tool_call_id, tool_name=call.tool_name, input=dict(call.input)
                        )
                elif kind == "message_delta":
                    stop_reason = getattr(event.delta, "stop_reason", None) or stop_reason
                    usage = getattr(event, "usage", None)
                    if usage is not None and getattr(usage, "output_tokens", None) is not None:
                        output_tokens = usage.output_tokens
        except anthropic.AnthropicError as e:
            raise self._wrap(e, "stream") from e
        finally:
            close = getattr(stream, "close", None)
            if callable(close):
                close()

        usage = _usage_from_anthropic(usage_in)
        if usage is not None:
            usage = LLMUsage(
                input_tokens=usage.input_tokens,
                output_tokens=output_tokens,
                total_tokens=(usage.input_tokens or 0) + (usage.cache_creation_input_tokens or 0) + output_tokens,
                cache_creation_input_tokens=usage.cache_creation_input_tokens,
                cache_read_input_tokens=usage.cache_read_input_tokens,
            )
        step = StepResult(
            parts=merge_text_parts(parts),
            finish_reason=map_finish_reason(stop_reason),
            raw_finish_reason=stop_reason,
            usage=usage,
            response_id=response_id,
        )
        yield StreamEvent(kind=StreamEventKind.FINISH, step=step)


class AnthropicAdapter:
    kind = ProviderKind.ANTHROPIC

    def load_models(self, profile: ProviderProfile) -> ModelListResult:
        if profile.models:
            return ModelListResult(models=static_models(profile))
        try:
            client = anthropic.Anthropic(
                api_key=resolve_api_key(profile),
                base_url=profile.base_url or None,
                timeout=profile.timeout_s,
                max_retries=0,
            )
            models = [Model(id=item.id, provider_id=profile.id) for item in client.models.list()]
        except Exception as e:  # discovery must never raise across the adapter boundary
            logger.warning("Model discovery failed for provider %s: %s", profile.id, e)
            return ModelListResult(success=False, error=str(e) or e.__class__.__name__)
        return ModelListResult(models=models)

    def create_callable_model(self, profile: ProviderProfile, model: Model, call_options: CallOptions) -> AnthropicModel:
        resolve_api_key(profile)
        return AnthropicModel(
            profile=profile, model=model, call_options=call_options, cache_hint=self.cache_hint(profile, model)
        )

    def compute_usage(
        self,
        model: Model,
        usage: LLMUsage | None,
        *,
        task_total_cost: float,
        provider_metadata: dict[str, Any] | None = None,
    ) -> UsageReport:
        return build_usage_report(model, usage, task_total_cost=task_total_cost)

    def cache_hint(self, profile: ProviderProfile, model: Model) -> dict[str, Any] | None:
        if model.provider_overrides.get("disablePromptCaching") is True:
            return None
        return {"type": "ephemeral"}

    def call_option_overrides(self, profile: ProviderProfile, model: Model) -> dict[str, Any]:
        return dict(profile.options)

    def model_info(self, profile: ProviderProfile, model_id: str, catalog) -> ModelInfo | None:
        return catalog.lookup(model_id, vendor="anthropic")
