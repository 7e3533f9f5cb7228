from __future__ import annotations

import json
import logging
from typing import Any, Iterator
from urllib.parse import parse_qs, urlencode, urljoin, urlparse, urlunparse

import httpx

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
from ...ids import new_tool_call_id
from ..costs import GEMINI_CACHE_READ_FRACTION, build_usage_report
from ..errors import ProviderAdapterError, wrap_provider_exception
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
from .base import ModelListResult, merge_text_parts, raise_if_cancelled, static_models

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com"
_RESERVED_KEYS = {"contents", "tools", "model", "request", "systemInstruction"}

_FINISH_REASONS: dict[str, FinishReason] = {
    "STOP": FinishReason.STOP,
    "MAX_TOKENS": FinishReason.LENGTH,
    "SAFETY": FinishReason.CONTENT_FILTER,
    "RECITATION": FinishReason.CONTENT_FILTER,
    "BLOCKLIST": FinishReason.CONTENT_FILTER,
    "PROHIBITED_CONTENT": FinishReason.CONTENT_FILTER,
    "SPII": FinishReason.CONTENT_FILTER,
    "MALFORMED_FUNCTION_CALL": FinishReason.ERROR,
    "FINISH_REASON_UNSPECIFIED": FinishReason.UNKNOWN,
}


def map_finish_reason(raw: str | None, *, has_tool_calls: bool) -> FinishReason | None:
    if raw is None:
        return FinishReason.TOOL_CALLS if has_tool_calls else None
    reason = _FINISH_REASONS.get(raw, FinishReason.OTHER)
    # Gemini reports STOP on turns that end in function calls.
    if reason is FinishReason.STOP and has_tool_calls:
        return FinishReason.TOOL_CALLS
    return reason


def _function_call_part(call: ToolCallPart) -> dict[str, Any]:
    part: dict[str, Any] = {"functionCall": {"name": call.tool_name, "args": dict(call.input)}}
    if call.thought_signature:
        # Gateways disagree on the field name; some require snake_case.
        part["thoughtSignature"] = call.thought_signature
        part["thought_signature"] = call.thought_signature
    return part


def _function_response_part(*, name: str, output: Any) -> dict[str, Any]:
    response = output
    if isinstance(output, str):
        try:
            response = json.loads(output)
        except json.JSONDecodeError:
            response = {"content": output}
    if isinstance(response, dict) and "result" in response and "ok" in response:
        response = response["result"]
    if not isinstance(response, dict):
        response = {"result": response}
    return {"functionResponse": {"name": name, "response": response}}


def _to_contents(messages: list[ContextMessage]) -> list[dict[str, Any]]:
    contents: list[dict[str, Any]] = []
    for message in messages:
        if isinstance(message, UserMessage):
            if message.text:
                contents.append({"role": "user", "parts": [{"text": message.text}]})
        elif isinstance(message, AssistantMessage):
            parts: list[dict[str, Any]] = []
            for part in message.parts:
                if isinstance(part, TextPart) and part.text:
                    parts.append({"text": part.text})
                elif isinstance(part, ToolCallPart):
                    parts.append(_function_call_part(part))
            if parts:
                contents.append({"role": "model", "parts": parts})
        elif isinstance(message, ToolMessage):
            # All functionResponse parts of one turn share a single user entry, matching the
            # number and order of the functionCall parts.
            contents.append(
                {
                    "role": "user",
                    "parts": [_function_response_part(name=p.tool_name, output=p.output) for p in message.parts],
                }
            )
    return contents


def build_request_payload(model: Model, request: ModelCallRequest) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for source in (request.options, request.parameters):
        for k, v in source.items():
            if k not in _RESERVED_KEYS:
                payload[k] = v

    payload["contents"] = _to_contents(request.messages)
    if request.system_prompt:
        payload["systemInstruction"] = {"parts": [{"text": request.system_prompt}]}
    if request.tools:
        payload["tools"] = [
            {
                "functionDeclarations": [
                    {"name": t.name, "description": t.description, "parameters": t.input_schema} for t in request.tools
                ]
            }
        ]
        payload.setdefault("toolConfig", {"functionCallingConfig": {"mode": "AUTO"}})

    generation = dict(payload.get("generationConfig") or {})
    if request.max_output_tokens is not None:
        generation["maxOutputTokens"] = request.max_output_tokens
    if request.temperature is not None:
        generation["temperature"] = request.temperature
    if generation:
        payload["generationConfig"] = generation
    return payload


def build_generate_content_url(*, base_url: str, model_name: str, stream: bool) -> str:
    base = (base_url or DEFAULT_BASE_URL).strip()
    if ":generateContent" in base or ":streamGenerateContent" in base:
        url = base
    else:
        parsed = urlparse(base)
        if not parsed.scheme or not parsed.netloc:
            raise ProviderAdapterError(f"Invalid gemini base_url: {base!r}")
        method = "streamGenerateContent" if stream else "generateContent"
        url = urljoin(base.rstrip("/") + "/", f"v1beta/models/{model_name}:{method}")

    if not stream:
        return url

    parsed = urlparse(url)
    qs = parse_qs(parsed.query, keep_blank_values=True)
    if "alt" not in qs:
        qs["alt"] = ["sse"]
    query = urlencode(qs, doseq=True)
    return urlunparse((parsed.scheme, parsed.netloc, parsed.path, parsed.params, query, parsed.fragment))


def _auth_headers(profile: ProviderProfile) -> dict[str, str]:
    token = (resolve_api_key(profile) or "").strip()
    headers = {"Content-Type": "application/json"}
    # A configured "Bearer ..." value is sent verbatim for gateways that expect Authorization.
    if token.lower().startswith("bearer "):
        headers["Authorization"] = token
    else:
        headers["x-goog-api-key"] = token
    headers.update(profile.headers)
    return headers


def _usage_from_metadata(meta: Any) -> LLMUsage | None:
    if not isinstance(meta, dict):
        return None

    def _int(key: str) -> int | None:
        v = meta.get(key)
        return v if isinstance(v, int) else None

    output = _int("candidatesTokenCount")
    thoughts = _int("thoughtsTokenCount")
    if thoughts is not None:
        output = (output or 0) + thoughts
    return LLMUsage(
        input_tokens=_int("promptTokenCount"),
        output_tokens=output,
        total_tokens=_int("totalTokenCount"),
        cache_read_input_tokens=_int("cachedContentTokenCount"),
    )


def _first_candidate(root: dict[str, Any]) -> dict[str, Any] | None:
    candidates = root.get("candidates")
    if isinstance(candidates, dict):
        return candidates
    if isinstance(candidates, list):
        for item in candidates:
            if isinstance(item, dict):
                return item
    return None


def _extract_parts(candidate: dict[str, Any] | None) -> list[AssistantPart]:
    if candidate is None:
        return []
    content = candidate.get("content")
    raw_parts = content.get("parts") if isinstance(content, dict) else None
    out: list[AssistantPart] = []
    for part in raw_parts if isinstance(raw_parts, list) else []:
        if not isinstance(part, dict):
            continue
        text = part.get("text")
        if isinstance(text, str):
            if part.get("thought") is True:
                out.append(ReasoningPart(text=text))
            else:
                out.append(TextPart(text=text))
        fc = part.get("functionCall")
        if isinstance(fc, dict):
            name = fc.get("name")
            args = fc.get("args")
            if not isinstance(name, str) or not name:
                raise ProviderAdapterError("gemini functionCall missing name.")
            if args is not None and not isinstance(args, dict):
                raise ProviderAdapterError("gemini functionCall.args must be an object.")
            signature = (
                part.get("thoughtSignature")
                or part.get("thought_signature")
                or fc.get("thoughtSignature")
                or fc.get("thought_signature")
            )
            out.append(
                ToolCallPart(
                    tool_call_id=fc.get("id") if isinstance(fc.get("id"), str) and fc.get("id") else new_tool_call_id(),
                    tool_name=name,
                    input=dict(args or {}),
                    thought_signature=signature if isinstance(signature, str) and signature else None,
                )
            )
    return out


def response_to_step(data: Any) -> StepResult:
    if not isinstance(data, dict):
        raise ProviderAdapterError("gemini response must be a JSON object.")
    # Some gateways wrap the payload.
    root = data["response"] if isinstance(data.get("response"), dict) else data
    candidate = _first_candidate(root)
    parts = merge_text_parts(_extract_parts(candidate))
    raw_finish = candidate.get("finishReason") if candidate is not None else None
    raw_finish = raw_finish if isinstance(raw_finish, str) else None
    response_id = root.get("responseId")
    return StepResult(
        parts=parts,
        finish_reason=map_finish_reason(raw_finish, has_tool_calls=any(isinstance(p, ToolCallPart) for p in parts)),
        raw_finish_reason=raw_finish,
        usage=_usage_from_metadata(root.get("usageMetadata")),
        response_id=response_id if isinstance(response_id, str) else None,
    )


def iter_sse_json(lines: Iterator[str]) -> Iterator[dict[str, Any]]:
    """
    Yield JSON objects from an SSE-ish line stream.

    Supports standard `data: {...}` framing separated by blank lines and newline-delimited
    JSON objects (some gateways omit SSE framing).
    """
    buf: list[str] = []

    def _flush() -> dict[str, Any] | None:
        if not buf:
            return None
        raw = "\n".join(buf).strip()
        buf.clear()
        if not raw or raw == "[DONE]":
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug("Skipping undecodable SSE payload: %.200s", raw)
            return None
        return data if isinstance(data, dict) else None

    for line in lines:
        s = (line or "").strip()
        if not s:
            data = _flush()
            if data is not None:
                yield data
            continue
        if s.startswith(":"):
            continue
        if s.startswith("data:"):
            buf.append(s[len("data:") :].lstrip())
            continue
        if s.startswith("{"):
            try:
                loaded = json.loads(s)
            except json.JSONDecodeError:
                buf.append(s)
                continue
            if isinstance(loaded, dict):
                yield loaded
            continue
        buf.append(s)

    data = _flush()
    if data is not None:
        yield data


def _delta(accumulated: str, incoming: str) -> tuple[str, str]:
    # Some gateways resend the cumulative text on every chunk.
    if accumulated and incoming.startswith(accumulated):
        return incoming[len(accumulated) :], incoming
    return incoming, accumulated + incoming


class GeminiModel:
    def __init__(self, *, profile: ProviderProfile, model: Model, call_options: CallOptions) -> None:
        self.profile = profile
        self.model = model
        self.call_options = call_options

    def _check(self, cancel: CancellationToken | None, operation: str) -> None:
        raise_if_cancelled(
            cancel,
            provider_kind=ProviderKind.GEMINI,
            provider_id=self.profile.id,
            model=self.model.id,
            operation=operation,
        )

    def _wrap(self, exc: BaseException, operation: str):
        return wrap_provider_exception(
            exc,
            provider_kind=ProviderKind.GEMINI,
            provider_id=self.profile.id,
            model=self.model.id,
            operation=operation,
        )

    def complete(self, request: ModelCallRequest, *, cancel: CancellationToken | None = None) -> StepResult:
        self._check(cancel, "complete")
        url = build_generate_content_url(base_url=self.profile.base_url, model_name=self.model.id, stream=False)
        payload = build_request_payload(self.model, request)
        try:
            with httpx.Client(timeout=self.profile.timeout_s) as client:
                r = client.post(url, headers=_auth_headers(self.profile), json=payload)
                r.raise_for_status()
                data = r.json()
        except (httpx.HTTPError, ValueError) as e:
            raise self._wrap(e, "complete") from e
        return response_to_step(data)

    def stream(self, request: ModelCallRequest, *, cancel: CancellationToken | None = None) -> Iterator[StreamEvent]:
        self._check(cancel, "stream")
        url = build_generate_content_url(base_url=self.profile.base_url, model_name=self.model.id, stream=True)
        payload = build_request_payload(self.model, request)
        headers = _auth_headers(self.profile)

        text_acc = ""
        reasoning_acc = ""
        calls: list[ToolCallPart] = []
        finish_raw: str | None = None
        usage_meta: Any = None
        response_id: str | None = None
        text_open = False
        reasoning_open = False
        try:
            with httpx.Client(timeout=self.profile.timeout_s) as client:
                with client.stream("POST", url, headers=headers, json=payload) as resp:
                    if resp.is_error:
                        resp.read()
                    resp.raise_for_status()
                    for chunk in iter_sse_json(resp.iter_lines()):
                        self._check(cancel, "stream")
                        root = chunk["response"] if isinstance(chunk.get("response"), dict) else chunk
                        if isinstance(root.get("usageMetadata"), dict):
                            usage_meta = root["usageMetadata"]
                        if isinstance(root.get("responseId"), str):
                            response_id = root["responseId"]
                        candidate = _first_candidate(root)
                        if candidate is not None and isinstance(candidate.get("finishReason"), str):
                            finish_raw = candidate["finishReason"]
                        for part in _extract_parts(candidate):
                            if isinstance(part, ReasoningPart):
                                delta, reasoning_acc = _delta(reasoning_acc, part.text)
                                if not delta:
                                    continue
                                if not reasoning_open:
                                    reasoning_open = True
                                    yield StreamEvent(kind=StreamEventKind.REASONING_START, id="reasoning")
                                yield StreamEvent(kind=StreamEventKind.REASONING_DELTA, id="reasoning", delta=delta)
                            elif isinstance(part, TextPart):
                                delta, text_acc = _delta(text_acc, part.text)
                                if not delta:
                                    continue
                                if not text_open:
                                    text_open = True
                                    yield StreamEvent(kind=StreamEventKind.TEXT_START, id="text")
                                yield StreamEvent(kind=StreamEventKind.TEXT_DELTA, id="text", delta=delta)
                            elif isinstance(part, ToolCallPart):
                                calls.append(part)
                                yield StreamEvent(
                                    kind=StreamEventKind.TOOL_INPUT_START, id=part.tool_call_id, tool_name=part.tool_name
                                )
                                yield StreamEvent(
                                    kind=StreamEventKind.TOOL_CALL,
                                    id=part.tool_call_id,
                                    tool_name=part.tool_name,
                                    input=dict(part.input),
                                )
        except httpx.HTTPError as e:
            raise self._wrap(e, "stream") from e

        if text_open:
            yield StreamEvent(kind=StreamEventKind.TEXT_END, id="text")
        parts: list[AssistantPart] = []
        if reasoning_acc:
            parts.append(ReasoningPart(text=reasoning_acc))
        if text_acc:
            parts.append(TextPart(text=text_acc))
        parts.extend(calls)
        step = StepResult(
            parts=parts,
            finish_reason=map_finish_reason(finish_raw, has_tool_calls=bool(calls)),
            raw_finish_reason=finish_raw,
            usage=_usage_from_metadata(usage_meta),
            response_id=response_id,
        )
        yield StreamEvent(kind=StreamEventKind.FINISH, step=step)


class GeminiAdapter:
    """
    Adapter for Gemini-style `v1beta/models/{model}:generateContent`.

    `base_url` can be a base prefix (the adapter appends the model path) or a full
    `:generateContent` URL for gateways that expose a fixed endpoint.
    """

    kind = ProviderKind.GEMINI

    def load_models(self, profile: ProviderProfile) -> ModelListResult:
        if profile.models:
            return ModelListResult(models=static_models(profile))
        base = (profile.base_url or DEFAULT_BASE_URL).rstrip("/")
        try:
            with httpx.Client(timeout=profile.timeout_s) as client:
                r = client.get(f"{base}/v1beta/models", headers=_auth_headers(profile))
                r.raise_for_status()
                data = r.json()
        except Exception as e:  # discovery must never raise across the adapter boundary
            logger.warning("Model discovery failed for provider %s: %s", profile.id, e)
            return ModelListResult(success=False, error=str(e) or e.__class__.__name__)

        items = data.get("models") if isinstance(data, dict) else None
        models: list[Model] = []
        for item in items if isinstance(items, list) else []:
            if not isinstance(item, dict) or not isinstance(item.get("name"), str):
                continue
            methods = item.get("supportedGenerationMethods")
            if isinstance(methods, list) and "generateContent" not in methods:
                continue
            input_limit = item.get("inputTokenLimit")
            output_limit = item.get("outputTokenLimit")
            models.append(
                Model(
                    id=item["name"].removeprefix("models/"),
                    provider_id=profile.id,
                    max_input_tokens=input_limit if isinstance(input_limit, int) else None,
                    max_output_tokens_limit=output_limit if isinstance(output_limit, int) else None,
                )
            )
        return ModelListResult(models=models)

    def create_callable_model(self, profile: ProviderProfile, model: Model, call_options: CallOptions) -> GeminiModel:
        resolve_api_key(profile)
        return GeminiModel(profile=profile, model=model, call_options=call_options)

    def compute_usage(
        self,
        model: Model,
        usage: LLMUsage | None,
        *,
        task_total_cost: float,
        provider_metadata: dict[str, Any] | None = None,
    ) -> UsageReport:
        return build_usage_report(
            model, usage, task_total_cost=task_total_cost, cache_read_fraction=GEMINI_CACHE_READ_FRACTION
        )

    def model_info(self, profile: ProviderProfile, model_id: str, catalog) -> ModelInfo | None:
        return catalog.lookup(model_id, vendor="google")
