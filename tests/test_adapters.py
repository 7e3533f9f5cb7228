from __future__ import annotations

from types import SimpleNamespace

import pytest

from deskpilot.runtime.context.messages import AssistantMessage, TextPart, ToolCallPart, ToolMessage, ToolResultPart, UserMessage
from deskpilot.runtime.errors import CredentialError
from deskpilot.runtime.llm.adapters import anthropic as anthropic_adapter
from deskpilot.runtime.llm.adapters import gemini
from deskpilot.runtime.llm.adapters import openai_compatible
from deskpilot.runtime.llm.adapters.base import merge_text_parts, parse_tool_arguments
from deskpilot.runtime.llm.errors import ProviderAdapterError
from deskpilot.runtime.llm.types import (
    CallOptions,
    FinishReason,
    Model,
    ModelCallRequest,
    ProviderKind,
    ProviderProfile,
    ToolDeclaration,
)


MODEL = Model(id="m1", provider_id="p")
TOOL = ToolDeclaration(name="files---read", description="Read a file.", input_schema={"type": "object"})

HISTORY = [
    UserMessage(text="read a"),
    AssistantMessage(parts=(TextPart(text="Reading"), ToolCallPart("tc1", "files---read", {"path": "a"}))),
    ToolMessage(parts=(ToolResultPart("tc1", "files---read", {"content": "hi"}),)),
    UserMessage(text="thanks"),
]


def _request(**kwargs) -> ModelCallRequest:
    return ModelCallRequest(system_prompt="sys", messages=HISTORY, tools=[TOOL], **kwargs)


def test_parse_tool_arguments_keeps_undecodable_text():
    assert parse_tool_arguments(None) == {}
    assert parse_tool_arguments('{"a": 1}') == {"a": 1}
    assert parse_tool_arguments("[1, 2]") == {"_raw_arguments": "[1, 2]"}
    assert parse_tool_arguments("{oops") == {"_raw_arguments": "{oops"}


def test_merge_text_parts_coalesces_and_drops_blanks():
    merged = merge_text_parts([TextPart(text="Hel"), TextPart(text="lo"), TextPart(text="")])
    assert merged == [TextPart(text="Hello")]


@pytest.mark.parametrize(
    "adapter, kind",
    [
        (openai_compatible.OpenAICompatibleAdapter(), ProviderKind.OPENAI_COMPATIBLE),
        (anthropic_adapter.AnthropicAdapter(), ProviderKind.ANTHROPIC),
        (gemini.GeminiAdapter(), ProviderKind.GEMINI),
    ],
)
def test_missing_api_key_fails_when_the_model_is_created(adapter, kind, monkeypatch):
    monkeypatch.delenv("DESKPILOT_TEST_NO_KEY", raising=False)
    profile = ProviderProfile(id="p", kind=kind, api_key_env="DESKPILOT_TEST_NO_KEY")

    with pytest.raises(CredentialError, match="DESKPILOT_TEST_NO_KEY"):
        adapter.create_callable_model(profile, MODEL, CallOptions())

    keyed = ProviderProfile(id="p", kind=kind, api_key="k1")
    assert adapter.create_callable_model(keyed, MODEL, CallOptions()).model == MODEL


# ---- OpenAI-compatible ---------------------------------------------------


def test_openai_payload_shape():
    payload = openai_compatible.build_request_payload(
        MODEL,
        _request(max_output_tokens=100, temperature=0.2, options={"top_p": 0.9, "model": "hijack"}, parameters={"seed": 1}),
    )

    assert payload["model"] == "m1"
    assert payload["top_p"] == 0.9
    assert payload["max_tokens"] == 100
    assert payload["temperature"] == 0.2
    assert payload["extra_body"] == {"seed": 1}
    roles = [m["role"] for m in payload["messages"]]
    assert roles == ["system", "user", "assistant", "tool", "user"]
    call = payload["messages"][2]["tool_calls"][0]
    assert call["id"] == "tc1"
    assert call["function"] == {"name": "files---read", "arguments": '{"path": "a"}'}
    assert payload["messages"][3] == {"role": "tool", "tool_call_id": "tc1", "content": '{"content": "hi"}'}
    assert payload["tools"][0]["function"]["name"] == "files---read"


def test_openai_payload_is_pure():
    request = _request()
    assert openai_compatible.build_request_payload(MODEL, request) == openai_compatible.build_request_payload(MODEL, request)


def test_openai_response_to_step():
    message = SimpleNamespace(
        content="Let me check",
        tool_calls=[SimpleNamespace(id="c1", function=SimpleNamespace(name="files---read", arguments='{"path": "x"}'))],
        reasoning_content=None,
        reasoning=None,
        model_extra=None,
    )
    response = SimpleNamespace(
        id="r1",
        choices=[SimpleNamespace(message=message, finish_reason="tool_calls")],
        usage=SimpleNamespace(
            prompt_tokens=50, completion_tokens=5, total_tokens=55, prompt_tokens_details=SimpleNamespace(cached_tokens=20)
        ),
    )

    step = openai_compatible.response_to_step(response)

    assert step.finish_reason is FinishReason.TOOL_CALLS
    assert step.parts == [TextPart(text="Let me check"), ToolCallPart("c1", "files---read", {"path": "x"})]
    assert step.usage.cache_read_input_tokens == 20
    assert step.response_id == "r1"


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("stop", FinishReason.STOP), ("length", FinishReason.LENGTH), ("weird", FinishReason.OTHER), (None, None)],
)
def test_openai_finish_reason_mapping(raw, expected):
    assert openai_compatible.map_finish_reason(raw) == expected


# ---- Anthropic -------------------------------------------------------------


def test_anthropic_payload_defaults_and_cache_hint():
    payload = anthropic_adapter.build_request_payload(MODEL, _request(), cache_hint={"type": "ephemeral"})

    assert payload["max_tokens"] == anthropic_adapter.DEFAULT_MAX_TOKENS
    assert payload["system"] == [{"type": "text", "text": "sys", "cache_control": {"type": "ephemeral"}}]
    assert payload["tools"][-1]["cache_control"] == {"type": "ephemeral"}


def test_anthropic_merges_tool_results_with_next_user_turn():
    payload = anthropic_adapter.build_request_payload(MODEL, _request())

    assert payload["system"] == "sys"
    assert [m["role"] for m in payload["messages"]] == ["user", "assistant", "user"]
    last = payload["messages"][-1]["content"]
    assert last[0] == {"type": "tool_result", "tool_use_id": "tc1", "content": '{"content": "hi"}'}
    assert last[1] == {"type": "text", "text": "thanks"}


def test_anthropic_max_tokens_prefers_request_then_model_limit():
    limited = Model(id="m1", provider_id="p", max_output_tokens_limit=4096)
    assert anthropic_adapter.build_request_payload(limited, _request())["max_tokens"] == 4096
    assert anthropic_adapter.build_request_payload(limited, _request(max_output_tokens=10))["max_tokens"] == 10


def test_anthropic_usage_folds_cache_reads_into_input():
    usage = anthropic_adapter._usage_from_anthropic(
        SimpleNamespace(input_tokens=10, cache_read_input_tokens=90, cache_creation_input_tokens=5, output_tokens=7)
    )
    assert usage.input_tokens == 100
    assert usage.total_tokens == 112


def test_anthropic_cache_hint_can_be_disabled():
    adapter = anthropic_adapter.AnthropicAdapter()
    profile = ProviderProfile(id="a", kind=ProviderKind.ANTHROPIC)
    assert adapter.cache_hint(profile, MODEL) == {"type": "ephemeral"}
    off = Model(id="m1", provider_id="a", provider_overrides={"disablePromptCaching": True})
    assert adapter.cache_hint(profile, off) is None


# ---- Gemini ------------------------------------------------------------------


def test_gemini_payload_shape():
    payload = gemini.build_request_payload(MODEL, _request(max_output_tokens=64, temperature=0.0))

    assert [c["role"] for c in payload["contents"]] == ["user", "model", "user", "user"]
    assert payload["contents"][1]["parts"][1] == {"functionCall": {"name": "files---read", "args": {"path": "a"}}}
    assert payload["contents"][2]["parts"] == [
        {"functionResponse": {"name": "files---read", "response": {"content": "hi"}}}
    ]
    assert payload["systemInstruction"] == {"parts": [{"text": "sys"}]}
    assert payload["toolConfig"] == {"functionCallingConfig": {"mode": "AUTO"}}
    assert payload["generationConfig"] == {"maxOutputTokens": 64, "temperature": 0.0}


def test_gemini_echoes_thought_signature():
    message = AssistantMessage(parts=(ToolCallPart("tc1", "files---read", {}, thought_signature="sig"),))
    payload = gemini.build_request_payload(MODEL, ModelCallRequest(system_prompt=None, messages=[message]))
    part = payload["contents"][0]["parts"][0]
    assert part["thoughtSignature"] == "sig"


def test_gemini_wraps_non_object_results():
    message = ToolMessage(parts=(ToolResultPart("tc1", "files---list", ["a", "b"]),))
    payload = gemini.build_request_payload(MODEL, ModelCallRequest(system_prompt=None, messages=[message]))
    assert payload["contents"][0]["parts"][0]["functionResponse"]["response"] == {"result": ["a", "b"]}


def test_gemini_urls():
    assert (
        gemini.build_generate_content_url(base_url="", model_name="gemini-x", stream=False)
        == "https://generativelanguage.googleapis.com/v1beta/models/gemini-x:generateContent"
    )
    assert gemini.build_generate_content_url(base_url="https://gw.example/api", model_name="g", stream=True) == (
        "https://gw.example/api/v1beta/models/g:streamGenerateContent?alt=sse"
    )
    fixed = "https://gw.example/v1/models/g:generateContent?key=1"
    assert gemini.build_generate_content_url(base_url=fixed, model_name="ignored", stream=False) == fixed
    with pytest.raises(ProviderAdapterError):
        gemini.build_generate_content_url(base_url="not a url", model_name="g", stream=False)


def test_gemini_auth_headers():
    plain = ProviderProfile(id="g", kind=ProviderKind.GEMINI, api_key="k1", headers={"X-Extra": "1"})
    bearer = ProviderProfile(id="g", kind=ProviderKind.GEMINI, api_key="Bearer tok")

    assert gemini._auth_headers(plain)["x-goog-api-key"] == "k1"
    assert gemini._auth_headers(plain)["X-Extra"] == "1"
    assert gemini._auth_headers(bearer)["Authorization"] == "Bearer tok"
    assert "x-goog-api-key" not in gemini._auth_headers(bearer)


def test_gemini_finish_reason_with_tool_calls():
    assert gemini.map_finish_reason("STOP", has_tool_calls=True) is FinishReason.TOOL_CALLS
    assert gemini.map_finish_reason(None, has_tool_calls=False) is None
    assert gemini.map_finish_reason("SAFETY", has_tool_calls=False) is FinishReason.CONTENT_FILTER


def test_gemini_response_to_step():
    step = gemini.response_to_step(
        {
            "response": {
                "candidates": [
                    {
                        "content": {
                            "parts": [
                                {"text": "thinking", "thought": True},
                                {"text": "Sure"},
                                {"functionCall": {"name": "files---read", "args": {"path": "a"}}, "thoughtSignature": "s"},
                            ]
                        },
                        "finishReason": "STOP",
                    }
                ],
                "usageMetadata": {"promptTokenCount": 10, "candidatesTokenCount": 3, "thoughtsTokenCount": 2},
            }
        }
    )

    assert step.finish_reason is FinishReason.TOOL_CALLS
    assert step.parts[1] == TextPart(text="Sure")
    call = step.parts[2]
    assert call.tool_name == "files---read" and call.thought_signature == "s" and call.tool_call_id
    assert step.usage.output_tokens == 5


def test_iter_sse_json_handles_framed_and_bare_lines():
    lines = [
        ": keep-alive",
        'data: {"a": 1}',
        "",
        '{"b": 2}',
        "data: [DONE]",
        "",
        "data: {broken",
        "",
        'data: {"c":',
        "data: 3}",
    ]
    assert list(gemini.iter_sse_json(iter(lines))) == [{"a": 1}, {"b": 2}, {"c": 3}]
