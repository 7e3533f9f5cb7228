from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Union

from ..errors import ContextStoreError
from ..ids import new_message_id
from ..llm.types import UsageReport


class MessageRole(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True, slots=True)
class TextPart:
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass(frozen=True, slots=True)
class ReasoningPart:
    text: str
    signature: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"type": "reasoning", "text": self.text}
        if self.signature is not None:
            out["signature"] = self.signature
        return out


@dataclass(frozen=True, slots=True)
class ToolCallPart:
    tool_call_id: str
    tool_name: str
    input: dict[str, Any] = field(default_factory=dict)
    # Gemini requires echoing the thought signature back with the call.
    thought_signature: str | None = None

    def __post_init__(self) -> None:
        if not self.tool_call_id or not self.tool_name:
            raise ContextStoreError("tool-call part requires tool_call_id and tool_name.")

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "type": "tool-call",
            "toolCallId": self.tool_call_id,
            "toolName": self.tool_name,
            "input": dict(self.input),
        }
        if self.thought_signature:
            out["thoughtSignature"] = self.thought_signature
        return out


@dataclass(frozen=True, slots=True)
class ToolResultPart:
    tool_call_id: str
    tool_name: str
    output: Any = None
    is_error: bool = False

    def __post_init__(self) -> None:
        if not self.tool_call_id or not self.tool_name:
            raise ContextStoreError("tool-result part requires tool_call_id and tool_name.")

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "type": "tool-result",
            "toolCallId": self.tool_call_id,
            "toolName": self.tool_name,
            "output": {"type": "json", "value": self.output},
        }
        if self.is_error:
            out["isError"] = True
        return out

    def output_text(self) -> str:
        if isinstance(self.output, str):
            return self.output
        return json.dumps(self.output, ensure_ascii=False)


AssistantPart = Union[TextPart, ReasoningPart, ToolCallPart]
_ASSISTANT_PART_TYPES = (TextPart, ReasoningPart, ToolCallPart)


@dataclass(frozen=True, slots=True)
class UserMessage:
    text: str
    id: str = field(default_factory=new_message_id)

    @property
    def role(self) -> MessageRole:
        return MessageRole.USER

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "role": "user", "content": self.text}


@dataclass(frozen=True, slots=True)
class AssistantMessage:
    parts: tuple[AssistantPart, ...] = ()
    id: str = field(default_factory=new_message_id)
    usage: UsageReport | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.parts, tuple):
            object.__setattr__(self, "parts", tuple(self.parts))
        for part in self.parts:
            if not isinstance(part, _ASSISTANT_PART_TYPES):
                raise ContextStoreError(f"assistant message cannot hold {type(part).__name__}.")

    @property
    def role(self) -> MessageRole:
        return MessageRole.ASSISTANT

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def reasoning(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, ReasoningPart))

    @property
    def tool_calls(self) -> list[ToolCallPart]:
        return [p for p in self.parts if isinstance(p, ToolCallPart)]

    def has_prose(self) -> bool:
        return any(isinstance(p, (TextPart, ReasoningPart)) for p in self.parts)

    def is_empty(self) -> bool:
        for part in self.parts:
            if isinstance(part, ToolCallPart):
                return False
            if part.text.strip():
                return False
        return True

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"id": self.id, "role": "assistant", "content": [p.to_dict() for p in self.parts]}
        if self.usage is not None:
            out["usageReport"] = self.usage.to_dict()
        return out


@dataclass(frozen=True, slots=True)
class ToolMessage:
    parts: tuple[ToolResultPart, ...]
    id: str = field(default_factory=new_message_id)
    usage: UsageReport | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.parts, tuple):
            object.__setattr__(self, "parts", tuple(self.parts))
        if not self.parts:
            raise ContextStoreError("tool message requires at least one tool-result part.")
        for part in self.parts:
            if not isinstance(part, ToolResultPart):
                raise ContextStoreError(f"tool message cannot hold {type(part).__name__}.")

    @property
    def role(self) -> MessageRole:
        return MessageRole.TOOL

    @property
    def tool_call_ids(self) -> list[str]:
        return [p.tool_call_id for p in self.parts]

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"id": self.id, "role": "tool", "content": [p.to_dict() for p in self.parts]}
        if self.usage is not None:
            out["usageReport"] = self.usage.to_dict()
        return out


ContextMessage = Union[UserMessage, AssistantMessage, ToolMessage]


@dataclass(frozen=True, slots=True)
class ContextFile:
    path: str
    read_only: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "readOnly": self.read_only}

    @staticmethod
    def from_dict(raw: dict[str, Any]) -> "ContextFile":
        path = raw.get("path")
        if not isinstance(path, str) or not path:
            raise ContextStoreError("Invalid context file (missing path).")
        return ContextFile(path=path, read_only=bool(raw.get("readOnly", False)))


def _part_from_dict(raw: dict[str, Any]) -> AssistantPart | ToolResultPart:
    kind = raw.get("type")
    if kind == "text":
        return TextPart(text=str(raw.get("text") or ""))
    if kind == "reasoning":
        sig = raw.get("signature")
        return ReasoningPart(text=str(raw.get("text") or ""), signature=sig if isinstance(sig, str) else None)
    if kind == "tool-call":
        args = raw.get("input")
        sig = raw.get("thoughtSignature")
        return ToolCallPart(
            tool_call_id=str(raw.get("toolCallId") or ""),
            tool_name=str(raw.get("toolName") or ""),
            input=dict(args) if isinstance(args, dict) else {},
            thought_signature=sig if isinstance(sig, str) and sig else None,
        )
    if kind == "tool-result":
        output = raw.get("output")
        if isinstance(output, dict) and "type" in output and "value" in output:
            output = output["value"]
        return ToolResultPart(
            tool_call_id=str(raw.get("toolCallId") or ""),
            tool_name=str(raw.get("toolName") or ""),
            output=output,
            is_error=bool(raw.get("isError", False)),
        )
    raise ContextStoreError(f"Unknown message part type: {kind!r}")


def message_from_dict(raw: dict[str, Any]) -> ContextMessage:
    msg_id = raw.get("id")
    if not isinstance(msg_id, str) or not msg_id:
        raise ContextStoreError("Invalid context message (missing id).")
    role = raw.get("role")
    content = raw.get("content")
    usage_raw = raw.get("usageReport")
    usage = UsageReport.from_dict(usage_raw) if isinstance(usage_raw, dict) else None

    if role == MessageRole.USER:
        if isinstance(content, list):
            text = "".join(str(p.get("text") or "") for p in content if isinstance(p, dict) and p.get("type") == "text")
        else:
            text = str(content or "")
        return UserMessage(text=text, id=msg_id)

    if role == MessageRole.ASSISTANT:
        if isinstance(content, str):
            parts: list[Any] = [TextPart(text=content)] if content else []
        else:
            parts = [_part_from_dict(p) for p in (content or []) if isinstance(p, dict)]
        return AssistantMessage(parts=tuple(parts), id=msg_id, usage=usage)

    if role == MessageRole.TOOL:
        results = [_part_from_dict(p) for p in (content or []) if isinstance(p, dict)]
        return ToolMessage(parts=tuple(results), id=msg_id, usage=usage)

    raise ContextStoreError(f"Unknown message role: {role!r}")


def message_to_dict(message: ContextMessage) -> dict[str, Any]:
    return message.to_dict()
