from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Iterable

from ..tools.definitions import AIDER_GROUP, AIDER_RUN_PROMPT, SUBAGENTS_GROUP, SUBAGENTS_RUN_TASK, split_tool_id
from .messages import AssistantMessage, ContextMessage, MessageRole, ToolMessage, ToolResultPart, UserMessage


@dataclass(frozen=True, slots=True)
class ConnectorMessage:
    role: MessageRole
    content: str


def _message_text(message: ContextMessage) -> str:
    if isinstance(message, UserMessage):
        return message.text
    if isinstance(message, AssistantMessage):
        return message.text
    return ""


def _text_of_raw_message(raw: Any) -> str:
    content = raw.get("content") if isinstance(raw, dict) else None
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            str(p.get("text") or "") for p in content if isinstance(p, dict) and p.get("type") == "text"
        )
    return ""


def _delegated_prompt(message: AssistantMessage, group: str, tool: str) -> str | None:
    for call in message.tool_calls:
        if split_tool_id(call.tool_name) == (group, tool):
            prompt = call.input.get("prompt")
            if isinstance(prompt, str):
                return prompt
    return None


def _expand_aider_result(prompt: str, part: ToolResultPart) -> list[ConnectorMessage]:
    out = [ConnectorMessage(MessageRole.USER, prompt)]
    output = part.output
    if isinstance(output, str):
        out.append(ConnectorMessage(MessageRole.ASSISTANT, output))
    elif isinstance(output, dict) and isinstance(output.get("responses"), list):
        for response in output["responses"]:
            if not isinstance(response, dict):
                continue
            reflected = response.get("reflectedMessage")
            if isinstance(reflected, str) and reflected:
                out.append(ConnectorMessage(MessageRole.USER, reflected))
            content = response.get("content")
            if isinstance(content, str) and content:
                out.append(ConnectorMessage(MessageRole.ASSISTANT, content))
    return out


def _expand_subagent_result(prompt: str, part: ToolResultPart) -> list[ConnectorMessage]:
    out = [ConnectorMessage(MessageRole.USER, prompt)]
    output = part.output
    if isinstance(output, list) and output:
        last = output[-1]
        if isinstance(last, dict) and last.get("role") == MessageRole.ASSISTANT:
            text = _text_of_raw_message(last)
            if text:
                out.append(ConnectorMessage(MessageRole.ASSISTANT, text))
    return out


def project_messages(messages: Iterable[ContextMessage]) -> list[ConnectorMessage]:
    """
    Flatten structured context into (role, text) pairs for consumers without tool support.

    Delegated prompts (aider run_prompt, subagents run_task) are unrolled into their own
    prompt/response turns; every other tool result becomes an assistant statement.
    """

    aider_prompt: str | None = None
    subagent_prompt: str | None = None
    out: list[ConnectorMessage] = []

    for message in messages:
        if isinstance(message, (UserMessage, AssistantMessage)):
            aider_prompt = None
            if isinstance(message, AssistantMessage):
                aider_prompt = _delegated_prompt(message, AIDER_GROUP, AIDER_RUN_PROMPT)
                if aider_prompt is None:
                    subagent_prompt = _delegated_prompt(message, SUBAGENTS_GROUP, SUBAGENTS_RUN_TASK) or subagent_prompt
            text = _message_text(message)
            if text:
                out.append(ConnectorMessage(message.role, text))
            continue

        if isinstance(message, ToolMessage):
            for part in message.parts:
                key = split_tool_id(part.tool_name)
                if key == (AIDER_GROUP, AIDER_RUN_PROMPT) and aider_prompt:
                    out.extend(_expand_aider_result(aider_prompt, part))
                elif key == (SUBAGENTS_GROUP, SUBAGENTS_RUN_TASK) and subagent_prompt:
                    out.extend(_expand_subagent_result(subagent_prompt, part))
                else:
                    out.append(
                        ConnectorMessage(
                            MessageRole.ASSISTANT,
                            f"I called tool {part.tool_name} and got result:\n{json.dumps(part.output, ensure_ascii=False)}",
                        )
                    )
    return out


def render_markdown(messages: Iterable[ContextMessage]) -> str:
    chunks: list[str] = []
    for message in messages:
        chunks.append(f"### {message.role.value.capitalize()}\n\n")
        if isinstance(message, ToolMessage):
            for part in message.parts:
                _, tool = split_tool_id(part.tool_name)
                chunks.append(f"**Tool Call ID:** `{part.tool_call_id}`\n")
                chunks.append(f"**Tool:** `{tool}`\n")
                chunks.append(
                    f"**Result:**\n```json\n{json.dumps(part.output, ensure_ascii=False, indent=2)}\n```\n\n"
                )
            continue
        text = _message_text(message)
        if text:
            chunks.append(f"{text}\n\n")
    return "".join(chunks)
