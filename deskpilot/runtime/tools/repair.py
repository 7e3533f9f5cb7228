from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Mapping

from ..context.messages import AssistantMessage, ToolCallPart, ToolMessage, ToolResultPart
from ..errors import CancellationToken, ToolInputError
from ..llm.types import ModelCallRequest
from .definitions import TOOL_GROUP_SEPARATOR, ToolDefinition, is_helper_tool
from .helpers import INVALID_TOOL_ARGUMENTS, NO_SUCH_TOOL
from .validation import validate_tool_input

if TYPE_CHECKING:
    from ..llm.adapters.base import CallableModel

logger = logging.getLogger(__name__)


class RepairKind(StrEnum):
    NONE = "none"
    RENAMED = "renamed"
    NO_SUCH_TOOL = "no_such_tool"
    INVALID_ARGUMENTS = "invalid_arguments"


@dataclass(frozen=True, slots=True)
class PreparedCall:
    call: ToolCallPart
    kind: RepairKind = RepairKind.NONE


def _qualified_match(name: str, available: list[str]) -> str | None:
    suffix = f"{TOOL_GROUP_SEPARATOR}{name}"
    for candidate in available:
        if candidate.endswith(suffix):
            return candidate
    return None


def _with(call: ToolCallPart, *, tool_name: str, input: dict) -> ToolCallPart:
    return ToolCallPart(
        tool_call_id=call.tool_call_id,
        tool_name=tool_name,
        input=input,
        thought_signature=call.thought_signature,
    )


def prepare_call(call: ToolCallPart, tools: Mapping[str, ToolDefinition]) -> PreparedCall:
    """
    Make a model-emitted call dispatchable.

    An unknown name is rewritten to the qualified tool with the same base name when there is
    one, otherwise to the no-such-tool helper. Input that fails the tool's schema (or could
    not be decoded) goes to the invalid-arguments helper.
    """

    kind = RepairKind.NONE
    available = [name for name in tools if not is_helper_tool(name)]
    if call.tool_name not in tools:
        match = _qualified_match(call.tool_name, available)
        if match is None:
            logger.warning("Attempted to call non-existent tool: %s", call.tool_name)
            return PreparedCall(
                call=_with(call, tool_name=NO_SUCH_TOOL, input={"toolName": call.tool_name, "availableTools": available}),
                kind=RepairKind.NO_SUCH_TOOL,
            )
        logger.info("Found matching tool for %s: %s. Retrying with full name.", call.tool_name, match)
        call = _with(call, tool_name=match, input=dict(call.input))
        kind = RepairKind.RENAMED

    tool = tools[call.tool_name]
    try:
        if "_raw_arguments" in call.input:
            raise ToolInputError("Arguments are not a valid JSON object.", tool_name=call.tool_name)
        validate_tool_input(call.tool_name, tool.input_schema, call.input)
    except ToolInputError as e:
        logger.warning("Invalid input for tool %s: %s", call.tool_name, e)
        raw = call.input.get("_raw_arguments")
        return PreparedCall(
            call=_with(
                call,
                tool_name=INVALID_TOOL_ARGUMENTS,
                input={
                    "toolName": call.tool_name,
                    "toolInput": raw if isinstance(raw, str) else json.dumps(call.input, ensure_ascii=False),
                    "error": str(e),
                },
            ),
            kind=RepairKind.INVALID_ARGUMENTS,
        )
    except ValueError as e:
        logger.warning("Skipping input validation for %s: %s", call.tool_name, e)
    return PreparedCall(call=call, kind=kind)


async def regenerate_call(
    model: "CallableModel",
    request: ModelCallRequest,
    call: ToolCallPart,
    error_message: str,
    *,
    cancel: CancellationToken | None = None,
) -> ToolCallPart | None:
    """
    One non-streaming model call seeded with the failed call and its error.

    Returns the corrected call (same id and tool name) or None when the model does not
    re-emit the same tool or the call fails.
    """

    seeded = ModelCallRequest(
        system_prompt=request.system_prompt,
        messages=[
            *request.messages,
            AssistantMessage(parts=(call,)),
            ToolMessage(
                parts=(
                    ToolResultPart(
                        tool_call_id=call.tool_call_id, tool_name=call.tool_name, output=error_message, is_error=True
                    ),
                )
            ),
        ],
        tools=request.tools,
        max_output_tokens=request.max_output_tokens,
        temperature=request.temperature,
        options=request.options,
        parameters=request.parameters,
    )
    logger.info("Attempting generic repair for tool call error: %s", call.tool_name)
    try:
        step = await asyncio.to_thread(model.complete, seeded, cancel=cancel)
    except Exception as e:
        logger.error("Error during tool call repair for %s: %s", call.tool_name, e)
        return None

    for part in step.parts:
        if isinstance(part, ToolCallPart) and part.tool_name == call.tool_name:
            return _with(call, tool_name=call.tool_name, input=dict(part.input))
    logger.info("Repair for %s produced no call to the same tool; dropping it", call.tool_name)
    return None
