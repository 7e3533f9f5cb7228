from __future__ import annotations

from typing import Any

from .definitions import HELPERS_GROUP, HELPERS_INVALID_TOOL_ARGUMENTS, HELPERS_NO_SUCH_TOOL, ToolDefinition, tool_id

NO_SUCH_TOOL = tool_id(HELPERS_GROUP, HELPERS_NO_SUCH_TOOL)
INVALID_TOOL_ARGUMENTS = tool_id(HELPERS_GROUP, HELPERS_INVALID_TOOL_ARGUMENTS)


def _no_such_tool(args: dict[str, Any]) -> str:
    name = args.get("toolName") or "(unnamed)"
    available = args.get("availableTools") or []
    listing = ", ".join(str(t) for t in available) if available else "(none)"
    return f"Tool '{name}' does not exist. Use one of the available tools instead: {listing}"


def _invalid_tool_arguments(args: dict[str, Any]) -> str:
    name = args.get("toolName") or "(unnamed)"
    return (
        f"Invalid arguments for tool '{name}': {args.get('error') or 'validation failed'}. "
        f"Arguments sent: {args.get('toolInput')}. Correct the arguments and call the tool again."
    )


def helper_tools() -> dict[str, ToolDefinition]:
    return {
        NO_SUCH_TOOL: ToolDefinition(
            name=NO_SUCH_TOOL,
            description="Reports that a requested tool does not exist and lists the available tools.",
            execute=_no_such_tool,
            input_schema={
                "type": "object",
                "properties": {
                    "toolName": {"type": "string"},
                    "availableTools": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["toolName"],
            },
        ),
        INVALID_TOOL_ARGUMENTS: ToolDefinition(
            name=INVALID_TOOL_ARGUMENTS,
            description="Reports that a tool was called with arguments that failed validation.",
            execute=_invalid_tool_arguments,
            input_schema={
                "type": "object",
                "properties": {
                    "toolName": {"type": "string"},
                    "toolInput": {"type": "string"},
                    "error": {"type": "string"},
                },
                "required": ["toolName", "error"],
            },
        ),
    }
