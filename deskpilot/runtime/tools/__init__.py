from __future__ import annotations

from .definitions import TOOL_GROUP_SEPARATOR, ToolDefinition, split_tool_id, tool_id

__all__ = ["TOOL_GROUP_SEPARATOR", "ToolDefinition", "split_tool_id", "tool_id"]
