from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Callable

from ..errors import ToolExecutionError
from ..llm.types import ToolDeclaration

TOOL_GROUP_SEPARATOR = "---"

AIDER_GROUP = "aider"
AIDER_RUN_PROMPT = "run_prompt"
SUBAGENTS_GROUP = "subagents"
SUBAGENTS_RUN_TASK = "run_task"
HELPERS_GROUP = "helpers"
HELPERS_NO_SUCH_TOOL = "no_such_tool"
HELPERS_INVALID_TOOL_ARGUMENTS = "invalid_tool_arguments"


def tool_id(group: str, name: str) -> str:
    return f"{group}{TOOL_GROUP_SEPARATOR}{name}"


def split_tool_id(full_name: str) -> tuple[str, str]:
    """Return (group, tool). Names without a group prefix map to an empty group."""

    group, sep, name = full_name.partition(TOOL_GROUP_SEPARATOR)
    if not sep:
        return "", full_name
    return group, name


def is_helper_tool(full_name: str) -> bool:
    return split_tool_id(full_name)[0] == HELPERS_GROUP


@dataclass(frozen=True, slots=True)
class ToolDefinition:
    """
    A tool as supplied by an upstream tool provider.

    `execute` receives the JSON-shaped arguments and may be sync or async. A sync callable
    runs in a worker thread so it never blocks the run loop. `timeout_s` is owned by the
    provider; the pipeline only enforces it when set.
    """

    name: str
    description: str
    execute: Callable[[dict[str, Any]], Any]
    input_schema: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    timeout_s: float | None = None

    @property
    def group(self) -> str:
        return split_tool_id(self.name)[0]

    @property
    def base_name(self) -> str:
        return split_tool_id(self.name)[1]

    def declaration(self) -> ToolDeclaration:
        return ToolDeclaration(name=self.name, description=self.description, input_schema=dict(self.input_schema))

    async def invoke(self, args: dict[str, Any]) -> Any:
        if inspect.iscoroutinefunction(self.execute):
            call = self.execute(args)
        else:
            call = asyncio.to_thread(self.execute, args)
        if self.timeout_s is not None:
            try:
                result = await asyncio.wait_for(call, timeout=self.timeout_s)
            except asyncio.TimeoutError:
                raise ToolExecutionError(f"Timed out after {self.timeout_s:g}s", tool_name=self.name) from None
        else:
            result = await call
        if inspect.isawaitable(result):
            result = await result
        return result
