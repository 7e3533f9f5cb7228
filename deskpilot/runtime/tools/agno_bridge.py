from __future__ import annotations

import inspect
from typing import Any, Callable, Iterable

from agno.tools.function import Function as AgnoFunction
from agno.tools.toolkit import Toolkit as AgnoToolkit

from .definitions import TOOL_GROUP_SEPARATOR, ToolDefinition, tool_id

_EMPTY_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}}


def _schema_of(fn: AgnoFunction) -> dict[str, Any]:
    params = fn.parameters
    if isinstance(params, dict) and params:
        return dict(params)
    return dict(_EMPTY_SCHEMA)


def _execute_for(fn: AgnoFunction) -> Callable[[dict[str, Any]], Any]:
    entrypoint = fn.entrypoint
    if entrypoint is None:
        raise ValueError(f"agno function {fn.name!r} has no entrypoint.")

    if inspect.iscoroutinefunction(entrypoint):

        async def _run_async(args: dict[str, Any]) -> Any:
            return await entrypoint(**args)

        return _run_async

    def _run(args: dict[str, Any]) -> Any:
        return entrypoint(**args)

    return _run


def function_to_tool(
    fn: AgnoFunction | Callable[..., Any], *, group: str, timeout_s: float | None = None
) -> ToolDefinition:
    """
    Adapt an agno Function (or a plain callable, via `Function.from_callable`) into a tool.

    The tool is named `group---name` unless the function name is already qualified.
    """

    if not isinstance(fn, AgnoFunction):
        fn = AgnoFunction.from_callable(fn)
    name = fn.name if TOOL_GROUP_SEPARATOR in fn.name else tool_id(group, fn.name)
    return ToolDefinition(
        name=name,
        description=(fn.description or "").strip(),
        execute=_execute_for(fn),
        input_schema=_schema_of(fn),
        timeout_s=timeout_s,
    )


def toolkit_to_tools(toolkit: AgnoToolkit, *, group: str | None = None, timeout_s: float | None = None) -> dict[str, ToolDefinition]:
    tools: dict[str, ToolDefinition] = {}
    for fn in toolkit.functions.values():
        tool = function_to_tool(fn, group=group or toolkit.name, timeout_s=timeout_s)
        tools[tool.name] = tool
    return tools


def tools_from_agno(
    items: Iterable[AgnoFunction | AgnoToolkit | Callable[..., Any]],
    *,
    group: str,
    timeout_s: float | None = None,
) -> dict[str, ToolDefinition]:
    """Build the name -> tool map the pipeline consumes from agno functions, toolkits and callables."""

    tools: dict[str, ToolDefinition] = {}
    for item in items:
        if isinstance(item, AgnoToolkit):
            tools.update(toolkit_to_tools(item, group=group, timeout_s=timeout_s))
            continue
        tool = function_to_tool(item, group=group, timeout_s=timeout_s)
        tools[tool.name] = tool
    return tools
