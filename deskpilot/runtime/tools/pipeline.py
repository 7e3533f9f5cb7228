from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Callable, Mapping

from ..approval import ApprovalDecision, Approver, AutoApprover, ToolApprovalState
from ..errors import CancellationToken, ToolNameError
from ..hooks import HookEvent, HookManager, NullHooks
from ..llm.types import ToolDeclaration
from .definitions import HELPERS_GROUP, ToolDefinition, is_helper_tool, split_tool_id
from .helpers import helper_tools

if TYPE_CHECKING:
    from ..profile import AgentProfile
    from ..task import Task

logger = logging.getLogger(__name__)

BLOCKED_BY_HOOK = "Tool execution blocked by hook."
DENIED_BY_USER = "Tool execution denied by user."
CANCELLED = "Tool execution cancelled."


def approval_question(tool_name: str) -> str:
    group, name = split_tool_id(tool_name)
    return f"Approve tool {name} from {group or 'default'} group?"


def denial_text(note: str | None) -> str:
    return f"{DENIED_BY_USER} User input: {note}" if note else DENIED_BY_USER


def error_text(tool_name: str, exc: BaseException) -> str:
    message = str(exc) or exc.__class__.__name__
    return f"Error executing tool {split_tool_id(tool_name)[1]}: {message}"


class ToolOutcomeStatus(StrEnum):
    EXECUTED = "executed"
    BLOCKED = "blocked"
    DENIED = "denied"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class ToolOutcome:
    tool_call_id: str
    tool_name: str
    input: dict[str, Any]
    output: Any
    status: ToolOutcomeStatus
    error: BaseException | None = None

    @property
    def is_error(self) -> bool:
        return self.status is not ToolOutcomeStatus.EXECUTED


class ToolCallClock:
    """
    Minimum spacing between tool executions, shared by every tool call of one orchestrator.

    `wait_turn` holds the lock while it sleeps so concurrent calls queue up behind it;
    `mark` records completion (success or error).
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self._clock = clock
        self._sleep = sleep
        self._last: float | None = None
        self._lock = asyncio.Lock()

    @property
    def last_call_at(self) -> float | None:
        return self._last

    async def wait_turn(self, min_interval_s: float) -> float:
        if min_interval_s <= 0:
            return 0.0
        async with self._lock:
            if self._last is None:
                return 0.0
            remaining = min_interval_s - (self._clock() - self._last)
            if remaining > 0:
                logger.debug("Delaying tool call by %.3fs to respect min spacing %.3fs", remaining, min_interval_s)
                await self._sleep(remaining)
                return remaining
            return 0.0

    def mark(self) -> None:
        self._last = self._clock()


def offered_tools(tools: Mapping[str, ToolDefinition], profile: "AgentProfile") -> dict[str, ToolDefinition]:
    """Tools the model may see: enabled groups only, NEVER tools removed, helpers always present."""

    out: dict[str, ToolDefinition] = {}
    for name, tool in tools.items():
        group = split_tool_id(name)[0]
        if group == HELPERS_GROUP:
            continue
        if not profile.group_enabled(group):
            continue
        if profile.approval_for(name) is ToolApprovalState.NEVER:
            logger.debug("Skipping tool due to 'never' approval state: %s", name)
            continue
        out[name] = tool
    out.update(helper_tools())
    return out


class ToolPipeline:
    """
    Wraps the offered tools with hooks, approval, spacing and error-to-text conversion.

    Failures never propagate out of `invoke`: they come back as an outcome whose output is
    the text the model will see.
    """

    def __init__(
        self,
        tools: Mapping[str, ToolDefinition],
        *,
        profile: "AgentProfile",
        approver: Approver | None = None,
        hooks: HookManager | None = None,
        clock: ToolCallClock | None = None,
        task: "Task | None" = None,
        cancel: CancellationToken | None = None,
    ) -> None:
        self._profile = profile
        self._tools = offered_tools(tools, profile)
        self._approver = approver or AutoApprover()
        self._hooks = hooks or NullHooks()
        self._clock = clock or ToolCallClock()
        self._task = task
        self._cancel = cancel
        self._remembered: set[str] = set()
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def tools(self) -> dict[str, ToolDefinition]:
        return dict(self._tools)

    def tool_names(self) -> list[str]:
        return [name for name in self._tools if not is_helper_tool(name)]

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def declarations(self) -> list[ToolDeclaration]:
        return [tool.declaration() for tool in self._tools.values()]

    def _cancelled(self) -> bool:
        return self._cancel is not None and self._cancel.cancelled

    async def _approve(self, tool_name: str, args: dict[str, Any]) -> ApprovalDecision:
        if is_helper_tool(tool_name):
            return ApprovalDecision(approved=True)
        state = self._profile.approval_for(tool_name)
        if state is ToolApprovalState.ALWAYS or tool_name in self._remembered:
            return ApprovalDecision(approved=True)
        if state is ToolApprovalState.NEVER:
            return ApprovalDecision(approved=False)

        question = approval_question(tool_name)
        subject = json.dumps(args, ensure_ascii=False) if args else None
        hook = await self._hooks.trigger(
            HookEvent.HANDLE_APPROVAL, {"key": tool_name, "text": question, "subject": subject}, task=self._task
        )
        if isinstance(hook.result, bool):
            return ApprovalDecision(approved=hook.result)

        decision = await self._approver.ask(tool_name, question, subject)
        if decision.approved and decision.remember:
            self._remembered.add(tool_name)
        return decision

    async def invoke(self, tool_call_id: str, tool_name: str, args: dict[str, Any]) -> ToolOutcome:
        tool = self._tools.get(tool_name)
        if tool is None:
            # Unknown names are repaired before dispatch; reaching here is a caller bug.
            raise ToolNameError(f"Unknown tool: {tool_name}", tool_name=tool_name)

        def _outcome(output: Any, status: ToolOutcomeStatus, error: BaseException | None = None) -> ToolOutcome:
            return ToolOutcome(
                tool_call_id=tool_call_id, tool_name=tool_name, input=dict(args), output=output, status=status, error=error
            )

        hook = await self._hooks.trigger(HookEvent.TOOL_CALLED, {"toolName": tool_name, "args": args}, task=self._task)
        if hook.blocked:
            logger.warning("Tool execution blocked by hook: %s", tool_name)
            return _outcome(BLOCKED_BY_HOOK, ToolOutcomeStatus.BLOCKED)
        effective = hook.event.get("args")
        args = dict(effective) if isinstance(effective, dict) else dict(args)

        decision = await self._approve(tool_name, args)
        if not decision.approved:
            logger.warning("Tool execution denied by user: %s", tool_name)
            return _outcome(denial_text(decision.note), ToolOutcomeStatus.DENIED)

        await self._clock.wait_turn(self._profile.min_time_between_tool_calls_ms / 1000.0)
        if self._cancelled():
            return _outcome(CANCELLED, ToolOutcomeStatus.CANCELLED)

        try:
            result = await tool.invoke(args)
        except asyncio.CancelledError:
            self._clock.mark()
            raise
        except Exception as e:
            self._clock.mark()
            logger.error("Error calling tool %s: %s", tool_name, e)
            return _outcome(error_text(tool_name, e), ToolOutcomeStatus.FAILED, e)
        self._clock.mark()

        self._fire(HookEvent.TOOL_FINISHED, {"toolName": tool_name, "args": args, "result": result})
        return _outcome(result, ToolOutcomeStatus.EXECUTED)

    def _fire(self, name: HookEvent, payload: dict[str, Any]) -> None:
        """Trigger a hook without waiting for it; its outcome never changes the tool result."""

        async def _run() -> None:
            try:
                await self._hooks.trigger(name, payload, task=self._task)
            except Exception:
                logger.exception("Hook %s failed", name)

        background = asyncio.get_running_loop().create_task(_run())
        self._background.add(background)
        background.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for fire-and-forget hooks (tests and shutdown)."""

        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
