from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Callable, Protocol

if TYPE_CHECKING:
    from .task import Task

logger = logging.getLogger(__name__)


class HookEvent(StrEnum):
    AGENT_STARTED = "onAgentStarted"
    AGENT_STEP_FINISHED = "onAgentStepFinished"
    AGENT_FINISHED = "onAgentFinished"
    TOOL_CALLED = "onToolCalled"
    TOOL_FINISHED = "onToolFinished"
    HANDLE_APPROVAL = "onHandleApproval"


@dataclass(frozen=True, slots=True)
class HookResult:
    event: dict[str, Any] = field(default_factory=dict)
    blocked: bool = False
    # Only set by decision hooks such as HANDLE_APPROVAL.
    result: Any = None


class HookManager(Protocol):
    async def trigger(self, name: HookEvent, payload: dict[str, Any], *, task: "Task | None" = None) -> HookResult: ...


class NullHooks:
    async def trigger(self, name: HookEvent, payload: dict[str, Any], *, task: "Task | None" = None) -> HookResult:
        return HookResult(event=dict(payload))


HookFn = Callable[[dict[str, Any], "Task | None"], Any]


class CallbackHooks:
    """
    In-process hook registry.

    Hooks run in registration order. A hook returning False blocks the event (for
    HANDLE_APPROVAL it denies instead); returning True from HANDLE_APPROVAL approves; a dict
    is merged into the event seen by later hooks and by the caller. A raising hook is
    logged and skipped.
    """

    def __init__(self) -> None:
        self._hooks: dict[HookEvent, list[HookFn]] = {}

    def register(self, name: HookEvent, fn: HookFn) -> None:
        self._hooks.setdefault(HookEvent(name), []).append(fn)

    def clear(self) -> None:
        self._hooks.clear()

    async def trigger(self, name: HookEvent, payload: dict[str, Any], *, task: "Task | None" = None) -> HookResult:
        name = HookEvent(name)
        event = dict(payload)
        blocked = False
        result: Any = None
        for fn in list(self._hooks.get(name, ())):
            try:
                out = fn(event, task)
                if inspect.isawaitable(out):
                    out = await out
            except Exception:
                logger.exception("Error executing hook %s", name)
                continue

            if out is False:
                if name is HookEvent.HANDLE_APPROVAL:
                    result = False
                else:
                    blocked = True
                break
            if out is True and name is HookEvent.HANDLE_APPROVAL:
                result = True
                break
            if isinstance(out, dict):
                event = {**event, **out}
        return HookResult(event=event, blocked=blocked, result=result)
