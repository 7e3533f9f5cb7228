from __future__ import annotations

import asyncio

import pytest

from deskpilot.runtime.approval import ApprovalDecision, ToolApprovalState
from deskpilot.runtime.errors import CancellationToken, ToolExecutionError, ToolNameError
from deskpilot.runtime.hooks import CallbackHooks, HookEvent
from deskpilot.runtime.profile import AgentProfile
from deskpilot.runtime.tools.definitions import ToolDefinition
from deskpilot.runtime.tools.helpers import INVALID_TOOL_ARGUMENTS, NO_SUCH_TOOL
from deskpilot.runtime.tools.pipeline import (
    BLOCKED_BY_HOOK,
    DENIED_BY_USER,
    ToolCallClock,
    ToolOutcomeStatus,
    ToolPipeline,
    approval_question,
    offered_tools,
)

from conftest import echo_tool, failing_tool


class RecordingApprover:
    def __init__(self, decision: ApprovalDecision) -> None:
        self.decision = decision
        self.questions: list[tuple[str, str, str | None]] = []

    async def ask(self, key, question, subject=None):
        self.questions.append((key, question, subject))
        return self.decision


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _tools(*defs):
    return {d.name: d for d in defs}


def test_offered_tools_respect_groups_and_never():
    tools = _tools(echo_tool("files---read"), echo_tool("files---write"), echo_tool("shell---run"))
    profile = AgentProfile(
        enabled_tool_groups=["files"],
        tool_approvals={"files---write": ToolApprovalState.NEVER},
    )

    offered = offered_tools(tools, profile)

    assert "files---read" in offered
    assert "files---write" not in offered
    assert "shell---run" not in offered
    assert NO_SUCH_TOOL in offered and INVALID_TOOL_ARGUMENTS in offered


def test_never_tool_is_excluded_even_with_all_groups_enabled():
    profile = AgentProfile(tool_approvals={"files---read": ToolApprovalState.NEVER})
    pipeline = ToolPipeline(_tools(echo_tool("files---read")), profile=profile)
    assert pipeline.tool_names() == []
    assert "files---read" not in {d.name for d in pipeline.declarations()}


@pytest.mark.asyncio
async def test_always_approved_tool_runs_without_asking():
    calls: list[dict] = []
    approver = RecordingApprover(ApprovalDecision(approved=False))
    profile = AgentProfile(tool_approvals={"files---read": ToolApprovalState.ALWAYS})
    pipeline = ToolPipeline(_tools(echo_tool(calls=calls)), profile=profile, approver=approver)

    outcome = await pipeline.invoke("tc1", "files---read", {"path": "a.txt"})

    assert outcome.status is ToolOutcomeStatus.EXECUTED
    assert outcome.output == {"echo": {"path": "a.txt"}}
    assert calls == [{"path": "a.txt"}]
    assert approver.questions == []


@pytest.mark.asyncio
async def test_denied_tool_returns_denial_text_with_note():
    calls: list[dict] = []
    approver = RecordingApprover(ApprovalDecision(approved=False, note="use the cache"))
    pipeline = ToolPipeline(_tools(echo_tool(calls=calls)), profile=AgentProfile(), approver=approver)

    outcome = await pipeline.invoke("tc1", "files---read", {"path": "a.txt"})

    assert outcome.status is ToolOutcomeStatus.DENIED
    assert outcome.output == f"{DENIED_BY_USER} User input: use the cache"
    assert calls == []
    assert approver.questions == [("files---read", "Approve tool read from files group?", '{"path": "a.txt"}')]


@pytest.mark.asyncio
async def test_remembered_approval_skips_later_questions():
    approver = RecordingApprover(ApprovalDecision(approved=True, remember=True))
    pipeline = ToolPipeline(_tools(echo_tool()), profile=AgentProfile(), approver=approver)

    await pipeline.invoke("tc1", "files---read", {"path": "a"})
    await pipeline.invoke("tc2", "files---read", {"path": "b"})

    assert len(approver.questions) == 1


@pytest.mark.asyncio
async def test_approval_hook_decides_before_approver():
    hooks = CallbackHooks()
    hooks.register(HookEvent.HANDLE_APPROVAL, lambda event, task: True)
    approver = RecordingApprover(ApprovalDecision(approved=False))
    pipeline = ToolPipeline(_tools(echo_tool()), profile=AgentProfile(), approver=approver, hooks=hooks)

    outcome = await pipeline.invoke("tc1", "files---read", {"path": "a"})

    assert outcome.status is ToolOutcomeStatus.EXECUTED
    assert approver.questions == []


@pytest.mark.asyncio
async def test_tool_called_hook_can_block():
    calls: list[dict] = []
    hooks = CallbackHooks()
    hooks.register(HookEvent.TOOL_CALLED, lambda event, task: False)
    pipeline = ToolPipeline(_tools(echo_tool(calls=calls)), profile=AgentProfile(), hooks=hooks)

    outcome = await pipeline.invoke("tc1", "files---read", {"path": "a"})

    assert outcome.status is ToolOutcomeStatus.BLOCKED
    assert outcome.output == BLOCKED_BY_HOOK
    assert calls == []


@pytest.mark.asyncio
async def test_tool_called_hook_can_rewrite_args_and_finished_hook_fires():
    calls: list[dict] = []
    finished: list[dict] = []
    hooks = CallbackHooks()
    hooks.register(HookEvent.TOOL_CALLED, lambda event, task: {"args": {"path": "safe.txt"}})
    hooks.register(HookEvent.TOOL_FINISHED, lambda event, task: finished.append(event))
    pipeline = ToolPipeline(_tools(echo_tool(calls=calls)), profile=AgentProfile(), hooks=hooks)

    outcome = await pipeline.invoke("tc1", "files---read", {"path": "/etc/passwd"})
    await pipeline.drain()

    assert calls == [{"path": "safe.txt"}]
    assert outcome.input == {"path": "safe.txt"}
    assert finished[0]["result"] == {"echo": {"path": "safe.txt"}}


@pytest.mark.asyncio
async def test_execution_error_becomes_text_result():
    pipeline = ToolPipeline(_tools(failing_tool(message="disk full")), profile=AgentProfile())

    outcome = await pipeline.invoke("tc1", "shell---run", {})

    assert outcome.status is ToolOutcomeStatus.FAILED
    assert outcome.is_error
    assert outcome.output == "Error executing tool run: disk full"
    assert isinstance(outcome.error, RuntimeError)


@pytest.mark.asyncio
async def test_tool_timeout_becomes_text_result():
    async def _slow(args):
        await asyncio.sleep(5)

    slow = ToolDefinition(name="shell---run", description="Never finishes in time.", execute=_slow, timeout_s=0.05)
    pipeline = ToolPipeline(_tools(slow), profile=AgentProfile())

    outcome = await pipeline.invoke("tc1", "shell---run", {})

    assert outcome.status is ToolOutcomeStatus.FAILED
    assert outcome.output == "Error executing tool run: Timed out after 0.05s"
    assert isinstance(outcome.error, ToolExecutionError)
    assert outcome.error.tool_name == "shell---run"


@pytest.mark.asyncio
async def test_unknown_tool_is_a_caller_error():
    pipeline = ToolPipeline({}, profile=AgentProfile())
    with pytest.raises(ToolNameError) as info:
        await pipeline.invoke("tc1", "files---read", {})

    assert isinstance(info.value, KeyError)
    assert info.value.tool_name == "files---read"


@pytest.mark.asyncio
async def test_min_spacing_between_calls():
    fake = FakeClock()
    clock = ToolCallClock(clock=fake, sleep=fake.sleep)
    profile = AgentProfile(min_time_between_tool_calls_ms=500)
    pipeline = ToolPipeline(_tools(echo_tool()), profile=profile, clock=clock)

    await pipeline.invoke("tc1", "files---read", {"path": "a"})
    assert fake.sleeps == []
    fake.now += 0.2
    await pipeline.invoke("tc2", "files---read", {"path": "b"})

    assert fake.sleeps == [pytest.approx(0.3)]
    assert clock.last_call_at == fake.now


@pytest.mark.asyncio
async def test_clock_is_marked_after_failure():
    fake = FakeClock()
    clock = ToolCallClock(clock=fake, sleep=fake.sleep)
    pipeline = ToolPipeline(_tools(failing_tool()), profile=AgentProfile(), clock=clock)

    await pipeline.invoke("tc1", "shell---run", {})

    assert clock.last_call_at == 100.0


@pytest.mark.asyncio
async def test_cancelled_before_execution():
    calls: list[dict] = []
    cancel = CancellationToken()
    cancel.cancel()
    pipeline = ToolPipeline(_tools(echo_tool(calls=calls)), profile=AgentProfile(), cancel=cancel)

    outcome = await pipeline.invoke("tc1", "files---read", {"path": "a"})

    assert outcome.status is ToolOutcomeStatus.CANCELLED
    assert calls == []


@pytest.mark.asyncio
async def test_concurrent_calls_each_get_their_own_result():
    async def _slow(args):
        await asyncio.sleep(args["delay"])
        return args["delay"]

    tool = ToolDefinition(name="util---sleep", description="", execute=_slow)
    pipeline = ToolPipeline({tool.name: tool}, profile=AgentProfile())

    outcomes = await asyncio.gather(
        pipeline.invoke("slow", "util---sleep", {"delay": 0.05}),
        pipeline.invoke("fast", "util---sleep", {"delay": 0.0}),
    )

    assert [(o.tool_call_id, o.output) for o in outcomes] == [("slow", 0.05), ("fast", 0.0)]


def test_approval_question_text():
    assert approval_question("files---read") == "Approve tool read from files group?"
