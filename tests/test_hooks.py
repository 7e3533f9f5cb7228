from __future__ import annotations

import pytest

from deskpilot.runtime.hooks import CallbackHooks, HookEvent, NullHooks


@pytest.mark.asyncio
async def test_null_hooks_pass_the_payload_through():
    result = await NullHooks().trigger(HookEvent.AGENT_STARTED, {"prompt": "hi"})
    assert result.event == {"prompt": "hi"}
    assert not result.blocked


@pytest.mark.asyncio
async def test_dict_results_merge_in_registration_order():
    hooks = CallbackHooks()
    seen: list[str] = []

    def first(event, task):
        return {"prompt": event["prompt"] + "!"}

    async def second(event, task):
        seen.append(event["prompt"])
        return {"extra": 1}

    hooks.register(HookEvent.AGENT_STARTED, first)
    hooks.register(HookEvent.AGENT_STARTED, second)

    result = await hooks.trigger(HookEvent.AGENT_STARTED, {"prompt": "hi"})

    assert seen == ["hi!"]
    assert result.event == {"prompt": "hi!", "extra": 1}


@pytest.mark.asyncio
async def test_false_blocks_and_stops_later_hooks():
    hooks = CallbackHooks()
    later: list[dict] = []
    hooks.register(HookEvent.TOOL_CALLED, lambda event, task: False)
    hooks.register(HookEvent.TOOL_CALLED, lambda event, task: later.append(event))

    result = await hooks.trigger(HookEvent.TOOL_CALLED, {"toolName": "x"})

    assert result.blocked
    assert later == []


@pytest.mark.asyncio
async def test_approval_hooks_decide_instead_of_blocking():
    hooks = CallbackHooks()
    hooks.register(HookEvent.HANDLE_APPROVAL, lambda event, task: False)

    result = await hooks.trigger(HookEvent.HANDLE_APPROVAL, {"key": "files---read"})

    assert result.result is False
    assert not result.blocked


@pytest.mark.asyncio
async def test_raising_hook_is_skipped():
    hooks = CallbackHooks()

    def broken(event, task):
        raise RuntimeError("bad hook")

    hooks.register(HookEvent.AGENT_FINISHED, broken)
    hooks.register(HookEvent.AGENT_FINISHED, lambda event, task: {"seen": True})

    result = await hooks.trigger(HookEvent.AGENT_FINISHED, {})

    assert result.event == {"seen": True}


@pytest.mark.asyncio
async def test_hooks_registered_by_name():
    hooks = CallbackHooks()
    hooks.register("onToolFinished", lambda event, task: {"ok": True})
    result = await hooks.trigger(HookEvent.TOOL_FINISHED, {})
    assert result.event == {"ok": True}
