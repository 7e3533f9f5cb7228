from __future__ import annotations

import pytest

from deskpilot.runtime.context.messages import AssistantMessage, TextPart
from deskpilot.runtime.error_codes import ErrorCode
from deskpilot.runtime.llm.errors import LLMRequestError
from deskpilot.runtime.llm.types import UsageReport
from deskpilot.runtime.retry import RetryPolicy
from deskpilot.runtime.task import LogLevel, Task


def test_cost_never_decreases(task):
    assert task.record_cost(1.5) == 1.5
    assert task.record_cost(0.2) == 1.5
    assert task.agent_total_cost == 1.5


def test_log_messages_reach_callback(project_dir):
    seen = []
    task = Task(project_dir=project_dir, task_id="t2", on_log=seen.append)

    entry = task.add_log_message("warning", "careful")

    assert entry.level is LogLevel.WARNING
    assert seen == [entry]
    assert task.log == [entry]


@pytest.mark.asyncio
async def test_load_restores_total_cost_from_usage(project_dir):
    first = Task(project_dir=project_dir, task_id="t1")
    report = UsageReport(model="p/m", sent_tokens=10, received_tokens=1, message_cost=0.3, agent_total_cost=0.75)
    first.context.add_message(AssistantMessage(parts=(TextPart(text="hi"),), usage=report))
    await first.context.save()

    second = Task(project_dir=project_dir, task_id="t1")
    await second.load()

    assert second.agent_total_cost == pytest.approx(0.75)
    assert second.context.messages[0].text == "hi"


@pytest.mark.asyncio
async def test_delete_removes_context_file(project_dir):
    task = Task(project_dir=project_dir, task_id="t1")
    task.context.add_user_message("hello")
    await task.context.save()
    assert task.context.path.exists()

    await task.delete()

    assert not task.context.path.exists()


def test_retry_policy_defaults_retry_forever_without_delay():
    policy = RetryPolicy()
    retryable = LLMRequestError("busy", code=ErrorCode.SERVER_ERROR)
    fatal = LLMRequestError("bad", code=ErrorCode.BAD_REQUEST)

    assert policy.should_retry(retryable, 1000)
    assert not policy.should_retry(fatal, 1)
    assert policy.delay_s(5) == 0.0


def test_retry_policy_backoff_is_capped():
    policy = RetryPolicy(max_attempts=3, backoff_s=1.0, backoff_factor=2.0, max_backoff_s=3.0)
    retryable = LLMRequestError("busy", code=ErrorCode.TIMEOUT)

    assert [policy.delay_s(n) for n in (1, 2, 3)] == [1.0, 2.0, 3.0]
    assert policy.should_retry(retryable, 3)
    assert not policy.should_retry(retryable, 4)
