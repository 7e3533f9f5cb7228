from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Iterator

import pytest

from deskpilot.runtime.context.messages import ReasoningPart, TextPart, ToolCallPart
from deskpilot.runtime.errors import CancellationToken
from deskpilot.runtime.llm.adapters.base import ModelListResult
from deskpilot.runtime.llm.costs import build_usage_report
from deskpilot.runtime.llm.model_info import ModelInfoCatalog
from deskpilot.runtime.llm.registry import ModelRegistry
from deskpilot.runtime.llm.types import (
    CallOptions,
    FinishReason,
    LLMUsage,
    Model,
    ModelCallRequest,
    ProviderKind,
    ProviderProfile,
    StepResult,
    StreamEvent,
    StreamEventKind,
)
from deskpilot.runtime.task import Task
from deskpilot.runtime.tools.definitions import ToolDefinition


def text_step(text: str, finish: FinishReason | None = FinishReason.STOP, *, usage: LLMUsage | None = None) -> StepResult:
    return StepResult(parts=[TextPart(text=text)], finish_reason=finish, raw_finish_reason=str(finish), usage=usage)


def tool_step(*calls: tuple[str, str, dict], text: str = "", finish: FinishReason = FinishReason.TOOL_CALLS) -> StepResult:
    parts: list[Any] = [TextPart(text=text)] if text else []
    parts.extend(ToolCallPart(tool_call_id=cid, tool_name=name, input=args) for cid, name, args in calls)
    return StepResult(parts=parts, finish_reason=finish, raw_finish_reason=str(finish))


def events_from_step(step: StepResult) -> Iterator[StreamEvent]:
    """Replay a finished step as the event sequence a streaming backend would emit."""

    for index, part in enumerate(step.parts):
        part_id = str(index)
        if isinstance(part, ReasoningPart):
            yield StreamEvent(kind=StreamEventKind.REASONING_START, id=part_id)
            yield StreamEvent(kind=StreamEventKind.REASONING_DELTA, id=part_id, delta=part.text)
        elif isinstance(part, TextPart):
            yield StreamEvent(kind=StreamEventKind.TEXT_START, id=part_id)
            yield StreamEvent(kind=StreamEventKind.TEXT_DELTA, id=part_id, delta=part.text)
            yield StreamEvent(kind=StreamEventKind.TEXT_END, id=part_id)
        elif isinstance(part, ToolCallPart):
            yield StreamEvent(kind=StreamEventKind.TOOL_INPUT_START, id=part.tool_call_id, tool_name=part.tool_name)
            yield StreamEvent(
                kind=StreamEventKind.TOOL_CALL, id=part.tool_call_id, tool_name=part.tool_name, input=dict(part.input)
            )
    yield StreamEvent(kind=StreamEventKind.FINISH, step=step)


class ScriptedModel:
    """Plays back a list of StepResults (or exceptions) one per call, sharing one script across calls."""

    def __init__(self, model: Model, script: list[StepResult | BaseException]) -> None:
        self.model = model
        self.script = script
        self.requests: list[ModelCallRequest] = []
        self.stream_calls = 0
        self.complete_calls = 0
        self._lock = threading.Lock()

    def _next(self, request: ModelCallRequest) -> StepResult:
        with self._lock:
            self.requests.append(request)
            if not self.script:
                raise AssertionError("model script exhausted")
            item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    def complete(self, request: ModelCallRequest, *, cancel: CancellationToken | None = None) -> StepResult:
        self.complete_calls += 1
        return self._next(request)

    def stream(self, request: ModelCallRequest, *, cancel: CancellationToken | None = None) -> Iterator[StreamEvent]:
        self.stream_calls += 1
        yield from events_from_step(self._next(request))


class FakeAdapter:
    kind = ProviderKind.OPENAI_COMPATIBLE

    def __init__(self, script: list[StepResult | BaseException] | None = None, *, max_input_tokens: int | None = None) -> None:
        self.script = script if script is not None else []
        self.max_input_tokens = max_input_tokens
        self.models: list[ScriptedModel] = []
        self.load_calls: list[str] = []
        self.fail_with: str | None = None

    def load_models(self, profile: ProviderProfile) -> ModelListResult:
        self.load_calls.append(profile.id)
        if self.fail_with is not None:
            return ModelListResult(success=False, error=self.fail_with)
        return ModelListResult(
            models=[
                Model(
                    id=model_id,
                    provider_id=profile.id,
                    max_input_tokens=self.max_input_tokens,
                    input_cost_per_token=0.001,
                    output_cost_per_token=0.002,
                )
                for model_id in profile.models
            ]
        )

    def create_callable_model(self, profile: ProviderProfile, model: Model, call_options: CallOptions) -> ScriptedModel:
        scripted = ScriptedModel(model, self.script)
        self.models.append(scripted)
        return scripted

    def compute_usage(self, model, usage, *, task_total_cost, provider_metadata=None):
        return build_usage_report(model, usage, task_total_cost=task_total_cost)


def fake_profile(provider_id: str = "fake", *, models: list[str] | None = None, **kwargs: Any) -> ProviderProfile:
    return ProviderProfile(id=provider_id, kind=ProviderKind.OPENAI_COMPATIBLE, models=models or ["m1"], **kwargs)


def make_registry(adapter: FakeAdapter, *providers: ProviderProfile, overrides=()) -> ModelRegistry:
    return ModelRegistry(
        providers=providers or (fake_profile(),),
        overrides=overrides,
        adapters={ProviderKind.OPENAI_COMPATIBLE: adapter},
        catalog=ModelInfoCatalog(entries={}),
    )


def echo_tool(name: str = "files---read", *, calls: list[dict] | None = None) -> ToolDefinition:
    def _execute(args: dict[str, Any]) -> dict[str, Any]:
        if calls is not None:
            calls.append(dict(args))
        return {"echo": args}

    return ToolDefinition(
        name=name,
        description="Echo the input back.",
        execute=_execute,
        input_schema={"type": "object", "properties": {"path": {"type": "string"}}, "required": ["path"]},
    )


def failing_tool(name: str = "shell---run", message: str = "boom") -> ToolDefinition:
    def _execute(args: dict[str, Any]) -> Any:
        raise RuntimeError(message)

    return ToolDefinition(name=name, description="Always fails.", execute=_execute)


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    return tmp_path


@pytest.fixture
def task(project_dir: Path) -> Task:
    return Task(project_dir=project_dir, task_id="t1")
