from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Callable, Mapping

from .approval import Approver
from .compaction import compacted_history, continuation_prompt, should_compact, summarize
from .context.messages import (
    AssistantMessage,
    AssistantPart,
    ContextMessage,
    ReasoningPart,
    TextPart,
    ToolCallPart,
    ToolMessage,
    ToolResultPart,
    UserMessage,
)
from .errors import CancellationToken, ConfigurationError, CredentialError, with_credentials_hint
from .hooks import HookEvent, HookManager, NullHooks
from .llm.adapters.base import CallableModel, merge_text_parts
from .llm.errors import LLMRequestError
from .llm.registry import ModelRegistry
from .llm.types import (
    AMBIGUOUS_FINISH_REASONS,
    CallOptions,
    FinishReason,
    Model,
    ModelCallRequest,
    StepResult,
    StreamEvent,
    StreamEventKind,
    UsageReport,
)
from .profile import AgentProfile
from .retry import RetryPolicy
from .task import LogLevel, Task
from .tools.definitions import ToolDefinition, is_helper_tool
from .tools.pipeline import ToolCallClock, ToolOutcome, ToolOutcomeStatus, ToolPipeline
from .tools.repair import prepare_call, regenerate_call

logger = logging.getLogger(__name__)

MAX_AMBIGUOUS_RETRIES = 3

MODEL_NOT_CONFIGURED = "Selected model is not configured. Select another model and try again."
MAX_ITERATIONS_WARNING = (
    "The Agent has reached the maximum number of allowed iterations ({max_iterations}). "
    "To allow more iterations, go to Settings -> Agent -> Parameters and increase Max Iterations."
)
MAX_TOKENS_WARNING = (
    "The Agent has reached the maximum number of allowed tokens. "
    "To allow more tokens, go to Settings -> Agent -> Parameters and increase Max Tokens."
)

EventCallback = Callable[[StreamEvent], Any]


class RunStopReason(StrEnum):
    COMPLETED = "completed"
    LENGTH = "length"
    MAX_ITERATIONS = "max_iterations"
    AMBIGUOUS_FINISH = "ambiguous_finish"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class RunResult:
    """Messages produced by one run, helper self-correction turns excluded."""

    messages: list[ContextMessage] = field(default_factory=list)
    stop_reason: RunStopReason = RunStopReason.COMPLETED
    error: str | None = None
    iterations: int = 0


@dataclass(slots=True)
class _Session:
    profile: AgentProfile
    model: Model
    callable_model: CallableModel
    call_options: CallOptions
    pipeline: ToolPipeline
    system_prompt: str | None
    prompt: str
    cancel: CancellationToken


def filter_result_messages(messages: list[ContextMessage]) -> list[ContextMessage]:
    """Hide self-correction turns: tool messages answering a helper, assistant messages calling one."""

    out: list[ContextMessage] = []
    for message in messages:
        if isinstance(message, ToolMessage) and any(is_helper_tool(p.tool_name) for p in message.parts):
            continue
        if isinstance(message, AssistantMessage) and any(is_helper_tool(c.tool_name) for c in message.tool_calls):
            continue
        out.append(message)
    return out


def _last_usage(messages: list[ContextMessage]) -> UsageReport | None:
    for message in reversed(messages):
        usage = getattr(message, "usage", None)
        if usage is not None:
            return usage
    return None


def build_system_prompt(profile: AgentProfile, *, system_prompt: str | None, files: list[Any]) -> str | None:
    sections = [s.strip() for s in (system_prompt or profile.system_prompt, profile.custom_instructions) if s and s.strip()]
    if files:
        lines = [f"- {f.path}" + (" (read-only)" if f.read_only else "") for f in files]
        sections.append("Files in context:\n" + "\n".join(lines))
    return "\n\n".join(sections) or None


class Orchestrator:
    """
    Drives one task's agent loop: model call, tool execution, context update, repeat.

    One instance per task. The minimum spacing between tool calls is tracked by the
    instance's own `ToolCallClock`, so concurrent tasks never throttle each other.
    """

    def __init__(
        self,
        *,
        task: Task,
        registry: ModelRegistry,
        tools: Mapping[str, ToolDefinition] | None = None,
        approver: Approver | None = None,
        hooks: HookManager | None = None,
        retry_policy: RetryPolicy | None = None,
        on_event: EventCallback | None = None,
        clock: ToolCallClock | None = None,
    ) -> None:
        self.task = task
        self.registry = registry
        self.tools: dict[str, ToolDefinition] = dict(tools or {})
        self.approver = approver
        self.hooks = hooks or NullHooks()
        self.retry_policy = retry_policy or RetryPolicy()
        self.on_event = on_event
        self.clock = clock or ToolCallClock()

    async def _emit(self, event: StreamEvent) -> None:
        if self.on_event is None:
            return
        out = self.on_event(event)
        if inspect.isawaitable(out):
            await out

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(
        self,
        prompt: str,
        *,
        profile: AgentProfile,
        cancel: CancellationToken | None = None,
        system_prompt: str | None = None,
    ) -> RunResult:
        cancel = cancel or CancellationToken()
        started = await self.hooks.trigger(
            HookEvent.AGENT_STARTED,
            {"prompt": prompt, "profileId": profile.id, "providerId": profile.provider_id, "modelId": profile.model_id},
            task=self.task,
        )
        if started.blocked:
            logger.info("Agent run blocked by hook for task %s", self.task.id)
            return RunResult(stop_reason=RunStopReason.BLOCKED)
        effective = started.event.get("prompt")
        prompt = effective if isinstance(effective, str) else prompt

        result = RunResult()
        try:
            result = await self._run(prompt, profile=profile, cancel=cancel, system_prompt=system_prompt)
        finally:
            await self.hooks.trigger(
                HookEvent.AGENT_FINISHED,
                {"prompt": prompt, "resultMessages": [m.to_dict() for m in result.messages], "stopReason": str(result.stop_reason)},
                task=self.task,
            )
        return result

    async def _run(
        self,
        prompt: str,
        *,
        profile: AgentProfile,
        cancel: CancellationToken,
        system_prompt: str | None,
    ) -> RunResult:
        try:
            callable_model, model, call_options = self.registry.create_model(profile.provider_id, profile.model_id)
        except CredentialError as e:
            logger.error("Cannot run agent for task %s: %s", self.task.id, e)
            text = with_credentials_hint(str(e))
            self.task.add_log_message(LogLevel.ERROR, text)
            return RunResult(stop_reason=RunStopReason.ERROR, error=text)
        except ConfigurationError as e:
            logger.error("Cannot run agent for task %s: %s", self.task.id, e)
            text = MODEL_NOT_CONFIGURED
            self.task.add_log_message(LogLevel.ERROR, text)
            return RunResult(stop_reason=RunStopReason.ERROR, error=text)

        tools = dict(self.tools)
        for tool in self.registry.extra_tools(profile.provider_id, profile.model_id):
            tools.setdefault(tool.name, tool)
        pipeline = ToolPipeline(
            tools, profile=profile, approver=self.approver, hooks=self.hooks, clock=self.clock, task=self.task, cancel=cancel
        )
        session = _Session(
            profile=profile,
            model=model,
            callable_model=callable_model,
            call_options=call_options,
            pipeline=pipeline,
            system_prompt=system_prompt,
            prompt=prompt,
            cancel=cancel,
        )

        context = self.task.context
        context.add_user_message(prompt)

        produced: list[ContextMessage] = []
        iterations = 0
        ambiguous_retries = 0
        error_attempts = 0
        stop = RunStopReason.COMPLETED
        error: str | None = None
        try:
            while True:
                if cancel.cancelled:
                    stop = RunStopReason.CANCELLED
                    break
                if iterations >= profile.max_iterations:
                    text = MAX_ITERATIONS_WARNING.format(max_iterations=profile.max_iterations)
                    logger.warning("Max iterations (%d) reached for task %s", profile.max_iterations, self.task.id)
                    self.task.add_log_message(LogLevel.WARNING, text)
                    stop = RunStopReason.MAX_ITERATIONS
                    break

                try:
                    await self._compact_if_needed(session)
                    step = await self._call_model(session)
                except LLMRequestError as e:
                    if cancel.cancelled:
                        stop = RunStopReason.CANCELLED
                        break
                    error_attempts += 1
                    if self.retry_policy.should_retry(e, error_attempts):
                        logger.warning("Retryable error (attempt %d) for task %s: %s", error_attempts, self.task.id, e)
                        await self.retry_policy.wait(error_attempts)
                        continue
                    raise
                error_attempts = 0
                if step is None:
                    stop = RunStopReason.CANCELLED
                    break
                iterations += 1

                messages = await self._process_step(session, step)
                if cancel.cancelled:
                    stop = RunStopReason.CANCELLED
                    break
                produced.extend(messages)
                await self.hooks.trigger(
                    HookEvent.AGENT_STEP_FINISHED,
                    {"finishReason": str(step.finish_reason), "messages": [m.to_dict() for m in messages]},
                    task=self.task,
                )

                finish = step.finish_reason
                if finish in AMBIGUOUS_FINISH_REASONS:
                    if ambiguous_retries < MAX_AMBIGUOUS_RETRIES:
                        ambiguous_retries += 1
                        logger.warning(
                            "Unclear finish reason %r (retry %d/%d) for task %s",
                            step.raw_finish_reason,
                            ambiguous_retries,
                            MAX_AMBIGUOUS_RETRIES,
                            self.task.id,
                        )
                        continue
                    logger.warning("Giving up after %d unclear finish reasons for task %s", ambiguous_retries, self.task.id)
                    stop = RunStopReason.AMBIGUOUS_FINISH
                    break
                if finish is FinishReason.STOP and messages and isinstance(messages[-1], ToolMessage):
                    # The model ended the step on its own tool call; let it see the results.
                    ambiguous_retries += 1
                    logger.info("Model stopped after a tool call; continuing task %s", self.task.id)
                    continue
                ambiguous_retries = 0

                if finish is FinishReason.LENGTH:
                    self.task.add_log_message(LogLevel.WARNING, MAX_TOKENS_WARNING)
                    stop = RunStopReason.LENGTH
                    break
                if finish is not FinishReason.TOOL_CALLS:
                    break
        except asyncio.CancelledError:
            cancel.cancel()
            raise
        except Exception as e:
            if cancel.cancelled:
                stop = RunStopReason.CANCELLED
            else:
                logger.error("Error running agent for task %s: %s", self.task.id, e)
                error = with_credentials_hint(str(e) or e.__class__.__name__)
                self.task.add_log_message(LogLevel.ERROR, error)
                stop = RunStopReason.ERROR
        finally:
            await pipeline.drain()

        return RunResult(
            messages=filter_result_messages(produced), stop_reason=stop, error=error, iterations=iterations
        )

    # ------------------------------------------------------------------
    # Compaction
    # ------------------------------------------------------------------

    async def _compact_if_needed(self, session: _Session) -> bool:
        context = self.task.context
        history = context.messages
        if not should_compact(
            _last_usage(history),
            max_input_tokens=session.model.max_input_tokens,
            threshold=session.profile.context_compacting_threshold,
        ):
            return False

        logger.info("Compacting context for task %s (%d messages)", self.task.id, len(history))
        summary = await summarize(
            session.callable_model,
            history,
            system_prompt=self._system_prompt(session),
            cancel=session.cancel,
        )
        await context.replace_messages(
            [*compacted_history(summary), UserMessage(text=continuation_prompt(session.prompt))]
        )
        return True

    # ------------------------------------------------------------------
    # Model call
    # ------------------------------------------------------------------

    def _system_prompt(self, session: _Session) -> str | None:
        return build_system_prompt(session.profile, system_prompt=session.system_prompt, files=self.task.context.files)

    def _build_request(self, session: _Session) -> ModelCallRequest:
        profile, model = session.profile, session.model
        return ModelCallRequest(
            system_prompt=self._system_prompt(session),
            messages=self.task.context.messages,
            tools=session.pipeline.declarations(),
            max_output_tokens=profile.max_output_tokens or model.max_output_tokens,
            temperature=profile.temperature if profile.temperature is not None else model.temperature,
            options=dict(session.call_options.options),
            parameters=dict(session.call_options.parameters),
        )

    async def _call_model(self, session: _Session) -> StepResult | None:
        request = self._build_request(session)
        if session.call_options.streaming_disabled:
            step = await asyncio.to_thread(session.callable_model.complete, request, cancel=session.cancel)
            return None if session.cancel.cancelled else step
        return await self._stream_step(session, request)

    async def _stream_step(self, session: _Session, request: ModelCallRequest) -> StepResult | None:
        """
        Consume the model's event stream in emission order and forward each event.

        The sync iterator runs on a producer thread feeding an asyncio queue. Returns None
        when the run is cancelled mid-stream; the partial step is discarded.
        """

        loop = asyncio.get_running_loop()
        q: asyncio.Queue[StreamEvent | BaseException | None] = asyncio.Queue()
        cancel = session.cancel

        def _producer() -> None:
            try:
                for ev in session.callable_model.stream(request, cancel=cancel):
                    loop.call_soon_threadsafe(q.put_nowait, ev)
                    if cancel.cancelled:
                        break
                loop.call_soon_threadsafe(q.put_nowait, None)
            except BaseException as e:
                loop.call_soon_threadsafe(q.put_nowait, e)

        threading.Thread(target=_producer, name="deskpilot-llm-stream", daemon=True).start()

        final: StepResult | None = None
        while True:
            item = await q.get()
            if item is None:
                break
            if isinstance(item, BaseException):
                raise item
            if cancel.cancelled:
                return None
            if item.kind is StreamEventKind.FINISH:
                final = item.step
                continue
            await self._emit(item)

        if cancel.cancelled:
            return None
        if final is None:
            raise RuntimeError("Stream ended without a finish event.")
        return final

    # ------------------------------------------------------------------
    # Step processing
    # ------------------------------------------------------------------

    async def _execute_call(
        self, session: _Session, request: ModelCallRequest, call: ToolCallPart
    ) -> tuple[ToolCallPart, ToolOutcome] | None:
        pipeline = session.pipeline
        outcome = await pipeline.invoke(call.tool_call_id, call.tool_name, dict(call.input))
        if outcome.status is not ToolOutcomeStatus.FAILED or not session.profile.repair_tool_errors:
            return call, outcome
        if session.cancel.cancelled:
            return call, outcome

        repaired = await regenerate_call(
            session.callable_model, request, call, str(outcome.output), cancel=session.cancel
        )
        if repaired is None:
            logger.warning("Dropping failed tool call %s (%s)", call.tool_call_id, call.tool_name)
            return None
        return repaired, await pipeline.invoke(repaired.tool_call_id, repaired.tool_name, dict(repaired.input))

    async def _process_step(self, session: _Session, step: StepResult) -> list[ContextMessage]:
        """Run the step's tool calls, then record one assistant message and at most one tool message."""

        request = self._build_request(session)
        prose: list[AssistantPart] = [p for p in merge_text_parts(list(step.parts)) if isinstance(p, (TextPart, ReasoningPart))]
        calls = [prepare_call(p, session.pipeline.tools).call for p in step.parts if isinstance(p, ToolCallPart)]

        executed = await asyncio.gather(*(self._execute_call(session, request, call) for call in calls))
        if session.cancel.cancelled:
            return []

        final_calls: list[ToolCallPart] = []
        results: list[ToolResultPart] = []
        for item in executed:
            if item is None:
                continue
            call, outcome = item
            final_calls.append(call)
            result = ToolResultPart(
                tool_call_id=call.tool_call_id,
                tool_name=call.tool_name,
                output=outcome.output,
                is_error=outcome.is_error,
            )
            results.append(result)
            await self._emit(
                StreamEvent(
                    kind=StreamEventKind.TOOL_RESULT,
                    id=call.tool_call_id,
                    tool_name=call.tool_name,
                    input=dict(outcome.input),
                    output=outcome.output,
                )
            )

        report = self.registry.compute_usage(
            session.model.provider_id,
            session.model,
            step.usage,
            task_total_cost=self.task.agent_total_cost,
            provider_metadata=step.provider_metadata,
        )
        self.task.record_cost(report.agent_total_cost)

        assistant = AssistantMessage(parts=(*prose, *final_calls), usage=None if results else report)
        messages: list[ContextMessage] = []
        context = self.task.context
        if context.add_message(assistant):
            messages.append(assistant)
        if results:
            tool_message = ToolMessage(parts=tuple(results), usage=report)
            context.add_message(tool_message)
            messages.append(tool_message)
        return messages
