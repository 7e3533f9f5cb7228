from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from .context.messages import AssistantMessage, ContextMessage, TextPart, UserMessage
from .errors import CancellationToken
from .llm.types import ModelCallRequest, UsageReport

if TYPE_CHECKING:
    from .llm.adapters.base import CallableModel

logger = logging.getLogger(__name__)

SUMMARY_REQUEST = (
    "Summarize our conversation so far so that the work can continue from the summary alone. "
    "Keep the user's goals, decisions made, files touched, commands run and their outcomes, "
    "open problems, and the next steps. Do not call any tools."
)
COMPACTED_USER_TEXT = "Summarize our conversation so far."
CONTINUE_TEMPLATE = (
    "Based on your compacted summary of our previous conversation, please continue our work with my request:\n\n{prompt}"
)


def usage_tokens(report: UsageReport) -> int:
    return report.sent_tokens + report.received_tokens + report.cache_read_tokens


def should_compact(report: UsageReport | None, *, max_input_tokens: int | None, threshold: int) -> bool:
    """True when the last step used more than `threshold` percent of the model's input window. 0 disables."""

    if threshold <= 0 or report is None or not max_input_tokens:
        return False
    return usage_tokens(report) > max_input_tokens * threshold / 100


def continuation_prompt(prompt: str) -> str:
    return CONTINUE_TEMPLATE.format(prompt=prompt)


async def summarize(
    model: "CallableModel",
    messages: list[ContextMessage],
    *,
    system_prompt: str | None,
    cancel: CancellationToken | None = None,
) -> str:
    request = ModelCallRequest(
        system_prompt=system_prompt,
        messages=[*messages, UserMessage(text=SUMMARY_REQUEST)],
    )
    step = await asyncio.to_thread(model.complete, request, cancel=cancel)
    summary = "".join(p.text for p in step.parts if isinstance(p, TextPart)).strip()
    logger.info("Compacted %d message(s) into a %d-char summary", len(messages), len(summary))
    return summary


def compacted_history(summary: str) -> list[ContextMessage]:
    return [UserMessage(text=COMPACTED_USER_TEXT), AssistantMessage(parts=(TextPart(text=summary),))]
