from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import Mapping, Protocol

logger = logging.getLogger(__name__)


class ToolApprovalState(StrEnum):
    ALWAYS = "always"
    ASK = "ask"
    NEVER = "never"


def approval_state(approvals: Mapping[str, ToolApprovalState], tool_key: str) -> ToolApprovalState:
    """Missing entries mean ASK."""

    return approvals.get(tool_key, ToolApprovalState.ASK)


@dataclass(frozen=True, slots=True)
class ApprovalDecision:
    approved: bool
    note: str | None = None
    # Approve this key for the rest of the run without asking again.
    remember: bool = False


class Approver(Protocol):
    async def ask(self, key: str, question: str, subject: str | None = None) -> ApprovalDecision: ...


class AutoApprover:
    """Approves everything. Used for unattended runs."""

    async def ask(self, key: str, question: str, subject: str | None = None) -> ApprovalDecision:
        logger.debug("Auto-approving %s", key)
        return ApprovalDecision(approved=True)


class ConsoleApprover:
    """Interactive approval on stdin: y / n / a (always for this run), anything else is a denial note."""

    def __init__(self, *, input_fn=input, output_fn=print) -> None:
        self._input = input_fn
        self._output = output_fn
        self._lock = asyncio.Lock()

    def _prompt(self, question: str, subject: str | None) -> ApprovalDecision:
        self._output(question)
        if subject:
            self._output(f"  {subject}")
        answer = self._input("[y]es / [n]o / [a]lways, or type a reason to deny: ").strip()
        lowered = answer.lower()
        if lowered in {"y", "yes"}:
            return ApprovalDecision(approved=True)
        if lowered in {"a", "always"}:
            return ApprovalDecision(approved=True, remember=True)
        if lowered in {"", "n", "no"}:
            return ApprovalDecision(approved=False)
        return ApprovalDecision(approved=False, note=answer)

    async def ask(self, key: str, question: str, subject: str | None = None) -> ApprovalDecision:
        # One question on the terminal at a time, even when tool calls run concurrently.
        async with self._lock:
            return await asyncio.to_thread(self._prompt, question, subject)
