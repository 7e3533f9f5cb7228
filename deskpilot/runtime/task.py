from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Callable

from .context.store import ContextStore
from .ids import new_id, now_ts_ms

logger = logging.getLogger(__name__)


class LogLevel(StrEnum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class TaskLogEntry:
    level: LogLevel
    message: str
    created_at: int = field(default_factory=now_ts_ms)


class Task:
    """
    One conversation: its context store, working directory and running cost.

    User-facing notices (warnings, errors) are kept on the task in `log` and also passed to
    `on_log` when set; they are not part of the model context.
    """

    def __init__(
        self,
        *,
        project_dir: Path,
        task_id: str | None = None,
        working_dir: Path | None = None,
        context: ContextStore | None = None,
        on_log: Callable[[TaskLogEntry], None] | None = None,
    ) -> None:
        self.id = task_id or new_id("task")
        self.project_dir = project_dir.expanduser().resolve()
        self.working_dir = (working_dir or project_dir).expanduser().resolve()
        self.context = context or ContextStore(task_id=self.id, project_dir=self.project_dir, task_dir=self.working_dir)
        self.on_log = on_log
        self.log: list[TaskLogEntry] = []
        self._total_cost = 0.0

    @property
    def agent_total_cost(self) -> float:
        return self._total_cost

    def record_cost(self, total: float) -> float:
        # The running total never decreases.
        self._total_cost = max(self._total_cost, total)
        return self._total_cost

    def add_log_message(self, level: LogLevel, message: str) -> TaskLogEntry:
        entry = TaskLogEntry(level=LogLevel(level), message=message)
        self.log.append(entry)
        if self.on_log is not None:
            self.on_log(entry)
        return entry

    async def load(self) -> None:
        await self.context.load()
        self._total_cost = max(
            [self._total_cost]
            + [m.usage.agent_total_cost for m in self.context.messages if getattr(m, "usage", None) is not None]
        )

    async def delete(self) -> None:
        await self.context.delete()
        logger.info("Deleted task %s", self.id)
