from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import replace
from enum import StrEnum
from pathlib import Path
from typing import Any, Iterable

from ..errors import ContextStoreError, MessageNotFoundError
from ..jsonio import read_json_dict, safe_write_json
from .messages import (
    AssistantMessage,
    ContextFile,
    ContextMessage,
    ToolCallPart,
    ToolMessage,
    UserMessage,
    message_from_dict,
)
from .migrations import CURRENT_CONTEXT_VERSION, migrate_context
from .projection import ConnectorMessage, project_messages, render_markdown

logger = logging.getLogger(__name__)

TASKS_DIR = Path(".deskpilot") / "tasks"
AUTOSAVE_DELAY_S = 1.0


class StoreState(StrEnum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED = "loaded"
    DELETED = "deleted"


def context_path(project_dir: Path, task_id: str) -> Path:
    return project_dir / TASKS_DIR / task_id / "context.json"


class ContextStore:
    """
    Ordered, persisted conversation of one task: messages plus attached files.

    All structural edits go through this class so a tool-call part and its tool-result part
    are always added, stripped and dropped together. Mutations while loaded schedule a
    trailing-debounced save on the running event loop; `flush()` forces it.
    """

    def __init__(
        self,
        *,
        task_id: str,
        project_dir: Path,
        task_dir: Path | None = None,
        autosave_delay_s: float = AUTOSAVE_DELAY_S,
    ) -> None:
        self.task_id = task_id
        self._project_dir = project_dir.expanduser().resolve()
        self._task_dir = (task_dir or project_dir).expanduser().resolve()
        self._path = context_path(self._project_dir, task_id)
        self._autosave_delay_s = autosave_delay_s

        self._messages: list[ContextMessage] = []
        self._files: list[ContextFile] = []
        self._state = StoreState.UNLOADED
        self._load_task: asyncio.Task[None] | None = None

        self._autosave_enabled = False
        self._autosave_suspended = 0
        self._dirty = False
        self._autosave_timer: asyncio.TimerHandle | None = None
        self._autosave_task: asyncio.Task[None] | None = None
        self._save_lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def state(self) -> StoreState:
        return self._state

    @property
    def messages(self) -> list[ContextMessage]:
        return list(self._messages)

    @property
    def files(self) -> list[ContextFile]:
        return list(self._files)

    # ---- messages -------------------------------------------------------

    def add_message(self, message: ContextMessage) -> bool:
        """Append a message. Empty assistant messages are dropped; returns whether it was kept."""

        self._ensure_alive()
        if isinstance(message, AssistantMessage) and message.is_empty():
            logger.debug("Task %s: skipping empty assistant message", self.task_id)
            return False
        self._messages.append(message)
        logger.debug("Task %s: added %s message, total %d", self.task_id, message.role, len(self._messages))
        self._changed()
        return True

    def add_user_message(self, text: str) -> UserMessage | None:
        if not text:
            return None
        message = UserMessage(text=text)
        self.add_message(message)
        return message

    def extend(self, messages: Iterable[ContextMessage]) -> None:
        for message in messages:
            self.add_message(message)

    def get_message(self, message_id: str) -> ContextMessage | None:
        index = self._index_of(message_id)
        return self._messages[index] if index is not None else None

    def remove_by_id(self, message_id: str) -> list[str]:
        """
        Remove a message (or, failing that, a tool call) and return the deleted message ids.

        An assistant message holding both prose and tool calls only loses its prose, so a
        pending tool call is never orphaned; its id is still reported so the UI can refresh it.
        """

        self._ensure_alive()
        index = self._index_of(message_id)
        if index is None:
            return self.remove_by_tool_call_id(message_id)

        message = self._messages[index]
        if isinstance(message, AssistantMessage) and message.has_prose() and message.tool_calls:
            kept = tuple(p for p in message.parts if isinstance(p, ToolCallPart))
            self._messages[index] = replace(message, parts=kept)
            logger.debug("Task %s: stripped prose from assistant message %s, kept tool calls", self.task_id, message_id)
            self._changed()
            return [message_id]

        return self._remove_at(index)

    def remove_by_tool_call_id(self, tool_call_id: str) -> list[str]:
        self._ensure_alive()
        order = self._order()
        removed: set[str] = set()

        tool_index = None
        for i, message in enumerate(self._messages):
            if isinstance(message, ToolMessage) and tool_call_id in message.tool_call_ids:
                tool_index = i
                break

        if tool_index is None:
            call_index = self._find_call_owner(tool_call_id, before=len(self._messages))
            if call_index is None:
                logger.error("Task %s: message or tool call not found: %s", self.task_id, tool_call_id)
                raise MessageNotFoundError(f"Message or tool call not found: {tool_call_id}", target_id=tool_call_id)
            removed |= self._strip_tool_call(call_index, tool_call_id)
            self._changed()
            return sorted(removed, key=order.__getitem__)

        removed |= self._strip_tool_result(tool_index, tool_call_id)
        call_index = self._find_call_owner(tool_call_id, before=tool_index)
        if call_index is not None:
            removed |= self._strip_tool_call(call_index, tool_call_id)
        self._changed()
        return sorted(removed, key=order.__getitem__)

    def remove_last_message(self) -> list[str]:
        self._ensure_alive()
        if not self._messages:
            logger.warning("Task %s: attempted to remove last message but the context is empty", self.task_id)
            return []
        return self._remove_at(len(self._messages) - 1)

    def rewind_to_last_user_message(self, *, inclusive: bool = True) -> list[ContextMessage]:
        """Pop messages from the tail back to the most recent user message and return them."""

        self._ensure_alive()
        last_user = None
        for i in range(len(self._messages) - 1, -1, -1):
            if isinstance(self._messages[i], UserMessage):
                last_user = i
                break
        if last_user is None:
            logger.warning("Task %s: no user message found to rewind to", self.task_id)
            return []

        cut = last_user if inclusive else last_user + 1
        removed = self._messages[cut:]
        del self._messages[cut:]
        logger.debug("Task %s: rewound %d messages, total %d", self.task_id, len(removed), len(self._messages))
        if removed:
            self._changed()
        return removed

    def messages_up_to(self, message_id: str) -> list[ContextMessage]:
        """
        Return a copy of the conversation ending at `message_id` (a message id or a tool-call id).

        When the target is an assistant message, its tool calls are dropped. When the target is
        a tool result, the owning assistant message keeps only the calls up to the target, and
        only results for those calls follow it.
        """

        index = self._index_of(message_id)
        if index is None:
            for i, message in enumerate(self._messages):
                if isinstance(message, ToolMessage) and message_id in message.tool_call_ids:
                    index = i
                    break
        if index is None:
            raise MessageNotFoundError(f"Message with id {message_id} not found", target_id=message_id)

        target = self._messages[index]
        head = list(self._messages[: index + 1])

        if isinstance(target, AssistantMessage):
            head[index] = replace(target, parts=tuple(p for p in target.parts if not isinstance(p, ToolCallPart)))
            return head

        if isinstance(target, ToolMessage):
            tool_call_id = message_id if message_id in target.tool_call_ids else target.tool_call_ids[0]
            owner = self._find_call_owner(tool_call_id, before=index)
            if owner is not None:
                assistant = self._messages[owner]
                assert isinstance(assistant, AssistantMessage)
                cut = next(
                    i for i, p in enumerate(assistant.parts)
                    if isinstance(p, ToolCallPart) and p.tool_call_id == tool_call_id
                )
                trimmed = replace(assistant, parts=assistant.parts[: cut + 1])
                kept_calls = {c.tool_call_id for c in trimmed.tool_calls}
                out: list[ContextMessage] = list(self._messages[:owner]) + [trimmed]
                for message in self._messages[owner + 1 : index + 1]:
                    if isinstance(message, ToolMessage):
                        if message.parts[0].tool_call_id in kept_calls:
                            out.append(message)
                    else:
                        out.append(message)
                return out
        return head

    def clear_messages(self) -> None:
        self._ensure_alive()
        self._messages = []
        self._changed()

    async def replace_messages(self, messages: Iterable[ContextMessage]) -> None:
        """Swap the whole message list, flushing any pending write first."""

        await self.flush()
        self.suspend_autosave()
        try:
            self._messages = list(messages)
            self._dirty = True
        finally:
            self.resume_autosave()
        await self.flush()

    def project(self) -> list[ConnectorMessage]:
        return project_messages(self._messages)

    def render_markdown(self) -> str:
        return render_markdown(self._messages)

    # ---- files ----------------------------------------------------------

    def _abs(self, path: str) -> Path:
        return (self._task_dir / path).resolve()

    def add_file(self, path: str, *, read_only: bool = False) -> list[ContextFile]:
        """Attach a file (or every file below a directory). Duplicates and missing paths are skipped."""

        self._ensure_alive()
        absolute = self._abs(path)
        if any(self._abs(f.path) == absolute for f in self._files):
            return []

        if absolute.is_dir():
            added: list[ContextFile] = []
            try:
                entries = sorted(os.listdir(absolute))
            except OSError:
                logger.exception("Task %s: failed to read directory %s", self.task_id, path)
                return added
            for name in entries:
                added.extend(self.add_file(os.path.join(path, name), read_only=read_only))
            return added

        if not absolute.exists():
            logger.debug("Task %s: skipping missing file %s", self.task_id, path)
            return []

        entry = ContextFile(path=path, read_only=read_only)
        self._files.append(entry)
        self._changed()
        return [entry]

    def drop_file(self, path: str) -> list[ContextFile]:
        self._ensure_alive()
        absolute = self._abs(path)
        kept: list[ContextFile] = []
        dropped: list[ContextFile] = []
        for f in self._files:
            f_abs = self._abs(f.path)
            if f_abs == absolute or absolute in f_abs.parents:
                dropped.append(f)
            else:
                kept.append(f)
        if dropped:
            self._files = kept
            self._changed()
        return dropped

    def set_files(self, files: Iterable[ContextFile]) -> None:
        self._ensure_alive()
        self._files = list(files)
        self._changed()

    def clear_files(self) -> None:
        self._ensure_alive()
        self._files = []
        self._changed()

    # ---- persistence ----------------------------------------------------

    def to_record(self) -> dict[str, Any]:
        return {
            "version": CURRENT_CONTEXT_VERSION,
            "contextMessages": [m.to_dict() for m in self._messages],
            "contextFiles": [f.to_dict() for f in self._files],
        }

    async def save(self) -> None:
        self._ensure_alive()
        record = self.to_record()
        async with self._save_lock:
            try:
                await asyncio.to_thread(safe_write_json, self._path, record)
            except OSError:
                logger.exception("Task %s: failed to save context to %s", self.task_id, self._path)
                raise
            self._dirty = False
        logger.debug("Task %s: context saved to %s", self.task_id, self._path)

    async def load(self) -> None:
        if self._state is StoreState.LOADED:
            return
        self._ensure_alive()
        if self._load_task is None:
            self._load_task = asyncio.get_running_loop().create_task(self._load_internal())
        task = self._load_task
        try:
            # Shielded so one cancelled caller does not abort the load shared with the others.
            await asyncio.shield(task)
        finally:
            if task.done() and self._load_task is task:
                self._load_task = None

    async def _load_internal(self) -> None:
        self._state = StoreState.LOADING
        self._autosave_enabled = False
        try:
            await self._read_record()
        except BaseException:
            self._state = StoreState.UNLOADED
            logger.exception("Task %s: failed to load context from %s", self.task_id, self._path)
            raise
        finally:
            self._autosave_enabled = True

    async def _read_record(self) -> None:
        try:
            raw = await asyncio.to_thread(read_json_dict, self._path, error_cls=ContextStoreError)
        except FileNotFoundError:
            logger.debug("Task %s: no stored context at %s", self.task_id, self._path)
            self._state = StoreState.LOADED
            return
        if raw is None:
            logger.debug("Task %s: stored context is empty", self.task_id)
            self._state = StoreState.LOADED
            return

        record = migrate_context(self.task_id, raw)
        messages: list[ContextMessage] = []
        for item in record.get("contextMessages") or []:
            if not isinstance(item, dict):
                continue
            try:
                messages.append(message_from_dict(item))
            except ContextStoreError as e:
                logger.warning("Task %s: skipping unreadable context message: %s", self.task_id, e)
        files: list[ContextFile] = []
        for item in record.get("contextFiles") or []:
            if isinstance(item, dict):
                try:
                    files.append(ContextFile.from_dict(item))
                except ContextStoreError as e:
                    logger.warning("Task %s: skipping unreadable context file: %s", self.task_id, e)

        self._messages = messages
        self._files = [f for f in files if self._abs(f.path).exists()]
        self._state = StoreState.LOADED
        logger.info("Task %s: context loaded from %s", self.task_id, self._path)

    async def flush(self) -> None:
        """Cancel the debounce timer and write now if anything is pending."""

        if self._state is StoreState.DELETED:
            return
        if self._autosave_timer is not None:
            self._autosave_timer.cancel()
            self._autosave_timer = None
        if self._autosave_task is not None:
            running = self._autosave_task
            self._autosave_task = None
            await asyncio.gather(running, return_exceptions=True)
        if self._dirty:
            await self.save()

    async def delete(self) -> None:
        """Remove the backing record. Terminal: the store rejects further edits."""

        if self._autosave_timer is not None:
            self._autosave_timer.cancel()
            self._autosave_timer = None
        if self._autosave_task is not None:
            await asyncio.gather(self._autosave_task, return_exceptions=True)
            self._autosave_task = None
        async with self._save_lock:
            try:
                self._path.unlink()
                logger.info("Task %s: context deleted at %s", self.task_id, self._path)
            except FileNotFoundError:
                pass
        self._state = StoreState.DELETED
        self._autosave_enabled = False
        self._dirty = False

    # ---- autosave -------------------------------------------------------

    def enable_autosave(self) -> None:
        self._autosave_enabled = True

    def suspend_autosave(self) -> None:
        self._autosave_suspended += 1
        if self._autosave_timer is not None:
            self._autosave_timer.cancel()
            self._autosave_timer = None

    def resume_autosave(self) -> None:
        if self._autosave_suspended == 0:
            return
        self._autosave_suspended -= 1
        if self._autosave_suspended == 0 and self._dirty:
            self._schedule_autosave()

    @property
    def autosave_active(self) -> bool:
        return self._autosave_enabled and self._autosave_suspended == 0 and self._state is StoreState.LOADED

    def _changed(self) -> None:
        self._dirty = True
        self._schedule_autosave()

    def _schedule_autosave(self) -> None:
        if not self.autosave_active:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: the change stays dirty until an explicit flush()/save().
            return
        if self._autosave_timer is not None:
            self._autosave_timer.cancel()
        self._autosave_timer = loop.call_later(self._autosave_delay_s, self._fire_autosave)

    def _fire_autosave(self) -> None:
        self._autosave_timer = None
        if not self.autosave_active or not self._dirty:
            return
        self._autosave_task = asyncio.get_running_loop().create_task(self._autosave())

    async def _autosave(self) -> None:
        try:
            await self.save()
        except OSError:
            # Logged by save(); the change stays dirty for the next attempt.
            pass

    # ---- internals ------------------------------------------------------

    def _ensure_alive(self) -> None:
        if self._state is StoreState.DELETED:
            raise ContextStoreError(f"Context for task {self.task_id} was deleted.")

    def _order(self) -> dict[str, int]:
        return {m.id: i for i, m in enumerate(self._messages)}

    def _index_of(self, message_id: str) -> int | None:
        for i, message in enumerate(self._messages):
            if message.id == message_id:
                return i
        return None

    def _find_call_owner(self, tool_call_id: str, *, before: int) -> int | None:
        for i in range(min(before, len(self._messages)) - 1, -1, -1):
            message = self._messages[i]
            if isinstance(message, AssistantMessage) and any(c.tool_call_id == tool_call_id for c in message.tool_calls):
                return i
        return None

    def _find_result_owner(self, tool_call_id: str, *, after: int) -> int | None:
        for i in range(after + 1, len(self._messages)):
            message = self._messages[i]
            if isinstance(message, ToolMessage) and tool_call_id in message.tool_call_ids:
                return i
        return None

    def _strip_tool_call(self, index: int, tool_call_id: str) -> set[str]:
        message = self._messages[index]
        assert isinstance(message, AssistantMessage)
        parts = tuple(p for p in message.parts if not (isinstance(p, ToolCallPart) and p.tool_call_id == tool_call_id))
        # A tool-use step with no calls left is spent; its prose only introduced those calls.
        if not any(isinstance(p, ToolCallPart) for p in parts):
            del self._messages[index]
            logger.debug("Task %s: removed assistant message %s emptied by tool call removal", self.task_id, message.id)
            return {message.id}
        self._messages[index] = replace(message, parts=parts)
        return set()

    def _strip_tool_result(self, index: int, tool_call_id: str) -> set[str]:
        message = self._messages[index]
        assert isinstance(message, ToolMessage)
        parts = tuple(p for p in message.parts if p.tool_call_id != tool_call_id)
        if not parts:
            del self._messages[index]
            logger.debug("Task %s: removed tool message %s emptied by result removal", self.task_id, message.id)
            return {message.id}
        self._messages[index] = ToolMessage(parts=parts, id=message.id, usage=message.usage)
        return set()

    def _remove_at(self, index: int) -> list[str]:
        order = self._order()
        message = self._messages.pop(index)
        removed = {message.id}

        if isinstance(message, ToolMessage):
            for tool_call_id in message.tool_call_ids:
                owner = self._find_call_owner(tool_call_id, before=index)
                if owner is not None:
                    dropped = self._strip_tool_call(owner, tool_call_id)
                    removed |= dropped
                    if dropped:
                        index -= 1
        elif isinstance(message, AssistantMessage):
            # The answering results would be orphaned; strip them as well.
            for call in message.tool_calls:
                result_index = self._find_result_owner(call.tool_call_id, after=index - 1)
                if result_index is not None:
                    removed |= self._strip_tool_result(result_index, call.tool_call_id)

        logger.debug("Task %s: removed %s message %s, total %d", self.task_id, message.role, message.id, len(self._messages))
        self._changed()
        return sorted(removed, key=order.__getitem__)
