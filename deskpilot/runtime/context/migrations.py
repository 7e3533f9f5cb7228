from __future__ import annotations

import copy
import logging
import uuid
from typing import Any, Callable

from ..errors import ContextStoreError

logger = logging.getLogger(__name__)

CURRENT_CONTEXT_VERSION = 2


def migrate_v1_to_v2(task_id: str, record: dict[str, Any]) -> dict[str, Any]:
    """
    Version 1 stored messages without ids and allowed plain-string assistant content.

    Ids are derived from the task id and position so the migration stays a pure function
    of its input.
    """

    out = copy.deepcopy(record)
    messages_in = out.get("contextMessages")
    messages: list[dict[str, Any]] = []
    if isinstance(messages_in, list):
        for index, raw in enumerate(messages_in):
            if not isinstance(raw, dict):
                continue
            msg = dict(raw)
            if not isinstance(msg.get("id"), str) or not msg["id"]:
                msg["id"] = str(uuid.uuid5(uuid.NAMESPACE_URL, f"deskpilot:{task_id}:{index}"))
            if msg.get("role") == "assistant" and isinstance(msg.get("content"), str):
                text = msg["content"]
                msg["content"] = [{"type": "text", "text": text}] if text else []
            messages.append(msg)
    out["contextMessages"] = messages

    files_in = out.get("contextFiles")
    out["contextFiles"] = [f for f in files_in if isinstance(f, dict)] if isinstance(files_in, list) else []
    out["version"] = 2
    return out


_MIGRATIONS: dict[int, Callable[[str, dict[str, Any]], dict[str, Any]]] = {
    1: migrate_v1_to_v2,
}


def migrate_context(task_id: str, record: dict[str, Any]) -> dict[str, Any]:
    version = record.get("version")
    if not isinstance(version, int):
        version = 1
    if version > CURRENT_CONTEXT_VERSION:
        raise ContextStoreError(f"Context version {version} is newer than supported version {CURRENT_CONTEXT_VERSION}.")
    if version == CURRENT_CONTEXT_VERSION:
        return record

    logger.debug("Migrating context for task %s from version %s to %s", task_id, version, CURRENT_CONTEXT_VERSION)
    migrated = record
    while version < CURRENT_CONTEXT_VERSION:
        step = _MIGRATIONS.get(version)
        if step is None:
            raise ContextStoreError(f"No context migration from version {version}.")
        migrated = step(task_id, migrated)
        version += 1
    migrated["version"] = CURRENT_CONTEXT_VERSION
    return migrated
