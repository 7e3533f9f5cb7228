from __future__ import annotations

import copy
import json

import pytest

from deskpilot.runtime.context.migrations import CURRENT_CONTEXT_VERSION, migrate_context, migrate_v1_to_v2
from deskpilot.runtime.context.store import ContextStore, context_path
from deskpilot.runtime.errors import ContextStoreError


V1_RECORD = {
    "version": 1,
    "contextMessages": [
        {"role": "user", "content": "hello"},
        {"role": "assistant", "content": "hi there"},
        "garbage",
    ],
    "contextFiles": [{"path": "a.txt"}, 3],
}


def test_v1_to_v2_is_pure_and_deterministic():
    before = copy.deepcopy(V1_RECORD)
    first = migrate_v1_to_v2("t1", V1_RECORD)
    second = migrate_v1_to_v2("t1", V1_RECORD)

    assert V1_RECORD == before
    assert first == second
    assert first["version"] == 2
    ids = [m["id"] for m in first["contextMessages"]]
    assert len(set(ids)) == 2
    assert first["contextMessages"][1]["content"] == [{"type": "text", "text": "hi there"}]
    assert first["contextFiles"] == [{"path": "a.txt"}]


def test_ids_depend_on_task():
    a = migrate_v1_to_v2("t1", V1_RECORD)
    b = migrate_v1_to_v2("t2", V1_RECORD)
    assert a["contextMessages"][0]["id"] != b["contextMessages"][0]["id"]


def test_missing_version_is_treated_as_v1():
    record = {"contextMessages": [{"role": "user", "content": "x"}]}
    migrated = migrate_context("t1", record)
    assert migrated["version"] == CURRENT_CONTEXT_VERSION
    assert migrated["contextMessages"][0]["id"]


def test_current_version_is_untouched():
    record = {"version": CURRENT_CONTEXT_VERSION, "contextMessages": [], "contextFiles": []}
    assert migrate_context("t1", record) is record


def test_newer_version_is_rejected():
    with pytest.raises(ContextStoreError):
        migrate_context("t1", {"version": CURRENT_CONTEXT_VERSION + 1})


@pytest.mark.asyncio
async def test_store_loads_v1_record(tmp_path):
    path = context_path(tmp_path, "t1")
    path.parent.mkdir(parents=True)
    path.write_text(json.dumps(V1_RECORD), encoding="utf-8")

    store = ContextStore(task_id="t1", project_dir=tmp_path)
    await store.load()

    assert [m.role for m in store.messages] == ["user", "assistant"]
    assert store.messages[1].text == "hi there"
    # a.txt does not exist in the task dir and is dropped on load.
    assert store.files == []
