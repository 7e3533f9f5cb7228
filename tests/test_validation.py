from __future__ import annotations

import pytest

from deskpilot.runtime.errors import ToolInputError
from deskpilot.runtime.tools.validation import validate_tool_input

SCHEMA = {
    "type": "object",
    "properties": {"path": {"type": "string"}, "limit": {"type": "integer", "minimum": 1}},
    "required": ["path"],
    "additionalProperties": False,
}


def test_valid_input_passes():
    validate_tool_input("files---read", SCHEMA, {"path": "a", "limit": 3})


def test_errors_name_the_offending_path():
    with pytest.raises(ToolInputError) as info:
        validate_tool_input("files---read", SCHEMA, {"path": "a", "limit": 0})

    assert str(info.value).startswith("limit:")
    assert info.value.tool_name == "files---read"


def test_missing_required_and_extra_keys_are_reported_together():
    with pytest.raises(ToolInputError) as info:
        validate_tool_input("files---read", SCHEMA, {"oops": 1})

    assert len(info.value.details["errors"]) == 2


def test_non_object_input_is_rejected():
    with pytest.raises(ToolInputError, match="must be a JSON object"):
        validate_tool_input("files---read", SCHEMA, ["a"])


def test_broken_schema_is_a_value_error():
    with pytest.raises(ValueError):
        validate_tool_input("files---read", {"type": "nonsense"}, {})
