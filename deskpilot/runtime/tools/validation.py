from __future__ import annotations

from functools import lru_cache
import json
from typing import Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from ..errors import ToolInputError


@lru_cache(maxsize=256)
def _validator(schema_json: str) -> Draft202012Validator:
    schema = json.loads(schema_json)
    Draft202012Validator.check_schema(schema)
    return Draft202012Validator(schema)


def _error_path(error) -> str:
    parts = [str(p) for p in error.absolute_path]
    return "/".join(parts) if parts else "(root)"


def validate_tool_input(tool_name: str, schema: dict[str, Any], args: Any) -> None:
    """Raise ToolInputError when `args` do not satisfy the tool's input schema."""

    if not isinstance(args, dict):
        raise ToolInputError(
            f"Tool input must be a JSON object, got {type(args).__name__}.", tool_name=tool_name, details={"input": args}
        )
    try:
        validator = _validator(json.dumps(schema or {}, sort_keys=True))
    except SchemaError as e:
        raise ValueError(f"Invalid input schema for tool {tool_name}: {e.message}") from e

    errors = sorted(validator.iter_errors(args), key=lambda e: list(e.absolute_path))
    if not errors:
        return
    messages = [f"{_error_path(e)}: {e.message}" for e in errors[:5]]
    if len(errors) > 5:
        messages.append(f"... ({len(errors) - 5} more)")
    raise ToolInputError(
        "; ".join(messages),
        tool_name=tool_name,
        details={"input": args, "errors": [e.message for e in errors]},
    )
