from __future__ import annotations

import json
from pathlib import Path
from typing import Any


def _replace_surrogates(text: str) -> str:
    out: list[str] = []
    changed = False
    for ch in text:
        code = ord(ch)
        if 0xD800 <= code <= 0xDFFF:
            out.append("\uFFFD")
            changed = True
        else:
            out.append(ch)
    return "".join(out) if changed else text


def sanitize_json_value(value: Any) -> Any:
    if isinstance(value, str):
        return _replace_surrogates(value)
    if isinstance(value, (list, tuple)):
        return [sanitize_json_value(v) for v in value]
    if isinstance(value, dict):
        out: dict[Any, Any] = {}
        for k, v in value.items():
            key = _replace_surrogates(k) if isinstance(k, str) else k
            out[key] = sanitize_json_value(v)
        return out
    return value


def safe_write_json(path: Path, obj: Any) -> None:
    """Write JSON through a sibling tmp file so readers never observe a half-written record."""

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(
        json.dumps(sanitize_json_value(obj), ensure_ascii=False, indent=2) + "\n",
        encoding="utf-8",
        errors="backslashreplace",
    )
    tmp.replace(path)


def read_json_dict(path: Path, *, error_cls: type[Exception] = ValueError) -> dict[str, Any] | None:
    """Return the JSON object stored at `path`, or None for an empty file."""

    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise
    except OSError as e:
        raise error_cls(f"Failed to read JSON file {path}: {e}") from e
    if not text.strip():
        return None
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as e:
        raise error_cls(f"Failed to parse JSON file {path}: {e}") from e
    if not isinstance(raw, dict):
        raise error_cls(f"Invalid JSON object in file {path}.")
    return raw
