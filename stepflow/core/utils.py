"""Shared value helpers for templates, control nodes and steps.

Field paths use dotted/bracketed accessors: ``a.b[0].c``, ``[2]``, ``items.0``
and ``["key with.dots"]``.
"""

import json
import math
import re
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

_PATH_TOKEN = re.compile(r"\[(\d+)\]|\[\"([^\"]*)\"\]|\['([^']*)'\]|([^.\[\]]+)")

_MISSING = object()


def parse_path(path: str) -> list[str | int]:
    """Split a field path into keys and list indices.

    Raises:
        ValueError: If the path contains an unbalanced or empty bracket.
    """
    parts: list[str | int] = []
    path = path.strip()
    pos = 0
    while pos < len(path):
        if path[pos] == ".":
            pos += 1
            continue
        match = _PATH_TOKEN.match(path, pos)
        if not match:
            raise ValueError(f"Malformed field path '{path}' at position {pos}")
        index, double_quoted, single_quoted, name = match.groups()
        if index is not None:
            parts.append(int(index))
        elif double_quoted is not None:
            parts.append(double_quoted)
        elif single_quoted is not None:
            parts.append(single_quoted)
        else:
            parts.append(name)
        pos = match.end()
    return parts


def traverse(value: Any, parts: list[str | int]) -> Any:
    """Walk a parsed path through nested mappings and lists.

    Raises:
        LookupError: With a readable reason when a key or index is missing.
    """
    current = value
    for part in parts:
        if isinstance(current, Mapping):
            key = part if isinstance(part, str) else str(part)
            if key not in current:
                raise LookupError(f"key '{key}' not found")
            current = current[key]
        elif isinstance(current, (list, tuple)):
            if isinstance(part, str):
                if not part.isdigit():
                    raise LookupError(f"cannot read '{part}' from a list")
                part = int(part)
            if part >= len(current):
                raise LookupError(f"index {part} out of range (length {len(current)})")
            current = current[part]
        else:
            raise LookupError(f"cannot read '{part}' from {type(current).__name__}")
    return current


def get_field(item: Any, path: str, default: Any = None) -> Any:
    """Lenient path lookup used for per-item field access"""
    try:
        return traverse(item, parse_path(path))
    except (ValueError, LookupError):
        return default


def has_field(item: Any, path: str) -> bool:
    return get_field(item, path, _MISSING) is not _MISSING


def stringify(value: Any) -> str:
    """Render a resolved value for string interpolation.

    None becomes "", booleans are lowercase, containers become compact JSON.
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, separators=(",", ":"), default=str)
    return str(value)


def to_number(value: Any) -> float | None:
    """Parse a number from native or string values; None when not numeric"""
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return None if math.isnan(value) else float(value)
    if isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
        return None if math.isnan(number) else number
    return None


def parse_datetime(value: Any) -> datetime | None:
    """Parse ISO-8601 strings, datetimes and epoch milliseconds into aware UTC datetimes"""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def load_json_maybe(value: Any) -> Any:
    """Decode a JSON string, returning other values (and non-JSON strings) unchanged"""
    if isinstance(value, str):
        text = value.strip()
        if text[:1] in ("{", "[") or text in ("true", "false", "null"):
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                return value
    return value


def as_items(value: Any) -> list:
    """Normalize step input into a list of items"""
    value = load_json_maybe(value)
    if value is None:
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, tuple):
        return list(value)
    return [value]
