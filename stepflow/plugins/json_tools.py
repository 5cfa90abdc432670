"""JSON integration: ``json/parse``, ``json/stringify`` and ``json/pick``."""

import json
from typing import Any

from stepflow.core.exceptions import StepExecutionError
from stepflow.core.utils import get_field, has_field


def parse(payload: dict[str, Any]) -> Any:
    text = payload.get("text", payload.get("_input"))
    if not isinstance(text, str):
        raise StepExecutionError("json/parse needs a 'text' string")
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise StepExecutionError(f"Invalid JSON: {e}") from e


def stringify(payload: dict[str, Any]) -> str:
    value = payload["value"] if "value" in payload else payload.get("_input")
    indent = payload.get("indent")
    return json.dumps(value, indent=indent, sort_keys=bool(payload.get("sortKeys")), default=str)


def pick(payload: dict[str, Any]) -> dict[str, Any]:
    """Copy the listed field paths from ``value`` (default: upstream input)"""
    value = payload["value"] if "value" in payload else payload.get("_input")
    fields = payload.get("fields") or []
    if not isinstance(fields, list):
        raise StepExecutionError("json/pick 'fields' must be a list of field paths")
    return {path: get_field(value, path) for path in fields if has_field(value, path)}


STEPS = {
    "parse": parse,
    "stringify": stringify,
    "pick": pick,
}
