"""Item-shaping steps: Set Fields, Split Out, Limit, Aggregate, Sort, Remove Duplicates.

Each step reads its items from ``items`` in config when present, otherwise
from the upstream input (``_input``). A single object counts as one item.
"""

import json
import re
from typing import Any

from stepflow.core.exceptions import StepExecutionError
from stepflow.core.utils import (
    as_items,
    get_field,
    has_field,
    load_json_maybe,
    parse_datetime,
    parse_path,
    stringify,
    to_number,
)

_ITEM_REFERENCE = re.compile(r"\{\{\s*\$item\.([^}]+?)\s*\}\}")

FIELD_TYPES = ("string", "number", "boolean", "date", "json", "array")


def _items(payload: dict[str, Any]) -> list:
    if payload.get("items") is not None:
        return as_items(payload["items"])
    return as_items(payload.get("_input"))


def _field_list(value: Any) -> list[str]:
    value = load_json_maybe(value)
    if value in (None, ""):
        return []
    if isinstance(value, str):
        return [f.strip() for f in value.split(",") if f.strip()]
    if isinstance(value, list):
        return [str(f).strip() for f in value if str(f).strip()]
    raise StepExecutionError(f"Expected a field name list, got {value!r}")


# =============================================================================
# Set Fields
# =============================================================================


def _resolve_item_refs(value: Any, item: Any) -> Any:
    """Substitute ``{{$item.path}}`` references against the current item"""
    if not isinstance(value, str):
        return value
    whole = _ITEM_REFERENCE.fullmatch(value.strip())
    if whole:
        return get_field(item, whole.group(1))
    return _ITEM_REFERENCE.sub(lambda m: stringify(get_field(item, m.group(1))), value)


def coerce_value(raw: Any, field_type: str) -> Any:
    """Convert a raw field value to the declared type.

    Unparseable numbers become 0, bad dates and JSON become None and
    unparseable arrays become [].
    """
    if field_type == "string":
        return stringify(raw)
    if field_type == "number":
        number = to_number(raw)
        if number is None:
            return 0
        return int(number) if number.is_integer() and not isinstance(raw, float) else number
    if field_type == "boolean":
        if isinstance(raw, bool):
            return raw
        return stringify(raw).strip().lower() in ("true", "1", "yes")
    if field_type == "date":
        parsed = parse_datetime(raw)
        return parsed.isoformat() if parsed else None
    if field_type == "json":
        if not isinstance(raw, str):
            return raw
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return None
    if field_type == "array":
        if isinstance(raw, list):
            return raw
        parsed = load_json_maybe(raw)
        if isinstance(parsed, list):
            return parsed
        if isinstance(raw, str):
            return []
        return [] if raw is None else [raw]
    raise StepExecutionError(
        f"Unknown field type '{field_type}' (expected one of: {', '.join(FIELD_TYPES)})"
    )


def set_fields_step(payload: dict[str, Any]) -> Any:
    """Add or overwrite fields on each input item.

    Config:
        fields: list of ``{"name", "type", "value"}`` rows (or a JSON string).
            Values may use ``{{$item.path}}`` to read from the current item.
        includeInputFields: keep the item's existing fields (default true)

    Returns a list when the input was a list, else a single object.
    """
    rows = load_json_maybe(payload.get("fields") or [])
    if not isinstance(rows, list):
        raise StepExecutionError("Set Fields 'fields' must be a list of rows")
    include = payload.get("includeInputFields", True)
    if isinstance(include, str):
        include = include.strip().lower() != "false"

    source = payload.get("items") if payload.get("items") is not None else payload.get("_input")
    source = load_json_maybe(source)
    items = as_items(source) or [{}]

    results = []
    for item in items:
        record = dict(item) if include and isinstance(item, dict) else {}
        for row in rows:
            if not isinstance(row, dict) or not row.get("name"):
                raise StepExecutionError(f"Set Fields row needs a 'name': {row!r}")
            value = _resolve_item_refs(row.get("value"), item)
            record[row["name"]] = coerce_value(value, row.get("type") or "string")
        results.append(record)

    return results if isinstance(source, list) else results[0]


# =============================================================================
# Split Out
# =============================================================================


def split_out_step(payload: dict[str, Any]) -> list:
    """Turn a list (or object values) at ``fieldPath`` into separate items.

    With ``includeOtherFields`` the item's remaining top-level fields are copied
    onto each produced item.
    """
    field_path = payload.get("fieldPath")
    if not isinstance(field_path, str) or not field_path.strip():
        raise StepExecutionError("Split Out requires 'fieldPath'")
    field_path = field_path.strip()
    include_others = payload.get("includeOtherFields", False)
    parts = parse_path(field_path)
    leaf_name = str(parts[-1]) if parts else field_path

    output = []
    for item in _items(payload):
        value = get_field(item, field_path)
        if value is None:
            continue
        if isinstance(value, dict):
            values = list(value.values())
        elif isinstance(value, list):
            values = value
        else:
            values = [value]

        others = {}
        if include_others and isinstance(item, dict):
            others = {k: v for k, v in item.items() if k != str(parts[0])}
        for element in values:
            if isinstance(element, dict):
                output.append({**others, **element})
            else:
                output.append({**others, leaf_name: element})
    return output


# =============================================================================
# Limit
# =============================================================================


def limit_step(payload: dict[str, Any]) -> list:
    """Keep the first (or last, with ``keep: last``) ``maxItems`` items"""
    max_items = to_number(payload.get("maxItems", 1))
    if max_items is None or max_items < 0:
        raise StepExecutionError(f"maxItems must be >= 0, got {payload.get('maxItems')!r}")
    count = int(max_items)
    items = _items(payload)
    if str(payload.get("keep") or "first").lower() == "last":
        return items[-count:] if count else []
    return items[:count]


# =============================================================================
# Aggregate
# =============================================================================

AGGREGATE_OPERATIONS = ("count", "sum", "average", "min", "max", "collect", "concatenate")


def aggregate_step(payload: dict[str, Any]) -> dict[str, Any]:
    """Reduce a field across items.

    Output: ``{"operation", "field", "result", "count"}``.
    """
    operation = str(payload.get("operation") or "count")
    if operation not in AGGREGATE_OPERATIONS:
        raise StepExecutionError(
            f"Unknown aggregate operation '{operation}' "
            f"(expected one of: {', '.join(AGGREGATE_OPERATIONS)})"
        )
    field = payload.get("field")
    items = _items(payload)

    if field:
        values = [get_field(item, field) for item in items if has_field(item, field)]
    else:
        values = list(items)
    values = [v for v in values if v is not None]

    if operation == "count":
        result: Any = len(values)
    elif operation == "collect":
        result = values
    elif operation == "concatenate":
        separator = payload.get("separator", ", ")
        result = str(separator).join(stringify(v) for v in values)
    else:
        numbers = [n for n in (to_number(v) for v in values) if n is not None]
        if operation == "sum":
            result = sum(numbers)
        elif not numbers:
            result = None
        elif operation == "average":
            result = sum(numbers) / len(numbers)
        elif operation == "min":
            result = min(numbers)
        else:
            result = max(numbers)

    return {"operation": operation, "field": field, "result": result, "count": len(values)}


# =============================================================================
# Sort
# =============================================================================


def _sort_key(value: Any) -> tuple:
    number = to_number(value) if not isinstance(value, str) else None
    if number is not None:
        return (0, number, "")
    if isinstance(value, str):
        return (1, 0, value.lower())
    return (2, 0, json.dumps(value, sort_keys=True, default=str))


def sort_step(payload: dict[str, Any]) -> list:
    """Sort items by ``field`` (``order`` asc/desc). Items missing the field go last."""
    field = payload.get("field")
    descending = str(payload.get("order") or "asc").lower() == "desc"
    items = _items(payload)

    if not field:
        present, missing = list(items), []
    else:
        present = [i for i in items if get_field(i, field) is not None]
        missing = [i for i in items if get_field(i, field) is None]
    key = (lambda i: _sort_key(get_field(i, field))) if field else _sort_key
    return sorted(present, key=key, reverse=descending) + missing


# =============================================================================
# Remove Duplicates
# =============================================================================


def remove_duplicates_step(payload: dict[str, Any]) -> list:
    """Drop items whose ``fields`` (or whole content, when no fields are given)
    were already seen. The first occurrence wins."""
    fields = _field_list(payload.get("fields"))
    seen = set()
    unique = []
    for item in _items(payload):
        if fields:
            key = json.dumps([get_field(item, f) for f in fields], sort_keys=True, default=str)
        else:
            key = json.dumps(item, sort_keys=True, default=str)
        if key in seen:
            continue
        seen.add(key)
        unique.append(item)
    return unique
