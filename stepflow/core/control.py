"""Built-in control nodes: Condition, Switch, Filter, Loop Over Batches, Merge.

From the dispatcher's point of view these are ordinary steps taking the
resolved payload. The scheduler interprets their output when selecting
outgoing edges:

- condition / switch: ``branch`` names the single edge label to follow
- filter: ``kept`` and ``rejected`` each fire when non-empty
- loop-over-batches: ``batches`` drives the iteration, ``done`` fires last
- merge: output is the combined list; it runs once all predecessors are terminal

Payload keys supplied by the scheduler: ``_input`` (first arriving value),
``_inputs`` (all arriving values in edge declaration order) and ``_context``.
"""

import logging
from collections.abc import Mapping
from typing import Any

from stepflow.core.conditions import (
    DEFAULT_MAX_EXPRESSION_LENGTH,
    evaluate_condition,
    evaluate_rule,
    evaluate_structured,
    parse_structured,
)
from stepflow.core.exceptions import NoMatchingBranchError, StepExecutionError
from stepflow.core.utils import as_items, get_field, has_field, load_json_maybe, to_number

logger = logging.getLogger(__name__)

SWITCH_CATCH_ALL = "always"

_FIELD_PATH_CHARS = frozenset("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789_.[]")


def _input_items(payload: Mapping[str, Any], key: str = "items") -> list:
    if key in payload and payload[key] is not None:
        return as_items(payload[key])
    return as_items(payload.get("_input"))


# =============================================================================
# Condition
# =============================================================================


def condition_step(
    payload: dict[str, Any], max_expression_length: int = DEFAULT_MAX_EXPRESSION_LENGTH
) -> dict[str, Any]:
    """Evaluate a single boolean condition.

    Returns:
        ``{"branch": "true" | "false", "result": bool}``
    """
    if "condition" not in payload:
        raise StepExecutionError("Condition node requires a 'condition' value")
    result = evaluate_condition(
        payload["condition"],
        {"input": payload.get("_input"), "inputs": payload.get("_inputs", [])},
        max_expression_length,
    )
    return {"branch": "true" if result else "false", "result": result}


# =============================================================================
# Switch
# =============================================================================


def switch_step(payload: dict[str, Any]) -> dict[str, Any]:
    """Route to the first rule whose comparison matches the subject value.

    Rules are ``{"output", "operator", "value", "dataType"?}``. The ``always``
    operator matches unconditionally. ``fallbackOutput`` is the explicit default.

    Raises:
        NoMatchingBranchError: No rule matched and no fallback is configured.
    """
    subject = payload["value"] if "value" in payload else payload.get("_input")
    rules = load_json_maybe(payload.get("rules") or [])
    if not isinstance(rules, list):
        raise StepExecutionError("Switch 'rules' must be a list")

    for index, rule in enumerate(rules):
        if not isinstance(rule, Mapping) or rule.get("output") in (None, ""):
            raise StepExecutionError(f"Switch rule {index} needs an 'output' name")
        operator = rule.get("operator", "equals")
        if operator == SWITCH_CATCH_ALL or evaluate_rule(
            subject, operator, rule.get("value"), rule.get("dataType")
        ):
            return {"branch": str(rule["output"]), "matchedRule": index}

    fallback = payload.get("fallbackOutput")
    if fallback not in (None, ""):
        return {"branch": str(fallback), "matchedRule": None}
    raise NoMatchingBranchError(
        f"No switch rule matched value {subject!r} and no fallbackOutput is configured"
    )


# =============================================================================
# Filter
# =============================================================================


def _item_operand(item: Any):
    """Read bare field paths from the item; other values pass through"""

    def operand(value: Any) -> Any:
        if isinstance(value, str):
            text = value.strip()
            if text and set(text) <= _FIELD_PATH_CHARS and to_number(text) is None:
                if has_field(item, text):
                    return get_field(item, text)
        return value

    return operand


def filter_step(
    payload: dict[str, Any], max_expression_length: int = DEFAULT_MAX_EXPRESSION_LENGTH
) -> dict[str, Any]:
    """Partition items by a per-item predicate.

    The predicate is ``conditions`` (structured; field paths in ``leftValue`` /
    ``rightValue`` are read from each item) or ``condition`` (structured, or a
    sandboxed expression with ``item`` and ``index`` bound).

    Returns:
        ``{"kept": [...], "rejected": [...]}``
    """
    items = _input_items(payload)
    predicate = payload.get("conditions", payload.get("condition"))
    if predicate is None:
        raise StepExecutionError("Filter node requires 'conditions' or 'condition'")

    structured = parse_structured(predicate)
    kept, rejected = [], []
    for index, item in enumerate(items):
        if structured is not None:
            matched = evaluate_structured(structured, _item_operand(item))
        else:
            matched = evaluate_condition(
                predicate, {"item": item, "index": index}, max_expression_length
            )
        (kept if matched else rejected).append(item)
    return {"kept": kept, "rejected": rejected}


# =============================================================================
# Loop Over Batches
# =============================================================================


def loop_over_batches_step(payload: dict[str, Any]) -> dict[str, Any]:
    """Split the input items into fixed-size batches.

    ``batchSize`` defaults to the whole array; the trailing batch may be short.
    The scheduler runs the body once per batch and records the accumulated
    results as this node's final output.
    """
    items = _input_items(payload)
    raw_size = payload.get("batchSize")
    if raw_size in (None, ""):
        size = max(len(items), 1)
    else:
        number = to_number(raw_size)
        if number is None or number < 1 or not float(number).is_integer():
            raise StepExecutionError(f"batchSize must be an integer >= 1, got {raw_size!r}")
        size = int(number)

    batches = [items[i : i + size] for i in range(0, len(items), size)]
    logger.debug(f"Loop split {len(items)} items into {len(batches)} batches of {size}")
    return {"batches": batches, "batchSize": size, "itemCount": len(items)}


# =============================================================================
# Merge
# =============================================================================

MERGE_MODES = ("append", "byPosition", "byField")
JOIN_MODES = ("keepEverything", "keepMatches", "keepNonMatches", "enrichInput1")
CLASH_MODES = ("preferInput1", "preferInput2", "addSuffix")


def merge_step(payload: dict[str, Any]) -> list[Any]:
    """Combine the outputs of all predecessors that fired.

    Modes:
        append: concatenate in edge declaration order (lists are flattened)
        byPosition: zip lists element-wise, padding shorter ones with None
        byField: outer-join lists of objects on ``joinField``
    """
    # Skipped predecessors never arrive; a None here is a real (null) output
    inputs = list(payload.get("_inputs", []))
    mode = payload.get("mode") or "append"

    if mode == "append":
        combined: list[Any] = []
        for value in inputs:
            if isinstance(value, list):
                combined.extend(value)
            else:
                combined.append(value)
        return combined

    if mode == "byPosition":
        columns = [[] if value is None else as_items(value) for value in inputs]
        length = max((len(c) for c in columns), default=0)
        return [[c[i] if i < len(c) else None for c in columns] for i in range(length)]

    if mode == "byField":
        # A null output contributes no rows to the join
        return _join_by_field(
            [as_items(value) for value in inputs if value is not None],
            payload.get("joinField"),
            payload.get("joinMode") or "keepEverything",
            payload.get("clashHandling") or "preferInput2",
        )

    raise StepExecutionError(
        f"Unknown merge mode '{mode}' (expected one of: {', '.join(MERGE_MODES)})"
    )


def _join_by_field(
    columns: list[list[Any]], join_field: Any, join_mode: str, clash: str
) -> list[dict[str, Any]]:
    if not isinstance(join_field, str) or not join_field.strip():
        raise StepExecutionError("Merge byField requires 'joinField'")
    if join_mode not in JOIN_MODES:
        raise StepExecutionError(
            f"Unknown joinMode '{join_mode}' (expected one of: {', '.join(JOIN_MODES)})"
        )
    if clash not in CLASH_MODES:
        raise StepExecutionError(
            f"Unknown clashHandling '{clash}' (expected one of: {', '.join(CLASH_MODES)})"
        )
    join_field = join_field.strip()

    # key -> {input index -> merged record}; keys kept in first-seen order
    records: dict[Any, dict[int, dict[str, Any]]] = {}
    for position, column in enumerate(columns):
        for item in column:
            if not isinstance(item, Mapping):
                raise StepExecutionError(
                    f"Merge byField input {position + 1} contains a non-object item: {item!r}"
                )
            if not has_field(item, join_field):
                raise StepExecutionError(
                    f"Merge byField input {position + 1} item is missing join field "
                    f"'{join_field}': {dict(item)!r}"
                )
            key = _hashable(get_field(item, join_field))
            per_input = records.setdefault(key, {})
            per_input[position] = {**per_input.get(position, {}), **item}

    result = []
    for per_input in records.values():
        matched_everywhere = len(per_input) == len(columns)
        if join_mode == "keepMatches" and not matched_everywhere:
            continue
        if join_mode == "keepNonMatches" and matched_everywhere:
            continue
        if join_mode == "enrichInput1" and 0 not in per_input:
            continue
        result.append(_combine(per_input, clash))
    return result


def _combine(per_input: dict[int, dict[str, Any]], clash: str) -> dict[str, Any]:
    if clash == "addSuffix" and len(per_input) > 1:
        combined = {}
        for position in sorted(per_input):
            for key, value in per_input[position].items():
                combined[f"{key}_{position + 1}"] = value
        return combined

    ordered = sorted(per_input)
    if clash == "preferInput1":
        ordered.reverse()
    combined = {}
    for position in ordered:
        combined.update(per_input[position])
    return combined


def _hashable(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return repr(value)
    return value
