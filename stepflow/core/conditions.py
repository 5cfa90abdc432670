"""Typed comparison operators and sandboxed expressions.

Shared by the Condition, Switch and Filter nodes. Structured conditions look like::

    {"match": "and", "conditions": [
        {"leftValue": 200, "operator": "equals", "rightValue": 200, "dataType": "number"}
    ]}

Operators by data type:
- string: equals, not_equals, contains, not_contains, starts_with, ends_with,
  is_empty, is_not_empty
- number: equals, not_equals, greater_than, greater_than_or_equal, less_than,
  less_than_or_equal
- boolean: is_true, is_false
- date: equals, is_after, is_before
- any type: in, not_in

Symbolic aliases (==, !=, >, <, >=, <=) are accepted. Operands that cannot be
coerced to the data type compare as False instead of raising.

Free-form expressions are evaluated with a jinja2 SandboxedEnvironment, so no
arbitrary code runs. Template references are already substituted by then.
"""

import logging
from collections.abc import Callable, Mapping
from typing import Any

from jinja2 import StrictUndefined, TemplateError, Undefined
from jinja2.sandbox import SandboxedEnvironment

from stepflow.core.exceptions import StepExecutionError
from stepflow.core.utils import load_json_maybe, parse_datetime, stringify, to_number

logger = logging.getLogger(__name__)

DEFAULT_MAX_EXPRESSION_LENGTH = 2000

OPERATOR_ALIASES = {
    "==": "equals",
    "!=": "not_equals",
    ">": "greater_than",
    ">=": "greater_than_or_equal",
    "<": "less_than",
    "<=": "less_than_or_equal",
}

STRING_OPERATORS = frozenset(
    {
        "equals",
        "not_equals",
        "contains",
        "not_contains",
        "starts_with",
        "ends_with",
        "is_empty",
        "is_not_empty",
    }
)
NUMBER_OPERATORS = frozenset(
    {
        "equals",
        "not_equals",
        "greater_than",
        "greater_than_or_equal",
        "less_than",
        "less_than_or_equal",
    }
)
BOOLEAN_OPERATORS = frozenset({"is_true", "is_false"})
DATE_OPERATORS = frozenset({"equals", "is_after", "is_before"})
GENERIC_OPERATORS = frozenset({"in", "not_in"})

OPERATORS_BY_TYPE = {
    "string": STRING_OPERATORS,
    "number": NUMBER_OPERATORS,
    "boolean": BOOLEAN_OPERATORS,
    "date": DATE_OPERATORS,
}

_TRUTHY_STRINGS = frozenset({"true", "1", "yes"})

# SECURITY: sandboxed, no filesystem loader, undefined names raise
_SANDBOX = SandboxedEnvironment(undefined=StrictUndefined, autoescape=False)


def infer_data_type(left: Any, operator: str, right: Any) -> str:
    """Pick a data type when a rule does not declare one"""
    if operator in BOOLEAN_OPERATORS:
        return "boolean"
    if operator in ("is_after", "is_before"):
        return "date"
    if operator in NUMBER_OPERATORS and operator not in STRING_OPERATORS:
        return "number"
    if all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in (left, right)):
        return "number"
    return "string"


def evaluate_rule(left: Any, operator: str, right: Any, data_type: str | None = None) -> bool:
    """Evaluate one comparison.

    Raises:
        StepExecutionError: If the operator is not defined for the data type.
    """
    operator = OPERATOR_ALIASES.get(operator, operator)

    if operator in GENERIC_OPERATORS:
        container = load_json_maybe(right)
        if not isinstance(container, (list, tuple, str, dict)):
            return False
        try:
            found = left in container
        except TypeError:
            return False
        return found if operator == "in" else not found

    data_type = (data_type or infer_data_type(left, operator, right)).lower()
    allowed = OPERATORS_BY_TYPE.get(data_type)
    if allowed is None:
        raise StepExecutionError(f"Unsupported data type '{data_type}'")
    if operator not in allowed:
        raise StepExecutionError(
            f"Operator '{operator}' is not supported for {data_type} values "
            f"(expected one of: {', '.join(sorted(allowed))})"
        )

    if data_type == "string":
        return _compare_strings(stringify(left), operator, stringify(right))
    if data_type == "number":
        return _compare_numbers(to_number(left), operator, to_number(right))
    if data_type == "boolean":
        truthy = left is True or stringify(left).strip().lower() in _TRUTHY_STRINGS
        return truthy if operator == "is_true" else not truthy
    return _compare_dates(left, operator, right)


def _compare_strings(left: str, operator: str, right: str) -> bool:
    if operator == "equals":
        return left == right
    if operator == "not_equals":
        return left != right
    if operator == "contains":
        return right in left
    if operator == "not_contains":
        return right not in left
    if operator == "starts_with":
        return left.startswith(right)
    if operator == "ends_with":
        return left.endswith(right)
    if operator == "is_empty":
        return left.strip() == ""
    return left.strip() != ""


def _compare_numbers(left: float | None, operator: str, right: float | None) -> bool:
    if left is None or right is None:
        return False
    if operator == "equals":
        return left == right
    if operator == "not_equals":
        return left != right
    if operator == "greater_than":
        return left > right
    if operator == "greater_than_or_equal":
        return left >= right
    if operator == "less_than":
        return left < right
    return left <= right


def _compare_dates(left: Any, operator: str, right: Any) -> bool:
    left_dt, right_dt = parse_datetime(left), parse_datetime(right)
    if left_dt is None or right_dt is None:
        return False
    if operator == "is_after":
        return left_dt > right_dt
    if operator == "is_before":
        return left_dt < right_dt
    return left_dt == right_dt


def parse_structured(value: Any) -> dict | None:
    """Return a structured condition dict (from a dict or JSON string), else None"""
    value = load_json_maybe(value)
    if isinstance(value, Mapping) and "conditions" in value:
        return dict(value)
    return None


def evaluate_structured(
    condition: Mapping[str, Any], operand: Callable[[Any], Any] | None = None
) -> bool:
    """Evaluate a structured and/or condition group.

    Args:
        condition: ``{"match": "and" | "or", "conditions": [...]}``
        operand: Optional hook mapping each left/right value before comparison
            (Filter uses it to read field paths from the current item).
    """
    rows = condition.get("conditions") or []
    if not isinstance(rows, list):
        raise StepExecutionError("Structured condition 'conditions' must be a list")
    if not rows:
        return True
    operand = operand or (lambda v: v)

    results = []
    for row in rows:
        if not isinstance(row, Mapping):
            raise StepExecutionError(f"Invalid condition row: {row!r}")
        results.append(
            evaluate_rule(
                operand(row.get("leftValue")),
                row.get("operator", "equals"),
                operand(row.get("rightValue")),
                row.get("dataType"),
            )
        )
    if str(condition.get("match", "and")).lower() == "or":
        return any(results)
    return all(results)


def evaluate_expression(
    expression: str,
    variables: Mapping[str, Any] | None = None,
    max_length: int = DEFAULT_MAX_EXPRESSION_LENGTH,
) -> Any:
    """Evaluate a jinja2 expression (e.g. ``200 == 200 and input.ok``) in the sandbox.

    Raises:
        StepExecutionError: On syntax errors, undefined names, sandbox violations
            or runtime errors inside the expression.
    """
    if len(expression) > max_length:
        raise StepExecutionError(
            f"Expression is {len(expression)} characters long (limit {max_length})"
        )
    try:
        compiled = _SANDBOX.compile_expression(expression, undefined_to_none=False)
        result = compiled(**dict(variables or {}))
    except TemplateError as e:
        raise StepExecutionError(f"Expression '{expression}' failed: {e}") from e
    except (TypeError, ValueError, ArithmeticError) as e:
        raise StepExecutionError(f"Expression '{expression}' failed: {e}") from e
    if isinstance(result, Undefined):
        raise StepExecutionError(
            f"Expression '{expression}' references an undefined name. "
            f"Quote string operands, e.g. \"active\" == \"active\"."
        )
    return result


def evaluate_condition(
    condition: Any,
    variables: Mapping[str, Any] | None = None,
    max_length: int = DEFAULT_MAX_EXPRESSION_LENGTH,
) -> bool:
    """Evaluate any supported condition form to a boolean.

    Accepted forms: a boolean, a structured condition (dict or JSON string), the
    strings "true"/"1"/"false"/"0"/"" and any other string as a sandboxed
    expression. None is False.
    """
    if isinstance(condition, bool):
        return condition
    if condition is None:
        return False

    structured = parse_structured(condition)
    if structured is not None:
        return evaluate_structured(structured)

    if isinstance(condition, str):
        lowered = condition.strip().lower()
        if lowered in ("true", "1"):
            return True
        if lowered in ("false", "0", ""):
            return False
        result = evaluate_expression(condition, variables, max_length)
        try:
            return bool(result)
        except TemplateError as e:
            raise StepExecutionError(f"Expression '{condition}' failed: {e}") from e

    if isinstance(condition, (int, float)):
        return bool(condition)
    raise StepExecutionError(f"Unsupported condition value: {condition!r}")
