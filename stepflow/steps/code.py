"""Code step: sandboxed jinja2 expressions and templates.

Config:
    expression: evaluated to a native value, e.g. ``items | map(attribute='price') | sum``
    template: rendered to a string instead (full jinja2 template syntax)

Variables: ``input`` (first upstream value), ``inputs`` (all upstream values)
and ``items`` (the input as a list).
"""

from typing import Any

from jinja2 import StrictUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment

from stepflow.core.conditions import DEFAULT_MAX_EXPRESSION_LENGTH, evaluate_expression
from stepflow.core.exceptions import StepExecutionError
from stepflow.core.utils import as_items

# SECURITY: Use SandboxedEnvironment to prevent arbitrary code execution
_TEMPLATES = SandboxedEnvironment(
    undefined=StrictUndefined,
    autoescape=False,
    trim_blocks=True,
    lstrip_blocks=True,
)


def code_step(
    payload: dict[str, Any], max_expression_length: int = DEFAULT_MAX_EXPRESSION_LENGTH
) -> Any:
    variables = {
        "input": payload.get("_input"),
        "inputs": payload.get("_inputs", []),
        "items": as_items(payload.get("_input")),
    }

    expression = payload.get("expression")
    template = payload.get("template")
    if expression is not None and template is not None:
        raise StepExecutionError("Code step takes either 'expression' or 'template', not both")

    if isinstance(expression, str) and expression.strip():
        return evaluate_expression(expression, variables, max_expression_length)

    if isinstance(template, str):
        if len(template) > max_expression_length:
            raise StepExecutionError(
                f"Template is {len(template)} characters long (limit {max_expression_length})"
            )
        try:
            return _TEMPLATES.from_string(template).render(**variables)
        except TemplateError as e:
            raise StepExecutionError(f"Template rendering failed: {e}") from e

    raise StepExecutionError("Code step requires an 'expression' or 'template' string")
