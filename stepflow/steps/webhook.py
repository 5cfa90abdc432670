"""Respond to Webhook step."""

from typing import Any

from stepflow.core.exceptions import StepExecutionError
from stepflow.core.utils import load_json_maybe, to_number

WEBHOOK_RESPONSE_KEY = "_webhookResponse"


def respond_to_webhook_step(payload: dict[str, Any]) -> dict[str, Any]:
    """Build the HTTP response for the webhook that triggered the run.

    The run result exposes the last response produced as ``webhookResponse``.
    """
    status = to_number(payload.get("statusCode", 200))
    if status is None or not 100 <= status <= 599:
        raise StepExecutionError(f"Invalid statusCode: {payload.get('statusCode')!r}")
    body = load_json_maybe(payload["body"]) if "body" in payload else payload.get("_input")
    return {WEBHOOK_RESPONSE_KEY: {"statusCode": int(status), "body": body}}
