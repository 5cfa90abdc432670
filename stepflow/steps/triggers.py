"""Trigger steps. The trigger output seeds every run."""

from datetime import datetime, timezone
from typing import Any

from stepflow.core.utils import load_json_maybe


def _trigger_input(payload: dict[str, Any]) -> dict[str, Any]:
    data = payload.get("_input")
    if data is None:
        return {}
    if isinstance(data, dict):
        return dict(data)
    return {"input": data}


def manual_trigger(payload: dict[str, Any]) -> dict[str, Any]:
    """``{"triggered": True, "timestamp": ..., **trigger_input}``"""
    return {
        "triggered": True,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **_trigger_input(payload),
    }


def schedule_trigger(payload: dict[str, Any]) -> dict[str, Any]:
    output = manual_trigger(payload)
    if payload.get("cron"):
        output.setdefault("cron", payload["cron"])
    return output


def webhook_trigger(payload: dict[str, Any]) -> dict[str, Any]:
    """Webhook runs carry the request under ``body``.

    Without trigger input, ``mockRequest`` from the node config is used so the
    workflow can be exercised by hand.
    """
    output = manual_trigger(payload)
    if not payload.get("_input") and "mockRequest" in payload:
        output["body"] = load_json_maybe(payload["mockRequest"])
    return output
