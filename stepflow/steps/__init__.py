"""Built-in step catalog.

Every step is a callable taking the node's resolved payload and returning a
JSON-compatible value (or an awaitable of one). Steps that need engine settings
are bound to them here.
"""

from functools import partial
from typing import Any, Callable

import httpx

from stepflow.core import control
from stepflow.core.config import EngineConfig
from stepflow.steps.code import code_step
from stepflow.steps.data import (
    aggregate_step,
    limit_step,
    remove_duplicates_step,
    set_fields_step,
    sort_step,
    split_out_step,
)
from stepflow.steps.database import database_query_step
from stepflow.steps.datetime_step import date_time_step
from stepflow.steps.http import http_request_step
from stepflow.steps.triggers import manual_trigger, schedule_trigger, webhook_trigger
from stepflow.steps.wait import wait_step
from stepflow.steps.webhook import respond_to_webhook_step

StepFn = Callable[[dict[str, Any]], Any]

TRIGGER_KEYS = ("manual", "schedule", "webhook")


def build_builtin_steps(
    config: EngineConfig | None = None,
    http_transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, StepFn]:
    """Map every built-in action key to its step function."""
    config = config or EngineConfig()
    max_len = config.max_expression_length
    return {
        # Triggers
        "manual": manual_trigger,
        "schedule": schedule_trigger,
        "webhook": webhook_trigger,
        # Actions
        "http-request": partial(
            http_request_step, timeout=config.http_timeout, transport=http_transport
        ),
        "database-query": partial(database_query_step, database_path=config.database_path),
        "set-fields": set_fields_step,
        "code": partial(code_step, max_expression_length=max_len),
        "wait": partial(wait_step, max_wait_seconds=config.max_wait_seconds),
        "date-time": date_time_step,
        "split-out": split_out_step,
        "limit": limit_step,
        "aggregate": aggregate_step,
        "sort": sort_step,
        "remove-duplicates": remove_duplicates_step,
        "respond-to-webhook": respond_to_webhook_step,
        # Control nodes
        "condition": partial(control.condition_step, max_expression_length=max_len),
        "switch": control.switch_step,
        "filter": partial(control.filter_step, max_expression_length=max_len),
        "loop-over-batches": control.loop_over_batches_step,
        "merge": control.merge_step,
    }
