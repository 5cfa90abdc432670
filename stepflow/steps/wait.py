"""Wait step. Suspends only the current run (asyncio.sleep)."""

import asyncio
import logging
from typing import Any

from stepflow.core.exceptions import StepExecutionError
from stepflow.core.utils import to_number

logger = logging.getLogger(__name__)

UNIT_SECONDS = {
    "milliseconds": 0.001,
    "seconds": 1,
    "minutes": 60,
    "hours": 3600,
}


async def wait_step(payload: dict[str, Any], max_wait_seconds: float = 300.0) -> Any:
    """Sleep for ``amount`` ``unit`` (default seconds) and pass the input through.

    Raises:
        StepExecutionError: On a negative amount, unknown unit, or a wait longer
            than ``max_wait_seconds``.
    """
    amount = to_number(payload.get("amount", 0))
    unit = str(payload.get("unit") or "seconds").lower()
    if amount is None or amount < 0:
        raise StepExecutionError(f"Wait amount must be a non-negative number, got {payload.get('amount')!r}")
    if unit not in UNIT_SECONDS:
        raise StepExecutionError(
            f"Unknown wait unit '{unit}' (expected one of: {', '.join(UNIT_SECONDS)})"
        )
    seconds = amount * UNIT_SECONDS[unit]
    if seconds > max_wait_seconds:
        raise StepExecutionError(f"Wait of {seconds}s exceeds the {max_wait_seconds}s limit")

    logger.debug(f"Waiting {seconds}s")
    await asyncio.sleep(seconds)
    return payload.get("_input")
