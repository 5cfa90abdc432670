"""Date & Time step.

Operations:
    getCurrent: now, formatted
    format / parse: ``dateValue`` rendered with ``outputFormat``
    addSubtract: shift ``dateValue`` by ``amount`` ``unit`` (``direction`` add/subtract)
    compare: ``dateValue`` against ``secondDate`` with ``comparison``
        before / after / same (booleans) or difference (milliseconds)

Output formats: ``ISO`` (default), ``unix`` (seconds), ``ms``, or a pattern
using the tokens YYYY MM DD HH mm ss. Months count as 30 days and years as 365.
"""

from datetime import datetime, timedelta, timezone
from typing import Any

from stepflow.core.exceptions import StepExecutionError
from stepflow.core.utils import parse_datetime, to_number

UNIT_SECONDS = {
    "seconds": 1,
    "minutes": 60,
    "hours": 3_600,
    "days": 86_400,
    "weeks": 604_800,
    "months": 2_592_000,
    "years": 31_536_000,
}

OPERATIONS = ("getCurrent", "format", "parse", "addSubtract", "compare")
COMPARISONS = ("before", "after", "same", "difference")


def format_datetime(value: datetime, fmt: str | None) -> str | int:
    fmt = fmt or "ISO"
    if fmt.lower() == "iso":
        return value.isoformat().replace("+00:00", "Z")
    if fmt.lower() in ("unix", "unix timestamp"):
        return int(value.timestamp())
    if fmt.lower() in ("ms", "unix ms"):
        return int(value.timestamp() * 1000)
    return (
        fmt.replace("YYYY", f"{value.year:04d}")
        .replace("MM", f"{value.month:02d}")
        .replace("DD", f"{value.day:02d}")
        .replace("HH", f"{value.hour:02d}")
        .replace("mm", f"{value.minute:02d}")
        .replace("ss", f"{value.second:02d}")
    )


def _require_date(value: Any, name: str) -> datetime:
    parsed = parse_datetime(value)
    if parsed is None:
        raise StepExecutionError(f"Invalid date in '{name}': {value!r}")
    return parsed.astimezone(timezone.utc)


def date_time_step(payload: dict[str, Any]) -> dict[str, Any]:
    operation = payload.get("operation") or "getCurrent"
    fmt = payload.get("outputFormat")

    if operation == "getCurrent":
        now = datetime.now(timezone.utc)
        return {"result": format_datetime(now, fmt), "original": now.isoformat()}

    if operation not in OPERATIONS:
        raise StepExecutionError(
            f"Unknown date-time operation '{operation}' (expected one of: {', '.join(OPERATIONS)})"
        )

    date = _require_date(payload.get("dateValue"), "dateValue")
    original = date.isoformat()

    if operation in ("format", "parse"):
        return {"result": format_datetime(date, fmt), "original": original}

    if operation == "addSubtract":
        amount = to_number(payload.get("amount", 0))
        if amount is None:
            raise StepExecutionError(f"Invalid amount: {payload.get('amount')!r}")
        unit = payload.get("unit") or "days"
        if unit not in UNIT_SECONDS:
            raise StepExecutionError(
                f"Unknown unit '{unit}' (expected one of: {', '.join(UNIT_SECONDS)})"
            )
        sign = -1 if payload.get("direction") == "subtract" else 1
        shifted = date + timedelta(seconds=sign * amount * UNIT_SECONDS[unit])
        return {"result": format_datetime(shifted, fmt), "original": original}

    other = _require_date(payload.get("secondDate"), "secondDate")
    comparison = payload.get("comparison") or "difference"
    if comparison == "before":
        result: Any = date < other
    elif comparison == "after":
        result = date > other
    elif comparison == "same":
        result = date == other
    elif comparison == "difference":
        result = int((date - other).total_seconds() * 1000)
    else:
        raise StepExecutionError(
            f"Unknown comparison '{comparison}' (expected one of: {', '.join(COMPARISONS)})"
        )
    return {"result": result, "original": original}
