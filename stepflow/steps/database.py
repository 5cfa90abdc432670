"""Database Query step for SQLite files.

The blocking sqlite3 call runs in a worker thread so other runs keep going.

Config:
    query: SQL statement (required)
    params: list (positional ``?``) or object (named ``:name``) parameters
    databasePath: overrides the engine's ``database_path``

Output: ``{"rows": [...], "rowCount": int}``. Rows are objects keyed by column.
For statements without a result set ``rowCount`` is the affected row count.
"""

import asyncio
import logging
import sqlite3
from typing import Any

from stepflow.core.exceptions import StepExecutionError
from stepflow.core.utils import load_json_maybe

logger = logging.getLogger(__name__)


def _execute(database_path: str, query: str, params: Any) -> dict[str, Any]:
    conn = sqlite3.connect(database_path)
    try:
        conn.row_factory = sqlite3.Row
        cursor = conn.execute(query, params)
        if cursor.description is None:
            conn.commit()
            return {"rows": [], "rowCount": cursor.rowcount}
        rows = [dict(row) for row in cursor.fetchall()]
        return {"rows": rows, "rowCount": len(rows)}
    finally:
        conn.close()


async def database_query_step(
    payload: dict[str, Any], database_path: str | None = None
) -> dict[str, Any]:
    query = payload.get("query")
    if not query or not isinstance(query, str):
        raise StepExecutionError("Database query requires a 'query' string")

    path = payload.get("databasePath") or database_path
    if not path:
        raise StepExecutionError(
            "No database configured: set 'databasePath' or the engine's database_path"
        )

    params = load_json_maybe(payload.get("params"))
    if params is None:
        params = ()
    elif not isinstance(params, (list, dict)):
        raise StepExecutionError("Database query 'params' must be a list or an object")

    logger.debug(f"SQL on {path}: {query}")
    try:
        return await asyncio.to_thread(_execute, str(path), query, params)
    except sqlite3.Error as e:
        raise StepExecutionError(f"Database query failed: {e}") from e
