"""Registration of jobs in the database log.

Database clients used throughout this package are asynchronous objects
offering ``query(sql, params)`` returning a list of rows,
``query_one(sql, params)`` returning exactly one row, and
``execute(sql, params)`` returning the number of affected rows. Rows are
indexable sequences and parameters use ``$n`` placeholders.
"""

from __future__ import annotations

import json
from typing import Any

from .errors import DatabaseError


async def start_job(client: Any, description: Any) -> int:
    """Start a logged job described by the JSON value ``description``."""
    query = "SELECT logging.start_job($1)"
    try:
        row = await client.query_one(query, [json.dumps(description)])
    except Exception as exc:
        raise DatabaseError(f"Error starting job: {exc}") from exc
    return row[0]


async def end_job(client: Any, job_id: int) -> None:
    """Mark the job with ``job_id`` as finished."""
    query = "SELECT logging.end_job($1)"
    try:
        await client.execute(query, [job_id])
    except Exception as exc:
        raise DatabaseError(f"Error ending job: {exc}") from exc