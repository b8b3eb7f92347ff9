"""eventor_sync.api_log

Audit rows in `logdata` for every Eventor call and notable run step.

Each write runs inside its own savepoint; a failed log write is reported
through `logging` and never aborts the surrounding run.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import psycopg

log = logging.getLogger(__name__)

_MAX_MESSAGE = 2000


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _guarded(
    conn: psycopg.Connection,
    sp_name: str,
    query: str,
    params: tuple,
    returning: bool = False,
):
    try:
        conn.execute(f"SAVEPOINT {sp_name}")
    except psycopg.Error as exc:
        log.error("logdata write skipped, transaction unusable: %s", exc)
        return None
    try:
        cur = conn.execute(query, params)
        row = cur.fetchone() if returning else None
        conn.execute(f"RELEASE SAVEPOINT {sp_name}")
        return row
    except psycopg.Error as exc:
        conn.execute(f"ROLLBACK TO SAVEPOINT {sp_name}")
        log.error("logdata write failed: %s", exc)
        return None


def insert_log_data(
    conn: psycopg.Connection,
    source: str,
    level: str = "info",
    comment: str | None = None,
    organisation_id: int | None = None,
    event_id: int | None = None,
    batch_id: str | None = None,
    request: str | None = None,
    error_message: str | None = None,
    response_code: int | None = None,
) -> int | None:
    now = _now()
    row = _guarded(
        conn,
        "logdata_insert",
        """
        INSERT INTO logdata
            (source, level, organisationid, eventid, batchid, request,
             errormessage, comment, responsecode, timestamp, started)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING id
        """,
        (
            source, level, organisation_id, event_id, batch_id, request,
            error_message, comment, response_code, now, now,
        ),
        returning=True,
    )
    return row[0] if row else None


def log_api_start(
    conn: psycopg.Connection,
    request: str,
    source: str,
    batch_id: str | None = None,
    organisation_id: int | None = None,
    event_id: int | None = None,
    comment: str | None = None,
) -> int | None:
    """Record an outbound call before it is made; returns the logdata id."""
    return insert_log_data(
        conn,
        source,
        "info",
        comment=comment,
        organisation_id=organisation_id,
        event_id=event_id,
        batch_id=batch_id,
        request=request,
    )


def log_api_end(conn: psycopg.Connection, log_id: int | None, status: int = 200) -> None:
    if log_id is None:
        return
    now = _now()
    _guarded(
        conn,
        "logdata_end",
        "UPDATE logdata SET completed = %s, responsecode = %s, timestamp = %s WHERE id = %s",
        (now, status, now, log_id),
    )


def log_api_error(
    conn: psycopg.Connection,
    log_id: int | None,
    status: int | None,
    message: str,
) -> None:
    if log_id is None:
        return
    now = _now()
    _guarded(
        conn,
        "logdata_error",
        """
        UPDATE logdata
           SET completed = %s, responsecode = %s, errormessage = %s,
               level = 'error', timestamp = %s
         WHERE id = %s
        """,
        (now, status, message[:_MAX_MESSAGE], now, log_id),
    )
