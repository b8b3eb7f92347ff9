"""eventor_sync.upsert_planner

Readonly protection for the `events` table.  Events flagged `readonly`
have been manually curated and must never be overwritten by a sync; the
planner removes their rows before anything reaches the store.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

import psycopg

log = logging.getLogger(__name__)

EVENT_COLUMNS = (
    "eventid",
    "eventraceid",
    "eventdate",
    "eventname",
    "eventorganiser_ids",
    "eventclassificationid",
    "eventdistance",
    "eventform",
    "disciplineid",
    "batchid",
)


@dataclass
class UpsertPlan:
    payload: list[dict[str, Any]] = field(default_factory=list)
    skipped: list[dict[str, Any]] = field(default_factory=list)


def load_readonly_event_ids(conn: psycopg.Connection, event_ids: Iterable[int]) -> set[int]:
    ids = sorted({i for i in event_ids if i is not None})
    if not ids:
        return set()
    rows = conn.execute(
        "SELECT DISTINCT eventid FROM events WHERE eventid = ANY(%s) AND readonly IS TRUE",
        (ids,),
    ).fetchall()
    return {r[0] for r in rows}


def plan_event_upsert(rows: Iterable[dict[str, Any]], readonly_ids: set[int]) -> UpsertPlan:
    plan = UpsertPlan()
    for row in rows:
        if row.get("eventid") in readonly_ids:
            plan.skipped.append(row)
        else:
            plan.payload.append(row)
    if plan.skipped:
        log.info("skipping %d event rows whose eventid is readonly", len(plan.skipped))
    return plan


def upsert_events(conn: psycopg.Connection, rows: Iterable[dict[str, Any]]) -> int:
    """Insert-or-update planned event rows keyed on eventraceid.

    Only pass ``UpsertPlan.payload`` here.  The readonly flag itself is
    never written by this statement.
    """
    cols = ", ".join(EVENT_COLUMNS)
    placeholders = ", ".join(f"%({c})s" for c in EVENT_COLUMNS)
    updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in EVENT_COLUMNS if c != "eventraceid")
    query = (
        f"INSERT INTO events ({cols}) VALUES ({placeholders}) "
        f"ON CONFLICT (eventraceid) DO UPDATE SET {updates}, updated_at = now() "
        f"WHERE events.readonly IS NOT TRUE"
    )
    count = 0
    for row in rows:
        conn.execute(query, {c: row.get(c) for c in EVENT_COLUMNS})
        count += 1
    return count
