"""eventor_sync.import_results

Results import for every club with an API key.

Processing order per club (one batch run each):
  1.  Count the club's `results` rows, open the batch run.
  2.  Select non-readonly events in the date range (distinct eventid).
  3.  Per event:
      a.  Fetch results/organisation                → logdata row
      b.  Dispatch on eventform → parser → duplicate pass
      c.  SAVEPOINT event_{eventid}
          i.   DELETE results for (clubparticipation, eventid)
          ii.  INSERT parsed rows
          iii. INSERT warnings
          iv.  Stamp tableupdates
      A failed fetch or write counts one error and the club continues.
  4.  Count again, finalize the batch run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Iterable

import psycopg

from eventor_sync.api_log import insert_log_data, log_api_end, log_api_error, log_api_start
from eventor_sync.batch_ledger import BatchLedger, BatchRun, BatchStatus, InitiatedBy, count_rows
from eventor_sync.duplicates import flag_duplicate_results
from eventor_sync.eventor_client import EventorApiError, EventorClient
from eventor_sync.import_events import resolve_date_range
from eventor_sync.import_persons import load_club_api_keys
from eventor_sync.results_dispatch import EventForm, parse_results
from eventor_sync.run_guard import RunGuard
from eventor_sync.shared import (
    RESULT_COLUMNS,
    LedgerSetupError,
    ParseContext,
    ParseWarning,
    ResultRow,
    RunCounters,
)

log = logging.getLogger(__name__)

SOURCE = "GetResults"
BATCH_MARKER = "GetResults batch"


@dataclass
class EventToSync:
    event_id: int
    event_form: str | None
    event_date: date | None


# ---------------------------------------------------------------------------
# Storage helpers
# ---------------------------------------------------------------------------

def select_events_in_range(
    conn: psycopg.Connection,
    date_from: date,
    date_to: date,
) -> list[EventToSync]:
    """Distinct eventids in range, excluding any event with a readonly race."""
    rows = conn.execute(
        """
        SELECT eventid, min(eventform), min(eventdate)
          FROM events
         WHERE eventdate BETWEEN %s AND %s
           AND eventid NOT IN (SELECT eventid FROM events WHERE readonly IS TRUE)
         GROUP BY eventid
         ORDER BY min(eventdate), eventid
        """,
        (date_from, date_to),
    ).fetchall()
    return [EventToSync(r[0], r[1], r[2]) for r in rows]


def replace_event_results(
    conn: psycopg.Connection,
    organisation_id: int,
    event_id: int,
    rows: Iterable[ResultRow],
) -> tuple[int, int]:
    """Delete then insert one club's rows for one event. Returns (deleted, inserted)."""
    deleted = conn.execute(
        "DELETE FROM results WHERE clubparticipation = %s AND eventid = %s",
        (organisation_id, event_id),
    ).rowcount
    cols = list(RESULT_COLUMNS.values())
    query = (
        f"INSERT INTO results ({', '.join(cols)}) "
        f"VALUES ({', '.join(f'%({c})s' for c in cols)})"
    )
    payload = [r.to_db_row() for r in rows]
    if payload:
        with conn.cursor() as cur:
            cur.executemany(query, payload)
    return deleted, len(payload)


def insert_warnings(
    conn: psycopg.Connection,
    warnings: Iterable[ParseWarning],
    batch_id: str,
    organisation_id: int,
    event_id: int,
) -> int:
    params = [
        (
            batch_id,
            organisation_id,
            w.event_id if w.event_id is not None else event_id,
            w.person_id,
            w.event_race_id,
            w.message,
        )
        for w in warnings
    ]
    if params:
        with conn.cursor() as cur:
            cur.executemany(
                """
                INSERT INTO warnings
                    (batchid, organisationid, eventid, personid, eventraceid, message)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                params,
            )
    return len(params)


def stamp_table_update(conn: psycopg.Connection, table: str, batch_id: str) -> None:
    conn.execute(
        """
        INSERT INTO tableupdates (tablename, lastupdated, updatedbybatchid)
        VALUES (%s, now(), %s)
        ON CONFLICT (tablename) DO UPDATE
           SET lastupdated = EXCLUDED.lastupdated,
               updatedbybatchid = EXCLUDED.updatedbybatchid
        """,
        (table, batch_id),
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class ResultsSyncService:
    """Long-lived owner of the results guard; one instance per process."""

    def __init__(
        self,
        conn_factory: Callable[[], psycopg.Connection],
        client_factory: Callable[[str], EventorClient],
        initiated_by: InitiatedBy = InitiatedBy.MANUAL,
    ) -> None:
        self._conn_factory = conn_factory
        self._client_factory = client_factory
        self.initiated_by = initiated_by
        self.guard = RunGuard(conn_factory, BATCH_MARKER)

    def run(
        self,
        date_from: date | None = None,
        date_to: date | None = None,
        organisation_ids: Iterable[int] | None = None,
        counters: RunCounters | None = None,
    ) -> list[dict[str, Any]]:
        """Sync results for all clubs. Raises RunInProgressError when guarded out."""
        counters = counters or RunCounters()
        date_from, date_to = resolve_date_range(date_from, date_to)
        summary: list[dict[str, Any]] = []

        with self.guard.acquire():
            conn = self._conn_factory()
            try:
                ledger = BatchLedger(conn)
                guard_run = ledger.open(
                    f"{BATCH_MARKER} {date_from}..{date_to}", initiated_by=self.initiated_by
                )
                try:
                    clubs = load_club_api_keys(conn, organisation_ids)
                    conn.commit()
                    log.info("results sync %s..%s: %d clubs", date_from, date_to, len(clubs))

                    for organisation_id, api_key in clubs:
                        guard_run.record_request()
                        entry = self._sync_club(
                            conn, ledger, organisation_id, api_key, date_from, date_to, counters
                        )
                        # a partial club counts against the run, a failed one also in the counters
                        if entry.get("status") != BatchStatus.SUCCESS.value:
                            guard_run.record_error()
                        if entry.get("error") or entry.get("status") == BatchStatus.FAILED.value:
                            counters.clubs_failed += 1
                        else:
                            counters.clubs_processed += 1
                        summary.append(entry)

                    ledger.finalize(guard_run)
                except Exception as exc:
                    ledger.abandon(guard_run, exc)
                    raise
            finally:
                conn.close()
        return summary

    def _sync_club(
        self,
        conn: psycopg.Connection,
        ledger: BatchLedger,
        organisation_id: int,
        api_key: str,
        date_from: date,
        date_to: date,
        counters: RunCounters,
    ) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "organisation_id": organisation_id,
            "date_range": {"from": date_from.isoformat(), "to": date_to.isoformat()},
        }
        try:
            run = ledger.open(
                f"{SOURCE} {date_from}..{date_to}",
                initiated_by=self.initiated_by,
                organisation_id=organisation_id,
                row_count_before=count_rows(conn, "results", "clubparticipation", organisation_id),
            )
        except (LedgerSetupError, psycopg.Error) as exc:
            conn.rollback()
            log.error("could not open batch for organisation %s: %s", organisation_id, exc)
            entry["error"] = str(exc)
            return entry
        entry["batch_id"] = run.id

        try:
            events = select_events_in_range(conn, date_from, date_to)
        except psycopg.Error as exc:
            conn.rollback()
            insert_log_data(
                conn, SOURCE, "error",
                comment=f"Could not select events: {exc}",
                organisation_id=organisation_id, batch_id=run.id,
            )
            conn.commit()
            ledger.fail(run, f"event selection failed: {exc}")
            entry["error"] = str(exc)
            return entry

        if not events:
            log.warning(
                "no non-readonly events in %s..%s for organisation %s",
                date_from, date_to, organisation_id,
            )

        client = self._client_factory(api_key)
        for event in events:
            self._sync_event(conn, client, run, organisation_id, event, counters)
            ledger.update_counts(run)

        run = ledger.finalize(
            run, count_rows(conn, "results", "clubparticipation", organisation_id)
        )
        entry.update(
            requests=run.request_count,
            errors=run.error_count,
            events_processed=len(events),
            status=run.status.value,
        )
        return entry

    def _sync_event(
        self,
        conn: psycopg.Connection,
        client: EventorClient,
        run: BatchRun,
        organisation_id: int,
        event: EventToSync,
        counters: RunCounters,
    ) -> None:
        run.record_request()
        counters.requests += 1
        url = client.results_url(organisation_id, event.event_id)
        log_id = log_api_start(
            conn, url, SOURCE, batch_id=run.id,
            organisation_id=organisation_id, event_id=event.event_id,
            comment=f"Importing results for eventid={event.event_id}",
        )
        try:
            xml_text = client.fetch(url)
        except EventorApiError as exc:
            run.record_error()
            counters.request_errors += 1
            counters.warnings.append(str(exc))
            log_api_error(conn, log_id, exc.status, str(exc))
            conn.commit()
            return
        log_api_end(conn, log_id, 200)

        context = ParseContext(
            event_id=event.event_id,
            batch_id=run.id,
            organisation_id=organisation_id,
            event_date=event.event_date.isoformat() if event.event_date else None,
        )
        outcome = parse_results(EventForm.from_tag(event.event_form), xml_text, context)
        duplicate_warnings = flag_duplicate_results(outcome.rows)
        warnings = outcome.warnings + duplicate_warnings
        counters.result_rows_parsed += len(outcome.rows)
        counters.duplicate_result_keys += len(duplicate_warnings)
        counters.parse_warnings += len(warnings)

        sp_name = f"event_{event.event_id}"
        conn.execute(f"SAVEPOINT {sp_name}")
        try:
            deleted, inserted = replace_event_results(
                conn, organisation_id, event.event_id, outcome.rows
            )
            insert_warnings(conn, warnings, run.id, organisation_id, event.event_id)
            stamp_table_update(conn, "results", run.id)
            conn.execute(f"RELEASE SAVEPOINT {sp_name}")
        except psycopg.Error as exc:
            conn.execute(f"ROLLBACK TO SAVEPOINT {sp_name}")
            run.record_error()
            counters.db_phase_errors += 1
            counters.warnings.append(f"results write failed for event {event.event_id}: {exc}")
            log.error("results write failed for event %s: %s", event.event_id, exc)
        else:
            counters.result_rows_deleted += deleted
            counters.result_rows_inserted += inserted
            log.info(
                "event %s: %d rows replaced (%d deleted), %d warnings",
                event.event_id, inserted, deleted, len(warnings),
            )
        conn.commit()
