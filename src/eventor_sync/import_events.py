"""eventor_sync.import_events

Events import: fetch Eventor's event list for a date range and upsert one
row per race into `events`.

Processing order:
  1.  Resolve the date range (default: last 30 days) and split it into
      segments of at most 90 days.
  2.  Count `events` rows, open one batch run for the whole range.
  3.  Per segment: one request → parse → readonly planner → upsert
      (SAVEPOINT per segment; a failed segment counts as an error).
  4.  Count again, finalize the batch run.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Any, Iterable

import psycopg

from eventor_sync.api_log import log_api_end, log_api_error, log_api_start
from eventor_sync.batch_ledger import BatchLedger, BatchRun, InitiatedBy, count_rows
from eventor_sync.eventor_client import DEFAULT_CLASSIFICATION_IDS, EventorApiError, EventorClient
from eventor_sync.normalize import normalize_space, parse_int, trim
from eventor_sync.shared import RunCounters
from eventor_sync.upsert_planner import load_readonly_event_ids, plan_event_upsert, upsert_events
from eventor_sync.xml_probe import XmlLoadError, attr, child, child_text, children, load_xml

log = logging.getLogger(__name__)

SOURCE = "GetEvents"
DEFAULT_LOOKBACK_DAYS = 30
MAX_SEGMENT_DAYS = 90


# ---------------------------------------------------------------------------
# Date range
# ---------------------------------------------------------------------------

def resolve_date_range(
    from_date: date | None,
    to_date: date | None,
    today: date | None = None,
) -> tuple[date, date]:
    end = to_date or today or date.today()
    start = from_date or end - timedelta(days=DEFAULT_LOOKBACK_DAYS)
    if start > end:
        start, end = end, start
    return start, end


def split_segments(
    start: date,
    end: date,
    max_days: int = MAX_SEGMENT_DAYS,
) -> list[tuple[date, date]]:
    """Consecutive, non-overlapping inclusive segments of at most max_days days."""
    segments = []
    seg_start = start
    while seg_start <= end:
        seg_end = min(seg_start + timedelta(days=max_days - 1), end)
        segments.append((seg_start, seg_end))
        seg_start = seg_end + timedelta(days=1)
    return segments


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _organiser_ids(event) -> list[str]:
    organiser = child(event, "Organiser")
    ids = [trim(o.get_text()) for o in children(organiser, "OrganisationId")]
    if not any(ids):
        ids = [child_text(o, "OrganisationId") for o in children(organiser, "Organisation")]
    return [i for i in ids if i]


def parse_event_list(
    xml_text: str | bytes | None,
    batch_id: str | None,
) -> tuple[list[dict[str, Any]], list[str]]:
    """One row per EventRace in an Eventor EventList document."""
    rows: list[dict[str, Any]] = []
    warnings: list[str] = []
    try:
        doc = load_xml(xml_text)
    except XmlLoadError as exc:
        return rows, [f"XML parse error: {exc}"]

    event_list = doc.find("EventList")
    if event_list is None:
        return rows, ["EventList missing from XML"]

    for event in children(event_list, "Event"):
        event_id = parse_int(child_text(event, "EventId"))
        base_name = normalize_space(child_text(event, "Name")) or ""
        event_form = attr(event, "eventForm")
        organiser_ids = ",".join(_organiser_ids(event))
        classification_id = parse_int(child_text(event, "EventClassificationId"))
        discipline_id = parse_int(child_text(event, "DisciplineId"))

        for race in children(event, "EventRace"):
            race_id = parse_int(child_text(race, "EventRaceId"))
            if event_id is None or race_id is None:
                warnings.append(f"Skipping race without EventId/EventRaceId in '{base_name}'")
                continue
            race_name = normalize_space(child_text(race, "Name")) or ""
            name = base_name
            if event_form == "IndMultiDay" and race_name:
                name = f"{base_name} – {race_name}"
            rows.append({
                "eventid": event_id,
                "eventraceid": race_id,
                "eventdate": child_text(race, "RaceDate", "Date") or child_text(race, "EventDate"),
                "eventname": name,
                "eventorganiser_ids": organiser_ids or None,
                "eventclassificationid": classification_id,
                "eventdistance": child_text(race, "WRSInfo", "Distance"),
                "eventform": event_form,
                "disciplineid": discipline_id,
                "batchid": batch_id,
            })
    return rows, warnings


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------

def import_events(
    conn: psycopg.Connection,
    client: EventorClient,
    from_date: date | None = None,
    to_date: date | None = None,
    classification_ids: Iterable[int] | None = None,
    initiated_by: InitiatedBy = InitiatedBy.MANUAL,
    organisation_id: int | None = None,
    counters: RunCounters | None = None,
) -> BatchRun:
    counters = counters or RunCounters()
    class_ids = list(classification_ids or DEFAULT_CLASSIFICATION_IDS)
    start, end = resolve_date_range(from_date, to_date)
    segments = split_segments(start, end)

    ledger = BatchLedger(conn)
    run = ledger.open(
        f"{SOURCE} {start.isoformat()}..{end.isoformat()}",
        initiated_by=initiated_by,
        organisation_id=organisation_id,
        row_count_before=count_rows(conn, "events"),
    )

    for idx, (seg_from, seg_to) in enumerate(segments):
        run.record_request()
        counters.requests += 1
        url = client.events_url(seg_from, seg_to, class_ids)
        log_id = log_api_start(
            conn, url, SOURCE, batch_id=run.id, organisation_id=organisation_id,
            comment=f"Fetching events {seg_from}..{seg_to}",
        )
        try:
            xml_text = client.fetch(url)
        except EventorApiError as exc:
            run.record_error()
            counters.request_errors += 1
            counters.warnings.append(str(exc))
            log_api_error(conn, log_id, exc.status, str(exc))
            conn.commit()
            continue
        log_api_end(conn, log_id, 200)

        rows, warnings = parse_event_list(xml_text, run.id)
        counters.event_rows_parsed += len(rows)
        counters.warnings.extend(warnings)

        sp_name = f"segment_{idx}"
        conn.execute(f"SAVEPOINT {sp_name}")
        try:
            plan = plan_event_upsert(rows, load_readonly_event_ids(conn, (r["eventid"] for r in rows)))
            upserted = upsert_events(conn, plan.payload)
            conn.execute(f"RELEASE SAVEPOINT {sp_name}")
        except psycopg.Error as exc:
            conn.execute(f"ROLLBACK TO SAVEPOINT {sp_name}")
            run.record_error()
            counters.db_phase_errors += 1
            counters.warnings.append(f"events upsert failed for {seg_from}..{seg_to}: {exc}")
            log.error("events upsert failed for %s..%s: %s", seg_from, seg_to, exc)
        else:
            counters.event_rows_upserted += upserted
            counters.event_rows_skipped_readonly += len(plan.skipped)
        conn.commit()

    return ledger.finalize(run, count_rows(conn, "events"))
