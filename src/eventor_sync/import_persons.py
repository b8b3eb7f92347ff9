"""eventor_sync.import_persons

Persons import: one club's member list from Eventor upserted into
`persons` on (organisationid, personid).  No deletes.

PersonsBatchRunner runs the import for every club in `clubs`, guarded
against overlapping runs, with a pause between clubs.  A failing club is
recorded and the runner moves on.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

import psycopg

from eventor_sync.api_log import insert_log_data, log_api_end, log_api_error, log_api_start
from eventor_sync.batch_ledger import BatchLedger, BatchRun, InitiatedBy, count_rows
from eventor_sync.eventor_client import EventorApiError, EventorClient, RequestPacer
from eventor_sync.run_guard import RunGuard
from eventor_sync.shared import EventorSyncError, MissingApiKeyError, RunCounters
from eventor_sync.xml_probe import (
    XmlLoadError,
    attr,
    child_text,
    children,
    extract_person_id,
    family_name,
    given_name_seq1,
    load_xml,
)

log = logging.getLogger(__name__)

SOURCE = "GetPersons"
BATCH_MARKER = "GetPersons batch"

PERSON_COLUMNS = (
    "organisationid",
    "personid",
    "personsex",
    "personnamefamily",
    "personnamegiven",
    "personbirthdate",
    "eventormodifydate",
    "batchid",
)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _modify_date(person) -> str | None:
    day = child_text(person, "ModifyDate", "Date")
    clock = child_text(person, "ModifyDate", "Clock")
    if day is None:
        return None
    return f"{day}T{clock}" if clock else day


def parse_person_list(
    xml_text: str | bytes | None,
    organisation_id: int,
) -> tuple[list[dict[str, Any]], list[str]]:
    rows: list[dict[str, Any]] = []
    warnings: list[str] = []
    try:
        doc = load_xml(xml_text)
    except XmlLoadError as exc:
        return rows, [f"XML parse error: {exc}"]

    person_list = doc.find("PersonList")
    if person_list is None:
        return rows, ["PersonList missing from XML"]

    for person in children(person_list, "Person"):
        person_id = extract_person_id(person)
        if person_id is None:
            warnings.append("Skipping person without a valid PersonId")
            continue
        rows.append({
            "organisationid": organisation_id,
            "personid": person_id,
            "personsex": attr(person, "sex"),
            "personnamefamily": family_name(person),
            "personnamegiven": given_name_seq1(person),
            "personbirthdate": child_text(person, "BirthDate", "Date"),
            "eventormodifydate": _modify_date(person),
        })
    return rows, warnings


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

def upsert_persons(conn: psycopg.Connection, rows: Iterable[dict[str, Any]]) -> int:
    cols = ", ".join(PERSON_COLUMNS)
    placeholders = ", ".join(f"%({c})s" for c in PERSON_COLUMNS)
    updates = ", ".join(
        f"{c} = EXCLUDED.{c}" for c in PERSON_COLUMNS if c not in ("organisationid", "personid")
    )
    query = (
        f"INSERT INTO persons ({cols}) VALUES ({placeholders}) "
        f"ON CONFLICT (organisationid, personid) DO UPDATE SET {updates}"
    )
    count = 0
    for row in rows:
        conn.execute(query, {c: row.get(c) for c in PERSON_COLUMNS})
        count += 1
    return count


def load_club_api_keys(
    conn: psycopg.Connection,
    organisation_ids: Iterable[int] | None = None,
    require_key: bool = True,
) -> list[tuple[int, str | None]]:
    """(organisationid, apikey) for clubs in ascending organisationid order."""
    query = "SELECT organisationid, apikey FROM clubs"
    clauses = []
    params: list[Any] = []
    if require_key:
        clauses.append("apikey IS NOT NULL")
    ids = list(organisation_ids or [])
    if ids:
        clauses.append("organisationid = ANY(%s)")
        params.append(ids)
    if clauses:
        query += " WHERE " + " AND ".join(clauses)
    query += " ORDER BY organisationid"
    return [(r[0], r[1]) for r in conn.execute(query, params).fetchall()]


def resolve_api_key(conn: psycopg.Connection, organisation_id: int, env_var: str | None = None) -> str:
    """Club key from `clubs`, falling back to the environment variable."""
    row = conn.execute(
        "SELECT apikey FROM clubs WHERE organisationid = %s", (organisation_id,)
    ).fetchone()
    if row and row[0]:
        return row[0]
    fallback = os.environ.get(env_var, "") if env_var else ""
    if fallback:
        return fallback
    raise MissingApiKeyError(f"no Eventor API key for organisation {organisation_id}")


# ---------------------------------------------------------------------------
# Per-club import
# ---------------------------------------------------------------------------

def import_persons_for_club(
    conn: psycopg.Connection,
    client: EventorClient,
    organisation_id: int,
    initiated_by: InitiatedBy = InitiatedBy.MANUAL,
    counters: RunCounters | None = None,
) -> BatchRun:
    counters = counters or RunCounters()
    ledger = BatchLedger(conn)
    run = ledger.open(
        f"{SOURCE} organisation {organisation_id}",
        initiated_by=initiated_by,
        organisation_id=organisation_id,
        row_count_before=count_rows(conn, "persons", "organisationid", organisation_id),
    )

    run.record_request()
    counters.requests += 1
    url = client.persons_url(organisation_id)
    log_id = log_api_start(
        conn, url, SOURCE, batch_id=run.id, organisation_id=organisation_id,
        comment="GET persons/organisations",
    )
    try:
        xml_text = client.fetch(url)
    except EventorApiError as exc:
        run.record_error()
        counters.request_errors += 1
        counters.warnings.append(str(exc))
        log_api_error(conn, log_id, exc.status, str(exc))
        conn.commit()
        return ledger.finalize(
            run, count_rows(conn, "persons", "organisationid", organisation_id)
        )
    log_api_end(conn, log_id, 200)

    rows, warnings = parse_person_list(xml_text, organisation_id)
    counters.person_rows_parsed += len(rows)
    counters.warnings.extend(warnings)
    for row in rows:
        row["batchid"] = run.id

    conn.execute("SAVEPOINT persons_upsert")
    try:
        upserted = upsert_persons(conn, rows)
        conn.execute("RELEASE SAVEPOINT persons_upsert")
    except psycopg.Error as exc:
        conn.execute("ROLLBACK TO SAVEPOINT persons_upsert")
        run.record_error()
        counters.db_phase_errors += 1
        counters.warnings.append(f"persons upsert failed for {organisation_id}: {exc}")
        log.error("persons upsert failed for organisation %s: %s", organisation_id, exc)
    else:
        counters.person_rows_upserted += upserted

    after = count_rows(conn, "persons", "organisationid", organisation_id)
    insert_log_data(
        conn,
        SOURCE,
        "info" if run.error_count == 0 else "warn",
        comment=f"Persons upsert: {len(rows)} rows (after={after}). Warnings: {len(warnings)}",
        organisation_id=organisation_id,
        batch_id=run.id,
    )
    conn.commit()
    return ledger.finalize(run, after)


def sync_persons_for_club(
    conn: psycopg.Connection,
    client_factory: Callable[[str], EventorClient],
    organisation_id: int,
    api_key_env: str | None = None,
    initiated_by: InitiatedBy = InitiatedBy.MANUAL,
    counters: RunCounters | None = None,
) -> BatchRun:
    """Resolve the club's key and import its persons.

    A club without any usable key still gets a failed batch run before
    MissingApiKeyError is raised.
    """
    try:
        api_key = resolve_api_key(conn, organisation_id, api_key_env)
    except MissingApiKeyError as exc:
        ledger = BatchLedger(conn)
        run = ledger.open(
            f"{SOURCE} organisation {organisation_id}",
            initiated_by=initiated_by,
            organisation_id=organisation_id,
            row_count_before=count_rows(conn, "persons", "organisationid", organisation_id),
        )
        run.row_count_after = run.row_count_before
        ledger.fail(run, str(exc))
        raise
    return import_persons_for_club(
        conn, client_factory(api_key), organisation_id, initiated_by, counters
    )


# ---------------------------------------------------------------------------
# All-clubs runner
# ---------------------------------------------------------------------------

@dataclass
class ClubFailure:
    organisation_id: int
    error: str


@dataclass
class PersonsBatchResult:
    processed: int = 0
    failures: list[ClubFailure] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failures


class PersonsBatchRunner:
    """Long-lived owner of the persons full-catalog guard."""

    def __init__(
        self,
        conn_factory: Callable[[], psycopg.Connection],
        client_factory: Callable[[str], EventorClient],
        pacer: RequestPacer | None = None,
        api_key_env: str | None = None,
    ) -> None:
        self._conn_factory = conn_factory
        self._client_factory = client_factory
        self._pacer = pacer or RequestPacer()
        self._api_key_env = api_key_env
        self.guard = RunGuard(conn_factory, BATCH_MARKER)

    def run_all_clubs(
        self,
        organisation_ids: Iterable[int] | None = None,
        initiated_by: InitiatedBy = InitiatedBy.AUTO,
        counters: RunCounters | None = None,
    ) -> PersonsBatchResult:
        """Raises RunInProgressError when another full run is active."""
        counters = counters or RunCounters()
        result = PersonsBatchResult()

        with self.guard.acquire():
            conn = self._conn_factory()
            try:
                ledger = BatchLedger(conn)
                guard_run = ledger.open(f"{BATCH_MARKER} (all clubs)", initiated_by=initiated_by)
                try:
                    clubs = load_club_api_keys(conn, organisation_ids, require_key=False)
                    conn.commit()
                    log.info("persons batch: %d clubs to process", len(clubs))

                    for organisation_id, _ in clubs:
                        guard_run.record_request()
                        try:
                            club_run = sync_persons_for_club(
                                conn,
                                self._client_factory,
                                organisation_id,
                                api_key_env=self._api_key_env,
                                initiated_by=initiated_by,
                                counters=counters,
                            )
                            if club_run.error_count:
                                raise EventorSyncError(
                                    f"{club_run.error_count} error(s), batch {club_run.id}"
                                )
                            result.processed += 1
                            counters.clubs_processed += 1
                        except (EventorSyncError, psycopg.Error) as exc:
                            conn.rollback()
                            guard_run.record_error()
                            counters.clubs_failed += 1
                            result.failures.append(ClubFailure(organisation_id, str(exc)))
                            log.error("persons import for organisation %s failed: %s", organisation_id, exc)
                        self._pacer.wait()

                    ledger.finalize(guard_run)
                except Exception as exc:
                    ledger.abandon(guard_run, exc)
                    raise
            finally:
                conn.close()
        return result
