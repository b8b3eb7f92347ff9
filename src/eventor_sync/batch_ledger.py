"""eventor_sync.batch_ledger

Append-only ledger of synchronization units in the `batchrun` table.

Lifecycle of one unit (one club, or one events date range):

    open()          → row inserted with status 'running'
    update_counts() → request/error counters refreshed (optional, repeatable)
    finalize()      → end time, after-count and terminal status
    fail()          → terminal 'failed' for units that could not start
    abandon()       → fail() for a run cut short by an exception

Ledger writes are committed immediately so the audit trail survives a
rollback of the unit's data writes.  Rows are never deleted.
"""

from __future__ import annotations

import enum
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone

import psycopg
from psycopg import sql

from eventor_sync import __version__
from eventor_sync.shared import LedgerSetupError

log = logging.getLogger(__name__)


class BatchStatus(str, enum.Enum):
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class InitiatedBy(str, enum.Enum):
    MANUAL = "manual"
    AUTO = "auto"


@dataclass
class BatchRun:
    id: str
    start_time: datetime
    initiated_by: InitiatedBy = InitiatedBy.MANUAL
    comment: str | None = None
    status: BatchStatus = BatchStatus.RUNNING
    end_time: datetime | None = None
    request_count: int = 0
    error_count: int = 0
    row_count_before: int | None = None
    row_count_after: int | None = None
    organisation_id: int | None = None
    app_version: str = __version__

    def record_request(self) -> None:
        self.request_count += 1

    def record_error(self) -> None:
        self.error_count += 1


def resolve_batch_status(request_count: int, error_count: int) -> BatchStatus:
    """Terminal status from the unit's counters.

    A unit that did no work at all is a success.
    """
    if request_count > 0 and error_count >= request_count:
        return BatchStatus.FAILED
    if 0 < error_count < request_count:
        return BatchStatus.PARTIAL
    return BatchStatus.SUCCESS


def count_rows(
    conn: psycopg.Connection,
    table: str,
    column: str | None = None,
    value: object = None,
) -> int:
    query = sql.SQL("SELECT count(*) FROM {}").format(sql.Identifier(table))
    params: tuple = ()
    if column is not None:
        query = query + sql.SQL(" WHERE {} = %s").format(sql.Identifier(column))
        params = (value,)
    return conn.execute(query, params).fetchone()[0]


class BatchLedger:
    def __init__(self, conn: psycopg.Connection, render_job_id: str | None = None) -> None:
        self._conn = conn
        self._render_job_id = render_job_id or os.environ.get("RENDER_INSTANCE_ID")

    def open(
        self,
        comment: str,
        initiated_by: InitiatedBy = InitiatedBy.MANUAL,
        organisation_id: int | None = None,
        row_count_before: int | None = None,
    ) -> BatchRun:
        started = datetime.now(timezone.utc)
        try:
            row = self._conn.execute(
                """
                INSERT INTO batchrun
                    (starttime, status, initiatedby, comment, numberofrequests,
                     numberoferrors, numberofrowsbefore, clubparticipation,
                     appversion, renderjobid)
                VALUES (%s, %s, %s, %s, 0, 0, %s, %s, %s, %s)
                RETURNING id
                """,
                (
                    started,
                    BatchStatus.RUNNING.value,
                    InitiatedBy(initiated_by).value,
                    comment,
                    row_count_before,
                    organisation_id,
                    __version__,
                    self._render_job_id,
                ),
            ).fetchone()
            self._conn.commit()
        except psycopg.Error as exc:
            self._conn.rollback()
            raise LedgerSetupError(f"could not create batchrun row: {exc}") from exc

        run = BatchRun(
            id=str(row[0]),
            start_time=started,
            initiated_by=InitiatedBy(initiated_by),
            comment=comment,
            row_count_before=row_count_before,
            organisation_id=organisation_id,
        )
        log.info("batch %s opened (%s)", run.id, comment)
        return run

    def update_counts(self, run: BatchRun) -> None:
        self._conn.execute(
            "UPDATE batchrun SET numberofrequests = %s, numberoferrors = %s WHERE id = %s",
            (run.request_count, run.error_count, run.id),
        )
        self._conn.commit()

    def finalize(
        self,
        run: BatchRun,
        row_count_after: int | None = None,
        failed: bool = False,
    ) -> BatchRun:
        run.end_time = datetime.now(timezone.utc)
        run.row_count_after = row_count_after
        run.status = (
            BatchStatus.FAILED
            if failed
            else resolve_batch_status(run.request_count, run.error_count)
        )
        self._conn.execute(
            """
            UPDATE batchrun
               SET endtime = %s, status = %s, numberofrequests = %s,
                   numberoferrors = %s, numberofrowsafter = %s
             WHERE id = %s
            """,
            (
                run.end_time,
                run.status.value,
                run.request_count,
                run.error_count,
                run.row_count_after,
                run.id,
            ),
        )
        self._conn.commit()
        log.info(
            "batch %s finished: %s (%d requests, %d errors)",
            run.id, run.status.value, run.request_count, run.error_count,
        )
        return run

    def fail(self, run: BatchRun, reason: str) -> BatchRun:
        """Mark a unit that could not proceed as failed, keeping its counters.

        Any uncommitted work of the unit is rolled back first.
        """
        log.error("batch %s failed: %s", run.id, reason)
        self._conn.rollback()
        if run.error_count == 0:
            run.record_error()
        run.comment = f"{run.comment or ''} [failed: {reason}]".strip()
        self._conn.execute(
            "UPDATE batchrun SET comment = %s WHERE id = %s",
            (run.comment, run.id),
        )
        return self.finalize(run, run.row_count_after, failed=True)

    def abandon(self, run: BatchRun, exc: BaseException) -> None:
        """Mark a run interrupted by ``exc`` as failed; the caller re-raises ``exc``.

        A failure to write the mark is logged, not raised, so the original
        error is the one that reaches the caller.
        """
        try:
            self.fail(run, f"{type(exc).__name__}: {exc}")
        except psycopg.Error as mark_exc:
            log.error("could not mark batch %s failed: %s", run.id, mark_exc)
