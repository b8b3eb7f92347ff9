"""eventor_sync.cli

Unified Eventor sync CLI.

    eventor-sync --mode results --db-dsn "$DSN" --from-date 2026-09-01

Secrets are never passed as arguments: the fallback Eventor API key is
read from the environment variable named by --api-key-env, per-club keys
from the `clubs` table.
"""

from __future__ import annotations

import logging
import os
import sys
import uuid
from datetime import date, datetime
from typing import Any

import click
import psycopg

from eventor_sync.batch_ledger import InitiatedBy
from eventor_sync.eventor_client import DEFAULT_CLASSIFICATION_IDS, EventorClient, RequestPacer
from eventor_sync.import_events import import_events
from eventor_sync.import_persons import PersonsBatchRunner, resolve_api_key, sync_persons_for_club
from eventor_sync.import_results import ResultsSyncService
from eventor_sync.shared import EventorSyncError, RunCounters, RunInProgressError, write_run_report

log = logging.getLogger(__name__)


def _as_date(value: datetime | None) -> date | None:
    return value.date() if value is not None else None


@click.command()
@click.option(
    "--mode",
    required=True,
    type=click.Choice(["events", "persons", "persons_batch", "results"]),
    help="Sync mode",
)
@click.option("--db-dsn", required=True, envvar="EVENTOR_SYNC_DB_DSN", help="PostgreSQL DSN")
@click.option("--from-date", default=None, type=click.DateTime(formats=["%Y-%m-%d"]), help="[events|results] Range start (default: 30 days ago)")
@click.option("--to-date", default=None, type=click.DateTime(formats=["%Y-%m-%d"]), help="[events|results] Range end (default: today)")
@click.option("--organisation-id", "organisation_ids", multiple=True, type=int, help="Club organisation id; repeatable. Required for persons.")
@click.option("--classification-id", "classification_ids", multiple=True, type=int, help=f"[events] Eventor classification ids (default: {list(DEFAULT_CLASSIFICATION_IDS)})")
@click.option("--pause-ms", default=600, type=int, show_default=True, help="Pacing delay before each Eventor request")
@click.option("--api-key-env", default="EVENTOR_API_KEY", show_default=True, help="Env var name holding the fallback Eventor API key")
@click.option("--initiated-by", default="manual", type=click.Choice([i.value for i in InitiatedBy]), show_default=True)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--log-level", default="INFO", show_default=True, type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]))
def main(
    mode: str,
    db_dsn: str,
    from_date: datetime | None,
    to_date: datetime | None,
    organisation_ids: tuple[int, ...],
    classification_ids: tuple[int, ...],
    pause_ms: int,
    api_key_env: str,
    initiated_by: str,
    run_id: str | None,
    log_level: str,
) -> None:
    """Synchronize Eventor events, persons and results into PostgreSQL."""
    logging.basicConfig(level=log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()
    counters = RunCounters()
    pacer = RequestPacer(pause_ms / 1000.0)
    who = InitiatedBy(initiated_by)
    summary: list[dict[str, Any]] = []
    failed_orgs: list[int] = []

    def connect() -> psycopg.Connection:
        return psycopg.connect(db_dsn, autocommit=False)

    def client_for(api_key: str) -> EventorClient:
        return EventorClient(api_key, pacer=pacer)

    click.echo(f"[{run_id}] Starting {mode} run")

    try:
        if mode == "events":
            conn = connect()
            try:
                org = organisation_ids[0] if organisation_ids else None
                if org is not None:
                    api_key = resolve_api_key(conn, org, api_key_env)
                else:
                    api_key = os.environ.get(api_key_env, "")
                    if not api_key:
                        click.echo(f"[{run_id}] FATAL: env var {api_key_env} must be set", err=True)
                        sys.exit(1)
                run = import_events(
                    conn, client_for(api_key), _as_date(from_date), _as_date(to_date),
                    classification_ids or None, who, org, counters,
                )
                summary.append({"batch_id": run.id, "status": run.status.value})
            finally:
                conn.close()

        elif mode == "persons":
            if not organisation_ids:
                click.echo(f"[{run_id}] FATAL: --organisation-id is required for persons", err=True)
                sys.exit(1)
            conn = connect()
            try:
                for org in organisation_ids:
                    try:
                        run = sync_persons_for_club(conn, client_for, org, api_key_env, who, counters)
                    except (EventorSyncError, psycopg.Error) as exc:
                        conn.rollback()
                        counters.clubs_failed += 1
                        failed_orgs.append(org)
                        click.echo(f"[{run_id}] organisation {org} failed: {exc}", err=True)
                        summary.append({"organisation_id": org, "error": str(exc)})
                        continue
                    summary.append({"organisation_id": org, "batch_id": run.id, "status": run.status.value})
            finally:
                conn.close()

        elif mode == "persons_batch":
            runner = PersonsBatchRunner(connect, client_for, pacer, api_key_env)
            result = runner.run_all_clubs(organisation_ids or None, who, counters)
            summary.extend(
                {"organisation_id": f.organisation_id, "error": f.error} for f in result.failures
            )
            click.echo(f"[{run_id}] persons_batch: {result.processed} clubs ok, {len(result.failures)} failed")

        elif mode == "results":
            service = ResultsSyncService(connect, client_for, who)
            summary = service.run(
                _as_date(from_date), _as_date(to_date), organisation_ids or None, counters
            )

    except RunInProgressError as exc:
        click.echo(f"[{run_id}] Skipping run: {exc.reason}", err=True)
        sys.exit(1)
    except (EventorSyncError, psycopg.Error) as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)

    report_path = write_run_report(
        run_id,
        started_at,
        mode,
        {
            "from_date": from_date.date().isoformat() if from_date else None,
            "to_date": to_date.date().isoformat() if to_date else None,
            "organisation_ids": list(organisation_ids),
        },
        counters,
        summary,
    )
    click.echo(
        f"[{run_id}] Done: {counters.requests} requests, "
        f"{counters.request_errors + counters.db_phase_errors} errors"
    )
    click.echo(f"[{run_id}] Run report: {report_path}")
    if failed_orgs:
        sys.exit(1)


if __name__ == "__main__":
    main()
