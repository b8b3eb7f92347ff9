"""eventor_sync.run_guard

Advisory two-layer protection against overlapping full-catalog runs.

Layer 1 is an in-process flag held by the long-lived orchestrator object.
Layer 2 is the ledger itself: a `batchrun` row whose comment contains the
run's marker, with status 'running' and a start time inside the guard
window, means another instance is busy.  A crashed run stops blocking
once its row ages out of the window.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterator

import psycopg

from eventor_sync.batch_ledger import BatchStatus
from eventor_sync.shared import RunInProgressError

log = logging.getLogger(__name__)

ALREADY_IN_PROGRESS = "already-in-progress"
DB_GUARD_ACTIVE = "db-guard-active"
DEFAULT_WINDOW = timedelta(minutes=15)


class RunGuard:
    def __init__(
        self,
        conn_factory: Callable[[], psycopg.Connection],
        marker: str,
        window: timedelta = DEFAULT_WINDOW,
    ) -> None:
        self._conn_factory = conn_factory
        self.marker = marker
        self.window = window
        self.in_progress = False
        self._lock = threading.Lock()

    def db_guard_active(self) -> bool:
        """True when the newest marker row inside the window is still running."""
        since = datetime.now(timezone.utc) - self.window
        with self._conn_factory() as conn:
            row = conn.execute(
                """
                SELECT status FROM batchrun
                 WHERE starttime >= %s AND comment ILIKE %s
                 ORDER BY starttime DESC
                 LIMIT 1
                """,
                (since, f"%{self.marker}%"),
            ).fetchone()
        return row is not None and row[0] == BatchStatus.RUNNING.value

    @contextmanager
    def acquire(self) -> Iterator["RunGuard"]:
        with self._lock:
            if self.in_progress:
                log.warning("skipping %s: already in progress", self.marker)
                raise RunInProgressError(ALREADY_IN_PROGRESS)
            self.in_progress = True
        try:
            if self.db_guard_active():
                log.warning("skipping %s: db guard indicates another run is active", self.marker)
                raise RunInProgressError(DB_GUARD_ACTIVE)
            yield self
        finally:
            self.in_progress = False
