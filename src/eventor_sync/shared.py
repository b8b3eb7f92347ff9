"""eventor_sync.shared

Types shared by the result parsers and the import pipelines: the canonical
result row, parse warnings and context, run counters, common exceptions,
and report-writing support.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class EventorSyncError(Exception):
    """Base class for errors raised by the sync pipelines."""


class MissingApiKeyError(EventorSyncError):
    """Raised when no Eventor API key can be found for an organisation."""


class LedgerSetupError(EventorSyncError):
    """Raised when the batchrun ledger row cannot be created."""


class RunInProgressError(EventorSyncError):
    """Raised when a guarded run is refused because another one is active."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


# ---------------------------------------------------------------------------
# Canonical result model
# ---------------------------------------------------------------------------

# Python field name → stored column in the `results` table.  The stored
# names predate this package and must not change.
RESULT_COLUMNS: dict[str, str] = {
    "person_id": "personid",
    "event_id": "eventid",
    "event_race_id": "eventraceid",
    "event_class_name": "eventclassname",
    "result_time_seconds": "resulttime",
    "result_time_diff_seconds": "resulttimediff",
    "result_position": "resultposition",
    "competitor_status": "resultcompetitorstatus",
    "class_start_count": "classresultnumberofstarts",
    "class_type_id": "classtypeid",
    "class_factor": "klassfaktor",
    "points": "points",
    "competitor_age": "personage",
    "competitor_organisation_id": "clubparticipation",
    "batch_id": "batchid",
    "relay_team_name": "relayteamname",
    "relay_leg": "relayleg",
    "relay_leg_overall_position": "relaylegoverallposition",
    "relay_team_end_position": "relayteamendposition",
    "relay_team_end_diff_seconds": "relayteamenddiff",
    "relay_team_end_status": "relayteamendstatus",
}

UNRESOLVED_PERSON_ID = 0


@dataclass
class ResultRow:
    person_id: int
    event_id: int | None
    event_race_id: int | None
    event_class_name: str | None = None
    result_time_seconds: int | None = None
    result_time_diff_seconds: int | None = None
    result_position: int | None = None
    competitor_status: str | None = None
    class_start_count: int | None = None
    class_type_id: int | None = None
    class_factor: Decimal | None = None
    points: Decimal | None = None
    competitor_age: int | None = None
    competitor_organisation_id: int | None = None
    batch_id: str | None = None
    # Relay-only
    relay_team_name: str | None = None
    relay_leg: int | None = None
    relay_leg_overall_position: int | None = None
    relay_team_end_position: int | None = None
    relay_team_end_diff_seconds: int | None = None
    relay_team_end_status: str | None = None

    @property
    def dedup_key(self) -> tuple[int, int | None]:
        return (self.person_id, self.event_race_id)

    def to_db_row(self) -> dict[str, Any]:
        return {RESULT_COLUMNS[k]: v for k, v in asdict(self).items()}


@dataclass
class ParseWarning:
    message: str
    person_id: int | None = None
    event_race_id: int | None = None
    event_id: int | None = None

    def __str__(self) -> str:
        return self.message


@dataclass
class ParseContext:
    """Values a result document does not always describe itself."""

    event_id: int | None = None
    batch_id: str | None = None
    organisation_id: int | None = None
    event_date: str | None = None
    event_race_id: int | None = None


@dataclass
class ParseOutcome:
    rows: list[ResultRow] = field(default_factory=list)
    warnings: list[ParseWarning] = field(default_factory=list)

    def warn(self, message: str, **ids: int | None) -> None:
        self.warnings.append(ParseWarning(message, **ids))


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class RunCounters:
    requests: int = 0
    request_errors: int = 0
    db_phase_errors: int = 0
    # Events
    event_rows_parsed: int = 0
    event_rows_upserted: int = 0
    event_rows_skipped_readonly: int = 0
    # Persons
    person_rows_parsed: int = 0
    person_rows_upserted: int = 0
    # Results
    result_rows_parsed: int = 0
    result_rows_inserted: int = 0
    result_rows_deleted: int = 0
    duplicate_result_keys: int = 0
    parse_warnings: int = 0
    clubs_processed: int = 0
    clubs_failed: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    parameters: dict[str, Any],
    counters: RunCounters,
    summary: list[dict[str, Any]] | None = None,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        **parameters,
        "counters": counters.to_dict(),
        "summary": summary or [],
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
