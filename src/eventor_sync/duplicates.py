"""eventor_sync.duplicates

Duplicate (personid, eventraceid) detection over one parse result set.
Rows are only reported, never removed.
"""

from __future__ import annotations

from typing import Iterable

from eventor_sync.shared import ParseWarning, ResultRow

DUPLICATE_MESSAGE = "Duplicate personid+eventraceid in result set"


def flag_duplicate_results(rows: Iterable[ResultRow]) -> list[ParseWarning]:
    seen: set[tuple[int, int | None]] = set()
    warnings: list[ParseWarning] = []
    for row in rows:
        key = row.dedup_key
        if key in seen:
            warnings.append(
                ParseWarning(
                    DUPLICATE_MESSAGE,
                    person_id=row.person_id,
                    event_race_id=row.event_race_id,
                    event_id=row.event_id,
                )
            )
        else:
            seen.add(key)
    return warnings
