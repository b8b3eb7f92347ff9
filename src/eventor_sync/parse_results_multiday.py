"""eventor_sync.parse_results_multiday

Parser for multi-day individual Eventor result lists (eventForm IndMultiDay).

Emits one row per (person, race) where the race belongs to the class, the
person id resolves and the competitor status is exactly "OK".  Everything
else is dropped without a warning; multi-day lists carry many non-start
stages that are not worth reporting.
"""

from __future__ import annotations

import logging
from decimal import Decimal

from bs4 import Tag

from eventor_sync.normalize import (
    class_factor_for_type,
    compute_age,
    compute_points,
    leading_year,
    parse_int,
    time_to_seconds,
)
from eventor_sync.shared import ParseContext, ParseOutcome, ResultRow
from eventor_sync.xml_probe import (
    XmlLoadError,
    attr,
    child,
    child_text,
    children,
    competitor_status,
    extract_class_name,
    extract_class_type_id,
    extract_event_year_date,
    extract_person_id,
    load_xml,
)

log = logging.getLogger(__name__)


def _race_start_counts(class_result: Tag) -> dict[int, int | None]:
    """EventRaceId → noOfStarts for every ClassRaceInfo of the class."""
    counts: dict[int, int | None] = {}
    for info in children(child(class_result, "EventClass"), "ClassRaceInfo"):
        race_id = parse_int(child_text(info, "EventRaceId"))
        if race_id is not None:
            counts[race_id] = parse_int(info.get("noOfStarts"))
    return counts


def _event_race_ids(result_list: Tag) -> list[int]:
    ids = []
    for race in children(child(result_list, "Event"), "EventRace"):
        race_id = parse_int(child_text(race, "EventRaceId"))
        if race_id is not None:
            ids.append(race_id)
    return ids


def parse(xml_text: str | bytes | None, context: ParseContext | None = None) -> ParseOutcome:
    context = context or ParseContext()
    outcome = ParseOutcome()

    try:
        doc = load_xml(xml_text)
    except XmlLoadError as exc:
        outcome.warn(f"XML parse error: {exc}", event_id=context.event_id)
        return outcome

    result_list = doc.find("ResultList")
    if result_list is None:
        outcome.warn("ResultList missing from XML", event_id=context.event_id)
        return outcome

    event_id = context.event_id
    if event_id is None:
        event_id = parse_int(child_text(result_list, "Event", "EventId"))
    event_year = leading_year(context.event_date) or leading_year(
        extract_event_year_date(result_list)
    )
    if event_year is None:
        outcome.warn(
            "Could not read event year from Event/StartDate/Date; personage falls back to Age",
            event_id=event_id,
        )
    document_races = _event_race_ids(result_list)

    for class_result in children(result_list, "ClassResult"):
        class_name = extract_class_name(class_result)
        class_type_id = extract_class_type_id(class_result)
        if class_type_id is None:
            outcome.warn(
                f"Unknown class '{class_name}': ClassTypeId missing, classtypeid left empty",
                event_id=event_id,
            )
        factor = class_factor_for_type(class_type_id)
        class_factor = Decimal(factor) if factor is not None else None

        race_starts = _race_start_counts(class_result)
        race_ids = list(race_starts) or document_races
        class_starts = parse_int(attr(class_result, "numberOfStarts"))

        for person_result in children(class_result, "PersonResult"):
            person = child(person_result, "Person")
            person_id = extract_person_id(person)
            if person_id is None:
                continue
            age = compute_age(
                event_year,
                child_text(person, "BirthDate", "Date"),
                child_text(person, "Age"),
            )

            for race_result in children(person_result, "RaceResult"):
                event_race_id = parse_int(child_text(race_result, "EventRaceId"))
                if event_race_id is None or event_race_id not in race_ids:
                    continue
                result = child(race_result, "Result")
                status = competitor_status(result)
                if status != "OK":
                    continue

                start_count = race_starts.get(event_race_id)
                if start_count is None:
                    start_count = class_starts
                position = parse_int(child_text(result, "ResultPosition"))

                outcome.rows.append(
                    ResultRow(
                        person_id=person_id,
                        event_id=event_id,
                        event_race_id=event_race_id,
                        event_class_name=class_name,
                        result_time_seconds=time_to_seconds(child_text(result, "Time")),
                        result_time_diff_seconds=time_to_seconds(child_text(result, "TimeDiff")),
                        result_position=position,
                        competitor_status=status,
                        class_start_count=start_count,
                        class_type_id=class_type_id,
                        class_factor=class_factor,
                        points=compute_points(factor, position, start_count),
                        competitor_age=age,
                        competitor_organisation_id=context.organisation_id,
                        batch_id=context.batch_id,
                    )
                )

    log.debug("multi-day parser: %d rows, %d warnings", len(outcome.rows), len(outcome.warnings))
    return outcome
