"""eventor_sync.parse_results_standard

Parser for standard (single-day, individual) Eventor result lists.

One ResultRow per PersonResult, in document order.  A person whose id
cannot be extracted still gets a row, with person_id = 0 and a warning.
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
    resolve_class_type,
    time_to_seconds,
)
from eventor_sync.shared import (
    UNRESOLVED_PERSON_ID,
    ParseContext,
    ParseOutcome,
    ResultRow,
)
from eventor_sync.xml_probe import (
    XmlLoadError,
    child,
    child_text,
    children,
    competitor_status,
    extract_class_name,
    extract_class_start_count,
    extract_class_type_id,
    extract_event_year_date,
    extract_person_id,
    load_xml,
    person_display_name,
)

log = logging.getLogger(__name__)


def _result_block(person_result: Tag) -> tuple[Tag | None, Tag | None]:
    """Return (race_result, result) for a PersonResult.

    The first RaceResult/Result wins; otherwise a Result placed directly
    under PersonResult.
    """
    for race_result in children(person_result, "RaceResult"):
        result = child(race_result, "Result")
        if result is not None:
            return race_result, result
    race_results = children(person_result, "RaceResult")
    return (race_results[0] if race_results else None), child(person_result, "Result")


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

    event_year = leading_year(extract_event_year_date(result_list)) or leading_year(
        context.event_date
    )
    if event_year is None:
        outcome.warn(
            "Could not read event year from Event/StartDate/Date; personage falls back to Age",
            event_id=event_id,
        )

    for class_result in children(result_list, "ClassResult"):
        class_name = extract_class_name(class_result)
        explicit_type = extract_class_type_id(class_result)
        class_type_id, disagrees = resolve_class_type(explicit_type, class_name)
        if disagrees:
            outcome.warn(
                f"ClassTypeId {explicit_type} disagrees with class name '{class_name}'",
                event_id=event_id,
            )
        elif class_type_id is None:
            outcome.warn(
                f"Unknown class type for class '{class_name}'; no class factor",
                event_id=event_id,
            )
        factor = class_factor_for_type(class_type_id)
        class_factor = Decimal(factor) if factor is not None else None
        start_count = extract_class_start_count(class_result)
        class_race_id = parse_int(
            child_text(class_result, "EventClass", "ClassRaceInfo", "EventRaceId")
        )

        for person_result in children(class_result, "PersonResult"):
            person = child(person_result, "Person")
            race_result, result = _result_block(person_result)

            event_race_id = class_race_id
            if event_race_id is None:
                event_race_id = parse_int(child_text(race_result, "EventRaceId"))
            if event_race_id is None:
                event_race_id = context.event_race_id

            person_id = extract_person_id(person)
            if person_id is None:
                outcome.warn(
                    f"PersonId missing for {person_display_name(person)}; personid set to 0",
                    person_id=UNRESOLVED_PERSON_ID,
                    event_race_id=event_race_id,
                    event_id=event_id,
                )
                person_id = UNRESOLVED_PERSON_ID

            organisation_id = parse_int(
                child_text(person_result, "Organisation", "OrganisationId")
            )
            if organisation_id is None:
                organisation_id = context.organisation_id

            position = parse_int(child_text(result, "ResultPosition"))
            status = competitor_status(result)
            points = None
            if status == "OK":
                points = compute_points(factor, position, start_count)

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
                    points=points,
                    competitor_age=compute_age(
                        event_year,
                        child_text(person, "BirthDate", "Date"),
                        child_text(person, "Age"),
                    ),
                    competitor_organisation_id=organisation_id,
                    batch_id=context.batch_id,
                )
            )

    log.debug("standard parser: %d rows, %d warnings", len(outcome.rows), len(outcome.warnings))
    return outcome
