"""eventor_sync.parse_results_relay

Parser for relay Eventor result lists.

One ResultRow per TeamMemberResult (a leg), carrying the team's final
outcome in the relay_* fields.  Only members running for the importing
organisation are kept; vacant placeholders and members of other clubs
are skipped with a warning.
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
    trim,
)
from eventor_sync.shared import (
    UNRESOLVED_PERSON_ID,
    ParseContext,
    ParseOutcome,
    ResultRow,
)
from eventor_sync.xml_probe import (
    Extractor,
    XmlLoadError,
    attr,
    child,
    child_text,
    children,
    extract_class_name,
    extract_class_start_count,
    extract_class_type_id,
    extract_event_year_date,
    extract_person_id,
    first_of,
    given_name_seq1,
    load_xml,
    person_display_name,
    typed_value,
)

log = logging.getLogger(__name__)

RELAY_SINGLE_DAY = "relaysingleday"
VACANT = "vacant"


def _race_id_attr(node: Tag | None) -> int | None:
    return parse_int(attr(node, "id")) or parse_int(attr(node, "raceId"))


def _team_race_id(team: Tag) -> int | None:
    for race in children(team, "EventRace"):
        race_id = _race_id_attr(race)
        if race_id is not None:
            return race_id
    return None


def _class_race_id(team: Tag) -> int | None:
    class_result = team.parent
    for race in children(child(class_result, "ClassRaceInfo"), "EventRace"):
        race_id = _race_id_attr(race)
        if race_id is not None:
            return race_id
    return None


# Probed against a TeamResult; the ClassResult is reached via its parent.
RACE_ID_EXTRACTORS: tuple[Extractor, ...] = (
    _team_race_id,
    _class_race_id,
    lambda t: parse_int(child_text(t, "EventRaceId")),
    lambda t: parse_int(child_text(t, "RaceId")),
)

# Probed against a TeamMemberResult.
MEMBER_TIME_EXTRACTORS: tuple[Extractor, ...] = (
    lambda m: time_to_seconds(child_text(m, "Time")),
    lambda m: time_to_seconds(child_text(m, "Result", "Time")),
)

MEMBER_TIME_DIFF_EXTRACTORS: tuple[Extractor, ...] = (
    lambda m: time_to_seconds(child_text(m, "OverallResult", "TimeBehind")),
    lambda m: time_to_seconds(child_text(m, "Result", "OverallResult", "TimeBehind")),
    lambda m: time_to_seconds(typed_value(m, "TimeBehind", "Leg")),
    lambda m: time_to_seconds(typed_value(child(m, "Result"), "TimeBehind", "Leg")),
)

MEMBER_POSITION_EXTRACTORS: tuple[Extractor, ...] = (
    lambda m: parse_int(typed_value(m, "Position", "Leg")),
    lambda m: parse_int(typed_value(child(m, "Result"), "Position", "Leg")),
    lambda m: parse_int(child_text(m, "ResultPosition")),
)

MEMBER_STATUS_EXTRACTORS: tuple[Extractor, ...] = (
    lambda m: attr(m, "value", "CompetitorStatus"),
    lambda m: child_text(m, "Result", "Status"),
)


def _team_name(team: Tag) -> str | None:
    return child_text(team, "TeamName") or child_text(team, "Name")


def parse(xml_text: str | bytes | None, context: ParseContext | None = None) -> ParseOutcome:
    context = context or ParseContext()
    outcome = ParseOutcome()
    importing_org = context.organisation_id

    try:
        doc = load_xml(xml_text)
    except XmlLoadError as exc:
        outcome.warn(f"XML parse error: {exc}", event_id=context.event_id)
        return outcome

    result_list = doc.find("ResultList")
    if result_list is None:
        outcome.warn("ResultList missing from XML", event_id=context.event_id)
        return outcome

    event = child(result_list, "Event")
    event_form = (attr(event, "eventForm") or "").lower()
    single_day = event_form == RELAY_SINGLE_DAY

    event_id = parse_int(child_text(event, "EventId"))
    if event_id is None:
        event_id = context.event_id

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
        class_type_id = extract_class_type_id(class_result)
        factor = class_factor_for_type(class_type_id)
        class_factor = Decimal(factor) if factor is not None else None
        # Team count is meaningless as a start count for single-day relays.
        start_count = None if single_day else extract_class_start_count(class_result)

        for team in children(class_result, "TeamResult"):
            team_name = _team_name(team)
            team_position = parse_int(child_text(team, "ResultPosition"))
            team_diff = time_to_seconds(child_text(team, "TimeBehind"))
            team_status = attr(team, "value", "TeamStatus") or child_text(team, "Status")
            event_race_id = first_of(team, RACE_ID_EXTRACTORS)
            if event_race_id is None:
                event_race_id = context.event_race_id
            # first listed club is the team's primary club
            team_org = parse_int(child_text(team, "Organisation", "OrganisationId"))
            team_first_row = len(outcome.rows)

            for member in children(team, "TeamMemberResult"):
                person = child(member, "Person")

                if (trim(given_name_seq1(person)) or "").lower() == VACANT:
                    outcome.warn(
                        f"Skipping vacant runner in team '{team_name or '(unknown)'}'",
                        event_race_id=event_race_id,
                        event_id=event_id,
                    )
                    continue

                member_org = parse_int(child_text(member, "Organisation", "OrganisationId"))
                if importing_org is not None and member_org is not None and member_org != importing_org:
                    outcome.warn(
                        f"Skipping {person_display_name(person)} "
                        f"(personid={extract_person_id(person) or 'unknown'}): "
                        f"club {member_org} is not importing club {importing_org}",
                        person_id=extract_person_id(person),
                        event_race_id=event_race_id,
                        event_id=event_id,
                    )
                    continue

                person_id = extract_person_id(person)
                if person_id is None:
                    outcome.warn(
                        f"PersonId missing for {person_display_name(person)}; personid set to 0",
                        person_id=UNRESOLVED_PERSON_ID,
                        event_race_id=event_race_id,
                        event_id=event_id,
                    )
                    person_id = UNRESOLVED_PERSON_ID

                position = first_of(member, MEMBER_POSITION_EXTRACTORS)
                if position is None:
                    position = team_position
                status = first_of(member, MEMBER_STATUS_EXTRACTORS)
                points = None
                if status == "OK":
                    points = compute_points(factor, position, start_count)

                outcome.rows.append(
                    ResultRow(
                        person_id=person_id,
                        event_id=event_id,
                        event_race_id=event_race_id,
                        event_class_name=class_name,
                        result_time_seconds=first_of(member, MEMBER_TIME_EXTRACTORS),
                        result_time_diff_seconds=first_of(member, MEMBER_TIME_DIFF_EXTRACTORS),
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
                        competitor_organisation_id=member_org if member_org is not None else importing_org,
                        batch_id=context.batch_id,
                        relay_team_name=team_name,
                        relay_leg=parse_int(child_text(member, "Leg")),
                        relay_leg_overall_position=parse_int(
                            child_text(member, "OverallResult", "ResultPosition")
                        ),
                        relay_team_end_position=team_position,
                        relay_team_end_diff_seconds=team_diff,
                        relay_team_end_status=team_status,
                    )
                )

            if (
                len(outcome.rows) > team_first_row
                and importing_org is not None
                and team_org is not None
                and team_org != importing_org
            ):
                outcome.warn(
                    f"Team '{team_name or '(unknown)'}': primary team club ({team_org}) "
                    f"differs from importing club ({importing_org})",
                    event_race_id=event_race_id,
                    event_id=event_id,
                )

    log.debug("relay parser: %d rows, %d warnings", len(outcome.rows), len(outcome.warnings))
    return outcome
