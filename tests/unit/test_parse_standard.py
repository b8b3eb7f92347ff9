"""Unit tests for the standard single-day result parser.

No database or network access required.
"""

from __future__ import annotations

from decimal import Decimal

from eventor_sync.parse_results_standard import parse
from eventor_sync.shared import UNRESOLVED_PERSON_ID, ParseContext

SINGLE_WINNER = """
<ResultList>
  <Event>
    <EventId>5000</EventId>
    <StartDate><Date>2026-05-10</Date></StartDate>
  </Event>
  <ClassResult numberOfStarts="10">
    <EventClass>
      <Name>H21</Name>
      <ClassTypeId>17</ClassTypeId>
      <ClassRaceInfo><EventRaceId>7000</EventRaceId></ClassRaceInfo>
    </EventClass>
    <PersonResult>
      <Person>
        <PersonName><Family>Svensson</Family><Given sequence="1">Anna</Given></PersonName>
        <PersonId>123</PersonId>
        <BirthDate><Date>1990-03-01</Date></BirthDate>
      </Person>
      <Organisation><OrganisationId>114</OrganisationId></Organisation>
      <RaceResult>
        <EventRaceId>7000</EventRaceId>
        <Result>
          <Time>45:30</Time>
          <TimeDiff>0:00</TimeDiff>
          <ResultPosition>1</ResultPosition>
          <CompetitorStatus value="OK"/>
        </Result>
      </RaceResult>
    </PersonResult>
  </ClassResult>
</ResultList>
"""

MIXED = """
<ResultList>
  <Event><StartDate><Date>2026-05-10</Date></StartDate></Event>
  <ClassResult>
    <EventClass>
      <Name>Gul</Name>
      <ClassRaceInfo noOfStarts="4"><EventRaceId>7100</EventRaceId></ClassRaceInfo>
    </EventClass>
    <PersonResult>
      <Person>
        <PersonName><Family>Berg</Family><Given>Lisa</Given></PersonName>
        <PersonId id="456"/>
        <Age>12</Age>
      </Person>
      <Result>
        <Time>20:00</Time>
        <ResultPosition>2</ResultPosition>
        <CompetitorStatus value="OK"/>
      </Result>
    </PersonResult>
    <PersonResult>
      <Person>
        <PersonName><Family>Okänd</Family><Given>Kalle</Given></PersonName>
      </Person>
      <RaceResult>
        <Result>
          <ResultPosition>3</ResultPosition>
          <CompetitorStatus value="OK"/>
        </Result>
      </RaceResult>
    </PersonResult>
    <PersonResult>
      <Person><PersonId>789</PersonId></Person>
      <RaceResult>
        <Result>
          <Time>31:00</Time>
          <ResultPosition>4</ResultPosition>
          <CompetitorStatus value="MisPunch"/>
        </Result>
      </RaceResult>
    </PersonResult>
  </ClassResult>
  <ClassResult numberOfStarts="3">
    <EventClass>
      <Name>Gul</Name>
      <ClassTypeId>16</ClassTypeId>
    </EventClass>
    <PersonResult>
      <Person><PersonId>900</PersonId></Person>
      <RaceResult>
        <EventRaceId>7200</EventRaceId>
        <Result><ResultPosition>1</ResultPosition><CompetitorStatus value="OK"/></Result>
      </RaceResult>
    </PersonResult>
  </ClassResult>
</ResultList>
"""


def _ctx(**kwargs) -> ParseContext:
    base = dict(event_id=5000, batch_id="batch-1", organisation_id=114, event_date="2026-05-10")
    base.update(kwargs)
    return ParseContext(**base)


class TestSingleWinner:
    def test_one_row(self):
        outcome = parse(SINGLE_WINNER, _ctx())
        assert len(outcome.rows) == 1
        assert outcome.warnings == []

    def test_derived_fields(self):
        row = parse(SINGLE_WINNER, _ctx()).rows[0]
        assert row.person_id == 123
        assert row.event_id == 5000
        assert row.event_race_id == 7000
        assert row.event_class_name == "H21"
        assert row.result_time_seconds == 2730
        assert row.result_time_diff_seconds == 0
        assert row.result_position == 1
        assert row.competitor_status == "OK"
        assert row.class_start_count == 10
        assert row.class_type_id == 17
        assert row.class_factor == Decimal(100)
        assert row.points == Decimal("90.00")
        assert row.competitor_age == 36
        assert row.competitor_organisation_id == 114
        assert row.batch_id == "batch-1"

    def test_event_id_read_from_document_without_context(self):
        row = parse(SINGLE_WINNER, ParseContext()).rows[0]
        assert row.event_id == 5000

    def test_db_row_uses_stored_column_names(self):
        db_row = parse(SINGLE_WINNER, _ctx()).rows[0].to_db_row()
        assert db_row["personid"] == 123
        assert db_row["klassfaktor"] == Decimal(100)
        assert db_row["classresultnumberofstarts"] == 10
        assert db_row["clubparticipation"] == 114


class TestMixedDocument:
    def test_row_count_matches_person_results(self):
        outcome = parse(MIXED, _ctx())
        assert len(outcome.rows) == 4

    def test_direct_result_and_attribute_person_id(self):
        row = parse(MIXED, _ctx()).rows[0]
        assert row.person_id == 456
        assert row.result_time_seconds == 1200
        assert row.event_race_id == 7100
        assert row.competitor_age == 12

    def test_name_heuristic_class_type(self):
        row = parse(MIXED, _ctx()).rows[0]
        assert row.class_type_id == 19
        assert row.class_factor == Decimal(75)
        assert row.class_start_count == 4
        # 75 * (1 - 2/4)
        assert row.points == Decimal("37.50")

    def test_missing_person_id_gets_sentinel_and_warning(self):
        outcome = parse(MIXED, _ctx())
        row = outcome.rows[1]
        assert row.person_id == UNRESOLVED_PERSON_ID
        messages = [w.message for w in outcome.warnings]
        assert any("Okänd Kalle" in m and "personid set to 0" in m for m in messages)

    def test_no_points_unless_ok(self):
        row = parse(MIXED, _ctx()).rows[2]
        assert row.competitor_status == "MisPunch"
        assert row.points is None

    def test_organisation_falls_back_to_context(self):
        row = parse(MIXED, _ctx(organisation_id=999)).rows[0]
        assert row.competitor_organisation_id == 999

    def test_explicit_type_wins_and_disagreement_warned(self):
        outcome = parse(MIXED, _ctx())
        row = outcome.rows[3]
        assert row.class_type_id == 16
        assert row.class_factor == Decimal(125)
        assert row.event_race_id == 7200
        assert any("disagrees" in w.message for w in outcome.warnings)


class TestRobustness:
    def test_empty_input(self):
        outcome = parse("", _ctx())
        assert outcome.rows == []
        assert len(outcome.warnings) == 1

    def test_missing_result_list(self):
        outcome = parse("<EventList><Event/></EventList>", _ctx())
        assert outcome.rows == []
        assert len(outcome.warnings) == 1
        assert "ResultList" in outcome.warnings[0].message

    def test_not_xml(self):
        outcome = parse("this is not xml", _ctx())
        assert outcome.rows == []
        assert len(outcome.warnings) == 1

    def test_missing_event_year_uses_context_date(self):
        xml = SINGLE_WINNER.replace("<StartDate><Date>2026-05-10</Date></StartDate>", "")
        outcome = parse(xml, _ctx(event_date="2025-05-10"))
        assert outcome.rows[0].competitor_age == 35
        assert outcome.warnings == []

    def test_unresolvable_event_year_warns_once(self):
        xml = SINGLE_WINNER.replace("<StartDate><Date>2026-05-10</Date></StartDate>", "")
        outcome = parse(xml, _ctx(event_date=None))
        assert outcome.rows[0].competitor_age is None
        assert len(outcome.warnings) == 1

    def test_truncated_document_yields_no_rows(self):
        cut = SINGLE_WINNER.index("<PersonId>123") + len("<PersonId>12")
        outcome = parse(SINGLE_WINNER[:cut] + "</Per", _ctx())
        assert outcome.rows == []
        assert len(outcome.warnings) == 1
        assert outcome.warnings[0].message.startswith("XML parse error")
