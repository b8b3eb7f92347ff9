"""Unit tests for the multi-day individual result parser."""

from __future__ import annotations

from decimal import Decimal

from eventor_sync.parse_results_multiday import parse
from eventor_sync.shared import ParseContext

THREE_DAYS = """
<ResultList>
  <Event eventForm="IndMultiDay">
    <EventId>6000</EventId>
    <EventRace><EventRaceId>6001</EventRaceId></EventRace>
    <EventRace><EventRaceId>6002</EventRaceId></EventRace>
    <EventRace><EventRaceId>6003</EventRaceId></EventRace>
  </Event>
  <ClassResult numberOfStarts="20">
    <EventClass>
      <Name>D21</Name>
      <ClassTypeId>17</ClassTypeId>
      <ClassRaceInfo noOfStarts="10"><EventRaceId>6001</EventRaceId></ClassRaceInfo>
      <ClassRaceInfo><EventRaceId>6002</EventRaceId></ClassRaceInfo>
    </EventClass>
    <PersonResult>
      <Person>
        <PersonId>321</PersonId>
        <BirthDate><Date>2000-01-01</Date></BirthDate>
      </Person>
      <RaceResult>
        <EventRaceId>6001</EventRaceId>
        <Result>
          <Time>1:00:00</Time>
          <TimeDiff>05:00</TimeDiff>
          <ResultPosition>2</ResultPosition>
          <CompetitorStatus value="OK"/>
        </Result>
      </RaceResult>
      <RaceResult>
        <EventRaceId>6002</EventRaceId>
        <Result>
          <Time>50:00</Time>
          <ResultPosition>5</ResultPosition>
          <CompetitorStatus value="OK"/>
        </Result>
      </RaceResult>
      <RaceResult>
        <EventRaceId>6003</EventRaceId>
        <Result><ResultPosition>1</ResultPosition><CompetitorStatus value="OK"/></Result>
      </RaceResult>
    </PersonResult>
    <PersonResult>
      <Person><PersonId>322</PersonId></Person>
      <RaceResult>
        <EventRaceId>6001</EventRaceId>
        <Result><CompetitorStatus value="DidNotStart"/></Result>
      </RaceResult>
    </PersonResult>
    <PersonResult>
      <Person><PersonName><Family>Utan</Family></PersonName></Person>
      <RaceResult>
        <EventRaceId>6001</EventRaceId>
        <Result><ResultPosition>3</ResultPosition><CompetitorStatus value="OK"/></Result>
      </RaceResult>
    </PersonResult>
  </ClassResult>
  <ClassResult>
    <EventClass><Name>Mystery</Name></EventClass>
    <PersonResult>
      <Person><PersonId>400</PersonId></Person>
      <RaceResult>
        <EventRaceId>6003</EventRaceId>
        <Result><ResultPosition>1</ResultPosition><CompetitorStatus value="OK"/></Result>
      </RaceResult>
    </PersonResult>
  </ClassResult>
</ResultList>
"""


def _ctx() -> ParseContext:
    return ParseContext(event_id=6000, batch_id="b", organisation_id=114, event_date="2026-07-01")


class TestMultiDay:
    def test_only_ok_races_of_the_class(self):
        rows = parse(THREE_DAYS, _ctx()).rows
        keys = [(r.person_id, r.event_race_id) for r in rows]
        assert keys == [(321, 6001), (321, 6002), (400, 6003)]

    def test_start_count_per_race_with_class_fallback(self):
        rows = parse(THREE_DAYS, _ctx()).rows
        assert rows[0].class_start_count == 10
        assert rows[1].class_start_count == 20

    def test_points_per_race(self):
        rows = parse(THREE_DAYS, _ctx()).rows
        # 100 * (1 - 2/10), 100 * (1 - 5/20)
        assert rows[0].points == Decimal("80.00")
        assert rows[1].points == Decimal("75.00")

    def test_times_and_age(self):
        row = parse(THREE_DAYS, _ctx()).rows[0]
        assert row.result_time_seconds == 3600
        assert row.result_time_diff_seconds == 300
        assert row.competitor_age == 26

    def test_organisation_is_importing_club(self):
        rows = parse(THREE_DAYS, _ctx()).rows
        assert {r.competitor_organisation_id for r in rows} == {114}

    def test_class_without_race_info_uses_document_races(self):
        row = parse(THREE_DAYS, _ctx()).rows[2]
        assert row.event_race_id == 6003
        assert row.class_type_id is None
        assert row.class_factor is None
        assert row.points is None

    def test_unknown_class_warns(self):
        outcome = parse(THREE_DAYS, _ctx())
        assert len(outcome.warnings) == 1
        assert "Mystery" in outcome.warnings[0].message

    def test_missing_person_id_dropped_without_sentinel(self):
        rows = parse(THREE_DAYS, _ctx()).rows
        assert all(r.person_id != 0 for r in rows)

    def test_garbage_input(self):
        outcome = parse("<nope", _ctx())
        assert outcome.rows == []
        assert len(outcome.warnings) == 1

    def test_unresolvable_event_year_warns_once(self):
        context = ParseContext(event_id=6000, batch_id="b", organisation_id=114, event_date=None)
        outcome = parse(THREE_DAYS, context)
        assert outcome.rows
        year_warnings = [w for w in outcome.warnings if "event year" in w.message]
        assert len(year_warnings) == 1
        assert year_warnings[0].event_id == 6000
