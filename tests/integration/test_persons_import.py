"""Integration tests for the persons import and the all-clubs runner.

Requires a real PostgreSQL database (via pytest-postgresql).
No live HTTP requests are made; the Eventor client is mocked.
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import psycopg
import pytest

from eventor_sync.eventor_client import RequestPacer
from eventor_sync.import_persons import (
    BATCH_MARKER,
    PersonsBatchRunner,
    import_persons_for_club,
    sync_persons_for_club,
)
from eventor_sync.shared import MissingApiKeyError, RunInProgressError

PERSON_LIST = """
<PersonList>
  <Person sex="F">
    <PersonName><Family>Lind</Family><Given sequence="1">Sara</Given></PersonName>
    <PersonId>2001</PersonId>
    <BirthDate><Date>1985-03-03</Date></BirthDate>
  </Person>
  <Person sex="M">
    <PersonName><Family>Berg</Family><Given sequence="1">Nils</Given></PersonName>
    <PersonId>2002</PersonId>
  </Person>
</PersonList>
"""


def _client(xml: str = PERSON_LIST):
    client = MagicMock()
    client.persons_url.side_effect = lambda org: f"https://eventor.test/api/persons/organisations/{org}"
    client.fetch.return_value = xml
    return client


class TestImportPersonsForClub:
    def test_upsert_and_rerun(self, conn):
        run = import_persons_for_club(conn, _client(), 114)
        assert run.status.value == "success"
        assert run.row_count_after == 2
        import_persons_for_club(conn, _client(PERSON_LIST.replace("Berg", "Berglund")), 114)
        rows = conn.execute(
            "SELECT personid, personnamefamily, personsex FROM persons ORDER BY personid"
        ).fetchall()
        assert rows == [(2001, "Lind", "F"), (2002, "Berglund", "M")]

    def test_same_person_in_two_clubs(self, conn):
        import_persons_for_club(conn, _client(), 114)
        import_persons_for_club(conn, _client(), 200)
        count = conn.execute("SELECT count(*) FROM persons WHERE personid = 2001").fetchone()[0]
        assert count == 2


class TestPersonsBatchRunner:
    @pytest.fixture()
    def clubs(self, conn):
        conn.execute(
            "INSERT INTO clubs (organisationid, apikey) VALUES (114, 'k114'), (200, NULL)"
        )
        conn.commit()
        return conn

    def test_failing_club_does_not_stop_batch(self, clubs, conn_factory, monkeypatch):
        monkeypatch.delenv("EVENTOR_API_KEY", raising=False)
        keys = []

        def client_factory(api_key):
            keys.append(api_key)
            return _client()

        runner = PersonsBatchRunner(conn_factory, client_factory, RequestPacer(0), "EVENTOR_API_KEY")
        result = runner.run_all_clubs()

        assert result.processed == 1
        assert [f.organisation_id for f in result.failures] == [200]
        assert not result.success
        assert keys == ["k114"]
        assert clubs.execute("SELECT count(*) FROM persons").fetchone()[0] == 2

        guard_row = clubs.execute(
            "SELECT status, numberofrequests, numberoferrors FROM batchrun WHERE comment LIKE %s",
            (f"{BATCH_MARKER}%",),
        ).fetchone()
        assert guard_row == ("partial", 2, 1)

        club_row = clubs.execute(
            "SELECT status, numberoferrors, endtime IS NOT NULL FROM batchrun WHERE comment LIKE %s",
            ("GetPersons organisation 200%",),
        ).fetchone()
        assert club_row[:2] == ("failed", 1)
        assert club_row[2]

    def test_env_key_used_when_club_has_none(self, clubs, conn_factory, monkeypatch):
        monkeypatch.setenv("EVENTOR_API_KEY", "env-key")
        keys = []

        def client_factory(api_key):
            keys.append(api_key)
            return _client()

        runner = PersonsBatchRunner(conn_factory, client_factory, RequestPacer(0), "EVENTOR_API_KEY")
        assert runner.run_all_clubs().success
        assert keys == ["k114", "env-key"]

    def test_refused_while_another_run_is_active(self, clubs, conn_factory):
        clubs.execute(
            "INSERT INTO batchrun (status, comment) VALUES ('running', %s)",
            (f"{BATCH_MARKER} (all clubs)",),
        )
        clubs.commit()
        client_factory = MagicMock()
        runner = PersonsBatchRunner(conn_factory, client_factory, RequestPacer(0))
        with pytest.raises(RunInProgressError):
            runner.run_all_clubs()
        client_factory.assert_not_called()

    def test_guard_row_finalized_when_setup_fails(self, clubs, conn_factory):
        runner = PersonsBatchRunner(conn_factory, MagicMock(), RequestPacer(0))
        with patch(
            "eventor_sync.import_persons.load_club_api_keys",
            side_effect=psycopg.OperationalError("clubs unreadable"),
        ):
            with pytest.raises(psycopg.OperationalError):
                runner.run_all_clubs()

        status, end_time = clubs.execute(
            "SELECT status, endtime FROM batchrun WHERE comment LIKE %s",
            (f"{BATCH_MARKER}%",),
        ).fetchone()
        assert status == "failed"
        assert end_time is not None


class TestSyncPersonsForClub:
    def test_missing_key_leaves_failed_run(self, conn, monkeypatch):
        monkeypatch.delenv("EVENTOR_API_KEY", raising=False)
        conn.execute("INSERT INTO clubs (organisationid, apikey) VALUES (200, NULL)")
        conn.commit()
        client_factory = MagicMock()
        with pytest.raises(MissingApiKeyError):
            sync_persons_for_club(conn, client_factory, 200, "EVENTOR_API_KEY")
        client_factory.assert_not_called()
        row = conn.execute(
            "SELECT status, clubparticipation, comment FROM batchrun"
        ).fetchone()
        assert row[:2] == ("failed", 200)
        assert "no Eventor API key" in row[2]
