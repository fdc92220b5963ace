"""Tests for the SQLite-backed store."""

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from worktrack import db
from worktrack.errors import Conflict, Corrupted, TransientIO
from worktrack.models import (
    ActivitySpan,
    Classification,
    IssueRelationship,
    OutcomeType,
    Session,
    SessionIssueLink,
    SessionOutcome,
    SessionState,
    WorkItem,
)
from worktrack.store import SqliteStore

T0 = datetime(2024, 5, 6, 9, 0, tzinfo=timezone.utc)


def at(seconds):
    return T0 + timedelta(seconds=seconds)


@pytest.fixture
def session(store):
    item = Session(started_at=T0, id="s-1")
    store.upsert_session(item)
    return item


class TestTimestamps:
    def test_round_trip_is_utc(self):
        value = datetime(2024, 1, 2, 3, 4, 5, 678900, tzinfo=timezone(timedelta(hours=2)))

        parsed = db.parse_ts(db.format_ts(value))

        assert parsed == value
        assert parsed.tzinfo == timezone.utc


class TestSpans:
    """Span writes are atomic and idempotent."""

    def test_insert_and_seal(self, store, session):
        span = ActivitySpan(session_id=session.id, app_name="code", start_time=at(0))
        store.insert_span(span)
        store.insert_span(span)
        span.end_time = at(12.5)
        store.seal_span(span)

        stored = store.spans_for_session(session.id)
        assert len(stored) == 1
        assert stored[0].end_time == at(12.5)
        assert stored[0].duration_seconds == 12.5

    def test_span_for_unknown_session_conflicts(self, store):
        span = ActivitySpan(session_id="missing", app_name="code", start_time=at(0))

        with pytest.raises(Conflict):
            store.insert_span(span)

    def test_classification_only_links_known_work_items(self, store, session):
        span = ActivitySpan(session_id=session.id, app_name="code", start_time=at(0), end_time=at(5))
        store.insert_span(span)

        store.attach_classification(span.id, Classification("coding", "UNKNOWN-1"))

        stored = store.spans_for_session(session.id)[0]
        assert stored.category == "coding"
        assert stored.work_item_id is None


class TestOutcomesAndLinks:
    def test_outcome_identity(self, store, session):
        commit = SessionOutcome(session.id, OutcomeType.COMMIT, "first", reference="abc")

        assert store.append_outcome(commit) is True
        assert store.append_outcome(commit) is False
        assert store.append_outcome(
            SessionOutcome(session.id, OutcomeType.COMMIT, "second", reference="def")
        ) is True
        assert store.append_outcome(
            SessionOutcome(session.id, OutcomeType.FILES_CHANGED, "3 files")
        ) is True
        assert store.append_outcome(
            SessionOutcome(session.id, OutcomeType.FILES_CHANGED, "3 files again")
        ) is False

        assert [o["reference"] for o in store.outcomes_for_session(session.id)] == [
            "abc",
            "def",
            None,
        ]

    @pytest.mark.parametrize(
        "sequence, expected",
        [
            (["referenced", "worked_on"], "worked_on"),
            (["worked_on", "referenced"], "worked_on"),
            (["closed", "worked_on", "referenced"], "closed"),
            (["referenced", "closed"], "closed"),
        ],
    )
    def test_link_escalation(self, store, session, sequence, expected):
        for relationship in sequence:
            store.upsert_link(
                SessionIssueLink(session.id, "ABC-1", "jira", IssueRelationship(relationship))
            )

        links = store.links_for_session(session.id)
        assert len(links) == 1
        assert links[0].relationship is IssueRelationship(expected)

    def test_same_issue_in_two_systems(self, store, session):
        store.upsert_link(SessionIssueLink(session.id, "42", "github", IssueRelationship.CLOSED))
        store.upsert_link(SessionIssueLink(session.id, "42", "jira", IssueRelationship.REFERENCED))

        assert len(store.links_for_session(session.id)) == 2


class TestWorkItems:
    def test_accumulated_time_counts_sealed_active_spans(self, store, session):
        store.upsert_work_item(WorkItem("ABC-1", system="jira"))
        for start, end, idle in ((0, 10, False), (10, 15, True), (15, 20, False)):
            span = ActivitySpan(
                session_id=session.id,
                app_name="code",
                start_time=at(start),
                end_time=at(end),
                work_item_id="ABC-1",
                is_idle=idle,
            )
            store.insert_span(span)
        store.insert_span(
            ActivitySpan(session_id=session.id, app_name="code", start_time=at(20), work_item_id="ABC-1")
        )

        item = store.get_work_item("ABC-1")
        assert item.system == "jira"
        assert item.accumulated_seconds == 15.0

    def test_missing_work_item(self, store):
        assert store.get_work_item("nope") is None


class TestErrorMapping:
    """sqlite errors map onto the tracker taxonomy."""

    def test_transient_errors_are_retried(self, db_path, monkeypatch):
        delays = []
        store = SqliteStore(db_path, retries=3, backoff=0.05, sleep=delays.append)
        real = db.upsert_session
        failures = {"left": 2}

        def flaky(conn, session):
            if failures["left"]:
                failures["left"] -= 1
                raise sqlite3.OperationalError("database is locked")
            real(conn, session)

        monkeypatch.setattr(db, "upsert_session", flaky)
        try:
            store.upsert_session(Session(started_at=T0, id="s-1"))
            assert store.get_session("s-1") is not None
        finally:
            store.close()
        assert delays == [0.05, 0.1]

    def test_transient_errors_give_up(self, db_path, monkeypatch):
        store = SqliteStore(db_path, retries=2, sleep=lambda _delay: None)

        def locked(conn, session):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(db, "upsert_session", locked)
        try:
            with pytest.raises(TransientIO):
                store.upsert_session(Session(started_at=T0))
            assert store.corrupted is False
        finally:
            store.close()

    def test_corruption_is_sticky(self, store, monkeypatch):
        def malformed(conn, session):
            raise sqlite3.DatabaseError("database disk image is malformed")

        monkeypatch.setattr(db, "upsert_session", malformed)
        with pytest.raises(Corrupted):
            store.upsert_session(Session(started_at=T0))

        assert store.corrupted is True
        with pytest.raises(Corrupted):
            store.get_session("anything")

    def test_unreadable_file(self, tmp_path):
        path = tmp_path / "garbage.sqlite3"
        path.write_bytes(b"this is not a database" * 100)

        with pytest.raises(Corrupted):
            SqliteStore(path)


class TestStartupLoad:
    def test_open_sessions_and_orphans(self, store):
        open_session = Session(started_at=at(0), id="open")
        ended = Session(started_at=at(0), id="ended", state=SessionState.ENDED, ended_at=at(5))
        store.upsert_session(open_session)
        store.upsert_session(ended)
        live = ActivitySpan(session_id="open", app_name="code", start_time=at(1))
        orphan = ActivitySpan(session_id="ended", app_name="code", start_time=at(2))
        store.insert_span(live)
        store.insert_span(orphan)
        store.touch("open", live.id, at(30))

        states, orphans = store.load_open_session_on_startup()

        assert [state.session.id for state in states] == ["open"]
        assert [span.id for span in states[0].open_spans] == [live.id]
        assert states[0].last_seen_at == at(30)
        assert [span.id for span, _seen in orphans] == [orphan.id]
