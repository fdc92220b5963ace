"""Tests for the pid lock, crash recovery and the runner."""

import os
from datetime import datetime, timedelta, timezone

import pytest

from worktrack import lifecycle
from worktrack.engine import SessionEngine
from worktrack.errors import AlreadyRunning
from worktrack.lifecycle import DaemonRunner, PidLock, recover
from worktrack.models import ActivitySpan, Session, SessionState

T0 = datetime(2024, 5, 6, 9, 0, tzinfo=timezone.utc)


def at(seconds):
    return T0 + timedelta(seconds=seconds)


class TestPidLock:
    def test_acquire_and_release(self, tmp_path):
        lock = PidLock(tmp_path / "worktrack.pid")

        lock.acquire()
        assert lock.read_pid() == os.getpid()

        lock.release()
        assert not lock.path.exists()

    def test_live_owner_blocks(self, tmp_path):
        path = tmp_path / "worktrack.pid"
        path.write_text(str(os.getppid()), encoding="utf-8")

        with pytest.raises(AlreadyRunning):
            PidLock(path).acquire()
        assert path.read_text(encoding="utf-8") == str(os.getppid())

    def test_stale_marker_is_reclaimed(self, tmp_path, monkeypatch):
        path = tmp_path / "worktrack.pid"
        path.write_text("424242", encoding="utf-8")
        monkeypatch.setattr(lifecycle.psutil, "pid_exists", lambda pid: False)

        with PidLock(path) as lock:
            assert lock.read_pid() == os.getpid()
        assert not path.exists()

    def test_garbage_marker_is_reclaimed(self, tmp_path):
        path = tmp_path / "worktrack.pid"
        path.write_text("not a pid", encoding="utf-8")

        with PidLock(path) as lock:
            assert lock.acquired


class TestRecover:
    def test_closes_open_sessions_and_orphans(self, store):
        live = Session(started_at=at(0), id="live")
        ended = Session(started_at=at(0), id="done", state=SessionState.ENDED, ended_at=at(50))
        store.upsert_session(live)
        store.upsert_session(ended)
        open_span = ActivitySpan(session_id="live", app_name="code", start_time=at(0))
        empty_span = ActivitySpan(session_id="live", app_name="firefox", start_time=at(40))
        orphan = ActivitySpan(session_id="done", app_name="code", start_time=at(10))
        for span in (open_span, empty_span, orphan):
            store.insert_span(span)
        store.touch("live", open_span.id, at(40))
        store.touch("done", orphan.id, at(45))

        report = recover(store)

        session = store.get_session("live")
        assert report.sessions == ["live"]
        assert session.state is SessionState.ENDED
        assert session.end_reason == "recovered"
        assert session.ended_at == at(40)
        assert [(s.app_name, s.end_time) for s in store.spans_for_session("live")] == [
            ("code", at(40))
        ]
        assert store.spans_for_session("done")[0].end_time == at(45)
        assert report.sealed_spans == 2
        assert report.discarded_spans == 1

    def test_span_sealed_after_last_heartbeat_extends_the_end(self, store):
        store.upsert_session(Session(started_at=at(0), id="s"))
        store.touch("s", None, at(10))
        span = ActivitySpan(session_id="s", app_name="code", start_time=at(0))
        store.insert_span(span)
        span.end_time = at(20)
        store.seal_span(span)

        report = recover(store)

        assert report.sessions == ["s"]
        assert store.get_session("s").ended_at == at(20)

    def test_nothing_to_recover(self, store):
        report = recover(store)

        assert report.sessions == []
        assert report.sealed_spans == 0


class TestRunner:
    def test_start_stop(self, store, settings):
        runner = DaemonRunner(SessionEngine(store, settings))

        runner.start()
        assert runner.is_running()
        runner.stop(grace=5)

        assert not runner.is_running()

    def test_reload_reaches_engine(self, store, settings):
        engine = SessionEngine(store, settings)
        runner = DaemonRunner(engine)
        runner.start()
        try:
            runner.reload(settings.with_overrides(idle_threshold=timedelta(seconds=60)))
            engine.call("work-off")
        finally:
            runner.stop(grace=5)

        assert engine.idle.threshold == timedelta(seconds=60)
        assert engine.settings.session_timeout == timedelta(seconds=60)

    def test_exit_request_without_server(self, store, settings):
        assert DaemonRunner(SessionEngine(store, settings)).request_exit() is False
