"""Durable store: atomic per-call writes with bounded retry and error mapping."""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from . import db
from .config import DaemonSettings
from .errors import Conflict, Corrupted, TransientIO
from .models import (
    ActivitySpan,
    Classification,
    IssueRelationship,
    Session,
    SessionIssueLink,
    SessionOutcome,
    SessionState,
    WorkItem,
    utcnow,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
OrphanSpan = tuple[ActivitySpan, Optional[datetime]]

_TRANSIENT_MARKERS = ("locked", "busy", "unable to open", "disk i/o")


@dataclass(slots=True)
class OpenSessionState:
    """A stored session with the spans it still has open."""

    session: Session
    open_spans: list[ActivitySpan] = field(default_factory=list)
    latest_span_end: Optional[datetime] = None

    @property
    def last_seen_at(self) -> datetime:
        candidates = [self.session.started_at]
        if self.session.last_seen_at is not None:
            candidates.append(self.session.last_seen_at)
        if self.latest_span_end is not None:
            candidates.append(self.latest_span_end)
        candidates.extend(span.start_time for span in self.open_spans)
        return max(candidates)

    def close(self, reason: str) -> tuple[list[ActivitySpan], list[str]]:
        """End the session at its last known moment.

        Open spans are sealed there, or discarded when that would leave them
        empty. Returns the sealed spans and the ids of the discarded ones.
        """
        at = self.last_seen_at
        sealed: list[ActivitySpan] = []
        discarded: list[str] = []
        for span in self.open_spans:
            if at <= span.start_time:
                discarded.append(span.id)
            else:
                span.end_time = at
                sealed.append(span)
        self.session.state = SessionState.ENDED
        self.session.ended_at = at
        self.session.end_reason = reason
        return sealed, discarded


class SqliteStore:
    """SQLite-backed implementation of the durable store collaborator."""

    def __init__(
        self,
        path: Path | str,
        *,
        retries: int = 3,
        backoff: float = 0.05,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.path = path
        self.retries = retries
        self.backoff = backoff
        self._sleep = sleep
        self._lock = threading.Lock()
        self.corrupted = False
        try:
            self._conn = db.open_database(path, check_same_thread=False)
        except sqlite3.DatabaseError as exc:
            self.corrupted = True
            raise Corrupted(f"cannot open store at {path}: {exc}") from exc

    @classmethod
    def from_settings(cls, path: Path | str, settings: DaemonSettings) -> "SqliteStore":
        return cls(
            path,
            retries=settings.store_retries,
            backoff=settings.store_backoff.total_seconds(),
        )

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _run(self, label: str, func: Callable[..., T], *args: Any) -> T:
        if self.corrupted:
            raise Corrupted("store is in degraded mode after an earlier corruption error")
        last_error: Optional[Exception] = None
        for attempt in range(self.retries):
            try:
                with self._lock:
                    return func(self._conn, *args)
            except sqlite3.IntegrityError as exc:
                raise Conflict(f"{label} violates a store constraint: {exc}") from exc
            except sqlite3.OperationalError as exc:
                if not _is_transient(exc):
                    self._mark_corrupted(label, exc)
                    raise Corrupted(f"{label} failed: {exc}") from exc
                last_error = exc
                delay = self.backoff * (2 ** attempt)
                logger.warning(
                    "%s hit a transient error (%s); retry %d/%d in %.2fs",
                    label,
                    exc,
                    attempt + 1,
                    self.retries,
                    delay,
                )
                self._sleep(delay)
            except sqlite3.DatabaseError as exc:
                self._mark_corrupted(label, exc)
                raise Corrupted(f"{label} failed: {exc}") from exc
        raise TransientIO(f"{label} failed after {self.retries} attempts: {last_error}")

    def _mark_corrupted(self, label: str, exc: Exception) -> None:
        self.corrupted = True
        logger.error("Store reported a fatal error during %s: %s", label, exc)

    def insert_span(self, span: ActivitySpan) -> None:
        self._run("insert_span", db.insert_span, span)

    def insert_gap(self, span: ActivitySpan) -> None:
        self._run("insert_gap", db.insert_span, span)

    def seal_span(self, span: ActivitySpan) -> None:
        self._run("seal_span", db.seal_span, span)

    def discard_span(self, span_id: str) -> None:
        self._run("discard_span", db.delete_span, span_id)

    def attach_classification(self, span_id: str, result: Classification) -> None:
        self._run(
            "attach_classification",
            db.attach_classification,
            span_id,
            result.category,
            result.work_item_id,
        )

    def upsert_session(self, session: Session) -> None:
        self._run("upsert_session", db.upsert_session, session)

    def touch(self, session_id: str, span_id: Optional[str], at: datetime) -> None:
        self._run("touch", db.touch, session_id, span_id, at)

    def append_outcome(self, outcome: SessionOutcome) -> bool:
        return self._run("append_outcome", db.insert_outcome, outcome)

    def upsert_link(self, link: SessionIssueLink) -> None:
        self._run("upsert_link", db.upsert_link, link)

    def upsert_work_item(self, item: WorkItem) -> None:
        self._run("upsert_work_item", db.upsert_work_item, item, utcnow())

    def get_work_item(self, issue_id: str) -> Optional[WorkItem]:
        row = self._run("get_work_item", db.fetch_work_item, issue_id)
        return db.row_to_work_item(row) if row is not None else None

    def get_session(self, session_id: str) -> Optional[Session]:
        row = self._run("get_session", db.fetch_session, session_id)
        return db.row_to_session(row) if row is not None else None

    def spans_for_session(self, session_id: str) -> list[ActivitySpan]:
        rows = self._run("spans_for_session", db.fetch_spans_for_session, session_id)
        return [db.row_to_span(row) for row in rows]

    def outcomes_for_session(self, session_id: str) -> list[dict]:
        rows = self._run("outcomes_for_session", db.fetch_outcomes, session_id)
        return [db.row_to_outcome(row) for row in rows]

    def links_for_session(self, session_id: str) -> list[SessionIssueLink]:
        rows = self._run("links_for_session", db.fetch_links, session_id)
        return [
            SessionIssueLink(
                session_id=row["session_id"],
                issue_id=row["issue_id"],
                system=row["system"],
                relationship=IssueRelationship(row["relationship"]),
                linked_at=db.parse_ts(row["linked_at"]),
            )
            for row in rows
        ]

    def end_stale_session(
        self,
        session: Session,
        sealed: list[ActivitySpan],
        discarded: list[str],
    ) -> None:
        """Seal, discard and end in one transaction so a second crash leaves no half state."""

        def _apply(conn: sqlite3.Connection) -> None:
            with db.transaction(conn):
                for span in sealed:
                    db.seal_span(conn, span)
                for span_id in discarded:
                    db.delete_span(conn, span_id)
                db.upsert_session(conn, session)

        self._run("end_stale_session", _apply)

    def session_state(self, session_id: str) -> Optional[OpenSessionState]:
        """A stored session with its open spans and latest recorded moment."""

        def _load(conn: sqlite3.Connection) -> Optional[OpenSessionState]:
            row = db.fetch_session(conn, session_id)
            return _build_state(conn, row) if row is not None else None

        return self._run("session_state", _load)

    def load_open_session_on_startup(self) -> tuple[list[OpenSessionState], list[OrphanSpan]]:
        """Sessions still open from an earlier run, plus open spans owned by none of them."""

        def _load(conn: sqlite3.Connection) -> tuple[list[OpenSessionState], list[OrphanSpan]]:
            states = {row["id"]: _build_state(conn, row) for row in db.fetch_open_sessions(conn)}
            orphans: list[OrphanSpan] = [
                (db.row_to_span(row), db.parse_ts(row["last_seen_at"]))
                for row in db.fetch_open_spans(conn)
                if row["session_id"] not in states
            ]
            return list(states.values()), orphans

        return self._run("load_open_session_on_startup", _load)


def _build_state(conn: sqlite3.Connection, row: sqlite3.Row) -> OpenSessionState:
    state = OpenSessionState(
        session=db.row_to_session(row),
        latest_span_end=db.parse_ts(db.fetch_latest_span_end(conn, row["id"])),
    )
    for span_row in db.fetch_open_spans(conn, row["id"]):
        state.open_spans.append(db.row_to_span(span_row))
        last_seen = db.parse_ts(span_row["last_seen_at"])
        if last_seen and (
            state.session.last_seen_at is None or last_seen > state.session.last_seen_at
        ):
            state.session.last_seen_at = last_seen
    return state


def _is_transient(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)
