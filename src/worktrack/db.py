"""SQLite database layer for sessions, spans, outcomes and issue links."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from .models import (
    ActivitySpan,
    IssueRelationship,
    Session,
    SessionIssueLink,
    SessionOutcome,
    SessionState,
    WorkItem,
)


DATETIME_FMT = "%Y-%m-%d %H:%M:%S.%f"


def format_ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).strftime(DATETIME_FMT)


def parse_ts(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.strptime(value, DATETIME_FMT).replace(tzinfo=timezone.utc)


def open_database(path: Path | str, *, check_same_thread: bool = True) -> sqlite3.Connection:
    """Open (and initialize) the SQLite database."""
    conn = sqlite3.connect(
        path,
        isolation_level=None,
        check_same_thread=check_same_thread,
        timeout=1.0,
    )
    conn.row_factory = sqlite3.Row
    enable_foreign_keys(conn)
    if str(path) != ":memory:":
        conn.execute("PRAGMA journal_mode = WAL;")
    initialize_schema(conn)
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Group several statements into one atomic write."""
    conn.execute("BEGIN IMMEDIATE;")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK;")
        raise
    conn.execute("COMMIT;")


def enable_foreign_keys(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA foreign_keys = ON;")


def initialize_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS sessions (
            id TEXT PRIMARY KEY,
            started_at TEXT NOT NULL,
            ended_at TEXT,
            state TEXT NOT NULL,
            project TEXT,
            end_reason TEXT,
            last_seen_at TEXT
        );

        CREATE TABLE IF NOT EXISTS work_items (
            issue_id TEXT PRIMARY KEY,
            system TEXT NOT NULL DEFAULT 'manual',
            project TEXT,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS activity_spans (
            id TEXT PRIMARY KEY,
            session_id TEXT NOT NULL REFERENCES sessions(id),
            app_name TEXT NOT NULL,
            window_title TEXT,
            project_path TEXT,
            category TEXT,
            work_item_id TEXT REFERENCES work_items(issue_id),
            start_time TEXT NOT NULL,
            end_time TEXT,
            duration_seconds REAL NOT NULL DEFAULT 0,
            is_idle INTEGER NOT NULL DEFAULT 0,
            last_seen_at TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_spans_session_start
            ON activity_spans(session_id, start_time);
        CREATE INDEX IF NOT EXISTS idx_spans_work_item
            ON activity_spans(work_item_id);

        CREATE TABLE IF NOT EXISTS session_outcomes (
            id INTEGER PRIMARY KEY,
            session_id TEXT NOT NULL REFERENCES sessions(id),
            outcome_type TEXT NOT NULL,
            reference TEXT,
            description TEXT NOT NULL,
            recorded_at TEXT NOT NULL
        );

        CREATE UNIQUE INDEX IF NOT EXISTS idx_outcomes_identity
            ON session_outcomes(session_id, outcome_type, IFNULL(reference, ''));

        CREATE TABLE IF NOT EXISTS session_issue_links (
            session_id TEXT NOT NULL REFERENCES sessions(id),
            issue_id TEXT NOT NULL,
            system TEXT NOT NULL,
            relationship TEXT NOT NULL,
            linked_at TEXT NOT NULL,
            PRIMARY KEY (session_id, issue_id, system)
        );
        """
    )


def insert_span(conn: sqlite3.Connection, span: ActivitySpan) -> None:
    conn.execute(
        """
        INSERT INTO activity_spans (
            id,
            session_id,
            app_name,
            window_title,
            project_path,
            category,
            work_item_id,
            start_time,
            end_time,
            duration_seconds,
            is_idle
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO NOTHING
        """,
        (
            span.id,
            span.session_id,
            span.app_name,
            span.window_title,
            span.project_path,
            span.category,
            span.work_item_id,
            format_ts(span.start_time),
            format_ts(span.end_time),
            span.duration_seconds,
            1 if span.is_idle else 0,
        ),
    )


def seal_span(conn: sqlite3.Connection, span: ActivitySpan) -> None:
    """Persist the end time and duration of a sealed span; repeating it is harmless."""
    if span.end_time is None:
        raise ValueError(f"Span {span.id} has no end time")
    cur = conn.execute(
        "UPDATE activity_spans SET end_time = ?, duration_seconds = ? WHERE id = ?",
        (format_ts(span.end_time), span.duration_seconds, span.id),
    )
    if cur.rowcount == 0:
        raise ValueError(f"No span found for id={span.id}")


def delete_span(conn: sqlite3.Connection, span_id: str) -> None:
    conn.execute("DELETE FROM activity_spans WHERE id = ?", (span_id,))


def attach_classification(
    conn: sqlite3.Connection,
    span_id: str,
    category: Optional[str],
    work_item_id: Optional[str],
) -> None:
    """Attach classifier output; an explicitly chosen work item is never replaced."""
    conn.execute(
        """
        UPDATE activity_spans
        SET
            category = ?,
            work_item_id = COALESCE(
                work_item_id,
                (SELECT issue_id FROM work_items WHERE issue_id = ?)
            )
        WHERE id = ?
        """,
        (category, work_item_id, span_id),
    )


def upsert_session(conn: sqlite3.Connection, session: Session) -> None:
    conn.execute(
        """
        INSERT INTO sessions (id, started_at, ended_at, state, project, end_reason, last_seen_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            ended_at = excluded.ended_at,
            state = excluded.state,
            project = COALESCE(excluded.project, sessions.project),
            end_reason = excluded.end_reason,
            last_seen_at = COALESCE(excluded.last_seen_at, sessions.last_seen_at)
        """,
        (
            session.id,
            format_ts(session.started_at),
            format_ts(session.ended_at),
            session.state.value,
            session.project,
            session.end_reason,
            format_ts(session.last_seen_at),
        ),
    )


def touch(
    conn: sqlite3.Connection,
    session_id: str,
    span_id: Optional[str],
    at: datetime,
) -> None:
    """Record the latest moment the daemon saw this session alive."""
    stamp = format_ts(at)
    conn.execute("UPDATE sessions SET last_seen_at = ? WHERE id = ?", (stamp, session_id))
    if span_id is not None:
        conn.execute(
            "UPDATE activity_spans SET last_seen_at = ? WHERE id = ? AND end_time IS NULL",
            (stamp, span_id),
        )


def fetch_session(conn: sqlite3.Connection, session_id: str) -> Optional[sqlite3.Row]:
    return conn.execute(
        """
        SELECT id, started_at, ended_at, state, project, end_reason, last_seen_at
        FROM sessions
        WHERE id = ?
        """,
        (session_id,),
    ).fetchone()


def fetch_open_sessions(conn: sqlite3.Connection) -> list[sqlite3.Row]:
    return list(
        conn.execute(
            """
            SELECT id, started_at, ended_at, state, project, end_reason, last_seen_at
            FROM sessions
            WHERE state != ?
            ORDER BY started_at;
            """,
            (SessionState.ENDED.value,),
        )
    )


_SPAN_COLUMNS = """
    id, session_id, app_name, window_title, project_path, category, work_item_id,
    start_time, end_time, duration_seconds, is_idle, last_seen_at
"""


def fetch_open_spans(
    conn: sqlite3.Connection, session_id: Optional[str] = None
) -> list[sqlite3.Row]:
    if session_id is None:
        return list(
            conn.execute(
                f"SELECT {_SPAN_COLUMNS} FROM activity_spans WHERE end_time IS NULL ORDER BY start_time;"
            )
        )
    return list(
        conn.execute(
            f"""
            SELECT {_SPAN_COLUMNS}
            FROM activity_spans
            WHERE end_time IS NULL AND session_id = ?
            ORDER BY start_time;
            """,
            (session_id,),
        )
    )


def fetch_latest_span_end(conn: sqlite3.Connection, session_id: str) -> Optional[str]:
    """Latest end among the session's sealed spans and gaps."""
    row = conn.execute(
        "SELECT MAX(end_time) AS latest FROM activity_spans WHERE session_id = ?;",
        (session_id,),
    ).fetchone()
    return row["latest"] if row is not None else None


def fetch_spans_for_session(conn: sqlite3.Connection, session_id: str) -> list[sqlite3.Row]:
    return list(
        conn.execute(
            f"""
            SELECT {_SPAN_COLUMNS}
            FROM activity_spans
            WHERE session_id = ?
            ORDER BY start_time, end_time;
            """,
            (session_id,),
        )
    )


def insert_outcome(conn: sqlite3.Connection, outcome: SessionOutcome) -> bool:
    """Insert an outcome; returns ``False`` when an identical one already exists."""
    cur = conn.execute(
        """
        INSERT OR IGNORE INTO session_outcomes (
            session_id,
            outcome_type,
            reference,
            description,
            recorded_at
        ) VALUES (?, ?, ?, ?, ?)
        """,
        (
            outcome.session_id,
            outcome.type.value,
            outcome.reference,
            outcome.description,
            format_ts(outcome.recorded_at),
        ),
    )
    return cur.rowcount > 0


def fetch_outcomes(conn: sqlite3.Connection, session_id: str) -> list[sqlite3.Row]:
    return list(
        conn.execute(
            """
            SELECT session_id, outcome_type, reference, description, recorded_at
            FROM session_outcomes
            WHERE session_id = ?
            ORDER BY recorded_at, id;
            """,
            (session_id,),
        )
    )


def _rank_sql(column: str) -> str:
    cases = " ".join(f"WHEN '{rel.value}' THEN {rel.rank}" for rel in IssueRelationship)
    return f"(CASE {column} {cases} ELSE -1 END)"


def upsert_link(conn: sqlite3.Connection, link: SessionIssueLink) -> None:
    """Insert a link or escalate its relationship; a weaker one never overwrites."""
    conn.execute(
        f"""
        INSERT INTO session_issue_links (session_id, issue_id, system, relationship, linked_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(session_id, issue_id, system) DO UPDATE SET
            relationship = CASE
                WHEN {_rank_sql('excluded.relationship')}
                    > {_rank_sql('session_issue_links.relationship')}
                THEN excluded.relationship
                ELSE session_issue_links.relationship
            END
        """,
        (
            link.session_id,
            link.issue_id,
            link.system,
            link.relationship.value,
            format_ts(link.linked_at),
        ),
    )


def fetch_links(conn: sqlite3.Connection, session_id: str) -> list[sqlite3.Row]:
    return list(
        conn.execute(
            """
            SELECT session_id, issue_id, system, relationship, linked_at
            FROM session_issue_links
            WHERE session_id = ?
            ORDER BY linked_at, issue_id;
            """,
            (session_id,),
        )
    )


def upsert_work_item(conn: sqlite3.Connection, item: WorkItem, created_at: datetime) -> None:
    conn.execute(
        """
        INSERT INTO work_items (issue_id, system, project, created_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(issue_id) DO UPDATE SET
            system = excluded.system,
            project = COALESCE(excluded.project, work_items.project)
        """,
        (item.issue_id, item.system, item.project, format_ts(created_at)),
    )


def fetch_work_item(conn: sqlite3.Connection, issue_id: str) -> Optional[sqlite3.Row]:
    """Fetch a work item together with the time accumulated on its sealed spans."""
    return conn.execute(
        """
        SELECT
            w.issue_id,
            w.system,
            w.project,
            COALESCE(SUM(s.duration_seconds), 0) AS accumulated_seconds
        FROM work_items w
        LEFT JOIN activity_spans s
            ON s.work_item_id = w.issue_id AND s.end_time IS NOT NULL AND s.is_idle = 0
        WHERE w.issue_id = ?
        GROUP BY w.issue_id
        """,
        (issue_id,),
    ).fetchone()


def row_to_session(row: sqlite3.Row) -> Session:
    return Session(
        id=row["id"],
        started_at=parse_ts(row["started_at"]),
        ended_at=parse_ts(row["ended_at"]),
        state=SessionState(row["state"]),
        project=row["project"],
        end_reason=row["end_reason"],
        last_seen_at=parse_ts(row["last_seen_at"]),
    )


def row_to_span(row: sqlite3.Row) -> ActivitySpan:
    return ActivitySpan(
        id=row["id"],
        session_id=row["session_id"],
        app_name=row["app_name"],
        window_title=row["window_title"],
        project_path=row["project_path"],
        category=row["category"],
        work_item_id=row["work_item_id"],
        start_time=parse_ts(row["start_time"]),
        end_time=parse_ts(row["end_time"]),
        is_idle=bool(row["is_idle"]),
    )


def row_to_work_item(row: sqlite3.Row) -> WorkItem:
    return WorkItem(
        issue_id=row["issue_id"],
        system=row["system"],
        project=row["project"],
        accumulated_seconds=float(row["accumulated_seconds"] or 0.0),
    )


def row_to_outcome(row: sqlite3.Row) -> dict:
    return {
        "session_id": row["session_id"],
        "type": row["outcome_type"],
        "reference": row["reference"],
        "description": row["description"],
        "recorded_at": parse_ts(row["recorded_at"]).isoformat(),
    }
