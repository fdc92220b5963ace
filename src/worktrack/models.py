"""Domain models for recorded activity and work sessions."""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

UNKNOWN_APP = "unknown"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class SessionState(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ENDED = "ended"


class OutcomeType(str, enum.Enum):
    COMMIT = "commit"
    ISSUE_OPENED = "issue_opened"
    ISSUE_CLOSED = "issue_closed"
    PR_CREATED = "pr_created"
    PR_MERGED = "pr_merged"
    FILES_CHANGED = "files_changed"


class IssueRelationship(str, enum.Enum):
    REFERENCED = "referenced"
    WORKED_ON = "worked_on"
    CLOSED = "closed"

    @property
    def rank(self) -> int:
        return _RELATIONSHIP_RANK[self]


_RELATIONSHIP_RANK = {
    IssueRelationship.REFERENCED: 0,
    IssueRelationship.WORKED_ON: 1,
    IssueRelationship.CLOSED: 2,
}


@dataclass(slots=True, frozen=True)
class Observation:
    """One raw sample of the foreground context, produced once per tick."""

    captured_at: datetime
    app_name: str
    window_title: Optional[str] = None
    project_path: Optional[str] = None
    is_idle_signal: bool = False
    input_idle_seconds: Optional[float] = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "captured_at": _iso(self.captured_at),
            "app_name": self.app_name,
            "window_title": self.window_title,
            "project_path": self.project_path,
            "is_idle_signal": self.is_idle_signal,
        }


@dataclass(slots=True)
class ActivitySpan:
    """A contiguous block of time spent in a single activity context."""

    session_id: str
    app_name: str
    start_time: datetime
    window_title: Optional[str] = None
    project_path: Optional[str] = None
    category: Optional[str] = None
    work_item_id: Optional[str] = None
    end_time: Optional[datetime] = None
    is_idle: bool = False
    id: str = field(default_factory=new_id)

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    def elapsed_seconds(self, now: datetime) -> float:
        end = self.end_time or now
        return max((end - self.start_time).total_seconds(), 0.0)

    def to_payload(self, now: Optional[datetime] = None) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "app_name": self.app_name,
            "window_title": self.window_title,
            "project_path": self.project_path,
            "category": self.category,
            "work_item_id": self.work_item_id,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "duration_seconds": (
                self.elapsed_seconds(now) if now is not None else self.duration_seconds
            ),
            "is_idle": self.is_idle,
        }


@dataclass(slots=True)
class Session:
    started_at: datetime
    id: str = field(default_factory=new_id)
    state: SessionState = SessionState.ACTIVE
    ended_at: Optional[datetime] = None
    project: Optional[str] = None
    end_reason: Optional[str] = None
    last_seen_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.state is not SessionState.ENDED

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state.value,
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
            "project": self.project,
            "end_reason": self.end_reason,
        }


@dataclass(slots=True, frozen=True)
class WorkItem:
    """External issue/ticket reference; time is derived from linked spans."""

    issue_id: str
    system: str = "manual"
    project: Optional[str] = None
    accumulated_seconds: float = 0.0

    def to_payload(self) -> dict[str, Any]:
        return {
            "issue_id": self.issue_id,
            "system": self.system,
            "project": self.project,
            "accumulated_seconds": self.accumulated_seconds,
        }


@dataclass(slots=True, frozen=True)
class SessionOutcome:
    session_id: str
    type: OutcomeType
    description: str
    reference: Optional[str] = None
    recorded_at: datetime = field(default_factory=utcnow)

    def to_payload(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "type": self.type.value,
            "reference": self.reference,
            "description": self.description,
            "recorded_at": _iso(self.recorded_at),
        }


@dataclass(slots=True, frozen=True)
class SessionIssueLink:
    session_id: str
    issue_id: str
    system: str
    relationship: IssueRelationship
    linked_at: datetime = field(default_factory=utcnow)

    def to_payload(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "issue_id": self.issue_id,
            "system": self.system,
            "relationship": self.relationship.value,
            "linked_at": _iso(self.linked_at),
        }


@dataclass(slots=True, frozen=True)
class Classification:
    category: str
    work_item_id: Optional[str] = None
    confidence: float = 0.0


@dataclass(slots=True, frozen=True)
class DaemonSnapshot:
    """Immutable point-in-time view of the engine, safe to read from any thread."""

    taken_at: datetime
    session: Optional[dict[str, Any]] = None
    open_span: Optional[dict[str, Any]] = None
    work_item: Optional[dict[str, Any]] = None
    last_observation: Optional[dict[str, Any]] = None
    idle: bool = False
    tracking_enabled: bool = True
    degraded: bool = False
    degraded_reason: Optional[str] = None
    pending_writes: int = 0

    def to_payload(self) -> dict[str, Any]:
        return {
            "status": "degraded" if self.degraded else "running",
            "taken_at": _iso(self.taken_at),
            "session": self.session,
            "open_span": self.open_span,
            "work_item": self.work_item,
            "last_observation": self.last_observation,
            "idle": self.idle,
            "tracking_enabled": self.tracking_enabled,
            "degraded_reason": self.degraded_reason,
            "pending_writes": self.pending_writes,
        }
