"""Fold the observation stream into contiguous activity spans."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .config import DaemonSettings
from .models import ActivitySpan, Observation
from .normalization import context_key, normalize_window_title

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SpanChange:
    """What a single aggregator step did to the span timeline."""

    sealed: Optional[ActivitySpan] = None
    discarded: Optional[ActivitySpan] = None
    opened: Optional[ActivitySpan] = None

    def merge(self, other: "SpanChange") -> "SpanChange":
        return SpanChange(
            sealed=other.sealed or self.sealed,
            discarded=other.discarded or self.discarded,
            opened=other.opened or self.opened,
        )


class SpanAggregator:
    """Owns the single open span of the current session."""

    def __init__(self, settings: DaemonSettings) -> None:
        self.settings = settings
        self.open_span: Optional[ActivitySpan] = None
        self.last_tick_at: Optional[datetime] = None
        self._open_key: Optional[tuple] = None

    def is_suspended(self, now: datetime) -> bool:
        """Wall-clock delta since the previous tick exceeds the sleep tolerance."""
        if self.last_tick_at is None:
            return False
        return now - self.last_tick_at > self.settings.suspend_gap

    def mark_tick(self, at: datetime) -> None:
        self.last_tick_at = at

    def observe(
        self,
        observation: Observation,
        session_id: str,
        work_item_id: Optional[str] = None,
    ) -> SpanChange:
        key = context_key(
            observation.app_name,
            observation.window_title,
            observation.project_path,
            work_item_id,
        )
        if self.open_span is not None and key == self._open_key:
            return SpanChange()

        change = SpanChange()
        if self.open_span is not None:
            change = self.seal(observation.captured_at)
        opened = self.open(
            session_id,
            observation.app_name,
            observation.window_title,
            observation.project_path,
            work_item_id,
            at=observation.captured_at,
        )
        return change.merge(SpanChange(opened=opened))

    def open(
        self,
        session_id: str,
        app_name: str,
        window_title: Optional[str],
        project_path: Optional[str],
        work_item_id: Optional[str],
        *,
        at: datetime,
    ) -> ActivitySpan:
        if self.open_span is not None:
            raise RuntimeError("a span is already open")
        span = ActivitySpan(
            session_id=session_id,
            app_name=app_name,
            window_title=normalize_window_title(app_name, window_title),
            project_path=project_path,
            work_item_id=work_item_id,
            start_time=at,
        )
        self.open_span = span
        self._open_key = context_key(app_name, window_title, project_path, work_item_id)
        logger.debug("Opened span %s for %s (%s)", span.id, app_name, span.window_title)
        return span

    def seal(self, at: datetime) -> SpanChange:
        """Close the open span at ``at``; spans that would be empty are discarded."""
        span = self.open_span
        self.open_span = None
        self._open_key = None
        if span is None:
            return SpanChange()
        if at <= span.start_time:
            logger.debug("Discarding empty span %s", span.id)
            return SpanChange(discarded=span)
        span.end_time = at
        logger.debug("Sealed span %s after %.1fs", span.id, span.duration_seconds)
        return SpanChange(sealed=span)

    def reopen_with_work_item(self, work_item_id: Optional[str], at: datetime) -> SpanChange:
        """Split the open span so time from ``at`` onward carries ``work_item_id``."""
        span = self.open_span
        if span is None or span.work_item_id == work_item_id:
            return SpanChange()
        change = self.seal(at)
        opened = self.open(
            span.session_id,
            span.app_name,
            span.window_title,
            span.project_path,
            work_item_id,
            at=at,
        )
        return change.merge(SpanChange(opened=opened))
