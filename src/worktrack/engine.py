"""Session state machine and the single-writer loop that drives it.

Every mutation (sampler ticks, control commands, classifier results, config
reloads, shutdown) arrives as a message on one queue and is applied by one
thread, so writes are totally ordered. After each message the engine publishes
an immutable :class:`DaemonSnapshot` that readers can take without blocking it.
"""

from __future__ import annotations

import inspect
import logging
import queue
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Optional

from .aggregator import SpanAggregator, SpanChange
from .classifier import Classifier
from .config import DaemonSettings
from .errors import BadRequest, Conflict, Corrupted, NotFound, TrackerError, TransientIO
from .idle import IdleDetector
from .models import (
    ActivitySpan,
    Classification,
    DaemonSnapshot,
    IssueRelationship,
    Observation,
    OutcomeType,
    Session,
    SessionIssueLink,
    SessionOutcome,
    SessionState,
    WorkItem,
    utcnow,
)
from .store import SqliteStore

logger = logging.getLogger(__name__)

GAP_IDLE = "idle"
GAP_PAUSED = "paused"
GAP_SUSPENDED = "suspended"
GAP_EXCLUDED = "excluded"


@dataclass(slots=True)
class Tick:
    observation: Observation


@dataclass(slots=True)
class Command:
    name: str
    args: dict[str, Any] = field(default_factory=dict)
    future: Future = field(default_factory=Future)


@dataclass(slots=True)
class ClassificationResult:
    span_id: str
    result: Classification


@dataclass(slots=True)
class Reload:
    settings: DaemonSettings


@dataclass(slots=True)
class Shutdown:
    reason: str = "shutdown"
    future: Future = field(default_factory=Future)


class SessionEngine:
    """Owns the current session, its open span and every write to the store."""

    def __init__(
        self,
        store: SqliteStore,
        settings: DaemonSettings,
        *,
        classifier: Optional[Classifier] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.classifier = classifier
        self._clock = clock

        self.session: Optional[Session] = None
        self.aggregator = SpanAggregator(settings)
        self.idle = IdleDetector(settings.idle_threshold)
        self.current_work_item: Optional[WorkItem] = None
        self.tracking_enabled = settings.auto_start
        self.last_observation: Optional[Observation] = None
        self.degraded_reason: Optional[str] = None

        self._gap_start: Optional[datetime] = None
        self._gap_kind: Optional[str] = None
        self._last_heartbeat: Optional[datetime] = None
        self._pending: deque[tuple[str, Callable[..., Any], tuple]] = deque()

        self._queue: "queue.Queue[object]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._accepting = True
        self._classify_pool: Optional[ThreadPoolExecutor] = None

        self._snapshot_lock = threading.Lock()
        self._snapshot = DaemonSnapshot(taken_at=clock())

        self._commands: dict[str, Callable[..., dict[str, Any]]] = {
            "status": self.status,
            "start": self.start_session,
            "stop": self.stop_session,
            "pause": self.pause,
            "resume": self.resume,
            "work-on": self.work_on,
            "work-off": self.work_off,
            "work-item.add": self.add_work_item,
            "session.start": self.session_start,
            "session.end": self.session_end,
            "session.link": self.session_link,
            "session.outcome": self.session_outcome,
        }
        self._publish()

    # ------------------------------------------------------------------
    # Threaded front door
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        if self.classifier is not None:
            self._classify_pool = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="worktrack-classify"
            )
        self._accepting = True
        self._thread = threading.Thread(target=self._run_loop, name="worktrack-engine", daemon=True)
        self._thread.start()
        logger.info("Session engine started.")

    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def submit_tick(self, observation: Observation) -> None:
        if self._accepting:
            self._queue.put(Tick(observation))

    def reload(self, settings: DaemonSettings) -> None:
        self._queue.put(Reload(settings))

    def call(self, name: str, args: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """Run a command on the engine thread and wait for its result."""
        if name not in self._commands:
            raise BadRequest(f"unknown command {name!r}")
        if name == "status":
            return self.snapshot().to_payload()
        if not self._accepting:
            raise Conflict("daemon is shutting down")
        command = Command(name, dict(args or {}))
        self._queue.put(command)
        timeout = self.settings.command_timeout.total_seconds()
        try:
            return command.future.result(timeout=timeout)
        except FutureTimeout as exc:
            raise TransientIO(f"{name} did not complete within {timeout:.1f}s") from exc

    def shutdown(self, reason: str = "shutdown", timeout: Optional[float] = None) -> bool:
        """Stop accepting ticks, close the session and flush; bounded by ``timeout``."""
        self._accepting = False
        if timeout is None:
            timeout = self.settings.shutdown_grace.total_seconds()
        if not self.is_running():
            self._finish(reason)
            return True
        message = Shutdown(reason)
        self._queue.put(message)
        try:
            message.future.result(timeout=timeout)
        except FutureTimeout:
            logger.warning("Engine did not finish within %.1fs; exiting anyway.", timeout)
            return False
        thread = self._thread
        if thread is not None:
            thread.join(timeout=timeout)
        return True

    def snapshot(self) -> DaemonSnapshot:
        with self._snapshot_lock:
            return self._snapshot

    def _run_loop(self) -> None:
        while True:
            message = self._queue.get()
            if isinstance(message, Shutdown):
                try:
                    self._finish(message.reason)
                finally:
                    message.future.set_result(None)
                break
            self.process(message)

    # ------------------------------------------------------------------
    # Message dispatch
    # ------------------------------------------------------------------

    def process(self, message: object) -> None:
        """Apply one message synchronously; used by the engine thread."""
        try:
            if isinstance(message, Tick):
                self.handle_tick(message.observation)
            elif isinstance(message, Command):
                try:
                    result = self.execute(message.name, message.args)
                except Exception as exc:
                    message.future.set_exception(exc)
                else:
                    message.future.set_result(result)
            elif isinstance(message, ClassificationResult):
                self._apply_classification(message.span_id, message.result)
            elif isinstance(message, Reload):
                self.apply_settings(message.settings)
            else:
                logger.error("Dropping unknown engine message %r", message)
        except Exception:
            logger.exception("Engine failed to apply %s", type(message).__name__)
        finally:
            self._publish()

    def execute(self, name: str, args: dict[str, Any]) -> dict[str, Any]:
        handler = self._commands.get(name)
        if handler is None:
            raise BadRequest(f"unknown command {name!r}")
        try:
            inspect.signature(handler).bind(**args)
        except TypeError as exc:
            raise BadRequest(f"invalid arguments for {name}: {exc}") from exc
        result = handler(**args)
        self._publish()
        return result

    def apply_settings(self, settings: DaemonSettings) -> None:
        self.settings = settings
        self.aggregator.settings = settings
        self.idle.threshold = settings.idle_threshold
        logger.info(
            "Applied settings: interval=%.1fs idle=%.0fs session_timeout=%.0fs",
            settings.sample_interval.total_seconds(),
            settings.idle_threshold.total_seconds(),
            settings.session_timeout.total_seconds(),
        )

    # ------------------------------------------------------------------
    # Tick handling
    # ------------------------------------------------------------------

    def handle_tick(self, observation: Observation) -> None:
        if self.settings.is_excluded(observation.app_name):
            observation = replace(observation, window_title=None, project_path=None)
        self.last_observation = observation
        self.idle.observe(observation)
        now = observation.captured_at
        last_good = self.aggregator.last_tick_at
        suspended = self.aggregator.is_suspended(now)
        self.aggregator.mark_tick(now)
        if self.degraded_reason:
            return
        try:
            self._flush_pending()
            if suspended and self.session is not None and last_good is not None:
                self._handle_suspension(last_good, now)
            self._advance(observation)
            self._heartbeat(now)
        except Corrupted:
            logger.error("Tick abandoned; store is corrupted.")

    def _advance(self, observation: Observation) -> None:
        now = observation.captured_at
        session = self.session
        if session is None:
            if (
                self.tracking_enabled
                and not observation.is_idle_signal
                and not self.idle.is_idle(now)
                and not self.settings.is_excluded(observation.app_name)
            ):
                self._begin_session(now)
            return
        if session.state is SessionState.PAUSED:
            return

        if self.idle.is_idle(now):
            if self.aggregator.open_span is not None:
                span = self.aggregator.open_span
                seal_at = max(self.idle.last_signal or now, span.start_time)
                self._persist(self.aggregator.seal(seal_at))
                self._start_gap(seal_at, GAP_IDLE)
                logger.info("Idle since %s; sealed span %s", seal_at.isoformat(), span.id)
            if self.idle.idle_for(now) >= self.settings.session_timeout:
                ended_at = self._gap_start or self.idle.last_signal or now
                self._end_session(ended_at, "idle")
            return

        if self.settings.is_excluded(observation.app_name):
            self._enter_excluded(now)
            return
        if self.aggregator.open_span is None:
            self._close_gap(now)
            self._open_span(observation, now)
            return
        change = self.aggregator.observe(observation, session.id, self._work_item_id())
        self._persist(change)
        if change.opened is not None:
            logger.info(
                "Context changed to %s (%s)", observation.app_name, change.opened.window_title
            )

    def _handle_suspension(self, last_good: datetime, now: datetime) -> None:
        gap = now - last_good
        logger.warning(
            "No ticks for %.0fs (suspended?); sealing at last known-good tick.",
            gap.total_seconds(),
        )
        session = self.session
        if session is None or session.state is not SessionState.ACTIVE:
            return
        if self.aggregator.open_span is not None:
            self._persist(self.aggregator.seal(last_good))
        if self._gap_start is None:
            self._start_gap(last_good, GAP_SUSPENDED)
        if now - self._gap_start >= self.settings.session_timeout:
            self._end_session(self._gap_start, GAP_SUSPENDED)

    def _heartbeat(self, now: datetime) -> None:
        session = self.session
        if session is None:
            return
        if self._last_heartbeat is not None and now - self._last_heartbeat < self.settings.heartbeat_interval:
            return
        span = self.aggregator.open_span
        self._write("touch", self.store.touch, session.id, span.id if span else None, now)
        session.last_seen_at = now
        self._last_heartbeat = now

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _begin_session(
        self,
        at: datetime,
        *,
        session_id: Optional[str] = None,
        project: Optional[str] = None,
    ) -> Session:
        observation = self.last_observation
        if project is None and observation is not None:
            project = observation.project_path
        session = Session(started_at=at, project=project, last_seen_at=at)
        if session_id is not None:
            session.id = session_id
        self._write("upsert_session", self.store.upsert_session, session)
        self.session = session
        self._gap_start = None
        self._gap_kind = None
        self._last_heartbeat = at
        logger.info("Started session %s", session.id)
        if observation is not None:
            self._open_span(observation, at)
        else:
            self._start_gap(at, GAP_IDLE)
        return session

    def _end_session(self, at: datetime, reason: str) -> Session:
        session = self.session
        if session is None:
            raise Conflict("no open session")
        at = max(at, session.started_at)
        if self.aggregator.open_span is not None:
            self._persist(self.aggregator.seal(at))
        self._close_gap(at)
        session.state = SessionState.ENDED
        session.ended_at = at
        session.end_reason = reason
        self.session = None
        self._gap_start = None
        self._gap_kind = None
        self._write("upsert_session", self.store.upsert_session, session)
        logger.info("Ended session %s (%s)", session.id, reason)
        return session

    def _open_span(self, observation: Observation, at: datetime) -> None:
        session = self.session
        if session is None or session.state is not SessionState.ACTIVE:
            return
        if self.settings.is_excluded(observation.app_name):
            self._enter_excluded(at)
            return
        span = self.aggregator.open(
            session.id,
            observation.app_name,
            observation.window_title,
            observation.project_path,
            self._work_item_id(),
            at=at,
        )
        self._persist(SpanChange(opened=span))

    def _enter_excluded(self, at: datetime) -> None:
        """Nothing is recorded while an excluded app has the foreground."""
        if self.aggregator.open_span is not None:
            span = self.aggregator.open_span
            self._persist(self.aggregator.seal(at))
            logger.info("Excluded app in foreground; sealed span %s", span.id)
        if self._gap_kind != GAP_EXCLUDED:
            self._close_gap(at)
            self._start_gap(at, GAP_EXCLUDED)

    def _start_gap(self, at: datetime, kind: str) -> None:
        if self._gap_start is None:
            self._gap_start = at
            self._gap_kind = kind

    def _close_gap(self, at: datetime) -> None:
        start, kind = self._gap_start, self._gap_kind
        self._gap_start = None
        self._gap_kind = None
        if start is None or self.session is None or at <= start:
            return
        gap = ActivitySpan(
            session_id=self.session.id,
            app_name=kind or GAP_IDLE,
            start_time=start,
            end_time=at,
            is_idle=True,
        )
        self._write("insert_gap", self.store.insert_gap, gap)

    def _work_item_id(self) -> Optional[str]:
        return self.current_work_item.issue_id if self.current_work_item else None

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist(self, change: SpanChange) -> None:
        if change.discarded is not None:
            self._write("discard_span", self.store.discard_span, change.discarded.id)
        if change.sealed is not None:
            self._write("seal_span", self.store.seal_span, change.sealed)
            self._classify(change.sealed)
        if change.opened is not None:
            self._write("insert_span", self.store.insert_span, change.opened)

    def _write(self, label: str, func: Callable[..., Any], *args: Any) -> None:
        """Write through, or queue behind earlier failed writes to keep their order."""
        if self._pending:
            self._pending.append((label, func, args))
            return
        try:
            func(*args)
        except TransientIO as exc:
            logger.warning("%s deferred: %s", label, exc)
            self._pending.append((label, func, args))
        except Corrupted as exc:
            self._enter_degraded(str(exc))
            raise

    def _flush_pending(self) -> None:
        while self._pending:
            label, func, args = self._pending[0]
            try:
                func(*args)
            except TransientIO as exc:
                logger.warning("%s still failing (%d writes pending): %s", label, len(self._pending), exc)
                return
            except Corrupted as exc:
                self._enter_degraded(str(exc))
                raise
            self._pending.popleft()
        logger.debug("Pending writes flushed.")

    def _enter_degraded(self, reason: str) -> None:
        if self.degraded_reason is None:
            logger.error("Entering degraded mode: %s", reason)
        self.degraded_reason = reason

    def enter_degraded(self, reason: str) -> None:
        self._enter_degraded(reason)
        self._publish()

    def _ensure_writable(self) -> None:
        if self.degraded_reason:
            raise Corrupted(f"store unavailable, daemon is degraded: {self.degraded_reason}")

    def _settle_pending(self) -> None:
        """Direct store access must not overtake writes still queued from a failure."""
        if not self._pending:
            return
        self._flush_pending()
        if self._pending:
            raise TransientIO(
                f"{len(self._pending)} earlier writes are still pending; retry shortly"
            )

    def _classify(self, span: ActivitySpan) -> None:
        pool = self._classify_pool
        if self.classifier is None or pool is None or span.is_idle:
            return
        classifier = self.classifier

        def _done(future: Future) -> None:
            try:
                result = future.result()
            except Exception:
                logger.exception("Classifier failed for span %s", span.id)
                return
            if result is not None:
                self._queue.put(ClassificationResult(span.id, result))

        try:
            pool.submit(classifier.classify, span).add_done_callback(_done)
        except RuntimeError:
            logger.debug("Classifier pool closed; span %s stays unclassified.", span.id)

    def _apply_classification(self, span_id: str, result: Classification) -> None:
        if self.degraded_reason:
            return
        self._write(
            "attach_classification", self.store.attach_classification, span_id, result
        )

    def _finish(self, reason: str) -> None:
        now = self._clock()
        if self.session is not None and not self.degraded_reason:
            try:
                self._end_session(now, reason)
            except TrackerError as exc:
                logger.error("Could not end session on shutdown: %s", exc)
        if not self.degraded_reason:
            try:
                self._flush_pending()
            except Corrupted as exc:
                logger.error("Final flush abandoned: %s", exc)
        if self._pending:
            logger.error("%d writes could not be flushed before shutdown.", len(self._pending))
        if self._classify_pool is not None:
            self._classify_pool.shutdown(wait=False, cancel_futures=True)
        self._publish()
        logger.info("Session engine stopped.")

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def _publish(self) -> None:
        now = self._clock()
        span = self.aggregator.open_span
        snapshot = DaemonSnapshot(
            taken_at=now,
            session=self.session.to_payload() if self.session else None,
            open_span=span.to_payload(now) if span else None,
            work_item=self.current_work_item.to_payload() if self.current_work_item else None,
            last_observation=(
                self.last_observation.to_payload() if self.last_observation else None
            ),
            idle=self.idle.is_idle(now) if self.session else False,
            tracking_enabled=self.tracking_enabled,
            degraded=self.degraded_reason is not None,
            degraded_reason=self.degraded_reason,
            pending_writes=len(self._pending),
        )
        with self._snapshot_lock:
            self._snapshot = snapshot

    def _state(self) -> dict[str, Any]:
        self._publish()
        return self.snapshot().to_payload()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        return self._state()

    def start_session(self) -> dict[str, Any]:
        """Start tracking; a no-op returning the session when one is already active."""
        self._ensure_writable()
        self.tracking_enabled = True
        session = self.session
        if session is not None and session.state is SessionState.PAUSED:
            return self.resume()
        if session is None:
            now = self._clock()
            self.idle.reset(now)
            self._begin_session(now)
        return self._state()

    def stop_session(self, reason: str = "stopped") -> dict[str, Any]:
        """End the open session and keep auto-start off until ``start``."""
        self._ensure_writable()
        if self.session is None:
            raise Conflict("no open session to stop")
        ended = self._end_session(self._clock(), reason)
        self.tracking_enabled = False
        state = self._state()
        state["ended_session"] = ended.to_payload()
        return state

    def pause(self) -> dict[str, Any]:
        self._ensure_writable()
        session = self.session
        if session is None:
            raise Conflict("no open session to pause")
        if session.state is SessionState.PAUSED:
            raise Conflict(f"session {session.id} is already paused")
        now = self._clock()
        if self.aggregator.open_span is not None:
            self._persist(self.aggregator.seal(now))
        self._close_gap(now)
        self._start_gap(now, GAP_PAUSED)
        session.state = SessionState.PAUSED
        session.last_seen_at = now
        self._write("upsert_session", self.store.upsert_session, session)
        logger.info("Paused session %s", session.id)
        return self._state()

    def resume(self) -> dict[str, Any]:
        self._ensure_writable()
        session = self.session
        if session is None:
            raise Conflict("no open session to resume")
        if session.state is not SessionState.PAUSED:
            raise Conflict(f"session {session.id} is not paused")
        now = self._clock()
        self._close_gap(now)
        session.state = SessionState.ACTIVE
        self._write("upsert_session", self.store.upsert_session, session)
        self.idle.reset(now)
        if self.last_observation is not None:
            self._open_span(self.last_observation, now)
        else:
            self._start_gap(now, GAP_IDLE)
        logger.info("Resumed session %s", session.id)
        return self._state()

    def work_on(self, work_item_id: str) -> dict[str, Any]:
        self._ensure_writable()
        self._settle_pending()
        item = self.store.get_work_item(work_item_id)
        if item is None:
            raise NotFound(f"unknown work item {work_item_id!r}")
        self.current_work_item = item
        self._persist(self.aggregator.reopen_with_work_item(item.issue_id, self._clock()))
        logger.info("Working on %s", item.issue_id)
        return self._state()

    def work_off(self) -> dict[str, Any]:
        self._ensure_writable()
        if self.current_work_item is not None:
            logger.info("Stopped working on %s", self.current_work_item.issue_id)
            self.current_work_item = None
            self._persist(self.aggregator.reopen_with_work_item(None, self._clock()))
        return self._state()

    def add_work_item(
        self, issue_id: str, system: str = "manual", project: Optional[str] = None
    ) -> dict[str, Any]:
        self._ensure_writable()
        if not issue_id.strip():
            raise BadRequest("issue_id must not be empty")
        self._settle_pending()
        self.store.upsert_work_item(WorkItem(issue_id=issue_id.strip(), system=system, project=project))
        item = self.store.get_work_item(issue_id.strip())
        return {"work_item": item.to_payload() if item else None}

    def session_start(self, id: str, project: Optional[str] = None) -> dict[str, Any]:
        """Start a session under a caller-chosen id; repeating it is a no-op."""
        self._ensure_writable()
        if not id:
            raise BadRequest("session id must not be empty")
        current = self.session
        if current is not None and current.id == id:
            return self._state()
        self._settle_pending()
        stored = self.store.get_session(id)
        if stored is not None:
            raise Conflict(f"session {id} already exists and has ended")
        now = self._clock()
        if current is not None:
            self._end_session(now, "superseded")
        self.tracking_enabled = True
        self.idle.reset(now)
        self._begin_session(now, session_id=id, project=project)
        return self._state()

    def session_end(self, id: str, reason: Optional[str] = None) -> dict[str, Any]:
        self._ensure_writable()
        current = self.session
        if current is not None and current.id == id:
            ended = self._end_session(self._clock(), reason or "ended")
            return {"session": ended.to_payload()}
        self._settle_pending()
        state = self.store.session_state(id)
        if state is None:
            raise NotFound(f"unknown session {id!r}")
        if state.session.is_open:
            # Left open by an earlier run that recovery could not close.
            sealed, discarded = state.close(reason or "ended")
            self.store.end_stale_session(state.session, sealed, discarded)
        return {"session": state.session.to_payload()}

    def session_link(
        self,
        id: str,
        issue_id: str,
        system: str = "manual",
        relationship: str = IssueRelationship.WORKED_ON.value,
    ) -> dict[str, Any]:
        self._ensure_writable()
        try:
            rel = IssueRelationship(relationship)
        except ValueError as exc:
            raise BadRequest(f"unknown relationship {relationship!r}") from exc
        self._settle_pending()
        session = self._require_open_session(id)
        link = SessionIssueLink(session_id=session.id, issue_id=issue_id, system=system, relationship=rel)
        self.store.upsert_link(link)
        stored = next(
            (
                item
                for item in self.store.links_for_session(session.id)
                if item.issue_id == issue_id and item.system == system
            ),
            link,
        )
        return {"link": stored.to_payload()}

    def session_outcome(
        self,
        id: str,
        type: str,
        description: str,
        reference: Optional[str] = None,
    ) -> dict[str, Any]:
        self._ensure_writable()
        try:
            outcome_type = OutcomeType(type)
        except ValueError as exc:
            raise BadRequest(f"unknown outcome type {type!r}") from exc
        self._settle_pending()
        session = self._require_open_session(id)
        outcome = SessionOutcome(
            session_id=session.id,
            type=outcome_type,
            reference=reference,
            description=description,
            recorded_at=self._clock(),
        )
        created = self.store.append_outcome(outcome)
        return {"outcome": outcome.to_payload(), "created": created}

    def _require_open_session(self, session_id: str) -> Session:
        if self.session is not None and self.session.id == session_id:
            return self.session
        stored = self.store.get_session(session_id)
        if stored is None:
            raise NotFound(f"unknown session {session_id!r}")
        if not stored.is_open:
            raise Conflict(f"session {session_id} has ended; its history is immutable")
        return stored
