"""Process lifecycle: single-instance lock, crash recovery and thread ownership."""

from __future__ import annotations

import errno
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

import psutil

from .config import DaemonSettings
from .engine import SessionEngine
from .errors import AlreadyRunning
from .sampler import Sampler
from .store import SqliteStore

logger = logging.getLogger(__name__)

RECOVERED_REASON = "recovered"


class PidLock:
    """Exclusive PID marker file; a marker left by a dead process is reclaimed."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.acquired = False

    def read_pid(self) -> Optional[int]:
        try:
            text = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        try:
            return int(text)
        except ValueError:
            return None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                pid = self.read_pid()
                if pid is not None and pid != os.getpid() and psutil.pid_exists(pid):
                    raise AlreadyRunning(f"daemon already running with pid {pid}")
                logger.warning("Reclaiming stale pid file %s (pid %s)", self.path, pid)
                self._unlink()
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(str(os.getpid()))
            self.acquired = True
            return
        raise AlreadyRunning(f"could not acquire {self.path}")

    def release(self) -> None:
        if not self.acquired:
            return
        if self.read_pid() == os.getpid():
            self._unlink()
        self.acquired = False

    def _unlink(self) -> None:
        try:
            self.path.unlink()
        except OSError as exc:
            if exc.errno != errno.ENOENT:
                raise

    def __enter__(self) -> "PidLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


@dataclass(slots=True)
class RecoveryReport:
    sessions: list[str] = field(default_factory=list)
    sealed_spans: int = 0
    discarded_spans: int = 0


def recover(store: SqliteStore) -> RecoveryReport:
    """Close whatever a previous run left open, using only what it persisted.

    Each session ends at the latest moment the store saw it alive, whether
    that is a heartbeat or the end of a span or gap. Open spans are sealed
    there and the session ends with reason ``recovered``. Nothing after that
    point is assumed to have been activity.
    """
    report = RecoveryReport()
    states, orphans = store.load_open_session_on_startup()
    for state in states:
        sealed, discarded = state.close(RECOVERED_REASON)
        session = state.session
        store.end_stale_session(session, sealed, discarded)
        report.sessions.append(session.id)
        report.sealed_spans += len(sealed)
        report.discarded_spans += len(discarded)
        logger.warning("Recovered session %s; ended at %s", session.id, session.ended_at.isoformat())
    for span, last_seen in orphans:
        if _seal_or_discard(store, span, last_seen or span.start_time):
            report.sealed_spans += 1
        else:
            report.discarded_spans += 1
    if report.sessions or orphans:
        logger.info(
            "Recovery closed %d session(s), sealed %d span(s), discarded %d",
            len(report.sessions),
            report.sealed_spans,
            report.discarded_spans,
        )
    return report


def _seal_or_discard(store: SqliteStore, span, at) -> bool:
    if at <= span.start_time:
        store.discard_span(span.id)
        return False
    span.end_time = at
    store.seal_span(span)
    return True


class DaemonRunner:
    """Start and stop the engine and sampler threads together."""

    def __init__(
        self,
        engine: SessionEngine,
        sampler: Optional[Sampler] = None,
        *,
        on_exit_request: Optional[Callable[[], None]] = None,
    ) -> None:
        self.engine = engine
        self.sampler = sampler
        self._on_exit_request = on_exit_request
        self._lock = threading.Lock()
        self._started = False

    def start(self) -> None:
        with self._lock:
            if self._started:
                return
            self.engine.start()
            if self.sampler is not None:
                self.sampler.start()
            self._started = True
            logger.info("Daemon threads started.")

    def stop(self, grace: Optional[float] = None) -> None:
        with self._lock:
            if not self._started:
                return
            self._started = False
        if grace is None:
            grace = self.engine.settings.shutdown_grace.total_seconds()
        if self.sampler is not None:
            self.sampler.stop(timeout=grace)
        self.engine.shutdown("shutdown", timeout=grace)
        logger.info("Daemon threads stopped.")

    def is_running(self) -> bool:
        with self._lock:
            return self._started and self.engine.is_running()

    def reload(self, settings: DaemonSettings) -> None:
        if self.sampler is not None:
            self.sampler.update_settings(settings)
        self.engine.reload(settings)

    def set_exit_handler(self, handler: Callable[[], None]) -> None:
        self._on_exit_request = handler

    def request_exit(self) -> bool:
        """Ask the hosting server to shut down; False when nothing is listening."""
        if self._on_exit_request is None:
            return False
        logger.info("Shutdown requested over the control socket.")
        self._on_exit_request()
        return True
