"""Helpers to launch the tracking daemon behind its control socket."""

from __future__ import annotations

import logging
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

import uvicorn

from .classifier import KeywordClassifier
from .config import DaemonSettings, load_settings
from .engine import SessionEngine
from .errors import Corrupted
from .lifecycle import DaemonRunner, PidLock, recover
from .paths import get_config_path, get_db_path, get_log_path, get_pid_path, get_socket_path
from .probes import create_probe
from .sampler import Sampler
from .store import SqliteStore
from .webapp import create_app

logger = logging.getLogger(__name__)


def open_store(db_path: Path, settings: DaemonSettings) -> tuple[SqliteStore, Optional[str]]:
    """Open and recover the store; on corruption fall back to an empty in-memory one."""
    try:
        store = SqliteStore.from_settings(db_path, settings)
        recover(store)
    except Corrupted as exc:
        logger.error("Store at %s is unusable: %s", db_path, exc)
        return SqliteStore(":memory:"), str(exc)
    return store, None


def build_runner(
    db_path: Path,
    settings: DaemonSettings,
    *,
    with_sampler: bool = True,
) -> DaemonRunner:
    store, degraded = open_store(db_path, settings)
    engine = SessionEngine(store, settings, classifier=KeywordClassifier())
    if degraded:
        engine.enter_degraded(degraded)
    sampler = None
    if with_sampler:
        probe = create_probe(timeout=settings.collaborator_timeout.total_seconds())
        sampler = Sampler(probe, settings, engine.submit_tick)
    return DaemonRunner(engine, sampler)


def run_daemon(
    *,
    db_path: Optional[Path] = None,
    socket_path: Optional[Path] = None,
    pid_path: Optional[Path] = None,
    config_path: Optional[Path] = None,
    overrides: Optional[dict[str, Any]] = None,
    log_file: Optional[Path] = None,
    log_level: str = "info",
) -> None:
    """Run the daemon in the foreground until SIGTERM, SIGINT or ``shutdown``."""
    config_path = config_path or get_config_path()
    overrides = overrides or {}
    settings = load_settings(config_path).with_overrides(**overrides)
    _attach_file_log(log_file or get_log_path())

    lock = PidLock(pid_path or get_pid_path())
    lock.acquire()
    socket_path = Path(socket_path or get_socket_path())
    runner: Optional[DaemonRunner] = None
    try:
        if socket_path.exists():
            logger.warning("Removing stale control socket %s", socket_path)
            socket_path.unlink()
        runner = build_runner(Path(db_path or get_db_path()), settings)
        app = create_app(runner)

        logging.getLogger("uvicorn.error").setLevel(log_level.upper())
        server = uvicorn.Server(uvicorn.Config(app, uds=str(socket_path), log_level=log_level))
        runner.set_exit_handler(lambda: setattr(server, "should_exit", True))
        _install_signal_handlers(runner, config_path, overrides)
        logger.info("Daemon listening on %s (pid file %s)", socket_path, lock.path)
        server.run()
    finally:
        if runner is not None:
            runner.stop()
            runner.engine.store.close()
        if socket_path.exists():
            socket_path.unlink()
        lock.release()
        logger.info("Daemon exited.")


def _install_signal_handlers(
    runner: DaemonRunner, config_path: Path, overrides: dict[str, Any]
) -> None:
    # uvicorn owns SIGINT/SIGTERM while serving and re-raises them on exit.
    signal.signal(signal.SIGTERM, _exit_on_signal)
    if sys.platform == "win32":
        return

    def _reload(signum: int, frame: object) -> None:
        try:
            settings = load_settings(config_path).with_overrides(**overrides)
        except (OSError, ValueError) as exc:
            logger.error("Reload of %s failed; keeping current settings: %s", config_path, exc)
            return
        runner.reload(settings)

    signal.signal(signal.SIGHUP, _reload)


def _exit_on_signal(signum: int, frame: object) -> None:
    raise SystemExit(0)


def _attach_file_log(path: Path) -> None:
    root = logging.getLogger()
    if any(isinstance(h, RotatingFileHandler) for h in root.handlers):
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(path, maxBytes=1_000_000, backupCount=3, encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root.addHandler(handler)
