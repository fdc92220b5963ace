"""Fixed-interval, drift-corrected sampling of the foreground context."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime
from typing import Callable, Optional, TypeVar

from .config import DaemonSettings
from .models import UNKNOWN_APP, Observation, utcnow
from .normalization import context_key, extract_project_from_title
from .probes import WindowProbe, WindowSample

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Sampler:
    """Produces one :class:`Observation` per tick and hands it to ``emit``.

    Ticks are scheduled at ``origin + n * interval`` on the monotonic clock, so
    a slow probe delays one tick but never shifts the ones after it. When the
    loop falls behind by more than an interval the missed targets are dropped
    rather than replayed.
    """

    def __init__(
        self,
        probe: WindowProbe,
        settings: DaemonSettings,
        emit: Callable[[Observation], None],
        *,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._probe = probe
        self.settings = settings
        self._emit = emit
        self._clock = clock
        self._monotonic = monotonic
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="worktrack-probe")
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._previous_key: Optional[tuple] = None

    def update_settings(self, settings: DaemonSettings) -> None:
        self.settings = settings

    def tick(self) -> Observation:
        captured_at = self._clock()
        timeout = self.settings.collaborator_timeout.total_seconds()
        sample: Optional[WindowSample] = self._call(self._probe.sample, timeout, "window")
        idle_seconds: Optional[float] = self._call(self._probe.idle_seconds, timeout, "idle")

        if sample is None:
            app_name, title, project = UNKNOWN_APP, None, None
        else:
            app_name = sample.app_name
            title = sample.window_title
            project = sample.project_path or extract_project_from_title(app_name, title)

        key = context_key(app_name, title, project)
        if idle_seconds is not None:
            interval = self.settings.sample_interval.total_seconds()
            idle_signal = idle_seconds >= interval
        else:
            idle_signal = key == self._previous_key
        self._previous_key = key

        return Observation(
            captured_at=captured_at,
            app_name=app_name,
            window_title=title,
            project_path=project,
            is_idle_signal=idle_signal,
            input_idle_seconds=idle_seconds,
        )

    def _call(self, func: Callable[[], T], timeout: float, label: str) -> Optional[T]:
        try:
            future = self._executor.submit(func)
        except RuntimeError:
            # Executor already shut down during teardown.
            return None
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            future.cancel()
            logger.warning("%s probe timed out after %.1fs", label, timeout)
        except Exception:
            logger.exception("%s probe failed; recording unknown data.", label)
        return None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="worktrack-sampler", daemon=True)
        self._thread.start()
        logger.info(
            "Sampler started (interval %.1fs)", self.settings.sample_interval.total_seconds()
        )

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        thread = self._thread
        self._thread = None
        if thread and thread is not threading.current_thread():
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("Sampler did not stop within %.1fs; abandoning it.", timeout or 0)
        self._executor.shutdown(wait=False, cancel_futures=True)
        logger.info("Sampler stopped.")

    def _run_loop(self) -> None:
        next_target = self._monotonic()
        while not self._stop_event.is_set():
            delay = next_target - self._monotonic()
            if delay > 0 and self._stop_event.wait(delay):
                break
            try:
                self._emit(self.tick())
            except Exception:
                logger.exception("Sampler tick failed; continuing.")
            interval = self.settings.sample_interval.total_seconds()
            next_target = self._next_target(next_target, interval, self._monotonic())

    @staticmethod
    def _next_target(previous: float, interval: float, now: float) -> float:
        target = previous + interval
        if target <= now - interval:
            missed = int((now - target) // interval) + 1
            target += missed * interval
        return target
