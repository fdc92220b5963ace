"""Idle detection derived from input activity and context changes."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from .models import Observation


def is_idle(now: datetime, last_signal: Optional[datetime], threshold: timedelta) -> bool:
    """True once ``threshold`` has elapsed since the last distinguishing signal."""
    if last_signal is None:
        return False
    return now - last_signal >= threshold


class IdleDetector:
    """Tracks the rolling timestamp of the last distinguishing signal."""

    def __init__(self, threshold: timedelta) -> None:
        self.threshold = threshold
        self.last_signal: Optional[datetime] = None

    def observe(self, observation: Observation) -> None:
        if observation.is_idle_signal:
            if self.last_signal is None:
                # First sample ever: nothing proves the user was away before it.
                self.last_signal = observation.captured_at
            return
        signal_at = observation.captured_at
        if observation.input_idle_seconds is not None:
            signal_at = observation.captured_at - timedelta(
                seconds=observation.input_idle_seconds
            )
        if self.last_signal is None or signal_at > self.last_signal:
            self.last_signal = signal_at

    def is_idle(self, now: datetime) -> bool:
        return is_idle(now, self.last_signal, self.threshold)

    def idle_for(self, now: datetime) -> timedelta:
        if self.last_signal is None:
            return timedelta(0)
        return max(now - self.last_signal, timedelta(0))

    def reset(self, at: datetime) -> None:
        self.last_signal = at
