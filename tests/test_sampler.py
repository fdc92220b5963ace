"""Tests for the sampler."""

import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from worktrack.config import DaemonSettings
from worktrack.models import UNKNOWN_APP
from worktrack.probes import WindowSample
from worktrack.sampler import Sampler

T0 = datetime(2024, 5, 6, 9, 0, tzinfo=timezone.utc)


class FakeProbe:
    def __init__(self, samples, idle=None):
        self.samples = list(samples)
        self.idle = idle

    def sample(self):
        item = self.samples.pop(0) if len(self.samples) > 1 else self.samples[0]
        if isinstance(item, Exception):
            raise item
        return item

    def idle_seconds(self):
        return self.idle


class SlowProbe:
    def __init__(self):
        self.release = threading.Event()

    def sample(self):
        self.release.wait(2)
        return WindowSample("code", "late")

    def idle_seconds(self):
        return None


@pytest.fixture
def settings():
    return DaemonSettings.from_intervals(1, 300).with_overrides(
        collaborator_timeout=timedelta(milliseconds=50)
    )


def make_sampler(probe, settings):
    return Sampler(probe, settings, emit=lambda _obs: None, clock=lambda: T0)


class TestTick:
    def test_observation_fields(self, settings):
        probe = FakeProbe([WindowSample("Code", "main.py - proj - Visual Studio Code")], idle=0.2)
        sampler = make_sampler(probe, settings)
        try:
            observation = sampler.tick()
        finally:
            sampler.stop()

        assert observation.captured_at == T0
        assert observation.app_name == "Code"
        assert observation.project_path == "proj"
        assert observation.is_idle_signal is False
        assert observation.input_idle_seconds == 0.2

    def test_input_idle_marks_idle_signal(self, settings):
        sampler = make_sampler(FakeProbe([WindowSample("code", "a")], idle=42.0), settings)
        try:
            assert sampler.tick().is_idle_signal is True
        finally:
            sampler.stop()

    def test_unchanged_context_is_idle_signal_without_input_probe(self, settings):
        probe = FakeProbe(
            [WindowSample("code", "a"), WindowSample("code", "a"), WindowSample("code", "b")]
        )
        sampler = make_sampler(probe, settings)
        try:
            flags = [sampler.tick().is_idle_signal for _ in range(3)]
        finally:
            sampler.stop()

        assert flags == [False, True, False]

    def test_probe_failure_yields_unknown(self, settings):
        sampler = make_sampler(FakeProbe([RuntimeError("no display")]), settings)
        try:
            observation = sampler.tick()
        finally:
            sampler.stop()

        assert observation.app_name == UNKNOWN_APP
        assert observation.window_title is None

    def test_probe_timeout_yields_unknown(self, settings):
        probe = SlowProbe()
        sampler = make_sampler(probe, settings)
        started = time.monotonic()
        try:
            observation = sampler.tick()
        finally:
            probe.release.set()
            sampler.stop()

        assert observation.app_name == UNKNOWN_APP
        assert time.monotonic() - started < 1.0


class TestScheduling:
    @pytest.mark.parametrize(
        "previous, now, expected",
        [
            (0.0, 0.2, 1.0),
            (0.0, 1.5, 1.0),
            (0.0, 3.5, 4.0),
            (10.0, 25.2, 26.0),
        ],
    )
    def test_next_target(self, previous, now, expected):
        assert Sampler._next_target(previous, 1.0, now) == pytest.approx(expected)

    def test_loop_emits_until_stopped(self, settings):
        settings = settings.with_overrides(sample_interval=timedelta(milliseconds=20))
        emitted = []
        sampler = Sampler(FakeProbe([WindowSample("code", "a")]), settings, emit=emitted.append)
        sampler.start()
        time.sleep(0.2)
        sampler.stop(timeout=1)
        count = len(emitted)
        time.sleep(0.1)

        assert count >= 3
        assert len(emitted) == count
