"""Configuration models and helpers for the tracking daemon."""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass, fields, replace
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class DaemonSettings:
    """Runtime configuration for the sampler, engine and lifecycle."""

    sample_interval: timedelta = timedelta(seconds=1)
    idle_threshold: timedelta = timedelta(minutes=5)
    session_timeout: timedelta = timedelta(minutes=5)
    heartbeat_interval: timedelta = timedelta(seconds=30)
    sleep_tolerance: float = 2.0
    collaborator_timeout: timedelta = timedelta(seconds=2)
    command_timeout: timedelta = timedelta(seconds=5)
    shutdown_grace: timedelta = timedelta(seconds=5)
    store_retries: int = 3
    store_backoff: timedelta = timedelta(milliseconds=50)
    auto_start: bool = True
    excluded_apps: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.sample_interval <= timedelta(0):
            raise ValueError("sample_interval must be positive")
        if self.idle_threshold < self.sample_interval:
            raise ValueError("idle_threshold must be at least one sample interval")
        if self.session_timeout < self.idle_threshold:
            raise ValueError("session_timeout must not be shorter than idle_threshold")
        if self.sleep_tolerance <= 1.0:
            raise ValueError("sleep_tolerance must be greater than 1.0")
        if self.store_retries < 1:
            raise ValueError("store_retries must be at least 1")
        if any(not item.strip() for item in self.excluded_apps):
            raise ValueError("excluded_apps entries must not be empty")

    @property
    def suspend_gap(self) -> timedelta:
        """Tick delta beyond which the process is assumed to have been suspended.

        A tick whose window and idle probes both hit ``collaborator_timeout``
        arrives late by up to twice that timeout, so the allowance is added on
        top of the tolerated interval.
        """
        return self.sample_interval * self.sleep_tolerance + 2 * self.collaborator_timeout

    def is_excluded(self, app_name: str) -> bool:
        """Whether ``app_name`` matches an excluded app (case-insensitive, either way round)."""
        name = app_name.strip().lower()
        if not name:
            return False
        return any(
            excluded in name or name in excluded
            for excluded in (item.strip().lower() for item in self.excluded_apps)
        )

    @classmethod
    def from_intervals(
        cls,
        sample_seconds: float,
        idle_seconds: float,
        session_timeout_seconds: float | None = None,
        heartbeat_seconds: float | None = None,
    ) -> "DaemonSettings":
        session_timeout = (
            session_timeout_seconds
            if session_timeout_seconds is not None
            else idle_seconds
        )
        heartbeat = (
            heartbeat_seconds
            if heartbeat_seconds is not None
            else max(sample_seconds * 30, 30.0)
        )
        return cls(
            sample_interval=timedelta(seconds=sample_seconds),
            idle_threshold=timedelta(seconds=idle_seconds),
            session_timeout=timedelta(seconds=session_timeout),
            heartbeat_interval=timedelta(seconds=heartbeat),
        )

    def with_overrides(self, **overrides: Any) -> "DaemonSettings":
        """Return a copy with the non-``None`` overrides applied.

        Raising ``idle_threshold`` alone drags ``session_timeout`` up with it.
        """
        values = {k: v for k, v in overrides.items() if v is not None}
        idle = values.get("idle_threshold")
        if idle is not None and "session_timeout" not in values:
            values["session_timeout"] = max(idle, self.session_timeout)
        return replace(self, **values)

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        for item in fields(self):
            value = getattr(self, item.name)
            if isinstance(value, timedelta):
                payload[f"{item.name}_seconds"] = value.total_seconds()
            else:
                payload[item.name] = value
        return payload


_DURATION_KEYS = {
    "sample_interval",
    "idle_threshold",
    "session_timeout",
    "heartbeat_interval",
    "collaborator_timeout",
    "command_timeout",
    "shutdown_grace",
    "store_backoff",
}
_PLAIN_KEYS = {"sleep_tolerance", "store_retries", "auto_start"}


def settings_from_mapping(
    data: dict[str, Any], base: Optional[DaemonSettings] = None
) -> DaemonSettings:
    """Build settings from a ``[daemon]`` table; durations are given in seconds."""
    values: dict[str, Any] = {}
    for key, raw in data.items():
        name = key[: -len("_seconds")] if key.endswith("_seconds") else key
        if name in _DURATION_KEYS:
            values[name] = timedelta(seconds=float(raw))
        elif name in _PLAIN_KEYS:
            values[name] = raw
        elif name == "excluded_apps":
            if not isinstance(raw, list):
                raise ValueError("excluded_apps must be a list of app names")
            values[name] = tuple(str(item) for item in raw)
        else:
            logger.warning("Ignoring unknown setting %r", key)
    return replace(base or DaemonSettings(), **values)


def load_settings(path: Optional[Path], base: Optional[DaemonSettings] = None) -> DaemonSettings:
    """Read settings from a TOML file, falling back to defaults when it is absent."""
    if path is None or not Path(path).exists():
        return base or DaemonSettings()
    with open(path, "rb") as handle:
        document = tomllib.load(handle)
    table = document.get("daemon", {})
    if not isinstance(table, dict):
        raise ValueError(f"[daemon] in {path} must be a table")
    settings = settings_from_mapping(table, base)
    logger.info("Loaded settings from %s", path)
    return settings
