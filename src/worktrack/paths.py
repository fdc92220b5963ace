"""Helpers for locating application directories."""

from __future__ import annotations

from pathlib import Path

from platformdirs import PlatformDirs


APP_NAME = "worktrack"
APP_AUTHOR = "worktrack"


def _dirs() -> PlatformDirs:
    return PlatformDirs(appname=APP_NAME, appauthor=APP_AUTHOR)


def get_data_dir() -> Path:
    """Return the base directory for persistent data."""
    path = Path(_dirs().user_data_path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_config_path() -> Path:
    return Path(_dirs().user_config_path) / "config.toml"


def get_db_path() -> Path:
    return get_data_dir() / "worktrack.sqlite3"


def get_log_path() -> Path:
    return get_data_dir() / "daemon.log"


def get_pid_path() -> Path:
    return get_data_dir() / "worktrack.pid"


def get_socket_path() -> Path:
    # AF_UNIX paths are limited to ~100 bytes, so keep the socket next to the data.
    return get_data_dir() / "worktrack.sock"
