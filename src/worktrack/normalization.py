"""Utilities to normalize window titles and derive activity context keys."""

from __future__ import annotations

import re
from typing import Optional

_BROWSER_SUFFIXES: dict[str, tuple[str, ...]] = {
    "msedge.exe": (" - Work - Microsoft Edge", " - Microsoft Edge"),
    "microsoft edge": (" - Microsoft Edge",),
    "chrome.exe": (" - Google Chrome",),
    "google chrome": (" - Google Chrome",),
    "google-chrome": (" - Google Chrome",),
    "chromium": (" - Chromium",),
    "firefox.exe": (" - Mozilla Firefox",),
    "firefox": (" — Mozilla Firefox", " - Mozilla Firefox"),
    "brave.exe": (" - Brave",),
    "brave browser": (" - Brave",),
    "opera.exe": (" - Opera",),
}

_EDITOR_NAMES = ("cursor", "visual studio code", "code", "vscode", "code.exe", "cursor.exe")
_TITLE_SEPARATORS = re.compile(r"\s+[—–-]\s+")
_EXTRA_TAB_COUNT_PATTERN = re.compile(r"\s+and\s+\d+\s+more\s+pages?", re.IGNORECASE)
# Unsaved markers and notification counters churn without a real context change.
_VOLATILE_PREFIX = re.compile(r"^(?:[●*]\s*|\(\d+\)\s*)+")


def normalize_window_title(app_name: Optional[str], window_title: Optional[str]) -> Optional[str]:
    """Remove browser suffixes and volatile markers so titles compare stably."""
    if not window_title:
        return None
    normalized = _VOLATILE_PREFIX.sub("", window_title.strip())
    if not app_name:
        return normalized or None

    suffixes = _BROWSER_SUFFIXES.get(app_name.lower())
    if suffixes:
        for suffix in suffixes:
            if normalized.endswith(suffix):
                normalized = normalized[: -len(suffix)].rstrip(" -")
                break

    normalized = _strip_tab_count(normalized)
    normalized = re.sub(r"\s{2,}", " ", normalized).strip()
    return normalized or None


def _strip_tab_count(value: str) -> str:
    cleaned = _EXTRA_TAB_COUNT_PATTERN.sub("", value)
    return cleaned.strip(" -|")


def extract_project_from_title(
    app_name: Optional[str], window_title: Optional[str]
) -> Optional[str]:
    """Guess the workspace name from editor titles.

    Handles the common layouts ``file.py - project - Visual Studio Code``,
    ``project - Cursor`` and ``file.py - project``. Titles of other
    applications are not inspected.
    """
    if not window_title or not is_editor(app_name):
        return None
    parts = [part.strip() for part in _TITLE_SEPARATORS.split(window_title) if part.strip()]
    if parts and parts[-1].lower() in _EDITOR_NAMES:
        parts = parts[:-1]
        if len(parts) == 1:
            return parts[0]
    if len(parts) < 2:
        return None
    if _looks_like_filename(parts[0]):
        return parts[1]
    return parts[-1]


def _looks_like_filename(value: str) -> bool:
    stem, dot, ext = value.rpartition(".")
    return bool(dot and stem and 0 < len(ext) <= 4 and ext.isalnum())


def context_key(
    app_name: str,
    window_title: Optional[str],
    project_path: Optional[str],
    work_item_id: Optional[str] = None,
) -> tuple[str, Optional[str], Optional[str], Optional[str]]:
    """Discriminating key: two observations with equal keys extend the same span."""
    return (
        app_name.strip().lower(),
        normalize_window_title(app_name, window_title),
        project_path or None,
        work_item_id,
    )


def is_editor(app_name: Optional[str]) -> bool:
    return bool(app_name) and app_name.strip().lower() in _EDITOR_NAMES
