"""Platform probes that report the foreground window and input idleness."""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
import sys
from dataclasses import dataclass
from typing import Optional, Protocol

import psutil

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class WindowSample:
    app_name: str
    window_title: Optional[str] = None
    project_path: Optional[str] = None


class WindowProbe(Protocol):
    """Observation collaborator; both calls may raise or block."""

    def sample(self) -> Optional[WindowSample]: ...

    def idle_seconds(self) -> Optional[float]:
        """Seconds since the last keyboard/mouse input, or ``None`` if unknown."""
        ...


class WindowsProbe:
    """Retrieves the foreground window and idle time using Win32 APIs."""

    def __init__(self) -> None:
        import ctypes
        from ctypes import wintypes

        class LASTINPUTINFO(ctypes.Structure):
            _fields_ = [("cbSize", wintypes.UINT), ("dwTime", wintypes.DWORD)]

        self._ctypes = ctypes
        self._wintypes = wintypes
        self._last_input_cls = LASTINPUTINFO
        self._user32 = ctypes.windll.user32  # type: ignore[attr-defined]
        self._kernel32 = ctypes.windll.kernel32  # type: ignore[attr-defined]

    def idle_seconds(self) -> Optional[float]:
        ctypes = self._ctypes
        last_input = self._last_input_cls()
        last_input.cbSize = ctypes.sizeof(last_input)
        if not self._user32.GetLastInputInfo(ctypes.byref(last_input)):
            raise ctypes.WinError()
        # dwTime wraps after ~49 days; compare in the same 32-bit space.
        elapsed = (self._kernel32.GetTickCount() - last_input.dwTime) & 0xFFFFFFFF
        return elapsed / 1000.0

    def sample(self) -> Optional[WindowSample]:
        ctypes = self._ctypes
        hwnd = self._user32.GetForegroundWindow()
        if not hwnd:
            return None

        length = self._user32.GetWindowTextLengthW(hwnd)
        buffer = ctypes.create_unicode_buffer(length + 1)
        self._user32.GetWindowTextW(hwnd, buffer, length + 1)
        window_title = buffer.value.strip() or None

        pid = self._wintypes.DWORD()
        self._user32.GetWindowThreadProcessId(hwnd, ctypes.byref(pid))
        try:
            process_name = psutil.Process(pid.value).name() if pid.value else None
        except (psutil.Error, ProcessLookupError):
            process_name = None
        if not process_name:
            return None
        return WindowSample(app_name=process_name, window_title=window_title)


_OSASCRIPT_FRONT_APP = """
tell application "System Events"
    set frontApp to first application process whose frontmost is true
    set appName to name of frontApp
    set winTitle to ""
    try
        set winTitle to name of front window of frontApp
    end try
end tell
return appName & linefeed & winTitle
"""
_HID_IDLE_PATTERN = re.compile(r'"HIDIdleTime"\s*=\s*(\d+)')


class MacOSProbe:
    """Uses ``osascript`` for the frontmost app and ``ioreg`` for HID idle time."""

    def __init__(self, timeout: float = 2.0) -> None:
        self._timeout = timeout

    def sample(self) -> Optional[WindowSample]:
        output = _run(["osascript", "-e", _OSASCRIPT_FRONT_APP], self._timeout)
        app_name, _, title = output.partition("\n")
        app_name = app_name.strip()
        if not app_name:
            return None
        return WindowSample(app_name=app_name, window_title=title.strip() or None)

    def idle_seconds(self) -> Optional[float]:
        output = _run(["ioreg", "-c", "IOHIDSystem"], self._timeout)
        match = _HID_IDLE_PATTERN.search(output)
        if not match:
            return None
        return int(match.group(1)) / 1_000_000_000


class X11Probe:
    """Uses ``xdotool`` and ``xprintidle`` when they are installed."""

    def __init__(self, timeout: float = 2.0) -> None:
        self._timeout = timeout
        self._has_xdotool = shutil.which("xdotool") is not None
        self._has_xprintidle = shutil.which("xprintidle") is not None
        if not self._has_xdotool:
            logger.warning("xdotool not found; foreground windows will be reported as unknown.")

    def sample(self) -> Optional[WindowSample]:
        if not self._has_xdotool:
            return None
        window_id = _run(["xdotool", "getactivewindow"], self._timeout).strip()
        if not window_id:
            return None
        title = _run(["xdotool", "getwindowname", window_id], self._timeout).strip()
        pid_text = _run(["xdotool", "getwindowpid", window_id], self._timeout).strip()
        try:
            app_name = psutil.Process(int(pid_text)).name()
        except (ValueError, psutil.Error):
            return None
        return WindowSample(app_name=app_name, window_title=title or None)

    def idle_seconds(self) -> Optional[float]:
        if not self._has_xprintidle:
            return None
        return int(_run(["xprintidle"], self._timeout).strip()) / 1000.0


def _run(command: list[str], timeout: float) -> str:
    completed = subprocess.run(
        command,
        capture_output=True,
        text=True,
        timeout=timeout,
        check=True,
    )
    return completed.stdout


def create_probe(timeout: float = 2.0) -> WindowProbe:
    """Return the probe for the running platform."""
    if sys.platform == "win32":
        return WindowsProbe()
    if sys.platform == "darwin":
        return MacOSProbe(timeout=timeout)
    return X11Probe(timeout=timeout)
