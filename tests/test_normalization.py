"""Tests for window title normalization and context keys."""

import pytest

from worktrack.normalization import context_key, extract_project_from_title, normalize_window_title


class TestNormalizeWindowTitle:
    @pytest.mark.parametrize(
        "app, title, expected",
        [
            ("chrome.exe", "Pull requests - Google Chrome", "Pull requests"),
            ("firefox", "MDN Web Docs — Mozilla Firefox", "MDN Web Docs"),
            ("msedge.exe", "Inbox and 3 more pages - Work - Microsoft Edge", "Inbox"),
            ("code", "● engine.py - worktrack", "engine.py - worktrack"),
            ("slack", "(3) general - Slack", "general - Slack"),
            ("code", "   ", None),
            (None, "Untitled", "Untitled"),
        ],
    )
    def test_titles(self, app, title, expected):
        assert normalize_window_title(app, title) == expected

    def test_missing_title(self):
        assert normalize_window_title("code", None) is None


class TestExtractProject:
    @pytest.mark.parametrize(
        "app, title, expected",
        [
            ("Code", "engine.py - worktrack - Visual Studio Code", "worktrack"),
            ("cursor", "worktrack - Cursor", "worktrack"),
            ("code.exe", "engine.py - worktrack", "worktrack"),
            ("Code", "Welcome", None),
            ("firefox", "engine.py - worktrack", None),
        ],
    )
    def test_projects(self, app, title, expected):
        assert extract_project_from_title(app, title) == expected


class TestContextKey:
    def test_case_and_suffix_insensitive(self):
        assert context_key("Chrome.exe", "Docs - Google Chrome", None) == context_key(
            "chrome.exe", "Docs", None
        )

    def test_work_item_distinguishes(self):
        assert context_key("code", "a", "p") != context_key("code", "a", "p", "ABC-1")
