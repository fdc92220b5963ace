"""Classifier collaborator: assigns a category to a sealed span."""

from __future__ import annotations

import re
from typing import Optional, Protocol

from .models import ActivitySpan, Classification

DEFAULT_CATEGORY = "other"

# Ordered: the first matching rule wins.
_DEFAULT_RULES: tuple[tuple[str, str], ...] = (
    ("coding", r"code|cursor|pycharm|intellij|vim|emacs|xcode|sublime|zed|terminal|iterm|alacritty|kitty|wezterm|powershell|cmd\.exe"),
    ("meeting", r"meet\.google|zoom meeting|webex|huddle"),
    ("communication", r"slack|teams|discord|zoom|mail|outlook|thunderbird|telegram|signal"),
    ("documentation", r"notion|obsidian|confluence|docs\.google|word|pages|readme"),
    ("design", r"figma|sketch|photoshop|illustrator|affinity"),
    ("browsing", r"chrome|firefox|safari|edge|brave|opera|chromium"),
)
_ISSUE_PATTERN = re.compile(r"\b([A-Z][A-Z0-9]+-\d+)\b")


class Classifier(Protocol):
    def classify(self, span: ActivitySpan) -> Optional[Classification]: ...


class KeywordClassifier:
    """Pattern rules over app name and title; issue keys in titles become work items."""

    def __init__(self, rules: tuple[tuple[str, str], ...] = _DEFAULT_RULES) -> None:
        self._rules = [(category, re.compile(pattern, re.IGNORECASE)) for category, pattern in rules]

    def classify(self, span: ActivitySpan) -> Optional[Classification]:
        if span.is_idle:
            return None
        title = span.window_title or ""
        work_item = _ISSUE_PATTERN.search(title)
        work_item_id = work_item.group(1) if work_item else None
        # Title rules first so a meeting in a browser is not just "browsing".
        for haystack, confidence in ((title, 0.8), (span.app_name, 0.6)):
            for category, pattern in self._rules:
                if haystack and pattern.search(haystack):
                    return Classification(category, work_item_id, confidence)
        return Classification(DEFAULT_CATEGORY, work_item_id, 0.1)
