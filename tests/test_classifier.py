"""Tests for the keyword classifier."""

from datetime import datetime, timezone

import pytest

from worktrack.classifier import DEFAULT_CATEGORY, KeywordClassifier
from worktrack.models import ActivitySpan

T0 = datetime(2024, 5, 6, 9, 0, tzinfo=timezone.utc)


def span(app, title=None, is_idle=False):
    return ActivitySpan(session_id="s", app_name=app, start_time=T0, window_title=title, is_idle=is_idle)


@pytest.mark.parametrize(
    "app, title, category",
    [
        ("Code", "engine.py - worktrack", "coding"),
        ("Google Chrome", "Standup - Zoom Meeting", "meeting"),
        ("Slack", "general", "communication"),
        ("firefox", "Figma - design review", "design"),
        ("firefox", "Hacker News", "browsing"),
        ("calculator", "Calculator", DEFAULT_CATEGORY),
    ],
)
def test_categories(app, title, category):
    assert KeywordClassifier().classify(span(app, title)).category == category


def test_issue_key_becomes_work_item():
    result = KeywordClassifier().classify(span("firefox", "ABC-123 Fix login - Jira"))

    assert result.work_item_id == "ABC-123"


def test_idle_spans_are_not_classified():
    assert KeywordClassifier().classify(span("idle", is_idle=True)) is None
