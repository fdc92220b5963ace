"""Tests for daemon settings."""

from datetime import timedelta

import pytest

from worktrack.config import DaemonSettings, load_settings, settings_from_mapping


class TestDaemonSettings:
    def test_defaults(self):
        settings = DaemonSettings()

        assert settings.sample_interval == timedelta(seconds=1)
        assert settings.idle_threshold == timedelta(minutes=5)
        assert settings.session_timeout == settings.idle_threshold
        assert settings.suspend_gap == timedelta(seconds=6)

    @pytest.mark.parametrize(
        "overrides",
        [
            {"sample_interval": timedelta(0)},
            {"idle_threshold": timedelta(milliseconds=500)},
            {"session_timeout": timedelta(seconds=10)},
            {"sleep_tolerance": 1.0},
            {"store_retries": 0},
        ],
    )
    def test_validation(self, overrides):
        with pytest.raises(ValueError):
            DaemonSettings(**overrides)

    def test_raising_idle_threshold_raises_session_timeout(self):
        settings = DaemonSettings().with_overrides(idle_threshold=timedelta(minutes=10))

        assert settings.session_timeout == timedelta(minutes=10)

    def test_none_overrides_are_ignored(self):
        assert DaemonSettings().with_overrides(sample_interval=None) == DaemonSettings()

    def test_suspend_gap_outlasts_a_tick_with_both_lookups_timing_out(self):
        settings = DaemonSettings(
            sample_interval=timedelta(milliseconds=200),
            collaborator_timeout=timedelta(milliseconds=500),
        )

        assert settings.suspend_gap > settings.sample_interval + 2 * settings.collaborator_timeout

    def test_excluded_apps_match_either_way_round(self):
        settings = DaemonSettings(excluded_apps=("KeePassXC", "signal-desktop"))

        assert settings.is_excluded("keepassxc")
        assert settings.is_excluded("signal")
        assert not settings.is_excluded("code")
        assert not settings.is_excluded("")

    def test_blank_excluded_app_rejected(self):
        with pytest.raises(ValueError):
            DaemonSettings(excluded_apps=("  ",))

    def test_as_dict_uses_seconds(self):
        payload = DaemonSettings().as_dict()

        assert payload["idle_threshold_seconds"] == 300.0
        assert payload["auto_start"] is True


class TestLoading:
    def test_mapping(self):
        settings = settings_from_mapping(
            {"sample_interval_seconds": 2, "idle_threshold_seconds": 60, "session_timeout": 120}
        )

        assert settings.sample_interval == timedelta(seconds=2)
        assert settings.session_timeout == timedelta(seconds=120)

    def test_missing_file_uses_defaults(self, tmp_path):
        assert load_settings(tmp_path / "absent.toml") == DaemonSettings()

    def test_toml_file(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text(
            "[daemon]\nidle_threshold_seconds = 600\nsession_timeout_seconds = 900\nauto_start = false\n",
            encoding="utf-8",
        )

        settings = load_settings(path)

        assert settings.idle_threshold == timedelta(seconds=600)
        assert settings.session_timeout == timedelta(seconds=900)
        assert settings.auto_start is False

    def test_excluded_apps_from_toml(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text(
            '[daemon]\nexcluded_apps = ["1password", "Signal"]\n', encoding="utf-8"
        )

        settings = load_settings(path)

        assert settings.excluded_apps == ("1password", "Signal")
        assert settings.as_dict()["excluded_apps"] == ("1password", "Signal")

    def test_excluded_apps_must_be_a_list(self):
        with pytest.raises(ValueError):
            settings_from_mapping({"excluded_apps": "signal"})

    def test_invalid_values_raise(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text("[daemon]\nsession_timeout_seconds = 5\n", encoding="utf-8")

        with pytest.raises(ValueError):
            load_settings(path)
