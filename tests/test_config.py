"""Tests for config.yaml loading and the shared formatting helpers."""

from __future__ import annotations

from zoneinfo import ZoneInfo

import pytest

from pathfinder.config import PathfinderConfig, load_config
from pathfinder.constants import format_duration, ordinal


class TestLoadConfig:
    def test_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("community_name: Pathfinders\n", encoding="utf-8")

        cfg = load_config(path)
        assert cfg.community_name == "Pathfinders"
        assert cfg.daily_limit_seconds == 1260
        assert (cfg.reset_hour, cfg.reset_minute) == (3, 20)
        assert cfg.max_participants_per_batch == 21
        assert cfg.batch_overflow_threshold == 6
        assert cfg.tz == ZoneInfo("UTC")

    def test_overrides(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "community_name: Pathfinders\n"
            "daily_limit_minutes: 30\n"
            "reset_hour: 4\n"
            "reset_minute: 0\n"
            "timezone: Europe/Berlin\n"
            "max_participants_per_batch: 10\n"
            "batch_overflow_threshold: 2\n"
            "api_port: 9000\n",
            encoding="utf-8",
        )
        cfg = load_config(path)
        assert cfg.daily_limit_seconds == 1800
        assert cfg.reset_hour == 4
        assert cfg.tz == ZoneInfo("Europe/Berlin")
        assert cfg.max_participants_per_batch == 10
        assert cfg.batch_overflow_threshold == 2
        assert cfg.api_port == 9000

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")

    def test_missing_community_name(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("daily_limit_minutes: 10\n", encoding="utf-8")
        with pytest.raises(KeyError):
            load_config(path)

    def test_empty_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("", encoding="utf-8")
        with pytest.raises(KeyError):
            load_config(path)


class TestConfigValidation:
    @pytest.mark.parametrize(
        "overrides",
        [
            {"daily_limit_minutes": 0},
            {"reset_hour": 24},
            {"reset_minute": 60},
            {"max_participants_per_batch": 0},
            {"batch_overflow_threshold": -1},
            {"timezone": "Nowhere/Special"},
        ],
    )
    def test_rejects_out_of_range(self, overrides):
        with pytest.raises(ValueError):
            PathfinderConfig(community_name="x", **overrides)


class TestFormatDuration:
    @pytest.mark.parametrize(
        "seconds, label",
        [
            (0, "0s"),
            (59, "59s"),
            (75, "1m 15s"),
            (3661, "1h 1m 1s"),
            (-90061, "1d 1h 1m"),
            (8 * 86400 + 3600, "1w 1d 1h"),
        ],
    )
    def test_labels(self, seconds, label):
        assert format_duration(seconds) == label


class TestOrdinal:
    @pytest.mark.parametrize(
        "n, label",
        [(1, "1st"), (2, "2nd"), (3, "3rd"), (4, "4th"), (11, "11th"), (12, "12th"),
         (13, "13th"), (21, "21st"), (22, "22nd"), (31, "31st")],
    )
    def test_suffixes(self, n, label):
        assert ordinal(n) == label
