"""
pathfinder.config — YAML Configuration Loader
===============================================

Reads ``config.yaml`` for deployment settings: community identity, the
daily browsing budget, its local reset time, and batch sizing.  Every
tuning key is optional and falls back to :mod:`pathfinder.constants`.

Usage::

    from pathfinder.config import load_config

    cfg = load_config()          # reads ./config.yaml by default
    print(cfg.daily_limit_seconds)   # 1260
    print(cfg.reset_hour, cfg.reset_minute)   # 3 20
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from pathfinder.constants import (
    BATCH_OVERFLOW_THRESHOLD,
    DAILY_TIME_LIMIT_MINUTES,
    MAX_PARTICIPANTS_PER_BATCH,
    TIMER_RESET_HOUR,
    TIMER_RESET_MINUTE,
)


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class PathfinderConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    community_name: str

    # Daily usage budget
    daily_limit_minutes: int = DAILY_TIME_LIMIT_MINUTES
    reset_hour: int = TIMER_RESET_HOUR
    reset_minute: int = TIMER_RESET_MINUTE
    timezone: str = "UTC"  # Viewer-local zone for session-day keys

    # Event batching
    max_participants_per_batch: int = MAX_PARTICIPANTS_PER_BATCH
    batch_overflow_threshold: int = BATCH_OVERFLOW_THRESHOLD

    # API
    api_port: int = 8000

    def __post_init__(self) -> None:
        if self.daily_limit_minutes <= 0:
            raise ValueError("daily_limit_minutes must be positive")
        if not 0 <= self.reset_hour <= 23:
            raise ValueError(f"reset_hour out of range: {self.reset_hour}")
        if not 0 <= self.reset_minute <= 59:
            raise ValueError(f"reset_minute out of range: {self.reset_minute}")
        if self.max_participants_per_batch <= 0:
            raise ValueError("max_participants_per_batch must be positive")
        if self.batch_overflow_threshold < 0:
            raise ValueError("batch_overflow_threshold must not be negative")
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {self.timezone!r}") from exc

    @property
    def daily_limit_seconds(self) -> int:
        return self.daily_limit_minutes * 60

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> PathfinderConfig:
    """Read *path* and return a :class:`PathfinderConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``config.yaml`` in the current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If ``community_name`` is missing from the YAML file.
    ValueError
        If a tuning value is out of range.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    return PathfinderConfig(
        community_name=raw["community_name"],
        daily_limit_minutes=int(raw.get("daily_limit_minutes", DAILY_TIME_LIMIT_MINUTES)),
        reset_hour=int(raw.get("reset_hour", TIMER_RESET_HOUR)),
        reset_minute=int(raw.get("reset_minute", TIMER_RESET_MINUTE)),
        timezone=str(raw.get("timezone", "UTC")),
        max_participants_per_batch=int(
            raw.get("max_participants_per_batch", MAX_PARTICIPANTS_PER_BATCH)
        ),
        batch_overflow_threshold=int(
            raw.get("batch_overflow_threshold", BATCH_OVERFLOW_THRESHOLD)
        ),
        api_port=int(raw.get("api_port", 8000)),
    )
