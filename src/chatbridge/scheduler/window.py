"""
scheduler/window.py — Relay window arithmetic

Pure helpers over local wall-clock times. The relay is *closed* (blackout)
from ``stop`` until ``start`` every day; the blackout may span midnight.

    start=06:00 stop=00:00   → closed 00:00–06:00
    start=08:00 stop=22:00   → closed 22:00–08:00 (spans midnight)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time, timedelta

from croniter import croniter


@dataclass(frozen=True)
class ScheduleWindow:
    start_hour: int = 6
    start_minute: int = 0
    stop_hour: int = 0
    stop_minute: int = 0

    @classmethod
    def from_config(cls, cfg) -> "ScheduleWindow":
        """Build from a ScheduleConfig (``start``/``stop`` as (hour, minute))."""
        return cls(cfg.start[0], cfg.start[1], cfg.stop[0], cfg.stop[1])

    @property
    def start(self) -> time:
        return time(self.start_hour, self.start_minute)

    @property
    def stop(self) -> time:
        return time(self.stop_hour, self.stop_minute)

    def in_blackout(self, now: datetime) -> bool:
        """True when ``now`` falls between stop (inclusive) and start (exclusive)."""
        t = now.time().replace(second=0, microsecond=0)
        if self.stop <= self.start:
            return self.stop <= t < self.start
        return t >= self.stop or t < self.start

    def time_until_next_stop(self, now: datetime) -> timedelta:
        return next_occurrence(now, self.stop_hour, self.stop_minute) - now

    def time_until_next_start(self, now: datetime) -> timedelta:
        return next_occurrence(now, self.start_hour, self.start_minute) - now


def next_occurrence(now: datetime, hour: int, minute: int) -> datetime:
    """The next ``hour:minute`` strictly after ``now`` (a daily cron match)."""
    return croniter(f"{minute} {hour} * * *", now).get_next(datetime)


def next_local_midnight(now: datetime) -> datetime:
    return next_occurrence(now, 0, 0)
