"""
Cadence arithmetic for the scheduler.

A cadence turns wall-clock time into discrete trigger instants ("slots").
All instants are naive UTC.
"""
from abc import ABC, abstractmethod
from datetime import datetime, time, timedelta
from typing import Optional, Union

WEEKDAYS = {
    "monday": 0,
    "tuesday": 1,
    "wednesday": 2,
    "thursday": 3,
    "friday": 4,
    "saturday": 5,
    "sunday": 6,
}

# Interval slots are aligned to this instant so they survive restarts.
INTERVAL_ANCHOR = datetime(2000, 1, 1)


def parse_time_of_day(value: Union[str, time]) -> time:
    """Parse ``HH:MM`` (or ``HH:MM:SS``) into a time."""
    if isinstance(value, time):
        return value
    parts = value.strip().split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"Invalid time of day: {value!r} (expected HH:MM)")
    hour, minute = int(parts[0]), int(parts[1])
    second = int(parts[2]) if len(parts) == 3 else 0
    return time(hour, minute, second)


def parse_weekday(value: Union[str, int]) -> int:
    """Parse a weekday name, three-letter abbreviation, or 0-6 (Monday = 0)."""
    if isinstance(value, int):
        if not 0 <= value <= 6:
            raise ValueError(f"Invalid weekday: {value}")
        return value
    key = value.strip().lower()
    if key.isdigit():
        return parse_weekday(int(key))
    for name, index in WEEKDAYS.items():
        if key == name or key == name[:3]:
            return index
    raise ValueError(f"Invalid weekday: {value!r}")


class Cadence(ABC):
    """Maps wall-clock time onto trigger slots."""

    @property
    @abstractmethod
    def period(self) -> timedelta:
        """Distance between two consecutive slots."""

    @abstractmethod
    def latest_slot(self, now: datetime) -> datetime:
        """Most recent slot at or before ``now``."""

    def next_slot(self, after: datetime) -> datetime:
        """First slot strictly after ``after``."""
        return self.latest_slot(after) + self.period

    def slots_between(self, after: Optional[datetime], until: datetime) -> int:
        """Number of slots ``s`` with ``after < s <= until``."""
        latest = self.latest_slot(until)
        if after is None:
            return 1
        if latest <= after:
            return 0
        return (latest - self.latest_slot(after)) // self.period

    @abstractmethod
    def describe(self) -> str:
        pass


class DailyCadence(Cadence):
    def __init__(self, at: Union[str, time]):
        self.at = parse_time_of_day(at)

    @property
    def period(self) -> timedelta:
        return timedelta(days=1)

    def latest_slot(self, now: datetime) -> datetime:
        candidate = datetime.combine(now.date(), self.at)
        if candidate > now:
            candidate -= timedelta(days=1)
        return candidate

    def describe(self) -> str:
        return f"daily at {self.at.strftime('%H:%M')} UTC"


class WeeklyCadence(Cadence):
    def __init__(self, weekday: Union[str, int], at: Union[str, time]):
        self.weekday = parse_weekday(weekday)
        self.at = parse_time_of_day(at)

    @property
    def period(self) -> timedelta:
        return timedelta(days=7)

    def latest_slot(self, now: datetime) -> datetime:
        days_back = (now.weekday() - self.weekday) % 7
        candidate = datetime.combine(now.date() - timedelta(days=days_back), self.at)
        if candidate > now:
            candidate -= timedelta(days=7)
        return candidate

    def describe(self) -> str:
        day = [name for name, index in WEEKDAYS.items() if index == self.weekday][0]
        return f"weekly on {day} at {self.at.strftime('%H:%M')} UTC"


class IntervalCadence(Cadence):
    def __init__(self, every: timedelta, anchor: datetime = INTERVAL_ANCHOR):
        if every <= timedelta(0):
            raise ValueError("Interval must be positive")
        self.every = every
        self.anchor = anchor

    @property
    def period(self) -> timedelta:
        return self.every

    def latest_slot(self, now: datetime) -> datetime:
        steps = (now - self.anchor) // self.every
        return self.anchor + steps * self.every

    def describe(self) -> str:
        return f"every {int(self.every.total_seconds() // 60)} minutes"


def daily_digest_key(slot: datetime) -> str:
    return f"daily:{slot.date().isoformat()}"


def weekly_digest_key(slot: datetime) -> str:
    year, week, _ = slot.isocalendar()
    return f"weekly:{year}-W{week:02d}"
