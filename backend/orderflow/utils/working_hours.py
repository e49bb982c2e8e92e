from __future__ import annotations
"""Business-hours calendar arithmetic.

Working time is the window [start_hour, end_hour) on every weekday not listed in
``weekend_days`` (Python weekday numbers, Monday=0), evaluated in ``tz``.

Usage:
    from orderflow.utils.working_hours import WorkingCalendar
    cal = WorkingCalendar(start_hour=9, end_hour=17)
    deadline = cal.add_working_hours(received_at, 56)
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, time
from typing import Tuple
from zoneinfo import ZoneInfo


def as_utc(dt: datetime) -> datetime:
    """Return tz-aware UTC datetime (naive values are taken to be UTC already)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass(frozen=True)
class WorkingCalendar:
    start_hour: int = 9
    end_hour: int = 17
    weekend_days: Tuple[int, ...] = (5, 6)
    tz: str = 'UTC'

    @classmethod
    def from_config(cls, config) -> 'WorkingCalendar':
        return cls(
            start_hour=config.get('BUSINESS_START_HOUR', 9),
            end_hour=config.get('BUSINESS_END_HOUR', 17),
            weekend_days=tuple(config.get('BUSINESS_WEEKEND_DAYS', (5, 6))),
            tz=config.get('BUSINESS_TZ', 'UTC'),
        )

    def _is_working_day(self, dt: datetime) -> bool:
        return dt.weekday() not in self.weekend_days

    def _day_start(self, dt: datetime) -> datetime:
        return dt.replace(hour=self.start_hour, minute=0, second=0, microsecond=0)

    def _day_end(self, dt: datetime) -> datetime:
        if self.end_hour == 24:
            return dt.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(days=1)
        return dt.replace(hour=self.end_hour, minute=0, second=0, microsecond=0)

    def _next_day_start(self, dt: datetime) -> datetime:
        cursor = self._day_start(dt + timedelta(days=1))
        while not self._is_working_day(cursor):
            cursor = self._day_start(cursor + timedelta(days=1))
        return cursor

    def add_working_hours(self, start: datetime, hours: float) -> datetime:
        """Return the UTC instant ``hours`` of working time after ``start``."""
        if hours < 0:
            raise ValueError('hours must be non-negative')
        zone = ZoneInfo(self.tz)
        cursor = as_utc(start).astimezone(zone)
        after_hours = self.end_hour != 24 and cursor.time() >= time(self.end_hour)
        if not self._is_working_day(cursor) or after_hours:
            cursor = self._next_day_start(cursor)
        elif cursor < self._day_start(cursor):
            cursor = self._day_start(cursor)

        remaining = timedelta(hours=hours)
        while remaining > timedelta(0):
            if not self._is_working_day(cursor):
                cursor = self._next_day_start(cursor)
                continue
            available = self._day_end(cursor) - cursor
            if available >= remaining:
                cursor = cursor + remaining
                remaining = timedelta(0)
            else:
                remaining -= available
                cursor = self._next_day_start(cursor)
        return cursor.astimezone(timezone.utc)

    def working_hours_between(self, start: datetime, end: datetime) -> float:
        """Working hours elapsed in [start, end); 0 when end <= start."""
        zone = ZoneInfo(self.tz)
        lo = as_utc(start).astimezone(zone)
        hi = as_utc(end).astimezone(zone)
        if hi <= lo:
            return 0.0
        total = timedelta(0)
        day = lo.replace(hour=0, minute=0, second=0, microsecond=0)
        while day <= hi:
            if self._is_working_day(day):
                slice_start = max(lo, self._day_start(day))
                slice_end = min(hi, self._day_end(day))
                if slice_end > slice_start:
                    total += slice_end - slice_start
            day = day + timedelta(days=1)
        return total.total_seconds() / 3600


__all__ = ['WorkingCalendar', 'as_utc']
