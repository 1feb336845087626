"""
Injectable "today" for date-boundary rules.

Future-date rejection and same-day vs backdated queue priority both compare
against the UTC calendar date. Services take a Clock instead of building
UTC midnight themselves, so tests can pin the boundary.
"""
from __future__ import annotations

from datetime import date, datetime, timezone as dt_timezone

from django.utils import timezone


class Clock:
    def now(self) -> datetime:
        raise NotImplementedError

    def today(self) -> date:
        return self.now().astimezone(dt_timezone.utc).date()


class SystemClock(Clock):
    def now(self) -> datetime:
        return timezone.now()


class FixedClock(Clock):
    """Test clock pinned to a single instant (or to midnight UTC of a date)."""

    def __init__(self, moment: datetime | date):
        if not isinstance(moment, datetime):
            moment = datetime(moment.year, moment.month, moment.day, tzinfo=dt_timezone.utc)
        elif timezone.is_naive(moment):
            moment = timezone.make_aware(moment, dt_timezone.utc)
        self._moment = moment

    def now(self) -> datetime:
        return self._moment


default_clock = SystemClock()
