"""Market hours gate.

Decides, per region, whether the exchange is open and when it next opens.
All functions are pure in ``(region, now)``.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, FrozenSet, Iterable, Mapping, Optional
from zoneinfo import ZoneInfo

from .models import GateDecision, Region

logger = logging.getLogger(__name__)

WEEKDAYS = frozenset({0, 1, 2, 3, 4})  # Monday-Friday

# NYSE / NASDAQ full-day closures
US_HOLIDAYS = frozenset(date.fromisoformat(d) for d in [
    "2025-01-01", "2025-01-09", "2025-01-20", "2025-02-17", "2025-04-18",
    "2025-05-26", "2025-06-19", "2025-07-04", "2025-09-01", "2025-11-27",
    "2025-12-25",
    "2026-01-01", "2026-01-19", "2026-02-16", "2026-04-03", "2026-05-25",
    "2026-06-19", "2026-07-03", "2026-09-07", "2026-11-26", "2026-12-25",
])

# NYSE 1:00 PM early closes
US_EARLY_CLOSES = {
    date.fromisoformat(d): time(13, 0)
    for d in ["2025-07-03", "2025-11-28", "2025-12-24", "2026-11-27", "2026-12-24"]
}

# NSE trading holidays
INDIA_HOLIDAYS = frozenset(date.fromisoformat(d) for d in [
    "2025-02-26", "2025-03-14", "2025-03-31", "2025-04-10", "2025-04-14",
    "2025-04-18", "2025-05-01", "2025-08-15", "2025-08-27", "2025-10-02",
    "2025-10-21", "2025-10-22", "2025-11-05", "2025-12-25",
    "2026-01-26", "2026-03-03", "2026-03-26", "2026-03-31", "2026-04-03",
    "2026-04-14", "2026-05-01", "2026-05-28", "2026-06-26", "2026-09-14",
    "2026-10-02", "2026-10-20", "2026-11-10", "2026-11-24", "2026-12-25",
])


@dataclass(frozen=True)
class ExchangeCalendar:
    """Trading days and session times in the exchange's local timezone."""
    tz_name: str
    open_time: time
    close_time: time
    weekdays: FrozenSet[int] = WEEKDAYS
    holidays: FrozenSet[date] = frozenset()
    early_closes: Mapping[date, time] = field(default_factory=dict)

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.tz_name)

    def is_trading_day(self, day: date) -> bool:
        return day.weekday() in self.weekdays and day not in self.holidays

    def close_on(self, day: date) -> time:
        return self.early_closes.get(day, self.close_time)

    def with_holidays(self, extra: Iterable[date]) -> "ExchangeCalendar":
        extra = frozenset(extra)
        if not extra:
            return self
        return replace(self, holidays=self.holidays | extra)


DEFAULT_CALENDARS: Dict[Region, ExchangeCalendar] = {
    Region.US: ExchangeCalendar(
        tz_name=Region.US.timezone,
        open_time=time(9, 30),
        close_time=time(16, 0),
        holidays=US_HOLIDAYS,
        early_closes=US_EARLY_CLOSES,
    ),
    Region.INDIA: ExchangeCalendar(
        tz_name=Region.INDIA.timezone,
        open_time=time(9, 15),
        close_time=time(15, 30),
        holidays=INDIA_HOLIDAYS,
    ),
}

# Safety bound for next_open; a calendar with no trading day in a year is broken.
_MAX_LOOKAHEAD_DAYS = 366


def _aware(now: datetime) -> datetime:
    """Naive datetimes are treated as UTC."""
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


class MarketHoursGate:
    """Per-region admission check for the batch pipeline."""

    def __init__(self, calendars: Optional[Mapping[Region, ExchangeCalendar]] = None):
        self.calendars = dict(calendars or DEFAULT_CALENDARS)

    @classmethod
    def with_extra_holidays(cls, extra: Mapping[Region, Iterable[date]]) -> "MarketHoursGate":
        calendars = {
            region: cal.with_holidays(extra.get(region, ()))
            for region, cal in DEFAULT_CALENDARS.items()
        }
        return cls(calendars)

    def calendar(self, region: Region) -> ExchangeCalendar:
        try:
            return self.calendars[region]
        except KeyError:
            raise ValueError(f"No trading calendar configured for region {region.value}")

    def is_open(self, region: Region, now: datetime) -> bool:
        cal = self.calendar(region)
        local = _aware(now).astimezone(cal.tz)
        if not cal.is_trading_day(local.date()):
            return False
        return cal.open_time <= local.time() < cal.close_on(local.date())

    def next_open(self, region: Region, now: datetime) -> datetime:
        """Nearest session open strictly after ``now``, in exchange local time."""
        cal = self.calendar(region)
        local = _aware(now).astimezone(cal.tz)
        day = local.date()

        for _ in range(_MAX_LOOKAHEAD_DAYS):
            if cal.is_trading_day(day):
                candidate = datetime.combine(day, cal.open_time, tzinfo=cal.tz)
                if candidate > local:
                    return candidate
            day += timedelta(days=1)

        raise ValueError(f"No trading day within {_MAX_LOOKAHEAD_DAYS} days for {region.value}")

    def status(self, region: Region, now: datetime) -> GateDecision:
        """Gate decision with a human readable message."""
        now = _aware(now)
        is_open = self.is_open(region, now)
        next_open = self.next_open(region, now)

        if is_open:
            message = "Market is currently open for trading"
        else:
            hours_until = int((next_open - now).total_seconds() // 3600)
            message = f"Market closed. Opens in ~{hours_until} hours"

        return GateDecision(region=region, is_open=is_open, next_open=next_open, message=message)
