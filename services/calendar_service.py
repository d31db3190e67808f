# services/calendar_service.py
"""
Business calendars and blackout lookup for the PM and escalation engines.

``CalendarProvider`` is the seam the engines depend on. It builds a
``BusinessCalendar`` per warehouse from the warehouse's timezone and operating
hours (falling back to the configured defaults) and answers blackout queries
from the store.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import config
from services.errors import ConfigurationError
from services.models import BlackoutWindow

logger = logging.getLogger(__name__)


def parse_clock(value, label="time") -> time:
    if isinstance(value, time):
        return value
    try:
        return datetime.strptime(str(value).strip(), "%H:%M").time()
    except ValueError:
        raise ConfigurationError(f"Invalid {label} '{value}' (expected HH:MM)")


def parse_holidays(values: Iterable) -> List[date]:
    holidays = []
    for value in values or []:
        if isinstance(value, date):
            holidays.append(value)
            continue
        try:
            holidays.append(date.fromisoformat(str(value).strip()))
        except ValueError:
            raise ConfigurationError(f"Invalid holiday '{value}' (expected YYYY-MM-DD)")
    return holidays


def load_timezone(name: Optional[str]):
    if not name or name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ConfigurationError(f"Unknown timezone '{name}'")


class ContinuousCalendar:
    """Wall-clock calendar: every minute counts."""

    def elapsed(self, start: datetime, end: datetime) -> timedelta:
        return max(end - start, timedelta(0))

    def is_working_time(self, moment: datetime) -> bool:
        return True


class BusinessCalendar:
    """
    Working windows defined by weekdays, daily opening hours and holidays,
    evaluated in a local timezone.
    """

    def __init__(self, tz=timezone.utc, business_days=(0, 1, 2, 3, 4),
                 start=time(8, 0), end=time(17, 0), holidays=()):
        self.tz = tz
        self.business_days = frozenset(business_days)
        self.start = parse_clock(start, "business hours start")
        self.end = parse_clock(end, "business hours end")
        self.holidays = frozenset(parse_holidays(holidays))
        if self.end <= self.start:
            raise ConfigurationError("Business hours must end after they start",
                                     start=self.start, end=self.end)

    def is_working_day(self, day: date) -> bool:
        return day.weekday() in self.business_days and day not in self.holidays

    def _window(self, day: date):
        return (datetime.combine(day, self.start, tzinfo=self.tz),
                datetime.combine(day, self.end, tzinfo=self.tz))

    def is_working_time(self, moment: datetime) -> bool:
        local = moment.astimezone(self.tz)
        if not self.is_working_day(local.date()):
            return False
        opens, closes = self._window(local.date())
        return opens <= local < closes

    def elapsed(self, start: datetime, end: datetime) -> timedelta:
        """Working time inside [start, end)."""
        if end <= start:
            return timedelta(0)
        total = timedelta(0)
        day = start.astimezone(self.tz).date()
        last_day = end.astimezone(self.tz).date()
        while day <= last_day:
            if self.is_working_day(day):
                opens, closes = self._window(day)
                overlap = min(closes, end) - max(opens, start)
                if overlap > timedelta(0):
                    total += overlap
            day += timedelta(days=1)
        return total


class CalendarProvider:
    """Resolves calendars and blackout windows per warehouse."""

    def __init__(self, store, business_days=None, hours_start=None, hours_end=None,
                 holidays=None, default_timezone=None):
        self.store = store
        self.business_days = business_days if business_days is not None else config.BUSINESS_DAYS
        self.hours_start = hours_start or config.BUSINESS_HOURS_START
        self.hours_end = hours_end or config.BUSINESS_HOURS_END
        self.holidays = parse_holidays(holidays if holidays is not None else config.HOLIDAYS)
        self.default_timezone = default_timezone or config.DEFAULT_TIMEZONE

    def business_calendar(self, warehouse_id: str) -> BusinessCalendar:
        warehouse = self.store.get_warehouse(warehouse_id)
        tz_name = (warehouse.timezone if warehouse else None) or self.default_timezone
        start = (warehouse.operating_hours_start if warehouse else None) or self.hours_start
        end = (warehouse.operating_hours_end if warehouse else None) or self.hours_end
        return BusinessCalendar(
            tz=load_timezone(tz_name),
            business_days=self.business_days,
            start=start,
            end=end,
            holidays=self.holidays,
        )

    def calendar_for(self, warehouse_id: str, business_hours: bool):
        if business_hours:
            return self.business_calendar(warehouse_id)
        return ContinuousCalendar()

    def blackout_at(self, warehouse_id: str, moment: datetime) -> Optional[BlackoutWindow]:
        """Return the blackout window covering ``moment``, holidays included."""
        for window in self.store.get_blackout_windows(warehouse_id):
            if window.contains(moment):
                return window

        if self.holidays:
            calendar = self.business_calendar(warehouse_id)
            local_day = moment.astimezone(calendar.tz).date()
            if local_day in calendar.holidays:
                opens = datetime.combine(local_day, time(0, 0), tzinfo=calendar.tz)
                return BlackoutWindow(
                    warehouse_id=warehouse_id,
                    starts_at=opens.astimezone(timezone.utc),
                    ends_at=(opens + timedelta(days=1)).astimezone(timezone.utc),
                    reason="holiday",
                )
        return None
