from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from services.calendar_service import (
    BusinessCalendar, CalendarProvider, ContinuousCalendar, load_timezone, parse_clock,
)
from services.errors import ConfigurationError
from services.models import BlackoutWindow, Warehouse


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


class TestBusinessCalendar:
    def test_elapsed_inside_one_day(self):
        cal = BusinessCalendar()
        assert cal.elapsed(utc(2025, 3, 12, 9), utc(2025, 3, 12, 12, 30)) == timedelta(hours=3, minutes=30)

    def test_elapsed_clips_to_opening_hours(self):
        cal = BusinessCalendar()
        # 06:00 -> 20:00 only counts 08:00 -> 17:00
        assert cal.elapsed(utc(2025, 3, 12, 6), utc(2025, 3, 12, 20)) == timedelta(hours=9)

    def test_elapsed_overnight(self):
        cal = BusinessCalendar()
        # Tue 16:00 -> Wed 09:00
        assert cal.elapsed(utc(2025, 3, 11, 16), utc(2025, 3, 12, 9)) == timedelta(hours=2)

    def test_weekend_does_not_count(self):
        cal = BusinessCalendar()
        # Fri 16:00 -> Mon 09:00
        assert cal.elapsed(utc(2025, 3, 14, 16), utc(2025, 3, 17, 9)) == timedelta(hours=2)

    def test_holiday_does_not_count(self):
        cal = BusinessCalendar(holidays=["2025-03-12"])
        # Tue 16:00 -> Thu 09:00 with Wednesday off
        assert cal.elapsed(utc(2025, 3, 11, 16), utc(2025, 3, 13, 9)) == timedelta(hours=2)
        assert not cal.is_working_day(date(2025, 3, 12))

    def test_elapsed_in_local_timezone(self):
        cal = BusinessCalendar(tz=ZoneInfo("America/New_York"))
        # 12:00 UTC is 08:00 EDT on 2025-03-12, 21:00 UTC is 17:00 EDT
        assert cal.elapsed(utc(2025, 3, 12, 11), utc(2025, 3, 12, 22)) == timedelta(hours=9)
        assert cal.is_working_time(utc(2025, 3, 12, 12, 30))
        assert not cal.is_working_time(utc(2025, 3, 12, 11, 30))

    def test_reversed_interval_is_zero(self):
        assert BusinessCalendar().elapsed(utc(2025, 3, 12, 12), utc(2025, 3, 12, 9)) == timedelta(0)

    def test_closing_must_follow_opening(self):
        with pytest.raises(ConfigurationError):
            BusinessCalendar(start="17:00", end="08:00")

    def test_continuous_calendar_counts_everything(self):
        cal = ContinuousCalendar()
        assert cal.elapsed(utc(2025, 3, 14, 16), utc(2025, 3, 17, 9)) == timedelta(hours=65)
        assert cal.is_working_time(utc(2025, 3, 15, 3))


class TestParsing:
    def test_parse_clock(self):
        assert parse_clock("07:30") == time(7, 30)
        with pytest.raises(ConfigurationError):
            parse_clock("7.30am")

    def test_load_timezone(self):
        assert load_timezone("UTC") is timezone.utc
        assert load_timezone("Europe/Berlin") == ZoneInfo("Europe/Berlin")
        with pytest.raises(ConfigurationError):
            load_timezone("Mars/Olympus_Mons")


class TestCalendarProvider:
    def test_uses_warehouse_hours_and_timezone(self, store):
        store.add_warehouse(Warehouse(id="W2", name="East", timezone="America/New_York",
                                      operating_hours_start="06:00", operating_hours_end="14:00"))
        provider = CalendarProvider(store, holidays=[])
        cal = provider.business_calendar("W2")
        assert cal.tz == ZoneInfo("America/New_York")
        assert cal.start == time(6, 0)
        assert cal.end == time(14, 0)

    def test_falls_back_to_defaults(self, store):
        store.add_warehouse(Warehouse(id="W3", name="Overflow"))
        provider = CalendarProvider(store, hours_start="07:00", hours_end="15:00", holidays=[])
        cal = provider.business_calendar("W3")
        assert (cal.start, cal.end) == (time(7, 0), time(15, 0))

    def test_calendar_for_picks_clock(self, calendar):
        assert isinstance(calendar.calendar_for("W1", False), ContinuousCalendar)
        assert isinstance(calendar.calendar_for("W1", True), BusinessCalendar)

    def test_blackout_start_inclusive_end_exclusive(self, store, calendar):
        window = store.add_blackout(BlackoutWindow(warehouse_id="W1", starts_at=utc(2025, 3, 12, 8),
                                                   ends_at=utc(2025, 3, 12, 12), reason="stocktake"))
        assert calendar.blackout_at("W1", utc(2025, 3, 12, 8)) == window
        assert calendar.blackout_at("W1", utc(2025, 3, 12, 11, 59)) == window
        assert calendar.blackout_at("W1", utc(2025, 3, 12, 12)) is None
        assert calendar.blackout_at("W2", utc(2025, 3, 12, 9)) is None

    def test_holiday_is_a_blackout(self, store):
        provider = CalendarProvider(store, holidays=["2025-12-25"])
        window = provider.blackout_at("W1", utc(2025, 12, 25, 14))
        assert window is not None
        assert window.reason == "holiday"
        assert window.starts_at == utc(2025, 12, 25)
        assert provider.blackout_at("W1", utc(2025, 12, 26, 0)) is None
