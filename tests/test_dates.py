from datetime import date, datetime, time, timezone
from types import SimpleNamespace
from zoneinfo import ZoneInfo

import pytest

from agentsalud.errors import ValidationFailed
from agentsalud.services import dates

BOGOTA = SimpleNamespace(timezone="America/Bogota")


def test_iter_dates_keeps_calendar_days():
    days = list(dates.iter_dates(date(2025, 3, 8), date(2025, 3, 10)))
    assert [day.isoformat() for day in days] == ["2025-03-08", "2025-03-09", "2025-03-10"]


def test_iter_dates_across_month_end():
    days = list(dates.iter_dates(date(2025, 2, 27), date(2025, 3, 2)))
    assert [day.isoformat() for day in days] == [
        "2025-02-27",
        "2025-02-28",
        "2025-03-01",
        "2025-03-02",
    ]


def test_iter_dates_empty_when_reversed():
    assert list(dates.iter_dates(date(2025, 3, 10), date(2025, 3, 9))) == []


def test_parse_iso_date_does_not_shift():
    parsed = dates.parse_iso_date("2025-03-09")
    assert parsed == date(2025, 3, 9)
    assert dates.day_of_week(parsed) == 0


@pytest.mark.parametrize("value", ["2025-3-9", "09/03/2025", "2025-02-30", "", "tomorrow"])
def test_parse_iso_date_rejects_invalid(value):
    with pytest.raises(ValidationFailed):
        dates.parse_iso_date(value)


def test_day_of_week_uses_sunday_zero():
    assert dates.day_of_week(date(2025, 3, 9)) == 0  # Sunday
    assert dates.day_of_week(date(2025, 3, 10)) == 1  # Monday
    assert dates.day_of_week(date(2025, 3, 8)) == 6  # Saturday


def test_is_weekend():
    assert dates.is_weekend(date(2025, 3, 8))
    assert dates.is_weekend(date(2025, 3, 9))
    assert not dates.is_weekend(date(2025, 3, 10))


def test_organization_today_follows_local_clock():
    # 03:00 UTC on the 6th is still the evening of the 5th in Bogota.
    late_evening = datetime(2025, 3, 6, 3, 0, tzinfo=timezone.utc)
    assert dates.organization_today(BOGOTA, late_evening) == date(2025, 3, 5)


def test_local_now_uses_frozen_clock():
    now = dates.local_now(BOGOTA)
    assert now.date() == date(2025, 3, 5)
    assert (now.hour, now.minute) == (10, 0)


def test_unknown_timezone_falls_back_to_utc():
    broken = SimpleNamespace(timezone="Mars/Olympus")
    assert dates.organization_timezone(broken) == ZoneInfo("UTC")


def test_parse_clock_variants():
    assert dates.parse_clock("9:05") == time(9, 5)
    assert dates.parse_clock("14:30:15") == time(14, 30, 15)
    with pytest.raises(ValidationFailed):
        dates.parse_clock("25:00")
    with pytest.raises(ValidationFailed):
        dates.parse_clock("nine")


def test_combine_local_converts_to_utc():
    instant = dates.combine_local(date(2025, 3, 5), time(10, 0), ZoneInfo("America/Bogota"))
    assert instant == datetime(2025, 3, 5, 15, 0, tzinfo=timezone.utc)


def test_add_minutes_and_minutes_of():
    assert dates.add_minutes(time(9, 45), 30) == time(10, 15)
    assert dates.minutes_of(time(1, 30)) == 90
