from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

import pytest

from agentsalud.errors import BookingRuleViolation
from agentsalud.models import UserRole
from agentsalud.services import booking_rules
from agentsalud.services.booking_settings import BookingSettings

TZ = ZoneInfo("America/Bogota")
NOW_LOCAL = datetime(2025, 3, 5, 10, 0, tzinfo=TZ)
TODAY = NOW_LOCAL.date()
TOMORROW = TODAY + timedelta(days=1)

RULES = BookingSettings(weekend_booking_enabled=True)


def check(target_date, start, role, rules=RULES):
    return booking_rules.validate_slot(
        target_date, start, role=role, booking_settings=rules, now_local=NOW_LOCAL
    )


def test_patient_same_day_requires_advance_booking():
    result = check(TODAY, time(16, 0), "patient")
    assert not result.is_valid
    assert result.code == "ADVANCE_BOOKING_REQUIRED"
    assert result.applied_rule == booking_rules.RULE_STANDARD
    assert result.details["isToday"] is True


@pytest.mark.parametrize("role", ["admin", "staff", "doctor", "superadmin"])
def test_privileged_roles_may_book_later_today(role):
    result = check(TODAY, time(16, 0), role)
    assert result.is_valid
    assert result.applied_rule == booking_rules.RULE_PRIVILEGED


def test_privileged_roles_cannot_book_past_time_today():
    result = check(TODAY, time(9, 30), "admin")
    assert result.code == "PAST_TIME"
    assert check(TODAY, time(10, 0), "admin").code == "PAST_TIME"


def test_same_day_disabled_applies_to_privileged_roles():
    rules = BookingSettings(weekend_booking_enabled=True, allow_same_day_booking=False)
    assert check(TODAY, time(16, 0), "staff", rules).code == "SAME_DAY_DISABLED"


def test_past_dates_are_rejected_for_everyone():
    yesterday = TODAY - timedelta(days=1)
    assert check(yesterday, time(9, 0), "patient").code == "PAST_DATE"
    assert check(yesterday, time(9, 0), "superadmin").code == "PAST_DATE"


def test_weekend_disabled_by_default():
    saturday = date(2025, 3, 8)
    assert check(saturday, time(9, 0), "patient", BookingSettings()).code == "WEEKEND_DISABLED"
    assert check(saturday, time(9, 0), "patient").is_valid


def test_max_advance_booking_days():
    far = TODAY + timedelta(days=RULES.max_advance_booking_days + 1)
    result = check(far, time(9, 0), "admin")
    assert result.code == "MAX_ADVANCE_EXCEEDED"
    assert check(TODAY + timedelta(days=RULES.max_advance_booking_days), time(9, 0), "admin").is_valid


def test_patient_tomorrow_respects_lead_time():
    assert check(TOMORROW, time(8, 0), "patient").is_valid

    strict = BookingSettings(weekend_booking_enabled=True, advance_booking_hours=48)
    result = check(TOMORROW, time(8, 0), "patient", strict)
    assert result.code == "ADVANCE_BOOKING_REQUIRED"
    assert result.details["requiredAdvanceHours"] == 48


def test_lead_time_counts_real_hours_across_dst_change():
    new_york = ZoneInfo("America/New_York")
    # Clocks jump from 02:00 to 03:00 on 2025-03-09, so this day has 23 hours.
    now_local = datetime(2025, 3, 8, 10, 0, tzinfo=new_york)
    rules = BookingSettings(weekend_booking_enabled=True, advance_booking_hours=24)

    result = booking_rules.validate_slot(
        date(2025, 3, 9), time(10, 0), role="patient", booking_settings=rules, now_local=now_local
    )
    assert result.code == "ADVANCE_BOOKING_REQUIRED"

    later = booking_rules.validate_slot(
        date(2025, 3, 9), time(11, 0), role="patient", booking_settings=rules, now_local=now_local
    )
    assert later.is_valid


def test_booking_window_is_enforced():
    assert check(TOMORROW, time(18, 0), "patient").code == "OUTSIDE_BOOKING_WINDOW"
    assert check(TOMORROW, time(7, 30), "admin").code == "OUTSIDE_BOOKING_WINDOW"
    assert check(TOMORROW, time(17, 30), "patient").is_valid


def test_validate_booking_raises_envelope_error():
    with pytest.raises(BookingRuleViolation) as excinfo:
        booking_rules.validate_booking(
            TODAY, time(16, 0), role="patient", booking_settings=RULES, now_local=NOW_LOCAL
        )
    error = excinfo.value
    assert error.status_code == 400
    assert error.code == "ADVANCE_BOOKING_REQUIRED"
    assert error.details["userRole"] == "patient"
    assert error.details["appliedRule"] == "standard"


def test_rescheduling_message_mentions_rescheduling():
    result = booking_rules.validate_date(
        TODAY, role="patient", booking_settings=RULES, today=TODAY, rescheduling=True
    )
    assert "reagendar" in result.reason


def test_change_deadline_for_patients_only():
    start = NOW_LOCAL + timedelta(hours=1)
    with pytest.raises(BookingRuleViolation) as excinfo:
        booking_rules.check_change_deadline(
            start, role="patient", booking_settings=RULES, now=NOW_LOCAL, action="cancel"
        )
    assert excinfo.value.code == "DEADLINE_PASSED"

    booking_rules.check_change_deadline(
        start, role="staff", booking_settings=RULES, now=NOW_LOCAL, action="cancel"
    )
    booking_rules.check_change_deadline(
        NOW_LOCAL + timedelta(hours=3),
        role="patient",
        booking_settings=RULES,
        now=NOW_LOCAL,
        action="reschedule",
    )


def test_role_helpers_accept_enums_and_strings():
    assert booking_rules.is_privileged(UserRole.ADMIN)
    assert not booking_rules.is_privileged(UserRole.PATIENT)
    assert booking_rules.role_name(None) == "patient"
