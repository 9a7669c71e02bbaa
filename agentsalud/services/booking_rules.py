"""Role-aware booking rules.

Patients follow the standard rule: no same-day bookings and a minimum lead
time. Privileged roles (clinic personnel) may book the same day as long as the
slot has not started yet.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any

from agentsalud.errors import BookingRuleViolation
from agentsalud.services import dates
from agentsalud.services.booking_settings import BookingSettings

PRIVILEGED_ROLES = frozenset({"admin", "staff", "doctor", "superadmin"})
STANDARD_ADVANCE_HOURS = 24

RULE_STANDARD = "standard"
RULE_PRIVILEGED = "privileged"


@dataclass
class DateValidationResult:
    """Outcome of checking a date or slot against the booking rules."""

    is_valid: bool
    reason: str | None = None
    code: str | None = None
    applied_rule: str = RULE_STANDARD
    user_role: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    def raise_for_violation(self) -> None:
        if self.is_valid:
            return
        details = {"userRole": self.user_role, "appliedRule": self.applied_rule}
        details.update(self.details)
        raise BookingRuleViolation(
            self.reason or "Reserva no permitida", code=self.code, details=details
        )


def role_name(role: Any) -> str:
    return str(getattr(role, "value", role) or "patient")


def is_privileged(role: Any) -> bool:
    return role_name(role) in PRIVILEGED_ROLES


def applied_rule(role: Any, *, force_standard: bool = False) -> str:
    if is_privileged(role) and not force_standard:
        return RULE_PRIVILEGED
    return RULE_STANDARD


def validate_date(
    target_date: date,
    *,
    role: Any,
    booking_settings: BookingSettings,
    today: date,
    force_standard: bool = False,
    rescheduling: bool = False,
) -> DateValidationResult:
    """Check the calendar-level rules for ``target_date``."""

    rule = applied_rule(role, force_standard=force_standard)
    user_role = role_name(role)

    def reject(reason: str, code: str, **details: Any) -> DateValidationResult:
        return DateValidationResult(
            is_valid=False,
            reason=reason,
            code=code,
            applied_rule=rule,
            user_role=user_role,
            details=details,
        )

    if target_date < today:
        return reject("No se puede agendar citas en fechas pasadas", "PAST_DATE")

    if dates.is_weekend(target_date) and not booking_settings.weekend_booking_enabled:
        return reject("Reservas de fin de semana no están habilitadas", "WEEKEND_DISABLED")

    max_date = today + timedelta(days=booking_settings.max_advance_booking_days)
    if target_date > max_date:
        return reject(
            "No se pueden hacer reservas con más de "
            f"{booking_settings.max_advance_booking_days} días de anticipación",
            "MAX_ADVANCE_EXCEEDED",
            maxAdvanceBookingDays=booking_settings.max_advance_booking_days,
        )

    if target_date == today:
        if rule == RULE_STANDARD:
            verb = "reagendar" if rescheduling else "reservar"
            return reject(
                f"Los pacientes deben {verb} citas con al menos "
                f"{STANDARD_ADVANCE_HOURS} horas de anticipación",
                "ADVANCE_BOOKING_REQUIRED",
                requiredAdvanceHours=STANDARD_ADVANCE_HOURS,
                isToday=True,
            )
        if not booking_settings.allow_same_day_booking:
            return reject("Reservas el mismo día no están permitidas", "SAME_DAY_DISABLED")

    return DateValidationResult(is_valid=True, applied_rule=rule, user_role=user_role)


def validate_slot(
    target_date: date,
    start_time: time,
    *,
    role: Any,
    booking_settings: BookingSettings,
    now_local: datetime,
    force_standard: bool = False,
    rescheduling: bool = False,
) -> DateValidationResult:
    """Check the date rules plus the time-of-day rules for one slot.

    ``now_local`` is the current instant expressed in the organization's
    timezone.
    """

    result = validate_date(
        target_date,
        role=role,
        booking_settings=booking_settings,
        today=now_local.date(),
        force_standard=force_standard,
        rescheduling=rescheduling,
    )
    if not result.is_valid:
        return result

    if not booking_settings.window_start <= start_time < booking_settings.window_end:
        return DateValidationResult(
            is_valid=False,
            reason=(
                "Fuera del horario de reservas "
                f"({booking_settings.booking_window_start} - {booking_settings.booking_window_end})"
            ),
            code="OUTSIDE_BOOKING_WINDOW",
            applied_rule=result.applied_rule,
            user_role=result.user_role,
        )

    slot_start = dates.ensure_utc(
        datetime.combine(target_date, start_time, tzinfo=now_local.tzinfo)
    )
    now_utc = dates.ensure_utc(now_local)
    if result.applied_rule == RULE_PRIVILEGED:
        if target_date == now_local.date() and slot_start <= now_utc:
            return DateValidationResult(
                is_valid=False,
                reason="No se puede agendar en horarios que ya han pasado",
                code="PAST_TIME",
                applied_rule=result.applied_rule,
                user_role=result.user_role,
                details={"isToday": True, "isPastTime": True},
            )
        return result

    lead = slot_start - now_utc
    if lead < timedelta(hours=booking_settings.advance_booking_hours):
        return DateValidationResult(
            is_valid=False,
            reason=(
                f"Reserva con mínimo {booking_settings.advance_booking_hours} "
                "horas de anticipación requerida"
            ),
            code="ADVANCE_BOOKING_REQUIRED",
            applied_rule=result.applied_rule,
            user_role=result.user_role,
            details={"requiredAdvanceHours": booking_settings.advance_booking_hours},
        )
    return result


def validate_booking(
    target_date: date,
    start_time: time,
    *,
    role: Any,
    booking_settings: BookingSettings,
    now_local: datetime,
    rescheduling: bool = False,
) -> None:
    """Raise :class:`BookingRuleViolation` when the slot may not be booked."""

    validate_slot(
        target_date,
        start_time,
        role=role,
        booking_settings=booking_settings,
        now_local=now_local,
        rescheduling=rescheduling,
    ).raise_for_violation()


def check_change_deadline(
    appointment_start: datetime,
    *,
    role: Any,
    booking_settings: BookingSettings,
    now: datetime,
    action: str,
) -> None:
    """Reject late cancellations or reschedules made by patients.

    ``action`` is ``"cancel"`` or ``"reschedule"``.
    """

    if is_privileged(role):
        return
    if action == "cancel":
        hours = booking_settings.cancellation_deadline_hours
        reason = f"Las citas solo pueden cancelarse con {hours} horas de anticipación"
    else:
        hours = booking_settings.reschedule_deadline_hours
        reason = f"Las citas solo pueden reagendarse con {hours} horas de anticipación"

    remaining = dates.ensure_utc(appointment_start) - dates.ensure_utc(now)
    if remaining < timedelta(hours=hours):
        raise BookingRuleViolation(
            reason,
            code="DEADLINE_PASSED",
            details={"deadlineHours": hours, "action": action, "userRole": role_name(role)},
        )
