"""Appointment status lifecycle: transition table, role matrix and history."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from agentsalud.errors import ForbiddenError, ValidationFailed
from agentsalud.models import (
    Appointment,
    AppointmentStatus,
    AppointmentStatusHistory,
    Profile,
)
from agentsalud.services.booking_rules import role_name

logger = logging.getLogger(__name__)

S = AppointmentStatus


@dataclass(frozen=True)
class StatusConfig:
    label: str
    description: str
    is_final: bool
    allowed_transitions: tuple[AppointmentStatus, ...]


STATUS_CONFIGS: dict[AppointmentStatus, StatusConfig] = {
    S.PENDING: StatusConfig(
        "Solicitada",
        "Cita registrada, pendiente de confirmación",
        False,
        (S.PENDIENTE_PAGO, S.CONFIRMED, S.CANCELADA_CLINICA),
    ),
    S.PENDIENTE_PAGO: StatusConfig(
        "Pendiente de Pago",
        "Requiere pago de depósito para confirmar",
        False,
        (S.CONFIRMED, S.CANCELLED, S.CANCELADA_PACIENTE),
    ),
    S.CONFIRMED: StatusConfig(
        "Confirmada",
        "Cita confirmada y programada",
        False,
        (S.EN_CURSO, S.REAGENDADA, S.CANCELADA_PACIENTE, S.CANCELADA_CLINICA, S.NO_SHOW),
    ),
    S.REAGENDADA: StatusConfig(
        "Reagendada",
        "Cita reprogramada a nueva fecha/hora",
        False,
        (S.CONFIRMED, S.CANCELADA_PACIENTE, S.CANCELADA_CLINICA),
    ),
    S.EN_CURSO: StatusConfig(
        "En Curso",
        "Paciente siendo atendido",
        False,
        (S.COMPLETED,),
    ),
    S.COMPLETED: StatusConfig("Completada", "Cita finalizada exitosamente", True, ()),
    S.CANCELADA_PACIENTE: StatusConfig(
        "Cancelada por Paciente", "Cancelada por el paciente", True, ()
    ),
    S.CANCELADA_CLINICA: StatusConfig(
        "Cancelada por Clínica", "Cancelada por la clínica", True, ()
    ),
    S.CANCELLED: StatusConfig("Cancelada", "Cita cancelada", True, ()),
    S.NO_SHOW: StatusConfig("No Asistió", "El paciente no se presentó a la cita", True, ()),
}

_ALL_STATUSES = tuple(AppointmentStatus)

# Statuses each role is allowed to move an appointment into.
ROLE_PERMISSIONS: dict[str, frozenset[AppointmentStatus]] = {
    "patient": frozenset({S.CANCELADA_PACIENTE, S.REAGENDADA}),
    "doctor": frozenset({S.EN_CURSO, S.COMPLETED, S.NO_SHOW}),
    "staff": frozenset(_ALL_STATUSES),
    "admin": frozenset(_ALL_STATUSES),
    "superadmin": frozenset(_ALL_STATUSES),
}

HISTORY_VIEWER_ROLES = frozenset({"doctor", "staff", "admin", "superadmin"})


def coerce_status(value: str | AppointmentStatus) -> AppointmentStatus:
    try:
        return AppointmentStatus(value)
    except ValueError as exc:
        raise ValidationFailed(
            f"Unknown appointment status '{value}'",
            details={"allowed": [item.value for item in AppointmentStatus]},
        ) from exc


def role_targets(role: Any) -> frozenset[AppointmentStatus]:
    return ROLE_PERMISSIONS.get(role_name(role), frozenset())


def is_final(status: AppointmentStatus) -> bool:
    return STATUS_CONFIGS[status].is_final


def get_available_transitions(current: AppointmentStatus, role: Any) -> list[AppointmentStatus]:
    """Statuses ``role`` may move an appointment in ``current`` into."""

    allowed = role_targets(role)
    return [target for target in STATUS_CONFIGS[current].allowed_transitions if target in allowed]


def is_valid_transition(current: AppointmentStatus, target: AppointmentStatus, role: Any) -> bool:
    return target in get_available_transitions(current, role)


def record_history(
    db: Session,
    appointment: Appointment,
    *,
    previous_status: AppointmentStatus | None,
    new_status: AppointmentStatus,
    actor: Profile | None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> AppointmentStatusHistory:
    entry = AppointmentStatusHistory(
        appointment_id=appointment.id,
        previous_status=previous_status.value if previous_status else None,
        new_status=new_status.value,
        changed_by=actor.id if actor else None,
        user_role=role_name(actor.role) if actor else "system",
        reason=reason,
        metadata_json=metadata or None,
    )
    db.add(entry)
    return entry


def change_status(
    db: Session,
    appointment: Appointment,
    target: AppointmentStatus,
    *,
    actor: Profile,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> AppointmentStatusHistory:
    """Move ``appointment`` into ``target`` if the table and the role allow it.

    Raises :class:`ValidationFailed` when the lifecycle forbids the move and
    :class:`ForbiddenError` when the move exists but the role may not make it.
    """

    current = appointment.status
    role = role_name(actor.role)
    if target not in STATUS_CONFIGS[current].allowed_transitions:
        raise ValidationFailed(
            f"Transition from '{current.value}' to '{target.value}' is not allowed",
            details={
                "currentStatus": current.value,
                "requestedStatus": target.value,
                "allowedTransitions": [
                    item.value for item in STATUS_CONFIGS[current].allowed_transitions
                ],
            },
        )
    if target not in role_targets(role):
        raise ForbiddenError(
            f"Role '{role}' does not have permission for this status change",
            details={
                "currentStatus": current.value,
                "requestedStatus": target.value,
                "userRole": role,
            },
        )

    appointment.status = target
    entry = record_history(
        db,
        appointment,
        previous_status=current,
        new_status=target,
        actor=actor,
        reason=reason,
        metadata=metadata,
    )
    db.flush()
    logger.info(
        "appointment status changed",
        extra={
            "appointment_id": str(appointment.id),
            "from_status": current.value,
            "to_status": target.value,
            "role": role,
        },
    )
    return entry


def list_history(db: Session, appointment_id: UUID, limit: int = 50) -> list[AppointmentStatusHistory]:
    stmt = (
        select(AppointmentStatusHistory)
        .where(AppointmentStatusHistory.appointment_id == appointment_id)
        .order_by(AppointmentStatusHistory.created_at.desc())
        .limit(limit)
    )
    return list(db.execute(stmt).scalars().all())


def serialize_history(entry: AppointmentStatusHistory) -> dict[str, Any]:
    return {
        "id": str(entry.id),
        "appointment_id": str(entry.appointment_id),
        "previous_status": entry.previous_status,
        "new_status": entry.new_status,
        "changed_by": str(entry.changed_by) if entry.changed_by else None,
        "user_role": entry.user_role,
        "reason": entry.reason,
        "metadata": entry.metadata_json or {},
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }
