from __future__ import annotations

import enum
import uuid
from datetime import date, time

from sqlalchemy import Date, Enum, ForeignKey, Index, Integer, Text, Time, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from agentsalud.models.base import Base, TimestampMixin


class AppointmentStatus(str, enum.Enum):
    """Possible statuses for an appointment lifecycle."""

    PENDING = "pending"
    PENDIENTE_PAGO = "pendiente_pago"
    CONFIRMED = "confirmed"
    REAGENDADA = "reagendada"
    EN_CURSO = "en_curso"
    COMPLETED = "completed"
    CANCELADA_PACIENTE = "cancelada_paciente"
    CANCELADA_CLINICA = "cancelada_clinica"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


CANCELLED_STATUSES = frozenset(
    {
        AppointmentStatus.CANCELLED,
        AppointmentStatus.CANCELADA_PACIENTE,
        AppointmentStatus.CANCELADA_CLINICA,
    }
)


class AppointmentOrigin(str, enum.Enum):
    """Origin of an appointment booking."""

    WEB = "web"
    WHATSAPP = "whatsapp"
    STAFF = "staff"
    AI = "ai"


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [item.value for item in enum_cls]


class Appointment(Base, TimestampMixin):
    """Appointment between a patient and a doctor.

    ``appointment_date`` and the start/end times are the organization's local
    wall clock; they are never stored as UTC instants.
    """

    __tablename__ = "appointments"
    __table_args__ = (
        Index("ix_appointments_doctor_day", "doctor_id", "appointment_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), index=True
    )
    patient_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id", ondelete="CASCADE"), index=True
    )
    doctor_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("doctors.id", ondelete="CASCADE"), index=True
    )
    service_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("services.id", ondelete="SET NULL"), nullable=True
    )
    location_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("locations.id", ondelete="SET NULL"), nullable=True
    )
    appointment_date: Mapped[date] = mapped_column(Date, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=30, nullable=False)
    status: Mapped[AppointmentStatus] = mapped_column(
        Enum(AppointmentStatus, name="appointment_status", values_callable=_enum_values),
        default=AppointmentStatus.PENDING,
        nullable=False,
    )
    origin: Mapped[AppointmentOrigin] = mapped_column(
        Enum(AppointmentOrigin, name="appointment_origin", values_callable=_enum_values),
        default=AppointmentOrigin.WEB,
        nullable=False,
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True
    )

    @property
    def is_cancelled(self) -> bool:
        return self.status in CANCELLED_STATUSES
