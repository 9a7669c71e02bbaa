"""Import SQLAlchemy models for Alembic's autogenerate feature."""

from agentsalud.models.base import Base
from agentsalud.models import (  # noqa: F401
    Appointment,
    AppointmentStatusHistory,
    AuditLog,
    Doctor,
    DoctorAvailability,
    DoctorService,
    Location,
    MessageLog,
    Organization,
    Profile,
    Service,
    SystemConfig,
    WhatsAppInstance,
)

__all__ = [
    "Base",
    "Appointment",
    "AppointmentStatusHistory",
    "AuditLog",
    "Doctor",
    "DoctorAvailability",
    "DoctorService",
    "Location",
    "MessageLog",
    "Organization",
    "Profile",
    "Service",
    "SystemConfig",
    "WhatsAppInstance",
]
