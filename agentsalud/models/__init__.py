"""SQLAlchemy models for the AgentSalud API."""

from agentsalud.models.appointment import Appointment, AppointmentOrigin, AppointmentStatus
from agentsalud.models.audit_log import AuditLog
from agentsalud.models.doctor import Doctor, DoctorService
from agentsalud.models.doctor_availability import DoctorAvailability
from agentsalud.models.location import Location
from agentsalud.models.message_log import MessageLog
from agentsalud.models.organization import Organization, SubscriptionPlan
from agentsalud.models.profile import Profile, UserRole
from agentsalud.models.service import Service
from agentsalud.models.status_history import AppointmentStatusHistory
from agentsalud.models.system_config import SystemConfig
from agentsalud.models.whatsapp_instance import WhatsAppInstance, WhatsAppInstanceStatus

__all__ = [
    "Appointment",
    "AppointmentOrigin",
    "AppointmentStatus",
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
    "SubscriptionPlan",
    "SystemConfig",
    "UserRole",
    "WhatsAppInstance",
    "WhatsAppInstanceStatus",
]
