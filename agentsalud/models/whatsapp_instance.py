from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Enum, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from agentsalud.models.base import Base, JSONType, TimestampMixin


class WhatsAppInstanceStatus(str, enum.Enum):
    """Connection state of an Evolution instance as last seen by the API."""

    INACTIVE = "inactive"
    CONNECTING = "connecting"
    ACTIVE = "active"
    ERROR = "error"
    SUSPENDED = "suspended"


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [item.value for item in enum_cls]


class WhatsAppInstance(Base, TimestampMixin):
    """Evolution API instance (one WhatsApp number) owned by an organization."""

    __tablename__ = "whatsapp_instances"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), index=True
    )
    # Evolution names are global to the Evolution server, not per organization.
    instance_name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    phone_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    status: Mapped[WhatsAppInstanceStatus] = mapped_column(
        Enum(
            WhatsAppInstanceStatus,
            name="whatsapp_instance_status",
            values_callable=_enum_values,
        ),
        default=WhatsAppInstanceStatus.INACTIVE,
        nullable=False,
    )
    qr_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_connected_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    evolution_config: Mapped[dict[str, Any] | None] = mapped_column(
        "evolution_api_config", JSONType, nullable=True
    )
