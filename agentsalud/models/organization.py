from __future__ import annotations

import enum
import uuid
from typing import Any

from sqlalchemy import Boolean, Enum, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from agentsalud.models.base import Base, JSONType, TimestampMixin


class SubscriptionPlan(str, enum.Enum):
    """Commercial plan of an organization."""

    BASIC = "basic"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


class Organization(Base, TimestampMixin):
    """Tenant entity representing a clinic or healthcare business unit."""

    __tablename__ = "organizations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    website: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    address: Mapped[str | None] = mapped_column(String(255), nullable=True)
    city: Mapped[str | None] = mapped_column(String(120), nullable=True)
    country: Mapped[str | None] = mapped_column(String(120), nullable=True)
    subscription_plan: Mapped[SubscriptionPlan] = mapped_column(
        Enum(
            SubscriptionPlan,
            name="subscription_plan",
            values_callable=lambda enum_cls: [item.value for item in enum_cls],
        ),
        default=SubscriptionPlan.BASIC,
        nullable=False,
    )
    timezone: Mapped[str] = mapped_column(String(64), default="America/Bogota")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    booking_settings: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
