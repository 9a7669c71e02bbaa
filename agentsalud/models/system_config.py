from __future__ import annotations

import uuid

from sqlalchemy import Boolean, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from agentsalud.models.base import Base, TimestampMixin


class SystemConfig(Base, TimestampMixin):
    """Platform-wide settings managed by superadmins; a single row."""

    __tablename__ = "system_config"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    maintenance_mode: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    registration_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    email_notifications: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    backup_frequency: Mapped[str] = mapped_column(String(16), default="daily", nullable=False)
    max_organizations: Mapped[int] = mapped_column(Integer, default=100, nullable=False)
    max_users_per_org: Mapped[int] = mapped_column(Integer, default=1000, nullable=False)
    session_timeout: Mapped[int] = mapped_column(Integer, default=60, nullable=False)
