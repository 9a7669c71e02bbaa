"""Append-only audit trail for administrative actions."""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from agentsalud.models import AuditLog, Profile
from agentsalud.services import dates

logger = logging.getLogger(__name__)


def record(
    db: Session,
    *,
    action: str,
    actor: Profile | None,
    organization_id: UUID | None = None,
    resource: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> AuditLog:
    entry = AuditLog(
        organization_id=organization_id,
        actor=str(actor.id) if actor else None,
        action=action,
        resource=resource,
        occurred_at=dates.utcnow(),
        metadata_json=metadata,
    )
    db.add(entry)
    logger.info(
        "audit entry recorded",
        extra={"action": action, "resource": resource},
    )
    return entry
