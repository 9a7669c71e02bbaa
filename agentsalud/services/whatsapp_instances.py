"""Per-organization WhatsApp instances backed by the Evolution API.

Each organization pairs its own WhatsApp number through an Evolution instance.
Outbound messages for an organization go through its instance; deployments
without one fall back to ``EVOLUTION_INSTANCE_NAME``.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from datetime import datetime
from typing import Any, TypeVar
from uuid import UUID

import httpx
from sqlalchemy import case, select
from sqlalchemy.orm import Session

from agentsalud.errors import ConflictError, NotFoundError, UpstreamError, ValidationFailed
from agentsalud.models import WhatsAppInstance, WhatsAppInstanceStatus
from agentsalud.services import dates, whatsapp_client
from agentsalud.services.whatsapp_client import WhatsAppDeliveryError

logger = logging.getLogger(__name__)

S = WhatsAppInstanceStatus
T = TypeVar("T")

INSTANCE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{2,99}$")
QR_EXPIRES_SECONDS = 60

# Evolution reports ``open``/``connecting``/``close``; webhooks sometimes send
# the friendlier aliases.
CONNECTION_STATES: dict[str, WhatsAppInstanceStatus] = {
    "open": S.ACTIVE,
    "connected": S.ACTIVE,
    "connecting": S.CONNECTING,
    "close": S.INACTIVE,
    "closed": S.INACTIVE,
    "disconnected": S.INACTIVE,
}

MANUAL_STATUSES = frozenset({S.INACTIVE, S.SUSPENDED})


def _evolution(call: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    try:
        return call(*args, **kwargs)
    except (httpx.HTTPError, WhatsAppDeliveryError) as exc:
        logger.warning(
            "evolution api call failed",
            extra={"operation": call.__name__, "error": str(exc)},
        )
        raise UpstreamError(
            "Evolution API request failed",
            code="EVOLUTION_API_ERROR",
            details={"operation": call.__name__, "error": str(exc)},
        ) from exc


def serialize_instance(instance: WhatsAppInstance) -> dict[str, Any]:
    return {
        "id": str(instance.id),
        "organization_id": str(instance.organization_id),
        "instance_name": instance.instance_name,
        "phone_number": instance.phone_number,
        "status": instance.status.value,
        "has_qr_code": bool(instance.qr_code),
        "last_connected_at": (
            instance.last_connected_at.isoformat() if instance.last_connected_at else None
        ),
        "error_message": instance.error_message,
        "created_at": instance.created_at.isoformat() if instance.created_at else None,
    }


def list_instances(
    db: Session,
    organization_id: UUID | None,
    *,
    status: WhatsAppInstanceStatus | None = None,
) -> list[WhatsAppInstance]:
    """Instances of one organization, or of every organization when ``None``."""

    stmt = select(WhatsAppInstance).order_by(WhatsAppInstance.created_at.desc())
    if organization_id is not None:
        stmt = stmt.where(WhatsAppInstance.organization_id == organization_id)
    if status is not None:
        stmt = stmt.where(WhatsAppInstance.status == status)
    return list(db.execute(stmt).scalars())


def get_instance(db: Session, instance_id: UUID) -> WhatsAppInstance:
    instance = db.get(WhatsAppInstance, instance_id)
    if instance is None:
        raise NotFoundError("WhatsApp instance not found", details={"instanceId": str(instance_id)})
    return instance


def find_by_name(
    db: Session, instance_name: str | None, *, organization_id: UUID | None = None
) -> WhatsAppInstance | None:
    if not isinstance(instance_name, str) or not instance_name:
        return None
    stmt = select(WhatsAppInstance).where(WhatsAppInstance.instance_name == instance_name)
    if organization_id is not None:
        stmt = stmt.where(WhatsAppInstance.organization_id == organization_id)
    return db.execute(stmt).scalar_one_or_none()


def instance_name_for(db: Session, organization_id: UUID | None) -> str | None:
    """Evolution instance that sends on behalf of the organization.

    A connected instance wins over one still pairing; suspended instances
    never send.
    """

    if organization_id is None:
        return None
    stmt = (
        select(WhatsAppInstance.instance_name)
        .where(
            WhatsAppInstance.organization_id == organization_id,
            WhatsAppInstance.status != S.SUSPENDED,
        )
        .order_by(
            case((WhatsAppInstance.status == S.ACTIVE, 0), else_=1),
            WhatsAppInstance.created_at.desc(),
        )
        .limit(1)
    )
    return db.execute(stmt).scalar_one_or_none()


def _validate_name(instance_name: str) -> str:
    instance_name = instance_name.strip()
    if not INSTANCE_NAME_RE.match(instance_name):
        raise ValidationFailed(
            "Instance name must be 3-100 letters, numbers, hyphens or underscores",
            details={"field": "instance_name", "value": instance_name},
        )
    return instance_name


def _qr_from(data: dict[str, Any] | None) -> str | None:
    if not data:
        return None
    return data.get("base64") or data.get("code")


def create_instance(
    db: Session,
    organization_id: UUID,
    *,
    instance_name: str,
    phone_number: str | None = None,
    connect: bool = True,
) -> tuple[WhatsAppInstance, str | None]:
    """Create the instance on Evolution and persist it.

    Returns the row and the pairing QR code when ``connect`` asked for one.
    """

    instance_name = _validate_name(instance_name)
    if find_by_name(db, instance_name) is not None:
        raise ConflictError(
            "Instance name already exists",
            code="DUPLICATE_INSTANCE_NAME",
            details={"instanceName": instance_name},
        )

    response = _evolution(
        whatsapp_client.create_instance, instance_name, number=phone_number, qrcode=connect
    )
    remote = response.get("instance") or {}
    qr_code = _qr_from(response.get("qrcode")) if connect else None
    status = S.CONNECTING if connect else S.INACTIVE
    if connect and remote.get("status") in CONNECTION_STATES:
        status = CONNECTION_STATES[remote["status"]]

    instance = WhatsAppInstance(
        organization_id=organization_id,
        instance_name=instance_name,
        phone_number=phone_number,
        status=status,
        qr_code=qr_code,
        evolution_config={
            "instance_id": remote.get("instanceId"),
            "integration": remote.get("integration") or "WHATSAPP-BAILEYS",
            "mocked": bool(response.get("mocked")),
        },
    )
    db.add(instance)
    db.flush()
    logger.info(
        "whatsapp instance created",
        extra={"instance": instance_name, "organization_id": str(organization_id)},
    )
    return instance, qr_code


def update_instance(
    db: Session,
    instance: WhatsAppInstance,
    *,
    phone_number: str | None = None,
    status: WhatsAppInstanceStatus | None = None,
) -> WhatsAppInstance:
    if phone_number is not None:
        instance.phone_number = phone_number
    if status is not None:
        if status not in MANUAL_STATUSES:
            raise ValidationFailed(
                "Only inactive or suspended can be set manually",
                details={"field": "status", "value": status.value},
            )
        instance.status = status
        if status == S.SUSPENDED:
            instance.qr_code = None
    db.flush()
    return instance


def delete_instance(db: Session, instance: WhatsAppInstance) -> None:
    _evolution(whatsapp_client.delete_instance, instance.instance_name)
    db.delete(instance)
    db.flush()


def apply_connection_state(
    instance: WhatsAppInstance, state: str | None, *, now: datetime | None = None
) -> bool:
    """Record Evolution's connection state; returns whether the status changed."""

    status = CONNECTION_STATES.get((state or "").lower())
    if status is None:
        logger.debug("Unknown connection state %s for %s", state, instance.instance_name)
        return False
    changed = status != instance.status
    instance.status = status
    if status == S.ACTIVE:
        instance.last_connected_at = now or dates.utcnow()
        instance.qr_code = None
        instance.error_message = None
    return changed


def refresh_status(db: Session, instance: WhatsAppInstance) -> str | None:
    """Ask Evolution for the live connection state and store it."""

    state = _evolution(whatsapp_client.connection_state, instance.instance_name)
    apply_connection_state(instance, state)
    db.flush()
    return state


def request_qr_code(db: Session, instance: WhatsAppInstance) -> dict[str, Any]:
    if instance.status == S.ACTIVE:
        raise ConflictError(
            "Instance is already connected",
            code="ALREADY_CONNECTED",
            details={"status": instance.status.value},
        )
    if instance.status in (S.ERROR, S.SUSPENDED):
        raise ConflictError(
            f"Cannot generate QR code. Instance is in {instance.status.value} state.",
            code="INVALID_INSTANCE_STATE",
            details={"status": instance.status.value},
        )

    qr_code = _qr_from(_evolution(whatsapp_client.connect_instance, instance.instance_name))
    if qr_code:
        instance.qr_code = qr_code
    instance.status = S.CONNECTING
    db.flush()
    return {
        "qrCode": instance.qr_code,
        "status": instance.status.value,
        "expiresIn": QR_EXPIRES_SECONDS,
    }


def reconnect(db: Session, instance: WhatsAppInstance) -> WhatsAppInstance:
    if instance.status == S.SUSPENDED:
        raise ConflictError(
            "Suspended instances cannot reconnect",
            code="INVALID_INSTANCE_STATE",
            details={"status": instance.status.value},
        )
    _evolution(whatsapp_client.restart_instance, instance.instance_name)
    instance.status = S.CONNECTING
    instance.error_message = None
    db.flush()
    return instance
