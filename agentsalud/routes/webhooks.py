"""Evolution API webhooks feeding the WhatsApp booking assistant."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from fastapi.responses import PlainTextResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from agentsalud.core.config import settings
from agentsalud.db.session import get_db
from agentsalud.deps import load_organization
from agentsalud.errors import ForbiddenError, NotFoundError, ValidationFailed
from agentsalud.logging_utils import set_organization_context
from agentsalud.models import MessageLog, Organization
from agentsalud.services import conversation, whatsapp_instances

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def handle_status_update(db: Session, status_payload: dict[str, Any]) -> bool:
    """Apply a delivery status update to the matching message log."""

    message_id = (
        status_payload.get("keyId")
        or status_payload.get("id")
        or status_payload.get("messageId")
    )
    if not message_id:
        return False

    message_log = db.execute(
        select(MessageLog).where(MessageLog.external_id == str(message_id))
    ).scalars().first()
    if message_log is None:
        logger.debug("Received status for unknown message id %s", message_id)
        return False

    status_value = status_payload.get("status")
    if isinstance(status_value, str):
        message_log.status = status_value.lower()
    metadata = dict(message_log.metadata_json or {})
    metadata["status_history"] = [*metadata.get("status_history", []), status_payload]
    message_log.metadata_json = metadata

    timestamp = status_payload.get("timestamp")
    if timestamp:
        try:
            message_log.sent_at = datetime.fromtimestamp(int(timestamp), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            logger.debug("Invalid status timestamp %s", timestamp)
    return True


def handle_instance_event(
    db: Session, organization: Organization, event_key: str, payload: dict[str, Any]
) -> bool:
    """Track pairing and connection changes of the organization's instance."""

    instance = whatsapp_instances.find_by_name(
        db, payload.get("instance"), organization_id=organization.id
    )
    if instance is None:
        logger.debug("Event for unknown instance %s", payload.get("instance"))
        return False
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    if event_key == "QRCODE_UPDATED":
        qrcode = data.get("qrcode") if isinstance(data.get("qrcode"), dict) else data
        qr_code = qrcode.get("base64") or qrcode.get("code")
        if not qr_code:
            return False
        instance.qr_code = qr_code
        return True
    return whatsapp_instances.apply_connection_state(
        instance, data.get("state") or data.get("status")
    )


def process_evolution_event(
    db: Session, organization: Organization, payload: dict[str, Any]
) -> dict[str, Any]:
    event_name = payload.get("event")
    if not event_name:
        raise ValidationFailed("Webhook event is required", details={"field": "event"})

    event_key = str(event_name).upper().replace(".", "_")
    event_data = payload.get("data")
    items = event_data if isinstance(event_data, list) else [event_data]

    processed: list[dict[str, Any]] = []
    updated = 0
    if event_key == "MESSAGES_UPSERT":
        for item in items:
            if not isinstance(item, dict):
                continue
            message = conversation.extract_evolution_message(item)
            if message is None:
                continue
            result = conversation.handle_inbound_message(db, organization, message)
            if result:
                processed.append(result)
    elif event_key == "MESSAGES_UPDATE":
        for item in items:
            if isinstance(item, dict) and handle_status_update(db, item):
                updated += 1
    elif event_key in ("CONNECTION_UPDATE", "QRCODE_UPDATED"):
        updated += int(handle_instance_event(db, organization, event_key, payload))
    else:
        logger.debug("Unhandled Evolution webhook event: %s", event_name)

    logger.info(
        "evolution webhook processed",
        extra={"event": event_key, "processed": len(processed), "status_updates": updated},
    )
    return {"status": "ok", "event": event_name, "processed": processed, "statusUpdates": updated}


def _verify(hub_mode: str | None, hub_challenge: str | None, hub_verify_token: str | None) -> PlainTextResponse:
    if (
        hub_mode == "subscribe"
        and hub_verify_token
        and settings.webhook_verify_token
        and hub_verify_token == settings.webhook_verify_token
    ):
        if not hub_challenge:
            raise ValidationFailed("Missing hub.challenge")
        return PlainTextResponse(content=hub_challenge)
    raise ForbiddenError("Webhook verification failed")


@router.get("/evolution")
@router.get("/evolution/{organization_id}")
def webhook_verification(
    organization_id: UUID | None = None,
    hub_mode: str | None = Query(default=None, alias="hub.mode"),
    hub_challenge: str | None = Query(default=None, alias="hub.challenge"),
    hub_verify_token: str | None = Query(default=None, alias="hub.verify_token"),
) -> PlainTextResponse:
    """Answer the subscription handshake."""

    return _verify(hub_mode, hub_challenge, hub_verify_token)


@router.post("/evolution/{organization_id}")
def evolution_webhook(
    organization_id: UUID,
    payload: dict[str, Any],
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    organization = load_organization(db, organization_id)
    if not organization.is_active:
        raise NotFoundError("Organization not found", details={"organizationId": str(organization_id)})
    set_organization_context(organization.id)
    return process_evolution_event(db, organization, payload)


@router.post("/evolution")
def default_evolution_webhook(
    payload: dict[str, Any],
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Resolve the organization from the sending instance.

    Single-instance deployments fall back to the configured organization.
    """

    instance = whatsapp_instances.find_by_name(db, payload.get("instance"))
    organization_id = (
        instance.organization_id if instance else settings.whatsapp_default_organization_id
    )
    if organization_id is None:
        raise NotFoundError("No organization configured for this WhatsApp instance")
    return evolution_webhook(organization_id, payload, db)
