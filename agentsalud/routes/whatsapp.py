from __future__ import annotations

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from agentsalud.db.session import get_db
from agentsalud.deps import (
    ORG_MANAGER_ROLES,
    ensure_organization_access,
    load_organization,
    require_roles,
    resolve_organization_id,
)
from agentsalud.models import Profile, UserRole, WhatsAppInstance, WhatsAppInstanceStatus
from agentsalud.services import audit, whatsapp_instances

router = APIRouter(prefix="/api/whatsapp/instances", tags=["whatsapp"])

require_manager = require_roles(*ORG_MANAGER_ROLES)


class InstanceCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    instance_name: str = Field(..., min_length=3, max_length=100)
    phone_number: str | None = Field(default=None, max_length=32)
    organization_id: UUID | None = Field(default=None, alias="organizationId")
    skip_connection: bool = Field(default=False, alias="skipConnection")


class InstanceUpdate(BaseModel):
    phone_number: str | None = Field(default=None, max_length=32)
    status: WhatsAppInstanceStatus | None = None


def _load(db: Session, user: Profile, instance_id: UUID) -> WhatsAppInstance:
    instance = whatsapp_instances.get_instance(db, instance_id)
    ensure_organization_access(user, instance.organization_id)
    return instance


@router.get("")
def list_instances(
    organization_id: UUID | None = Query(default=None, alias="organizationId"),
    status_filter: WhatsAppInstanceStatus | None = Query(default=None, alias="status"),
    user: Profile = Depends(require_manager),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Admins see their organization; superadmins may list every instance."""

    if user.role == UserRole.SUPERADMIN and organization_id is None:
        scope = None
    else:
        scope = resolve_organization_id(user, organization_id)
    found = whatsapp_instances.list_instances(db, scope, status=status_filter)
    return {
        "success": True,
        "data": [whatsapp_instances.serialize_instance(instance) for instance in found],
        "total": len(found),
    }


@router.post("", status_code=status.HTTP_201_CREATED)
def create_instance(
    payload: InstanceCreate,
    user: Profile = Depends(require_manager),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    organization_id = resolve_organization_id(user, payload.organization_id)
    load_organization(db, organization_id)
    instance, qr_code = whatsapp_instances.create_instance(
        db,
        organization_id,
        instance_name=payload.instance_name,
        phone_number=payload.phone_number,
        connect=not payload.skip_connection,
    )
    audit.record(
        db,
        action="whatsapp_instance.create",
        actor=user,
        organization_id=organization_id,
        resource=f"whatsapp_instance:{instance.id}",
        metadata={"instanceName": instance.instance_name},
    )
    return {
        "success": True,
        "data": {
            "instance": whatsapp_instances.serialize_instance(instance),
            "qrCode": qr_code,
            "nextStep": "scan_qr" if qr_code else "request_qr",
        },
    }


@router.get("/{instance_id}")
def get_instance(
    instance_id: UUID,
    user: Profile = Depends(require_manager),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    instance = _load(db, user, instance_id)
    return {"success": True, "data": whatsapp_instances.serialize_instance(instance)}


@router.put("/{instance_id}")
def update_instance(
    instance_id: UUID,
    payload: InstanceUpdate,
    user: Profile = Depends(require_manager),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    instance = _load(db, user, instance_id)
    whatsapp_instances.update_instance(
        db, instance, phone_number=payload.phone_number, status=payload.status
    )
    audit.record(
        db,
        action="whatsapp_instance.update",
        actor=user,
        organization_id=instance.organization_id,
        resource=f"whatsapp_instance:{instance.id}",
        metadata={"changes": sorted(payload.model_dump(exclude_none=True))},
    )
    return {"success": True, "data": whatsapp_instances.serialize_instance(instance)}


@router.delete("/{instance_id}")
def delete_instance(
    instance_id: UUID,
    user: Profile = Depends(require_manager),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    instance = _load(db, user, instance_id)
    organization_id = instance.organization_id
    name = instance.instance_name
    whatsapp_instances.delete_instance(db, instance)
    audit.record(
        db,
        action="whatsapp_instance.delete",
        actor=user,
        organization_id=organization_id,
        resource=f"whatsapp_instance:{instance_id}",
        metadata={"instanceName": name},
    )
    return {"success": True, "data": {"id": str(instance_id), "deleted": True}}


@router.get("/{instance_id}/qrcode")
@router.post("/{instance_id}/qrcode")
def instance_qr_code(
    instance_id: UUID,
    user: Profile = Depends(require_manager),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    instance = _load(db, user, instance_id)
    data = whatsapp_instances.request_qr_code(db, instance)
    return {"success": True, "data": {"instanceId": str(instance.id), **data}}


@router.get("/{instance_id}/status")
def instance_status(
    instance_id: UUID,
    user: Profile = Depends(require_manager),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    instance = _load(db, user, instance_id)
    state = whatsapp_instances.refresh_status(db, instance)
    return {
        "success": True,
        "data": {
            **whatsapp_instances.serialize_instance(instance),
            "connectionState": state,
        },
    }


@router.post("/{instance_id}/reconnect")
def reconnect_instance(
    instance_id: UUID,
    user: Profile = Depends(require_manager),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    instance = _load(db, user, instance_id)
    whatsapp_instances.reconnect(db, instance)
    audit.record(
        db,
        action="whatsapp_instance.reconnect",
        actor=user,
        organization_id=instance.organization_id,
        resource=f"whatsapp_instance:{instance.id}",
    )
    return {"success": True, "data": whatsapp_instances.serialize_instance(instance)}
