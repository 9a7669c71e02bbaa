from __future__ import annotations

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from agentsalud.db.session import get_db
from agentsalud.deps import CLINIC_ROLES, require_roles, resolve_organization_id
from agentsalud.models import Appointment, Profile, UserRole
from agentsalud.routes.auth import serialize_user
from agentsalud.services import accounts, audit

router = APIRouter(prefix="/api/patients", tags=["patients"])

PATIENT_VIEWER_ROLES = (UserRole.DOCTOR, *CLINIC_ROLES)


class PatientCreate(BaseModel):
    organization_id: UUID | None = None
    email: EmailStr
    first_name: str = Field(..., min_length=1, max_length=120)
    last_name: str = Field(..., min_length=1, max_length=120)
    phone: str | None = Field(default=None, max_length=32)
    password: str | None = Field(default=None, min_length=8)


@router.get("")
def list_patients(
    organization_id: UUID | None = Query(default=None, alias="organizationId"),
    search: str | None = Query(default=None, max_length=120),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user: Profile = Depends(require_roles(*PATIENT_VIEWER_ROLES)),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    organization_id = resolve_organization_id(user, organization_id)
    stmt = select(Profile).where(
        Profile.organization_id == organization_id,
        Profile.role == UserRole.PATIENT,
    )
    if search:
        pattern = f"%{search.strip().lower()}%"
        stmt = stmt.where(
            or_(
                func.lower(Profile.first_name).like(pattern),
                func.lower(Profile.last_name).like(pattern),
                func.lower(Profile.email).like(pattern),
                Profile.phone.like(pattern),
            )
        )
    total = db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
    patients = (
        db.execute(stmt.order_by(Profile.last_name, Profile.first_name).limit(limit).offset(offset))
        .scalars()
        .all()
    )

    counts: dict[UUID, int] = {}
    if patients:
        rows = db.execute(
            select(Appointment.patient_id, func.count(Appointment.id))
            .where(Appointment.patient_id.in_([patient.id for patient in patients]))
            .group_by(Appointment.patient_id)
        ).all()
        counts = {patient_id: count for patient_id, count in rows}

    return {
        "success": True,
        "data": [
            {**serialize_user(patient), "appointment_count": int(counts.get(patient.id, 0))}
            for patient in patients
        ],
        "pagination": {"total": int(total), "limit": limit, "offset": offset},
    }


@router.post("", status_code=status.HTTP_201_CREATED)
def create_patient(
    payload: PatientCreate,
    user: Profile = Depends(require_roles(*CLINIC_ROLES)),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    organization_id = resolve_organization_id(user, payload.organization_id)
    patient = accounts.create_profile(
        db,
        organization_id=organization_id,
        email=payload.email,
        first_name=payload.first_name,
        last_name=payload.last_name,
        phone=payload.phone,
        role=UserRole.PATIENT,
        password=payload.password,
    )
    audit.record(
        db,
        action="patient.create",
        actor=user,
        organization_id=organization_id,
        resource=f"profile:{patient.id}",
    )
    return {"success": True, "data": serialize_user(patient)}
