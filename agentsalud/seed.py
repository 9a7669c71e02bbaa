from __future__ import annotations

import logging
from datetime import time
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from agentsalud.core.config import settings
from agentsalud.db.session import SessionLocal
from agentsalud.logging_utils import configure_logging, set_organization_context
from agentsalud.models import (
    Doctor,
    DoctorAvailability,
    DoctorService,
    Location,
    Organization,
    Profile,
    Service,
    SubscriptionPlan,
    UserRole,
)
from agentsalud.security import hash_password
from agentsalud.services import system

logger = logging.getLogger(__name__)

DEMO_SLUG = "clinica-demo"
DEMO_PASSWORD = "Demo12345!"  # pragma: allowlist secret

SERVICE_CATALOG: list[tuple[str, str, int, int]] = [
    ("Consulta General", "Medicina General", 30, 8000000),
    ("Control Pediátrico", "Pediatría", 30, 9000000),
    ("Consulta Cardiología", "Cardiología", 45, 15000000),
]

LOCATIONS: list[tuple[str, str]] = [
    ("Sede Norte", "Calle 100 # 15-20, Bogotá"),
    ("Sede Centro", "Carrera 7 # 32-10, Bogotá"),
]

# email, first name, last name, role, phone
USERS: list[tuple[str, str, str, UserRole, str | None]] = [
    ("superadmin@agentsalud.com", "Super", "Admin", UserRole.SUPERADMIN, None),
    ("admin@clinica-demo.com", "Laura", "Gómez", UserRole.ADMIN, "+573001112233"),
    ("recepcion@clinica-demo.com", "Andrés", "Rojas", UserRole.STAFF, "+573002223344"),
    ("paciente@clinica-demo.com", "María", "Pérez", UserRole.PATIENT, "+573005556677"),
]

# email, first name, last name, specialization, license, services
DOCTORS: list[tuple[str, str, str, str, str, tuple[str, ...]]] = [
    (
        "dra.martinez@clinica-demo.com",
        "Ana",
        "Martínez",
        "Medicina General",
        "RM-10234",
        ("Consulta General", "Control Pediátrico"),
    ),
    (
        "dr.castro@clinica-demo.com",
        "Jorge",
        "Castro",
        "Cardiología",
        "RM-20871",
        ("Consulta General", "Consulta Cardiología"),
    ),
]

# Monday to Friday, morning and afternoon blocks.
WEEKLY_BLOCKS: list[tuple[int, time, time]] = [
    (day, start, end)
    for day in range(1, 6)
    for start, end in ((time(8, 0), time(12, 0)), (time(14, 0), time(18, 0)))
]


def ensure_organization(session: Session) -> Organization:
    organization = session.execute(
        select(Organization).where(Organization.slug == DEMO_SLUG)
    ).scalar_one_or_none()
    if organization:
        set_organization_context(organization.id)
        logger.info("organization already present", extra={"organization_id": str(organization.id)})
        return organization

    organization = Organization(
        name="Clínica AgentSalud Demo",
        slug=DEMO_SLUG,
        email="contacto@clinica-demo.com",
        city="Bogotá",
        country="Colombia",
        timezone=settings.timezone,
        subscription_plan=SubscriptionPlan.PREMIUM,
    )
    session.add(organization)
    session.flush()
    set_organization_context(organization.id)
    logger.info("created organization", extra={"organization_id": str(organization.id)})
    return organization


def ensure_profile(
    session: Session,
    *,
    organization: Organization | None,
    email: str,
    first_name: str,
    last_name: str,
    role: UserRole,
    phone: str | None = None,
) -> Profile:
    profile = session.execute(select(Profile).where(Profile.email == email)).scalar_one_or_none()
    if profile:
        return profile
    profile = Profile(
        organization_id=organization.id if organization else None,
        email=email,
        first_name=first_name,
        last_name=last_name,
        role=role,
        phone=phone,
        password_hash=hash_password(DEMO_PASSWORD),
    )
    session.add(profile)
    session.flush()
    logger.info("created profile", extra={"user_id": str(profile.id), "role": role.value})
    return profile


def ensure_users(session: Session, organization: Organization) -> list[Profile]:
    profiles = [
        ensure_profile(
            session,
            # Superadmins live outside every organization.
            organization=None if role == UserRole.SUPERADMIN else organization,
            email=email,
            first_name=first_name,
            last_name=last_name,
            role=role,
            phone=phone,
        )
        for email, first_name, last_name, role, phone in USERS
    ]
    logger.info(
        "ensured users",
        extra={"organization_id": str(organization.id), "total": len(profiles)},
    )
    return profiles


def ensure_services(session: Session, organization: Organization) -> dict[str, Service]:
    created = 0
    services: dict[str, Service] = {}
    for name, category, duration, price in SERVICE_CATALOG:
        service = session.execute(
            select(Service).where(
                Service.organization_id == organization.id,
                Service.name == name,
            )
        ).scalar_one_or_none()
        if not service:
            service = Service(
                organization_id=organization.id,
                name=name,
                category=category,
                duration_minutes=duration,
                price_cents=price,
            )
            session.add(service)
            session.flush()
            created += 1
        services[name] = service

    logger.info(
        "ensured services",
        extra={"organization_id": str(organization.id), "created": created, "total": len(services)},
    )
    return services


def ensure_locations(session: Session, organization: Organization) -> list[Location]:
    locations: list[Location] = []
    for name, address in LOCATIONS:
        location = session.execute(
            select(Location).where(
                Location.organization_id == organization.id,
                Location.name == name,
            )
        ).scalar_one_or_none()
        if not location:
            location = Location(organization_id=organization.id, name=name, address=address)
            session.add(location)
            session.flush()
        locations.append(location)
    return locations


def ensure_doctors(
    session: Session, organization: Organization, services: dict[str, Service]
) -> list[Doctor]:
    doctors: list[Doctor] = []
    for email, first_name, last_name, specialization, license_number, offered in DOCTORS:
        profile = ensure_profile(
            session,
            organization=organization,
            email=email,
            first_name=first_name,
            last_name=last_name,
            role=UserRole.DOCTOR,
        )
        doctor = session.execute(
            select(Doctor).where(Doctor.profile_id == profile.id)
        ).scalar_one_or_none()
        if not doctor:
            doctor = Doctor(
                profile_id=profile.id,
                organization_id=organization.id,
                specialization=specialization,
                license_number=license_number,
            )
            session.add(doctor)
            session.flush()

        linked = set(
            session.execute(
                select(DoctorService.service_id).where(DoctorService.doctor_id == doctor.id)
            ).scalars()
        )
        for service_name in offered:
            service = services[service_name]
            if service.id not in linked:
                session.add(DoctorService(doctor_id=doctor.id, service_id=service.id))
        session.flush()
        doctors.append(doctor)

    logger.info(
        "ensured doctors",
        extra={"organization_id": str(organization.id), "total": len(doctors)},
    )
    return doctors


def ensure_availability(
    session: Session, doctors: Iterable[Doctor], locations: list[Location]
) -> None:
    created = 0
    for index, doctor in enumerate(doctors):
        location = locations[index % len(locations)] if locations else None
        for day, start, end in WEEKLY_BLOCKS:
            existing = session.execute(
                select(DoctorAvailability.id).where(
                    DoctorAvailability.doctor_id == doctor.id,
                    DoctorAvailability.day_of_week == day,
                    DoctorAvailability.start_time == start,
                )
            ).first()
            if existing:
                continue
            session.add(
                DoctorAvailability(
                    doctor_id=doctor.id,
                    location_id=location.id if location else None,
                    day_of_week=day,
                    start_time=start,
                    end_time=end,
                )
            )
            created += 1
    session.flush()
    logger.info("ensured weekly availability", extra={"created": created})


def seed() -> None:
    configure_logging()
    logger.info("starting seed process")

    session = SessionLocal()
    try:
        system.get_config(session)
        organization = ensure_organization(session)
        ensure_users(session, organization)
        services = ensure_services(session, organization)
        locations = ensure_locations(session, organization)
        doctors = ensure_doctors(session, organization, services)
        ensure_availability(session, doctors, locations)
        session.commit()
        logger.info("seed complete", extra={"organization_id": str(organization.id)})
    except Exception:
        session.rollback()
        logger.exception("seed failed")
        raise
    finally:
        session.close()


if __name__ == "__main__":  # pragma: no cover - script entrypoint
    seed()
