import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RATE_LIMIT_REQUESTS"] = "100000"
os.environ["REMINDERS_ENABLED"] = "false"
os.environ["WHATSAPP_MOCK_MODE"] = "true"
os.environ["BCRYPT_ROUNDS"] = "4"

from datetime import date, datetime, time, timezone  # noqa: E402

import fakeredis  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from agentsalud.db.base import Base  # noqa: E402
from agentsalud.db.session import get_db  # noqa: E402
from agentsalud.main import app, rate_limiter  # noqa: E402
from agentsalud.models import (  # noqa: E402
    Appointment,
    AppointmentOrigin,
    AppointmentStatus,
    Doctor,
    DoctorAvailability,
    DoctorService,
    Location,
    Organization,
    Profile,
    Service,
    UserRole,
)
from agentsalud.security import create_access_token, hash_password  # noqa: E402
from agentsalud.services import cache, dates  # noqa: E402

# Wednesday 2025-03-05, 10:00 in America/Bogota.
FROZEN_NOW = datetime(2025, 3, 5, 15, 0, tzinfo=timezone.utc)
TODAY = date(2025, 3, 5)
TOMORROW = date(2025, 3, 6)
SATURDAY = date(2025, 3, 8)

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture(autouse=True)
def frozen_clock(monkeypatch):
    monkeypatch.setattr(dates, "utcnow", lambda: FROZEN_NOW)
    return FROZEN_NOW


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    server = fakeredis.FakeRedis(decode_responses=True)
    monkeypatch.setattr(cache, "get_client", lambda: server)
    return server


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    rate_limiter.reset()
    yield
    rate_limiter.reset()


@pytest.fixture
def db_session():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(db_session):
    def _override_get_db():
        try:
            yield db_session
            db_session.commit()
        except Exception:
            db_session.rollback()
            raise

    app.dependency_overrides[get_db] = _override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.pop(get_db, None)


def auth_headers(user: Profile) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(str(user.id))}"}


class Factory:
    """Builds committed rows for API and service tests."""

    def __init__(self, db) -> None:
        self.db = db
        self._counter = 0

    def _next(self) -> int:
        self._counter += 1
        return self._counter

    def _save(self, entity):
        self.db.add(entity)
        self.db.commit()
        self.db.refresh(entity)
        return entity

    def organization(self, slug: str | None = None, **booking_settings) -> Organization:
        number = self._next()
        settings = {"weekend_booking_enabled": True}
        settings.update(booking_settings)
        return self._save(
            Organization(
                name=f"Clínica {number}",
                slug=slug or f"clinica-{number}",
                timezone="America/Bogota",
                booking_settings=settings,
            )
        )

    def user(
        self,
        organization: Organization | None,
        role: UserRole = UserRole.PATIENT,
        *,
        email: str | None = None,
        first_name: str = "Paciente",
        last_name: str | None = None,
        phone: str | None = None,
        password: str | None = None,
    ) -> Profile:
        number = self._next()
        return self._save(
            Profile(
                organization_id=organization.id if organization else None,
                email=email or f"{role.value}{number}@clinica.com",
                first_name=first_name,
                last_name=last_name or f"Prueba {number}",
                phone=phone,
                role=role,
                password_hash=hash_password(password) if password else None,
            )
        )

    def service(
        self, organization: Organization, name: str = "Consulta General", duration: int = 30
    ) -> Service:
        return self._save(
            Service(
                organization_id=organization.id,
                name=name,
                duration_minutes=duration,
                price_cents=5000000,
            )
        )

    def location(self, organization: Organization, name: str = "Sede Principal") -> Location:
        return self._save(Location(organization_id=organization.id, name=name))

    def doctor(
        self,
        organization: Organization,
        *,
        services: tuple[Service, ...] = (),
        first_name: str = "Ana",
        last_name: str | None = None,
        blocks: tuple[tuple[time, time], ...] = ((time(8, 0), time(18, 0)),),
        days: tuple[int, ...] = tuple(range(7)),
        location: Location | None = None,
    ) -> Doctor:
        profile = self.user(
            organization, UserRole.DOCTOR, first_name=first_name, last_name=last_name
        )
        doctor = self._save(
            Doctor(
                profile_id=profile.id,
                organization_id=organization.id,
                specialization="Medicina General",
            )
        )
        for service in services:
            self.db.add(DoctorService(doctor_id=doctor.id, service_id=service.id))
        for day in days:
            for start, end in blocks:
                self.db.add(
                    DoctorAvailability(
                        doctor_id=doctor.id,
                        location_id=location.id if location else None,
                        day_of_week=day,
                        start_time=start,
                        end_time=end,
                    )
                )
        self.db.commit()
        self.db.refresh(doctor)
        return doctor

    def appointment(
        self,
        doctor: Doctor,
        patient: Profile,
        *,
        on: date = TOMORROW,
        start: time = time(9, 0),
        minutes: int = 30,
        status: AppointmentStatus = AppointmentStatus.CONFIRMED,
        service: Service | None = None,
    ) -> Appointment:
        return self._save(
            Appointment(
                organization_id=doctor.organization_id,
                patient_id=patient.id,
                doctor_id=doctor.id,
                service_id=service.id if service else None,
                appointment_date=on,
                start_time=start,
                end_time=dates.add_minutes(start, minutes),
                duration_minutes=minutes,
                status=status,
                origin=AppointmentOrigin.WEB,
            )
        )


@pytest.fixture
def factory(db_session) -> Factory:
    return Factory(db_session)
