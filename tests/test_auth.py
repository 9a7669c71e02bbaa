from sqlalchemy import select

from agentsalud.models import Profile, UserRole
from agentsalud.services import system

from conftest import auth_headers

PASSWORD = "ClaveSegura123"  # pragma: allowlist secret


def register_payload(**overrides):
    payload = {
        "organization_slug": "clinica-norte",
        "email": "Laura.Perez@Correo.com",
        "password": PASSWORD,
        "first_name": "Laura",
        "last_name": "Pérez",
        "phone": "+573001112233",
    }
    payload.update(overrides)
    return payload


def test_register_creates_patient(client, factory, db_session):
    organization = factory.organization(slug="clinica-norte")

    response = client.post("/api/auth/register", json=register_payload())

    assert response.status_code == 201
    body = response.json()
    assert body["access_token"]
    assert body["user"]["email"] == "laura.perez@correo.com"
    assert body["user"]["role"] == "patient"
    assert body["user"]["organization_id"] == str(organization.id)
    stored = db_session.execute(
        select(Profile).where(Profile.email == "laura.perez@correo.com")
    ).scalar_one()
    assert stored.role == UserRole.PATIENT


def test_register_rejects_duplicate_email(client, factory):
    organization = factory.organization(slug="clinica-norte")
    factory.user(organization, email="laura.perez@correo.com")

    response = client.post("/api/auth/register", json=register_payload())

    assert response.status_code == 409
    assert response.json()["code"] == "CONFLICT"


def test_register_unknown_organization(client, factory):
    factory.organization(slug="clinica-norte")

    response = client.post(
        "/api/auth/register", json=register_payload(organization_slug="no-existe")
    )

    assert response.status_code == 404


def test_register_short_password(client, factory):
    factory.organization(slug="clinica-norte")

    response = client.post("/api/auth/register", json=register_payload(password="corta"))

    assert response.status_code == 400
    fields = [item["field"] for item in response.json()["details"]["fields"]]
    assert "password" in fields


def test_register_disabled(client, factory, db_session):
    factory.organization(slug="clinica-norte")
    system.update_config(db_session, {"registration_enabled": False})
    db_session.commit()

    response = client.post("/api/auth/register", json=register_payload())

    assert response.status_code == 403
    assert response.json()["code"] == "REGISTRATION_DISABLED"


def test_register_respects_member_limit(client, factory, db_session):
    organization = factory.organization(slug="clinica-norte")
    factory.user(organization)
    system.update_config(db_session, {"max_users_per_org": 1})
    db_session.commit()

    response = client.post("/api/auth/register", json=register_payload())

    assert response.status_code == 409
    assert response.json()["details"]["maxUsersPerOrg"] == 1
    assert db_session.query(Profile).filter_by(organization_id=organization.id).count() == 1


def test_login_with_json(client, factory):
    organization = factory.organization()
    user = factory.user(organization, email="maria@clinica.com", password=PASSWORD)

    response = client.post(
        "/api/auth/login", json={"email": "MARIA@clinica.com", "password": PASSWORD}
    )

    assert response.status_code == 200
    body = response.json()
    assert body["token_type"] == "bearer"
    assert body["user"]["id"] == str(user.id)
    assert body["user"]["last_sign_in_at"] is not None


def test_login_with_form(client, factory):
    organization = factory.organization()
    factory.user(organization, email="maria@clinica.com", password=PASSWORD)

    response = client.post(
        "/api/auth/login", data={"username": "maria@clinica.com", "password": PASSWORD}
    )

    assert response.status_code == 200
    assert response.json()["access_token"]


def test_login_wrong_password(client, factory):
    organization = factory.organization()
    factory.user(organization, email="maria@clinica.com", password=PASSWORD)

    response = client.post(
        "/api/auth/login", json={"email": "maria@clinica.com", "password": "incorrecta"}
    )

    assert response.status_code == 401
    assert response.json()["code"] == "UNAUTHORIZED"


def test_login_inactive_user(client, factory, db_session):
    organization = factory.organization()
    user = factory.user(organization, email="maria@clinica.com", password=PASSWORD)
    user.is_active = False
    db_session.commit()

    response = client.post(
        "/api/auth/login", json={"email": "maria@clinica.com", "password": PASSWORD}
    )

    assert response.status_code == 401


def test_me_returns_current_user(client, factory):
    organization = factory.organization()
    user = factory.user(organization, UserRole.STAFF)

    response = client.get("/api/auth/me", headers=auth_headers(user))

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["role"] == "staff"
    assert body["data"]["email"] == user.email
