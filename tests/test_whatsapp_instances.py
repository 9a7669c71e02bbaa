import httpx
import pytest
from sqlalchemy import select

from agentsalud.core.config import settings
from agentsalud.models import AuditLog, UserRole, WhatsAppInstance, WhatsAppInstanceStatus
from agentsalud.services import notifications, whatsapp_client

from conftest import auth_headers


@pytest.fixture
def clinic(factory):
    organization = factory.organization()
    return {
        "organization": organization,
        "admin": factory.user(organization, UserRole.ADMIN),
        "staff": factory.user(organization, UserRole.STAFF),
    }


@pytest.fixture
def evolution(monkeypatch):
    """Route live Evolution calls to an in-process handler."""

    calls: list[httpx.Request] = []
    replies: dict[str, httpx.Response] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        for prefix, response in replies.items():
            if request.url.path.startswith(prefix):
                return response
        return httpx.Response(200, json={"key": {"id": "EVO-1"}})

    real_client = httpx.Client
    monkeypatch.setattr(settings, "whatsapp_mock_mode", False)
    monkeypatch.setattr(settings, "evolution_api_key", "clave")
    monkeypatch.setattr(settings, "evolution_instance_name", "global")
    monkeypatch.setattr(settings, "evolution_api_base_url", "http://evolution.local")
    monkeypatch.setattr(
        whatsapp_client.httpx,
        "Client",
        lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs),
    )
    return calls, replies


def add_instance(db_session, organization, name="clinica-norte", status=None):
    instance = WhatsAppInstance(
        organization_id=organization.id,
        instance_name=name,
        status=status or WhatsAppInstanceStatus.CONNECTING,
    )
    db_session.add(instance)
    db_session.commit()
    db_session.refresh(instance)
    return instance


def test_admin_creates_instance_with_qr(client, clinic, db_session):
    response = client.post(
        "/api/whatsapp/instances",
        json={"instance_name": "clinica-norte", "phone_number": "+57 300 111 2233"},
        headers=auth_headers(clinic["admin"]),
    )

    assert response.status_code == 201
    data = response.json()["data"]
    assert data["instance"]["status"] == "connecting"
    assert data["instance"]["organization_id"] == str(clinic["organization"].id)
    assert data["qrCode"].startswith("data:image/png;base64,")
    assert data["nextStep"] == "scan_qr"
    stored = db_session.execute(select(WhatsAppInstance)).scalar_one()
    assert stored.instance_name == "clinica-norte"
    actions = db_session.execute(select(AuditLog.action)).scalars().all()
    assert "whatsapp_instance.create" in actions


def test_skip_connection_starts_inactive(client, clinic):
    response = client.post(
        "/api/whatsapp/instances",
        json={"instance_name": "clinica-norte", "skipConnection": True},
        headers=auth_headers(clinic["admin"]),
    )

    data = response.json()["data"]
    assert data["instance"]["status"] == "inactive"
    assert data["qrCode"] is None
    assert data["nextStep"] == "request_qr"


def test_duplicate_instance_name_conflicts(client, clinic, factory, db_session):
    add_instance(db_session, factory.organization(), name="clinica-norte")

    response = client.post(
        "/api/whatsapp/instances",
        json={"instance_name": "clinica-norte"},
        headers=auth_headers(clinic["admin"]),
    )

    assert response.status_code == 409
    assert response.json()["code"] == "DUPLICATE_INSTANCE_NAME"


def test_invalid_instance_name(client, clinic):
    response = client.post(
        "/api/whatsapp/instances",
        json={"instance_name": "clínica norte"},
        headers=auth_headers(clinic["admin"]),
    )

    assert response.status_code == 400
    assert response.json()["details"]["field"] == "instance_name"


def test_staff_cannot_manage_instances(client, clinic):
    response = client.get("/api/whatsapp/instances", headers=auth_headers(clinic["staff"]))

    assert response.status_code == 403
    assert response.json()["details"]["requiredRoles"] == ["admin", "superadmin"]


def test_admin_cannot_reach_another_organization(client, clinic, factory, db_session):
    foreign = add_instance(db_session, factory.organization(), name="otra-clinica")
    headers = auth_headers(clinic["admin"])

    assert client.get(f"/api/whatsapp/instances/{foreign.id}", headers=headers).status_code == 403
    created = client.post(
        "/api/whatsapp/instances",
        json={"instance_name": "intruso", "organizationId": str(foreign.organization_id)},
        headers=headers,
    )
    assert created.status_code == 403


def test_list_is_scoped_to_the_organization(client, clinic, factory, db_session):
    add_instance(db_session, clinic["organization"], name="propia")
    add_instance(db_session, factory.organization(), name="ajena")
    superadmin = factory.user(None, UserRole.SUPERADMIN)

    own = client.get("/api/whatsapp/instances", headers=auth_headers(clinic["admin"])).json()
    assert [item["instance_name"] for item in own["data"]] == ["propia"]

    everything = client.get("/api/whatsapp/instances", headers=auth_headers(superadmin)).json()
    assert everything["total"] == 2


def test_qr_code_for_pairing_instance(client, clinic, db_session):
    instance = add_instance(db_session, clinic["organization"])

    response = client.get(
        f"/api/whatsapp/instances/{instance.id}/qrcode", headers=auth_headers(clinic["admin"])
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["qrCode"].startswith("data:image/png;base64,")
    assert data["expiresIn"] == 60


def test_qr_code_refused_once_connected(client, clinic, db_session):
    instance = add_instance(db_session, clinic["organization"], status=WhatsAppInstanceStatus.ACTIVE)

    response = client.post(
        f"/api/whatsapp/instances/{instance.id}/qrcode", headers=auth_headers(clinic["admin"])
    )

    assert response.status_code == 409
    assert response.json()["code"] == "ALREADY_CONNECTED"


def test_status_reads_live_connection_state(client, clinic, db_session, evolution):
    calls, replies = evolution
    replies["/instance/connectionState/"] = httpx.Response(
        200, json={"instance": {"instanceName": "clinica-norte", "state": "open"}}
    )
    instance = add_instance(db_session, clinic["organization"])

    response = client.get(
        f"/api/whatsapp/instances/{instance.id}/status", headers=auth_headers(clinic["admin"])
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["connectionState"] == "open"
    assert data["status"] == "active"
    assert data["last_connected_at"] is not None
    assert str(calls[0].url) == "http://evolution.local/instance/connectionState/clinica-norte"
    assert calls[0].headers["apikey"] == "clave"


def test_evolution_failure_is_a_bad_gateway(client, clinic, db_session, evolution):
    _calls, replies = evolution
    replies["/instance/restart/"] = httpx.Response(500, json={"message": "boom"})
    instance = add_instance(db_session, clinic["organization"])

    response = client.post(
        f"/api/whatsapp/instances/{instance.id}/reconnect", headers=auth_headers(clinic["admin"])
    )

    assert response.status_code == 502
    body = response.json()
    assert body["code"] == "EVOLUTION_API_ERROR"
    assert body["details"]["operation"] == "restart_instance"


def test_reconnect_moves_to_connecting(client, clinic, db_session):
    instance = add_instance(db_session, clinic["organization"], status=WhatsAppInstanceStatus.INACTIVE)

    response = client.post(
        f"/api/whatsapp/instances/{instance.id}/reconnect", headers=auth_headers(clinic["admin"])
    )

    assert response.status_code == 200
    assert response.json()["data"]["status"] == "connecting"


def test_manual_status_changes(client, clinic, db_session):
    instance = add_instance(db_session, clinic["organization"])
    headers = auth_headers(clinic["admin"])

    suspended = client.put(
        f"/api/whatsapp/instances/{instance.id}", json={"status": "suspended"}, headers=headers
    )
    assert suspended.json()["data"]["status"] == "suspended"

    forced = client.put(
        f"/api/whatsapp/instances/{instance.id}", json={"status": "active"}, headers=headers
    )
    assert forced.status_code == 400


def test_delete_instance(client, clinic, db_session):
    instance = add_instance(db_session, clinic["organization"])

    response = client.delete(
        f"/api/whatsapp/instances/{instance.id}", headers=auth_headers(clinic["admin"])
    )

    assert response.status_code == 200
    db_session.expire_all()
    assert db_session.get(WhatsAppInstance, instance.id) is None


def test_messages_use_the_organization_instance(clinic, factory, db_session, evolution):
    calls, _replies = evolution
    add_instance(db_session, clinic["organization"], name="pairing")
    add_instance(
        db_session, clinic["organization"], status=WhatsAppInstanceStatus.ACTIVE
    )

    entry = notifications.send_whatsapp(
        db_session, organization_id=clinic["organization"].id, to="573001234567", text="Hola"
    )

    assert entry.status == "sent"
    assert entry.metadata_json["instance"] == "clinica-norte"
    assert str(calls[-1].url) == "http://evolution.local/message/sendText/clinica-norte"

    other = factory.organization()
    notifications.send_whatsapp(db_session, organization_id=other.id, to="573001234567", text="Hola")
    assert str(calls[-1].url) == "http://evolution.local/message/sendText/global"


def test_suspended_instance_never_sends(clinic, db_session, evolution):
    calls, _replies = evolution
    add_instance(db_session, clinic["organization"], status=WhatsAppInstanceStatus.SUSPENDED)

    notifications.send_whatsapp(
        db_session, organization_id=clinic["organization"].id, to="573001234567", text="Hola"
    )

    assert str(calls[-1].url).endswith("/message/sendText/global")


def test_connection_webhook_updates_instance(client, clinic, db_session):
    instance = add_instance(db_session, clinic["organization"])

    response = client.post(
        f"/api/webhooks/evolution/{clinic['organization'].id}",
        json={"event": "connection.update", "instance": "clinica-norte", "data": {"state": "open"}},
    )

    assert response.status_code == 200
    assert response.json()["statusUpdates"] == 1
    db_session.expire_all()
    stored = db_session.get(WhatsAppInstance, instance.id)
    assert stored.status == WhatsAppInstanceStatus.ACTIVE
    assert stored.qr_code is None


def test_default_webhook_resolves_organization_from_instance(client, clinic, db_session, monkeypatch):
    monkeypatch.setattr(settings, "whatsapp_default_organization_id", None)
    instance = add_instance(db_session, clinic["organization"])

    response = client.post(
        "/api/webhooks/evolution",
        json={
            "event": "qrcode.updated",
            "instance": "clinica-norte",
            "data": {"qrcode": {"base64": "data:image/png;base64,nuevo"}},
        },
    )

    assert response.status_code == 200
    db_session.expire_all()
    assert db_session.get(WhatsAppInstance, instance.id).qr_code == "data:image/png;base64,nuevo"

    unknown = client.post(
        "/api/webhooks/evolution",
        json={"event": "connection.update", "instance": "desconocida", "data": {"state": "open"}},
    )
    assert unknown.status_code == 404
