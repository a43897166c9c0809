from datetime import datetime
from decimal import Decimal

import pytest

ADMIN = ("admin@clinica.com", "admin123")
MEDICO = ("medico@clinica.com", "medico123")
RECEPCAO = ("recepcao@clinica.com", "recepcao123")


def money(value) -> Decimal:
    return Decimal(str(value))


def auth(client, credentials):
    email, password = credentials
    r = client.post("/api/auth/login", data={"username": email, "password": password})
    assert r.status_code == 200, r.text
    return {"Authorization": f"Bearer {r.json()['access_token']}"}


@pytest.fixture
def headers(client):
    return {"admin": auth(client, ADMIN), "medico": auth(client, MEDICO), "recepcao": auth(client, RECEPCAO)}


@pytest.fixture
def appointment(client, headers):
    """Appuntamento di oggi con paziente rapido e tutte le procedure del seed."""
    h = headers["recepcao"]
    patient = client.post("/api/patients/quick", json={"name": "Carlos Pereira"}, headers=h).json()
    prof = client.get("/api/professionals", headers=h).json()[0]
    procs = client.get("/api/procedures", headers=h).json()
    when = datetime.now().replace(hour=10, minute=0, second=0, microsecond=0)
    r = client.post(
        "/api/appointments",
        json={
            "professional_id": prof["id"],
            "patient_id": patient["id"],
            "scheduled_at": when.isoformat(),
            "procedure_ids": [p["id"] for p in procs],
        },
        headers=h,
    )
    assert r.status_code == 201, r.text
    return r.json()


class TestAuth:
    def test_login_returns_user(self, client):
        r = client.post("/api/auth/login", data={"username": "ADMIN@clinica.com", "password": "admin123"})
        assert r.status_code == 200
        body = r.json()
        assert body["token_type"] == "bearer"
        assert body["user"]["role"] == "admin"
        assert "password_hash" not in body["user"]

    def test_wrong_password(self, client):
        r = client.post("/api/auth/login", data={"username": ADMIN[0], "password": "nope"})
        assert r.status_code == 401

    def test_missing_token(self, client):
        assert client.get("/api/patients").status_code == 401

    def test_garbage_token(self, client):
        r = client.get("/api/patients", headers={"Authorization": "Bearer not-a-jwt"})
        assert r.status_code == 401

    def test_current_user_of_medico_has_professional(self, client, headers):
        r = client.get("/api/auth/current-user", headers=headers["medico"])
        assert r.status_code == 200
        assert r.json()["professional_id"] is not None

    def test_register_and_cannot_self_promote(self, client):
        r = client.post(
            "/api/auth/register",
            json={"email": "nova@clinica.com", "password": "secret123", "name": "Nova"},
        )
        assert r.status_code == 201
        h = auth(client, ("nova@clinica.com", "secret123"))
        assert client.put("/api/profile", json={"role": "admin"}, headers=h).status_code == 403

    def test_register_as_admin_forbidden(self, client):
        r = client.post(
            "/api/auth/register",
            json={"email": "x@clinica.com", "password": "secret123", "name": "X", "role": "admin"},
        )
        assert r.status_code == 403

    def test_duplicate_email(self, client):
        r = client.post(
            "/api/auth/register",
            json={"email": RECEPCAO[0], "password": "secret123", "name": "Dup"},
        )
        assert r.status_code == 400


class TestRoles:
    def test_users_admin_only(self, client, headers):
        assert client.get("/api/users", headers=headers["admin"]).status_code == 200
        assert client.get("/api/users", headers=headers["recepcao"]).status_code == 403

    def test_procedure_creation_admin_only(self, client, headers):
        payload = {"name": "COLONOSCOPIA", "type": "exam", "value": "400.00"}
        assert client.post("/api/procedures", json=payload, headers=headers["medico"]).status_code == 403
        r = client.post("/api/procedures", json=payload, headers=headers["admin"])
        assert r.status_code == 201
        assert money(r.json()["value"]) == Decimal("400")

    def test_financial_closed_to_reception(self, client, headers):
        assert client.get("/api/financial/summary", headers=headers["recepcao"]).status_code == 403


class TestAppointmentFlow:
    def test_full_flow(self, client, headers, appointment):
        app_id = appointment["id"]
        assert appointment["status"] == "scheduled"
        assert appointment["patient_needs_completion"] is True

        r = client.post(f"/api/appointments/{app_id}/check-in", headers=headers["recepcao"])
        assert r.status_code == 200
        assert r.json()["status"] == "waiting"

        queue = client.get("/api/queue", headers=headers["medico"]).json()
        assert [a["id"] for a in queue] == [app_id]

        r = client.post(f"/api/appointments/{app_id}/start", headers=headers["medico"])
        assert r.status_code == 200
        assert r.json()["status"] == "in_progress"

        r = client.post(
            "/api/evolutions",
            json={"appointment_id": app_id, "subjective": "Azia", "plan": "Dieta"},
            headers=headers["medico"],
        )
        assert r.status_code == 201, r.text
        rec = r.json()["financial_record"]
        # seed: 250 + 250, clinica 30%
        assert money(rec["total_value"]) == Decimal("500")
        assert money(rec["clinic_commission"]) == Decimal("150")
        assert money(rec["professional_value"]) == Decimal("350")

        summary = client.get("/api/financial/summary", headers=headers["admin"]).json()
        assert summary["records"] == 1
        assert money(summary["total_value"]) == Decimal("500")

        history = client.get(f"/api/evolutions/appointment/{app_id}", headers=headers["recepcao"]).json()
        assert history[0]["subjective"] == "Azia"

    def test_invalid_transition_is_400(self, client, headers, appointment):
        r = client.patch(
            f"/api/appointments/{appointment['id']}/status",
            json={"status": "in_progress"},
            headers=headers["medico"],
        )
        assert r.status_code == 400
        assert "detail" in r.json()

    def test_status_endpoint_cannot_complete(self, client, headers, appointment):
        r = client.patch(
            f"/api/appointments/{appointment['id']}/status",
            json={"status": "completed"},
            headers=headers["admin"],
        )
        assert r.status_code == 400

    def test_reception_cannot_start(self, client, headers, appointment):
        client.post(f"/api/appointments/{appointment['id']}/check-in", headers=headers["recepcao"])
        r = client.post(f"/api/appointments/{appointment['id']}/start", headers=headers["recepcao"])
        assert r.status_code == 403

    def test_other_doctor_cannot_start(self, client, headers, appointment):
        h = headers["admin"]
        user = client.post(
            "/api/users",
            json={"email": "outro@clinica.com", "password": "secret123", "name": "Dr. Outro", "role": "medico"},
            headers=h,
        ).json()
        client.post("/api/professionals", json={"user_id": user["id"], "specialty": "Cardiologia"}, headers=h)
        other = auth(client, ("outro@clinica.com", "secret123"))

        client.post(f"/api/appointments/{appointment['id']}/check-in", headers=headers["recepcao"])
        r = client.post(f"/api/appointments/{appointment['id']}/start", headers=other)
        assert r.status_code == 403

    def test_cancel_then_check_in_rejected(self, client, headers, appointment):
        app_id = appointment["id"]
        assert client.post(f"/api/appointments/{app_id}/cancel", headers=headers["recepcao"]).status_code == 200
        assert client.post(f"/api/appointments/{app_id}/check-in", headers=headers["recepcao"]).status_code == 400

    def test_unknown_appointment_is_404(self, client, headers):
        assert client.get("/api/appointments/999", headers=headers["admin"]).status_code == 404


class TestFinancialPreview:
    def test_preview(self, client, headers):
        r = client.post(
            "/api/financial/preview",
            json={"values": ["50.00", "30.00", "20.00"], "commission_rate": "0.20"},
            headers=headers["recepcao"],
        )
        assert r.status_code == 200
        assert r.json() == {
            "total_value": "100.00",
            "commission_rate": "0.20",
            "clinic_commission": "20.00",
            "professional_value": "80.00",
        }


class TestPatients:
    def test_update_rejects_clearing_required_fields(self, client, headers):
        h = headers["recepcao"]
        r = client.post("/api/patients", json={"name": "Giulia Bianchi", "phone": "333 1112223"}, headers=h)
        assert r.status_code == 201, r.text
        patient_id = r.json()["id"]

        for payload in ({"name": None}, {"phone": None}, {"gender": None}, {"needs_completion": None}, {"name": "   "}):
            assert client.put(f"/api/patients/{patient_id}", json=payload, headers=h).status_code == 400

        r = client.put(f"/api/patients/{patient_id}", json={"email": None, "profession": "Insegnante"}, headers=h)
        assert r.status_code == 200
        assert r.json()["name"] == "Giulia Bianchi"
        assert r.json()["profession"] == "Insegnante"


class TestQueueScope:
    def test_medico_without_profile_gets_404(self, client, headers, appointment):
        client.post(
            "/api/users",
            json={"email": "senza.profilo@clinica.com", "password": "secret123", "name": "Dr. Senza", "role": "medico"},
            headers=headers["admin"],
        )
        h = auth(client, ("senza.profilo@clinica.com", "secret123"))
        assert client.get("/api/queue", headers=h).status_code == 404

    def test_medico_sees_own_queue(self, client, headers, appointment):
        r = client.get("/api/queue", headers=headers["medico"])
        assert r.status_code == 200
        assert [a["id"] for a in r.json()] == [appointment["id"]]
