from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from clinica import config, services
from clinica.auth_models import UserRole
from clinica.auth_service import crea_utente
from clinica.db import db_session
from clinica.errors import (
    InvalidTransitionError,
    MissingCommissionRateError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from clinica.models import Evolution, FinancialRecord

EVOLUTION = {"subjective": "Dor abdominal", "assessment": "Gastrite", "plan": "Omeprazol"}


def _count(model) -> int:
    with db_session() as s:
        return s.scalar(select(func.count()).select_from(model))


class TestRegistry:
    def test_professional_requires_medico_role(self, admin):
        with pytest.raises(ValidationError):
            services.crea_professionista(admin["id"], "Cardiologia")

    def test_one_profile_per_user(self, doctor):
        with pytest.raises(ValidationError):
            services.crea_professionista(doctor["user_id"], "Altro")

    def test_commission_out_of_range(self):
        user = crea_utente("x@test.local", "secret123", "X", UserRole.MEDICO)
        with pytest.raises(ValidationError):
            services.crea_professionista(user["id"], "Dermatologia", "1.5")

    def test_update_professional_and_user(self, doctor):
        out = services.aggiorna_professionista(
            doctor["id"],
            professional_data={"commission": "0.35"},
            user_data={"name": "Dr. Gregory House"},
        )
        assert out["commission"] == Decimal("0.35")
        assert out["user"]["name"] == "Dr. Gregory House"
        assert out["user"]["role"] == "medico"

    def test_quick_patient_needs_completion(self, admin):
        p = services.crea_paziente_rapido("Ana Lima", created_by=admin["id"])
        assert p["needs_completion"] is True
        assert p["phone"] == services.QUICK_PHONE_PLACEHOLDER

    def test_quick_patient_name_too_short(self, admin):
        with pytest.raises(ValidationError):
            services.crea_paziente_rapido("Al", created_by=admin["id"])

    def test_patient_requires_phone(self, admin):
        with pytest.raises(ValidationError):
            services.crea_paziente({"name": "Senza Telefono"}, created_by=admin["id"])

    def test_procedure_negative_value(self):
        with pytest.raises(ValidationError):
            services.crea_procedura({"name": "X", "type": "exam", "value": "-1"})

    @pytest.mark.parametrize("value", ["NaN", "Infinity"])
    def test_procedure_non_finite_value(self, value):
        with pytest.raises(ValidationError):
            services.crea_procedura({"name": "X", "type": "exam", "value": value})

    @pytest.mark.parametrize("field, value", [("name", None), ("name", "  "), ("phone", None), ("gender", None), ("needs_completion", None)])
    def test_update_cannot_clear_required_fields(self, patient, field, value):
        with pytest.raises(ValidationError):
            services.aggiorna_paziente(patient["id"], {field: value})
        assert services.get_paziente(patient["id"])["name"] == "Mario Rossi"

    def test_update_can_clear_optional_fields(self, admin):
        p = services.crea_paziente({"name": "Lucia Neri", "phone": "333 7654321", "email": "lucia@example.com"}, created_by=admin["id"])
        assert services.aggiorna_paziente(p["id"], {"email": None})["email"] is None

    def test_missing_patient_is_not_found(self):
        with pytest.raises(NotFoundError):
            services.get_paziente(999)


class TestBooking:
    def test_booking_starts_scheduled(self, book, procedures):
        app = book()
        assert app["status"] == "scheduled"
        assert app["is_pending"] is False
        assert [p["id"] for p in app["procedures"]] == [p["id"] for p in procedures]

    def test_needs_at_least_one_procedure(self, book):
        with pytest.raises(ValidationError):
            book(procedure_ids=[])

    def test_unknown_procedure(self, book):
        with pytest.raises(ValidationError):
            book(procedure_ids=[999])

    def test_pre_registration(self, book, patient):
        app = book(patient_id=None, patient_name="Joana Souza", patient_phone="11 99999")
        assert app["is_pending"] is True
        assert app["patient_name"] == "Joana Souza"

        linked = services.completa_dati_paziente(app["id"], patient["id"])
        assert linked["is_pending"] is False
        assert linked["patient_name"] == patient["name"]

    def test_pre_registration_requires_name(self, book):
        with pytest.raises(ValidationError):
            book(patient_id=None)

    def test_list_by_day(self, book):
        book(hour=9)
        tomorrow = datetime.now().replace(hour=9, minute=0, second=0, microsecond=0) + timedelta(days=1)
        book(scheduled_at=tomorrow)
        assert len(services.lista_appuntamenti(date.today())) == 1
        assert len(services.lista_appuntamenti()) == 2


class TestStatusChanges:
    def test_full_lifecycle_stamps_times(self, book, doctor):
        app = book()
        t1 = datetime(2026, 1, 14, 9, 5)
        t2 = datetime(2026, 1, 14, 9, 20)

        waiting = services.check_in(app["id"], at=t1)
        assert waiting["status"] == "waiting"
        assert waiting["checked_in_at"] == t1.isoformat()

        started = services.inizia_visita(app["id"], professional_id=doctor["id"], at=t2)
        assert started["status"] == "in_progress"
        assert started["started_at"] == t2.isoformat()

    def test_invalid_transition_leaves_status(self, book):
        app = book()
        with pytest.raises(InvalidTransitionError):
            services.cambia_stato(app["id"], "in_progress")
        assert services.get_appuntamento(app["id"])["status"] == "scheduled"

    def test_cancelled_is_terminal(self, book):
        app = book()
        services.annulla_appuntamento(app["id"])
        with pytest.raises(InvalidTransitionError):
            services.check_in(app["id"])

    def test_only_assigned_professional_can_start(self, book):
        app = book()
        services.check_in(app["id"])
        with pytest.raises(PermissionDeniedError):
            services.inizia_visita(app["id"], professional_id=9999)
        assert services.get_appuntamento(app["id"])["status"] == "waiting"

    def test_unknown_appointment(self):
        with pytest.raises(NotFoundError):
            services.check_in(12345)


class TestQueue:
    def test_default_shows_active_in_priority_order(self, book):
        a = book(hour=8)
        b = book(hour=9)
        c = book(hour=10)
        d = book(hour=11)

        services.check_in(b["id"], at=datetime.now().replace(hour=9, minute=15))
        services.check_in(c["id"], at=datetime.now().replace(hour=9, minute=0))
        services.annulla_appuntamento(d["id"])

        ids = [x["id"] for x in services.fila_attesa()]
        assert ids == [c["id"], b["id"], a["id"]]

    def test_status_filters(self, book):
        a = book(hour=8)
        b = book(hour=9)
        services.annulla_appuntamento(b["id"])

        assert [x["id"] for x in services.fila_attesa(status="cancelled")] == [b["id"]]
        assert len(services.fila_attesa(status="all")) == 2
        assert [x["id"] for x in services.fila_attesa(status="scheduled")] == [a["id"]]

    def test_procedure_type_filter(self, book, procedures):
        exam = procedures[1]
        a = book(hour=8, procedure_ids=[procedures[0]["id"]])
        b = book(hour=9, procedure_ids=[exam["id"]])

        assert [x["id"] for x in services.fila_attesa(procedure_type="exam")] == [b["id"]]
        assert len(services.fila_attesa(procedure_type="all")) == 2
        assert a["id"] != b["id"]

    def test_invalid_filters(self):
        with pytest.raises(ValidationError):
            services.fila_attesa(status="archived")
        with pytest.raises(ValidationError):
            services.fila_attesa(procedure_type="surgery")


class TestCompletion:
    def _in_progress(self, book, doctor):
        app = book()
        services.check_in(app["id"])
        services.inizia_visita(app["id"], professional_id=doctor["id"])
        return app

    def test_completion_writes_evolution_record_and_status(self, book, doctor):
        app = self._in_progress(book, doctor)

        out = services.concludi_visita(app["id"], EVOLUTION, professional_id=doctor["id"])

        rec = out["financial_record"]
        assert rec["total_value"] == Decimal("100.00")
        assert rec["clinic_commission"] == Decimal("20.00")
        assert rec["professional_value"] == Decimal("80.00")
        assert out["appointment"]["status"] == "completed"
        assert out["appointment"]["finished_at"] is not None
        assert out["evolution"]["assessment"] == "Gastrite"

    def test_only_performed_procedures_are_billed(self, book, doctor, procedures):
        app = self._in_progress(book, doctor)
        done = [procedures[0]["id"], procedures[2]["id"]]

        out = services.concludi_visita(app["id"], EVOLUTION, performed_procedure_ids=done)
        assert out["financial_record"]["total_value"] == Decimal("70.00")

    def test_unassigned_procedure_rejected(self, book, doctor):
        app = self._in_progress(book, doctor)
        with pytest.raises(ValidationError):
            services.concludi_visita(app["id"], EVOLUTION, performed_procedure_ids=[999])
        assert _count(Evolution) == 0

    def test_not_in_progress_rejected_without_writes(self, book):
        app = book()
        with pytest.raises(InvalidTransitionError):
            services.concludi_visita(app["id"], EVOLUTION)
        assert _count(Evolution) == 0
        assert _count(FinancialRecord) == 0

    def test_second_completion_rejected(self, book, doctor):
        app = self._in_progress(book, doctor)
        services.concludi_visita(app["id"], EVOLUTION)
        with pytest.raises(ValidationError):
            services.concludi_visita(app["id"], EVOLUTION)
        assert _count(FinancialRecord) == 1

    def test_wrong_professional(self, book, doctor):
        app = self._in_progress(book, doctor)
        with pytest.raises(PermissionDeniedError):
            services.concludi_visita(app["id"], EVOLUTION, professional_id=doctor["id"] + 1)

    def test_failing_financial_write_rolls_back_everything(self, book, doctor, monkeypatch):
        app = self._in_progress(book, doctor)

        def boom(*args, **kwargs):
            raise RuntimeError("financial failure")

        monkeypatch.setattr(services, "split_for_procedures", boom)
        with pytest.raises(RuntimeError):
            services.concludi_visita(app["id"], EVOLUTION)

        assert _count(Evolution) == 0
        assert _count(FinancialRecord) == 0
        assert services.get_appuntamento(app["id"])["status"] == "in_progress"

    def test_missing_commission_in_strict_mode_rolls_back(self, book, doctor, monkeypatch):
        services.aggiorna_professionista(doctor["id"], professional_data={"commission": None})
        app = self._in_progress(book, doctor)
        monkeypatch.setattr(config, "REQUIRE_COMMISSION_RATE", True)

        with pytest.raises(MissingCommissionRateError):
            services.concludi_visita(app["id"], EVOLUTION)
        assert services.get_appuntamento(app["id"])["status"] == "in_progress"

    def test_financial_module_disabled(self, book, doctor, monkeypatch):
        monkeypatch.setattr(config, "FINANCIAL_MODULE_ENABLED", False)
        app = self._in_progress(book, doctor)

        out = services.concludi_visita(app["id"], EVOLUTION)
        assert out["financial_record"] is None
        assert out["appointment"]["status"] == "completed"
        assert _count(FinancialRecord) == 0

    def test_patient_history(self, book, doctor, patient):
        app = self._in_progress(book, doctor)
        services.concludi_visita(app["id"], EVOLUTION)

        history = services.evoluzioni_per_paziente(patient["id"])
        assert len(history) == 1
        assert history[0]["professional_name"] == "Dr. House"
        assert history[0]["appointment"]["id"] == app["id"]
        assert len(services.evoluzioni_per_appuntamento(app["id"])) == 1
