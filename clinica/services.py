from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import and_, select, update
from sqlalchemy.orm import Session, selectinload

from . import config
from .auth_models import User, UserRole
from .db import Base, db_session, engine
from .errors import NotFoundError, PermissionDeniedError, ValidationError
from .financial import split_for_procedures, to_decimal, validate_rate
from .models import (
    Appointment,
    AppointmentProcedure,
    AppointmentStatus,
    Evolution,
    FinancialRecord,
    Gender,
    Patient,
    Procedure,
    ProcedureType,
    Professional,
)
from .workflow import ACTIVE_QUEUE_STATUSES, as_status, ensure_transition, order_queue

logger = logging.getLogger(__name__)

QUICK_PHONE_PLACEHOLDER = "A preencher"

PATIENT_FIELDS = (
    "name", "email", "phone", "cpf", "rg", "profession", "birth_date",
    "gender", "address", "observations", "needs_completion",
)
# colonne NOT NULL: non si possono azzerare in aggiornamento
PATIENT_REQUIRED = ("name", "phone", "gender", "needs_completion")
PROCEDURE_FIELDS = ("name", "description", "type", "value")
EVOLUTION_FIELDS = (
    "subjective", "objective", "assessment", "plan",
    "diagnostics", "prescription", "exams",
    "symptoms", "diagnosis", "notes",
)


# =========================
# Bootstrap DB
# =========================
def init_db() -> None:
    """Crea le tabelle se non esistono."""
    Base.metadata.create_all(bind=engine)


# =========================
# Helper / DTO flat
# =========================
# Le funzioni pubbliche restituiscono dict costruiti dentro la sessione:
# niente lazy-load fuori sessione (DetachedInstanceError).
def _iso(value: datetime | date | None) -> str | None:
    return value.isoformat() if value else None


def procedure_flat(p: Procedure) -> dict[str, Any]:
    return {
        "id": p.id,
        "name": p.name,
        "description": p.description,
        "type": p.type.value,
        "value": p.value,
    }


def professional_flat(p: Professional) -> dict[str, Any]:
    return {
        "id": p.id,
        "user_id": p.user_id,
        "specialty": p.specialty,
        "commission": p.commission,
        "user": {"id": p.user.id, "name": p.user.name, "email": p.user.email, "role": p.user.role.value}
        if p.user
        else None,
    }


def patient_flat(p: Patient) -> dict[str, Any]:
    return {
        "id": p.id,
        "name": p.name,
        "email": p.email,
        "phone": p.phone,
        "cpf": p.cpf,
        "rg": p.rg,
        "profession": p.profession,
        "birth_date": _iso(p.birth_date),
        "gender": p.gender.value,
        "address": p.address,
        "observations": p.observations,
        "created_by": p.created_by,
        "needs_completion": p.needs_completion,
    }


def appointment_flat(a: Appointment) -> dict[str, Any]:
    patient = a.patient
    prof = a.professional
    return {
        "id": a.id,
        "patient_id": a.patient_id,
        "patient_name": patient.name if patient else a.patient_name,
        "patient_phone": patient.phone if patient else a.patient_phone,
        "patient_needs_completion": bool(patient and patient.needs_completion),
        "professional_id": a.professional_id,
        "professional_name": prof.user.name if prof and prof.user else None,
        "specialty": prof.specialty if prof else None,
        "scheduled_at": _iso(a.scheduled_at),
        "status": a.status.value,
        "notes": a.notes,
        "is_pending": a.is_pending,
        "checked_in_at": _iso(a.checked_in_at),
        "started_at": _iso(a.started_at),
        "finished_at": _iso(a.finished_at),
        "procedures": [procedure_flat(p) for p in a.procedures],
    }


def evolution_flat(e: Evolution) -> dict[str, Any]:
    data = {
        "id": e.id,
        "appointment_id": e.appointment_id,
        "professional_id": e.professional_id,
        "patient_id": e.patient_id,
        "created_at": _iso(e.created_at),
    }
    data.update({f: getattr(e, f) for f in EVOLUTION_FIELDS})
    return data


def financial_record_flat(r: FinancialRecord) -> dict[str, Any]:
    return {
        "id": r.id,
        "appointment_id": r.appointment_id,
        "professional_id": r.professional_id,
        "total_value": r.total_value,
        "commission_rate": r.commission_rate,
        "clinic_commission": r.clinic_commission,
        "professional_value": r.professional_value,
        "created_at": _iso(r.created_at),
    }


def _day_bounds(giorno: date) -> tuple[datetime, datetime]:
    start = datetime.combine(giorno, datetime.min.time())
    return start, start + timedelta(days=1)


def _appointment_query():
    return select(Appointment).options(
        selectinload(Appointment.patient),
        selectinload(Appointment.procedures),
        selectinload(Appointment.professional).selectinload(Professional.user),
    )


def _get_or_404(s: Session, model: type, obj_id: int, label: str):
    obj = s.get(model, obj_id)
    if obj is None:
        raise NotFoundError(f"{label} non trovato.")
    return obj


# =========================
# Professionisti
# =========================
def crea_professionista(user_id: int, specialty: str, commission: Any | None = None) -> dict[str, Any]:
    with db_session() as s:
        user = s.get(User, user_id)
        if not user:
            raise ValidationError("Utente non trovato.")
        if user.role != UserRole.MEDICO:
            raise ValidationError("L'utente non è un medico.")
        if s.execute(select(Professional).where(Professional.user_id == user_id)).scalar_one_or_none():
            raise ValidationError("Profilo professionale già esistente per questo utente.")

        p = Professional(
            user_id=user_id,
            specialty=specialty.strip(),
            commission=validate_rate(commission) if commission is not None else None,
        )
        s.add(p)
        s.flush()
        if p.commission is None:
            logger.warning("Professionista %s creato senza commissione", p.id)
        return professional_flat(p)


def get_professionista(professional_id: int) -> dict[str, Any]:
    with db_session() as s:
        return professional_flat(_get_or_404(s, Professional, professional_id, "Professionista"))


def get_professionista_by_user(user_id: int) -> dict[str, Any] | None:
    with db_session() as s:
        p = s.execute(select(Professional).where(Professional.user_id == user_id)).scalar_one_or_none()
        return professional_flat(p) if p else None


def lista_professionisti() -> list[dict[str, Any]]:
    with db_session() as s:
        q = select(Professional).options(selectinload(Professional.user)).order_by(Professional.id)
        return [professional_flat(p) for p in s.scalars(q)]


def aggiorna_professionista(
    professional_id: int,
    professional_data: dict[str, Any] | None = None,
    user_data: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Aggiorna profilo e, opzionalmente, l'utente collegato (che resta sempre medico)."""
    with db_session() as s:
        p = _get_or_404(s, Professional, professional_id, "Professionista")

        if user_data:
            email = user_data.get("email")
            if email:
                email = email.strip().lower()
                clash = s.execute(select(User).where(User.email == email, User.id != p.user_id)).scalar_one_or_none()
                if clash:
                    raise ValidationError("Questa email è già in uso.")
                p.user.email = email
            for key in ("name", "phone", "is_active"):
                if user_data.get(key) is not None:
                    setattr(p.user, key, user_data[key])
            p.user.role = UserRole.MEDICO

        if professional_data:
            if professional_data.get("specialty"):
                p.specialty = professional_data["specialty"].strip()
            if "commission" in professional_data:
                c = professional_data["commission"]
                p.commission = validate_rate(c) if c is not None else None

        s.flush()
        return professional_flat(p)


# =========================
# Pazienti
# =========================
def _patient_values(data: dict[str, Any]) -> dict[str, Any]:
    values = {k: v for k, v in data.items() if k in PATIENT_FIELDS}
    for key in PATIENT_REQUIRED:
        if key in values and (values[key] is None or (isinstance(values[key], str) and not values[key].strip())):
            raise ValidationError(f"Campo obbligatorio del paziente: {key}")
    if "gender" in values and values["gender"] is not None and not isinstance(values["gender"], Gender):
        try:
            values["gender"] = Gender(values["gender"])
        except ValueError:
            raise ValidationError(f"Genere non valido: {values['gender']}") from None
    return values


def crea_paziente(data: dict[str, Any], created_by: int) -> dict[str, Any]:
    values = _patient_values(data)
    if not (values.get("name") or "").strip():
        raise ValidationError("Il nome del paziente è obbligatorio.")
    if not (values.get("phone") or "").strip():
        raise ValidationError("Il telefono del paziente è obbligatorio.")

    with db_session() as s:
        p = Patient(created_by=created_by, **values)
        p.name = p.name.strip()
        s.add(p)
        s.flush()
        return patient_flat(p)


def crea_paziente_rapido(name: str, created_by: int, phone: str | None = None) -> dict[str, Any]:
    """Cadastro rapido: solo il nome, il resto si completa al check-in."""
    name = (name or "").strip()
    if len(name) < 3:
        raise ValidationError("Il nome del paziente è obbligatorio (almeno 3 caratteri).")

    with db_session() as s:
        p = Patient(
            name=name,
            phone=phone or QUICK_PHONE_PLACEHOLDER,
            gender=Gender.OTHER,
            observations="Cadastro rapido - completare al check-in",
            created_by=created_by,
            needs_completion=True,
        )
        s.add(p)
        s.flush()
        return patient_flat(p)


def get_paziente(patient_id: int) -> dict[str, Any]:
    with db_session() as s:
        return patient_flat(_get_or_404(s, Patient, patient_id, "Paziente"))


def lista_pazienti() -> list[dict[str, Any]]:
    with db_session() as s:
        return [patient_flat(p) for p in s.scalars(select(Patient).order_by(Patient.name))]


def aggiorna_paziente(patient_id: int, data: dict[str, Any]) -> dict[str, Any]:
    with db_session() as s:
        p = _get_or_404(s, Patient, patient_id, "Paziente")
        for key, value in _patient_values(data).items():
            setattr(p, key, value)
        s.flush()
        return patient_flat(p)


# =========================
# Procedure
# =========================
def _procedure_values(data: dict[str, Any]) -> dict[str, Any]:
    values = {k: v for k, v in data.items() if k in PROCEDURE_FIELDS and v is not None}
    if "type" in values and not isinstance(values["type"], ProcedureType):
        try:
            values["type"] = ProcedureType(values["type"])
        except ValueError:
            raise ValidationError(f"Tipo procedura non valido: {values['type']}") from None
    if "value" in values:
        value = to_decimal(values["value"])
        if value < 0:
            raise ValidationError("Il valore della procedura non può essere negativo.")
        values["value"] = value
    return values


def crea_procedura(data: dict[str, Any]) -> dict[str, Any]:
    values = _procedure_values(data)
    for required in ("name", "type", "value"):
        if required not in values:
            raise ValidationError(f"Campo obbligatorio mancante: {required}")

    with db_session() as s:
        p = Procedure(**values)
        s.add(p)
        s.flush()
        return procedure_flat(p)


def get_procedura(procedure_id: int) -> dict[str, Any]:
    with db_session() as s:
        return procedure_flat(_get_or_404(s, Procedure, procedure_id, "Procedura"))


def lista_procedure() -> list[dict[str, Any]]:
    with db_session() as s:
        return [procedure_flat(p) for p in s.scalars(select(Procedure).order_by(Procedure.name))]


def aggiorna_procedura(procedure_id: int, data: dict[str, Any]) -> dict[str, Any]:
    with db_session() as s:
        p = _get_or_404(s, Procedure, procedure_id, "Procedura")
        for key, value in _procedure_values(data).items():
            setattr(p, key, value)
        s.flush()
        return procedure_flat(p)


# =========================
# Appuntamenti
# =========================
def prenota_appuntamento(
    professional_id: int,
    scheduled_at: datetime,
    procedure_ids: list[int],
    patient_id: int | None = None,
    patient_name: str | None = None,
    patient_phone: str | None = None,
    notes: str | None = None,
) -> dict[str, Any]:
    """
    Use case: creare un appuntamento.
    - il professionista deve esistere
    - paziente opzionale (pre-agendamento), ma se indicato deve esistere
    - almeno una procedura, tutte esistenti
    """
    if not procedure_ids:
        raise ValidationError("Serve almeno una procedura.")

    with db_session() as s:
        if not s.get(Professional, professional_id):
            raise ValidationError("Professionista non trovato.")

        if patient_id is not None and not s.get(Patient, patient_id):
            raise ValidationError("Paziente non trovato.")
        if patient_id is None and not (patient_name or "").strip():
            raise ValidationError("Per un pre-agendamento serve almeno il nome del paziente.")

        procedures = []
        for pid in dict.fromkeys(procedure_ids):
            proc = s.get(Procedure, pid)
            if not proc:
                raise ValidationError(f"Procedura #{pid} non trovata.")
            procedures.append(proc)

        app = Appointment(
            professional_id=professional_id,
            patient_id=patient_id,
            patient_name=patient_name.strip() if patient_name else None,
            patient_phone=patient_phone,
            scheduled_at=scheduled_at,
            status=AppointmentStatus.SCHEDULED,
            notes=notes,
            is_pending=patient_id is None,
        )
        app.procedures.extend(procedures)
        s.add(app)
        s.flush()
        logger.info("Appuntamento %s creato per il %s", app.id, scheduled_at.isoformat())
        return appointment_flat(app)


def get_appuntamento(appointment_id: int) -> dict[str, Any]:
    with db_session() as s:
        app = s.scalars(_appointment_query().where(Appointment.id == appointment_id)).first()
        if not app:
            raise NotFoundError("Appuntamento non trovato.")
        return appointment_flat(app)


def lista_appuntamenti(giorno: date | None = None, professional_id: int | None = None) -> list[dict[str, Any]]:
    q = _appointment_query()
    if giorno is not None:
        start, end = _day_bounds(giorno)
        q = q.where(and_(Appointment.scheduled_at >= start, Appointment.scheduled_at < end))
    if professional_id is not None:
        q = q.where(Appointment.professional_id == professional_id)

    with db_session() as s:
        return [appointment_flat(a) for a in s.scalars(q.order_by(Appointment.scheduled_at.asc(), Appointment.id))]


def completa_dati_paziente(appointment_id: int, patient_id: int) -> dict[str, Any]:
    """Collega un paziente registrato a un pre-agendamento."""
    with db_session() as s:
        app = _get_or_404(s, Appointment, appointment_id, "Appuntamento")
        if app.patient_id:
            raise ValidationError("Questo appuntamento ha già un paziente associato.")
        _get_or_404(s, Patient, patient_id, "Paziente")

        app.patient_id = patient_id
        app.is_pending = False
        s.flush()
        s.refresh(app)
        return appointment_flat(app)


def _load_for_update(s: Session, appointment_id: int) -> Appointment:
    app = s.execute(
        select(Appointment).where(Appointment.id == appointment_id).with_for_update()
    ).scalar_one_or_none()
    if app is None:
        raise NotFoundError("Appuntamento non trovato.")
    return app


def _applica_transizione(app: Appointment, target: AppointmentStatus | str, at: datetime | None = None) -> None:
    """Valida e applica una transizione, timbrando l'orario corrispondente."""
    new_status = ensure_transition(app.status, target)
    now = at or datetime.now()

    if new_status is AppointmentStatus.WAITING:
        app.checked_in_at = now
    elif new_status is AppointmentStatus.IN_PROGRESS:
        app.started_at = now
    else:
        app.finished_at = now

    old = app.status
    app.status = new_status
    logger.info("Appuntamento %s: %s -> %s", app.id, old.value, new_status.value)


def cambia_stato(appointment_id: int, status: AppointmentStatus | str, at: datetime | None = None) -> dict[str, Any]:
    """
    Use case: transizione di stato.
    Nessuna modifica se la transizione non è nel grafo (InvalidTransitionError).
    """
    target = as_status(status)
    with db_session() as s:
        app = _load_for_update(s, appointment_id)
        _applica_transizione(app, target, at)
        s.flush()
        return appointment_flat(app)


def check_in(appointment_id: int, at: datetime | None = None) -> dict[str, Any]:
    return cambia_stato(appointment_id, AppointmentStatus.WAITING, at)


def annulla_appuntamento(appointment_id: int, at: datetime | None = None) -> dict[str, Any]:
    return cambia_stato(appointment_id, AppointmentStatus.CANCELLED, at)


def inizia_visita(appointment_id: int, professional_id: int | None = None, at: datetime | None = None) -> dict[str, Any]:
    """Solo il professionista assegnato può iniziare la visita (se indicato)."""
    with db_session() as s:
        app = _load_for_update(s, appointment_id)
        if professional_id is not None and app.professional_id != professional_id:
            raise PermissionDeniedError("Solo il medico assegnato può iniziare la visita.")
        _applica_transizione(app, AppointmentStatus.IN_PROGRESS, at)
        s.flush()
        return appointment_flat(app)


def fila_attesa(
    giorno: date | None = None,
    professional_id: int | None = None,
    status: str | None = None,
    procedure_type: str | None = None,
) -> list[dict[str, Any]]:
    """
    Fila del giorno, ordinata per priorità di stato e orario di check-in/inizio.
    - status None: solo stati attivi (scheduled, waiting, in_progress)
    - status "all": tutti
    - procedure_type: almeno una procedura di quel tipo
    """
    start, end = _day_bounds(giorno or date.today())
    q = _appointment_query().where(and_(Appointment.scheduled_at >= start, Appointment.scheduled_at < end))

    if professional_id is not None:
        q = q.where(Appointment.professional_id == professional_id)

    if status is None:
        q = q.where(Appointment.status.in_(ACTIVE_QUEUE_STATUSES))
    elif status != "all":
        q = q.where(Appointment.status == as_status(status))

    ptype = None
    if procedure_type and procedure_type != "all":
        try:
            ptype = ProcedureType(procedure_type)
        except ValueError:
            raise ValidationError(f"Tipo procedura non valido: {procedure_type}") from None

    with db_session() as s:
        apps = list(s.scalars(q.order_by(Appointment.scheduled_at.asc(), Appointment.id)))
        if ptype is not None:
            apps = [a for a in apps if any(p.type == ptype for p in a.procedures)]
        return [appointment_flat(a) for a in order_queue(apps)]


# =========================
# Evoluzioni + chiusura visita
# =========================
def concludi_visita(
    appointment_id: int,
    evolution: dict[str, Any],
    professional_id: int | None = None,
    performed_procedure_ids: list[int] | None = None,
    at: datetime | None = None,
) -> dict[str, Any]:
    """
    Use case: chiudere la visita.
    In un'unica transazione:
    - crea l'evoluzione (nota SOAP)
    - calcola la ripartizione e crea il record finanziario
    - porta l'appuntamento a completed
    Se un passo fallisce, rollback di tutto.
    Evoluzione e record usano lo stesso orario di chiusura (ora locale, come gli altri timbri).
    """
    now = at or datetime.now()
    with db_session() as s:
        app = _load_for_update(s, appointment_id)
        if professional_id is not None and app.professional_id != professional_id:
            raise PermissionDeniedError("Solo il medico assegnato può concludere la visita.")

        # fallisce subito se non in corso, prima di scrivere qualsiasi cosa
        ensure_transition(app.status, AppointmentStatus.COMPLETED)

        if s.execute(select(Evolution.id).where(Evolution.appointment_id == app.id)).first():
            raise ValidationError("Evoluzione già registrata per questo appuntamento.")

        ev = Evolution(
            appointment_id=app.id,
            professional_id=app.professional_id,
            patient_id=app.patient_id,
            created_at=now,
            **{f: (evolution.get(f) or None) for f in EVOLUTION_FIELDS},
        )
        s.add(ev)

        record = None
        if config.FINANCIAL_MODULE_ENABLED:
            procedures = list(app.procedures)
            if performed_procedure_ids is not None:
                assigned = {p.id for p in procedures}
                unknown = set(performed_procedure_ids) - assigned
                if unknown:
                    raise ValidationError(f"Procedure non assegnate all'appuntamento: {sorted(unknown)}")
                procedures = [p for p in procedures if p.id in set(performed_procedure_ids)]

            if procedures:
                s.execute(
                    update(AppointmentProcedure)
                    .where(
                        AppointmentProcedure.appointment_id == app.id,
                        AppointmentProcedure.procedure_id.in_([p.id for p in procedures]),
                    )
                    .values(performed=True)
                )

            prof = s.get(Professional, app.professional_id)
            split = split_for_procedures(procedures, prof.commission, prof.id)
            record = FinancialRecord(
                appointment_id=app.id,
                professional_id=app.professional_id,
                total_value=split.total_value,
                commission_rate=split.commission_rate,
                clinic_commission=split.clinic_commission,
                professional_value=split.professional_value,
                created_at=now,
            )
            s.add(record)

        _applica_transizione(app, AppointmentStatus.COMPLETED, now)
        s.flush()

        if record is not None:
            logger.info(
                "Visita %s conclusa: totale=%s clinica=%s professionista=%s",
                app.id, record.total_value, record.clinic_commission, record.professional_value,
            )
        return {
            "evolution": evolution_flat(ev),
            "financial_record": financial_record_flat(record) if record is not None else None,
            "appointment": appointment_flat(app),
        }


def evoluzioni_per_appuntamento(appointment_id: int) -> list[dict[str, Any]]:
    with db_session() as s:
        q = select(Evolution).where(Evolution.appointment_id == appointment_id)
        out = []
        for e in s.scalars(q):
            item = evolution_flat(e)
            item["professional_name"] = e.professional.user.name if e.professional else None
            out.append(item)
        return out


def evoluzioni_per_paziente(patient_id: int) -> list[dict[str, Any]]:
    """Storico clinico del paziente, dal più recente."""
    with db_session() as s:
        q = (
            select(Evolution)
            .where(Evolution.patient_id == patient_id)
            .order_by(Evolution.created_at.desc(), Evolution.id.desc())
        )
        out = []
        for e in s.scalars(q):
            item = evolution_flat(e)
            item["professional_name"] = e.professional.user.name if e.professional else None
            item["appointment"] = appointment_flat(e.appointment) if e.appointment else None
            out.append(item)
        return out
