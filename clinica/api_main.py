from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm

from . import reports, services
from .auth_models import User, UserRole
from .auth_security import create_access_token, token_user_id
from .auth_service import aggiorna_utente, autentica, crea_utente, get_utente_by_id, lista_utenti_attivi, user_flat
from .config import LOG_FORMAT, LOG_LEVEL
from .errors import NotFoundError, PermissionDeniedError, ValidationError
from .financial import compute_split
from .models import AppointmentStatus
from .schemas import (
    AppointmentCreateIn,
    CompletePatientInfoIn,
    EvolutionIn,
    PatientCreateIn,
    PatientUpdateIn,
    ProcedureCreateIn,
    ProcedureUpdateIn,
    ProfessionalCreateIn,
    ProfessionalUpdateIn,
    ProfileUpdateIn,
    QuickPatientIn,
    RegisterIn,
    SplitPreviewIn,
    StatusUpdateIn,
    TokenOut,
    UserCreateIn,
)
from .seed import seed_base

logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
logger = logging.getLogger(__name__)

# OAuth2 Bearer (Authorization: Bearer <token>)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")

ADMIN = UserRole.ADMIN
MEDICO = UserRole.MEDICO
RECEPCIONISTA = UserRole.RECEPCIONISTA
ALL_ROLES = (ADMIN, MEDICO, RECEPCIONISTA)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Crea tabelle e seed base (idempotente)
    services.init_db()
    seed_base()
    logger.info("Database pronto")
    yield


app = FastAPI(title="Clinica API", version="1.0.0", lifespan=lifespan)


# Errori di dominio -> HTTP

@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
async def validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
    logger.info("Richiesta rifiutata su %s: %s", request.url.path, exc)
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


@app.exception_handler(PermissionDeniedError)
async def permission_handler(request: Request, exc: PermissionDeniedError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"detail": str(exc)})


# Dipendenze auth

def get_current_user(token: str = Depends(oauth2_scheme)) -> User:
    # protezione extra: elimina spazi / virgolette accidentali
    token = token.strip().strip('"').strip("'")

    user_id = token_user_id(token)
    if user_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token non valido")

    u = get_utente_by_id(user_id)
    if not u or not u.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Utente non valido")
    return u


def require_roles(*roles: UserRole):
    def checker(user: User = Depends(get_current_user)) -> User:
        if user.role not in roles:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Accesso negato")
        return user

    return checker


def professional_id_of(user: User) -> int | None:
    if user.role != MEDICO:
        return None
    prof = services.get_professionista_by_user(user.id)
    return prof["id"] if prof else None


def require_professional_id(user: User) -> int:
    pid = professional_id_of(user)
    if pid is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Professionista non trovato per questo utente")
    return pid


def scoped_professional_id(user: User, requested: int | None) -> int | None:
    """Un medico vede solo i propri dati; admin/recepcionista possono filtrare liberamente."""
    if user.role == MEDICO:
        own = require_professional_id(user)
        if requested is not None and requested != own:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Accesso negato")
        return own
    return requested


# AUTH endpoints

@app.post("/api/auth/register", status_code=status.HTTP_201_CREATED)
def register(payload: RegisterIn) -> dict[str, Any]:
    if payload.role == ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Registrazione come admin non consentita")
    return crea_utente(payload.email, payload.password, payload.name, payload.role, payload.phone)


@app.post("/api/auth/login", response_model=TokenOut)
def login(form: OAuth2PasswordRequestForm = Depends()) -> TokenOut:
    # il campo "username" del form contiene l'email
    u = autentica(form.username, form.password)
    if not u:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Credenziali non valide")

    token = create_access_token(subject=u.id, extra={"email": u.email, "name": u.name, "role": u.role.value})
    return TokenOut(access_token=token, user=user_flat(u))


@app.post("/api/auth/logout")
def logout(user: User = Depends(get_current_user)) -> dict[str, Any]:
    # JWT stateless: basta che il client scarti il token
    return {"ok": True}


@app.get("/api/auth/current-user")
def current_user(user: User = Depends(get_current_user)) -> dict[str, Any]:
    data = user_flat(user)
    data["professional_id"] = professional_id_of(user)
    return data


@app.put("/api/profile")
def update_profile(payload: ProfileUpdateIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return aggiorna_utente(user.id, payload.model_dump(exclude_unset=True), allow_role_change=False)


# USERS (admin)

@app.get("/api/users")
def api_users(user: User = Depends(require_roles(ADMIN))) -> list[dict]:
    return lista_utenti_attivi()


@app.post("/api/users", status_code=status.HTTP_201_CREATED)
def api_create_user(payload: UserCreateIn, user: User = Depends(require_roles(ADMIN))) -> dict[str, Any]:
    return crea_utente(payload.email, payload.password, payload.name, payload.role, payload.phone)


# PROFESSIONALS

@app.get("/api/professionals")
def api_professionals(user: User = Depends(get_current_user)) -> list[dict]:
    return services.lista_professionisti()


@app.post("/api/professionals", status_code=status.HTTP_201_CREATED)
def api_create_professional(
    payload: ProfessionalCreateIn, user: User = Depends(require_roles(ADMIN))
) -> dict[str, Any]:
    return services.crea_professionista(payload.user_id, payload.specialty, payload.commission)


@app.get("/api/professionals/user/{user_id}")
def api_professional_by_user(user_id: int, user: User = Depends(get_current_user)) -> dict[str, Any]:
    prof = services.get_professionista_by_user(user_id)
    if not prof:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Professionista non trovato")
    return prof


@app.get("/api/professionals/{professional_id}")
def api_professional(professional_id: int, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return services.get_professionista(professional_id)


@app.put("/api/professionals/{professional_id}")
def api_update_professional(
    professional_id: int, payload: ProfessionalUpdateIn, user: User = Depends(require_roles(ADMIN))
) -> dict[str, Any]:
    return services.aggiorna_professionista(
        professional_id,
        professional_data=payload.professional.model_dump(exclude_unset=True) if payload.professional else None,
        user_data=payload.user.model_dump(exclude_unset=True) if payload.user else None,
    )


# PATIENTS

@app.get("/api/patients")
def api_patients(user: User = Depends(get_current_user)) -> list[dict]:
    return services.lista_pazienti()


@app.post("/api/patients/quick", status_code=status.HTTP_201_CREATED)
def api_quick_patient(
    payload: QuickPatientIn, user: User = Depends(require_roles(ADMIN, RECEPCIONISTA))
) -> dict[str, Any]:
    return services.crea_paziente_rapido(payload.name, created_by=user.id, phone=payload.phone)


@app.post("/api/patients", status_code=status.HTTP_201_CREATED)
def api_create_patient(
    payload: PatientCreateIn, user: User = Depends(require_roles(ADMIN, RECEPCIONISTA))
) -> dict[str, Any]:
    return services.crea_paziente(payload.model_dump(), created_by=user.id)


@app.get("/api/patients/{patient_id}")
def api_patient(patient_id: int, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return services.get_paziente(patient_id)


@app.put("/api/patients/{patient_id}")
def api_update_patient(
    patient_id: int, payload: PatientUpdateIn, user: User = Depends(require_roles(ADMIN, RECEPCIONISTA))
) -> dict[str, Any]:
    return services.aggiorna_paziente(patient_id, payload.model_dump(exclude_unset=True))


# PROCEDURES

@app.get("/api/procedures")
def api_procedures(user: User = Depends(get_current_user)) -> list[dict]:
    return services.lista_procedure()


@app.post("/api/procedures", status_code=status.HTTP_201_CREATED)
def api_create_procedure(payload: ProcedureCreateIn, user: User = Depends(require_roles(ADMIN))) -> dict[str, Any]:
    return services.crea_procedura(payload.model_dump())


@app.get("/api/procedures/{procedure_id}")
def api_procedure(procedure_id: int, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return services.get_procedura(procedure_id)


@app.put("/api/procedures/{procedure_id}")
def api_update_procedure(
    procedure_id: int, payload: ProcedureUpdateIn, user: User = Depends(require_roles(ADMIN))
) -> dict[str, Any]:
    return services.aggiorna_procedura(procedure_id, payload.model_dump(exclude_unset=True))


# APPOINTMENTS

@app.get("/api/appointments")
def api_appointments(
    giorno: date | None = Query(None, alias="date"),
    professional_id: int | None = Query(None),
    user: User = Depends(get_current_user),
) -> list[dict]:
    return services.lista_appuntamenti(giorno, scoped_professional_id(user, professional_id))


@app.get("/api/appointments/waiting-queue")
def api_waiting_queue(
    giorno: date | None = Query(None, alias="date"),
    professional_id: int | None = Query(None),
    user: User = Depends(get_current_user),
) -> list[dict]:
    """Rotta legacy: solo pazienti in attesa."""
    return services.fila_attesa(giorno, scoped_professional_id(user, professional_id), status=AppointmentStatus.WAITING.value)


@app.post("/api/appointments", status_code=status.HTTP_201_CREATED)
def api_create_appointment(payload: AppointmentCreateIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return services.prenota_appuntamento(
        professional_id=payload.professional_id,
        scheduled_at=payload.scheduled_at,
        procedure_ids=payload.procedure_ids,
        patient_id=payload.patient_id,
        patient_name=payload.patient_name,
        patient_phone=payload.patient_phone,
        notes=payload.notes,
    )


@app.get("/api/appointments/{appointment_id}")
def api_appointment(appointment_id: int, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return services.get_appuntamento(appointment_id)


@app.post("/api/appointments/{appointment_id}/check-in")
def api_check_in(appointment_id: int, user: User = Depends(require_roles(*ALL_ROLES))) -> dict[str, Any]:
    return services.check_in(appointment_id)


@app.post("/api/appointments/{appointment_id}/start")
def api_start(appointment_id: int, user: User = Depends(require_roles(MEDICO))) -> dict[str, Any]:
    return services.inizia_visita(appointment_id, professional_id=require_professional_id(user))


@app.post("/api/appointments/{appointment_id}/cancel")
def api_cancel(appointment_id: int, user: User = Depends(require_roles(*ALL_ROLES))) -> dict[str, Any]:
    return services.annulla_appuntamento(appointment_id)


@app.patch("/api/appointments/{appointment_id}/status")
def api_update_status(
    appointment_id: int, payload: StatusUpdateIn, user: User = Depends(require_roles(*ALL_ROLES))
) -> dict[str, Any]:
    """
    Tutti possono fare check-in o annullare.
    Solo il medico assegnato può iniziare la visita; la chiusura passa da /api/evolutions.
    """
    target = payload.status
    if target == AppointmentStatus.COMPLETED:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="La visita si conclude registrando l'evoluzione (/api/evolutions)",
        )
    if target == AppointmentStatus.IN_PROGRESS:
        if user.role != MEDICO:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Solo il medico può iniziare la visita")
        return services.inizia_visita(appointment_id, professional_id=require_professional_id(user))
    return services.cambia_stato(appointment_id, target)


@app.post("/api/appointments/{appointment_id}/complete-patient-info")
def api_complete_patient_info(
    appointment_id: int, payload: CompletePatientInfoIn, user: User = Depends(require_roles(ADMIN, RECEPCIONISTA))
) -> dict[str, Any]:
    return services.completa_dati_paziente(appointment_id, payload.patient_id)


# QUEUE

@app.get("/api/queue")
def api_queue(
    giorno: date | None = Query(None, alias="date"),
    professional_id: int | None = Query(None),
    status_filter: str | None = Query(None, alias="status"),
    procedure_type: str | None = Query(None, alias="type"),
    user: User = Depends(get_current_user),
) -> list[dict]:
    if professional_id is None and user.role == MEDICO:
        # medico senza profilo: niente fila globale
        professional_id = require_professional_id(user)
    return services.fila_attesa(giorno, professional_id, status=status_filter, procedure_type=procedure_type)


# EVOLUTIONS

@app.post("/api/evolutions", status_code=status.HTTP_201_CREATED)
def api_create_evolution(payload: EvolutionIn, user: User = Depends(require_roles(MEDICO))) -> dict[str, Any]:
    """Registra l'evoluzione e conclude la visita (record finanziario incluso) in un'unica transazione."""
    data = payload.model_dump(exclude={"appointment_id", "performed_procedure_ids"})
    return services.concludi_visita(
        payload.appointment_id,
        data,
        professional_id=require_professional_id(user),
        performed_procedure_ids=payload.performed_procedure_ids,
    )


@app.get("/api/evolutions/appointment/{appointment_id}")
def api_evolutions_by_appointment(appointment_id: int, user: User = Depends(get_current_user)) -> list[dict]:
    return services.evoluzioni_per_appuntamento(appointment_id)


@app.get("/api/evolutions/patient/{patient_id}")
def api_evolutions_by_patient(patient_id: int, user: User = Depends(get_current_user)) -> list[dict]:
    return services.evoluzioni_per_paziente(patient_id)


# FINANCIAL

@app.get("/api/financial-records/professional/{professional_id}")
def api_financial_records(
    professional_id: int,
    giorno: date | None = Query(None, alias="date"),
    user: User = Depends(require_roles(ADMIN, MEDICO)),
) -> list[dict]:
    return reports.record_per_professionista(scoped_professional_id(user, professional_id), giorno)


@app.get("/api/financial/summary")
def api_financial_summary(
    start_date: date | None = Query(None, alias="startDate"),
    end_date: date | None = Query(None, alias="endDate"),
    professional_id: int | None = Query(None, alias="professionalId"),
    user: User = Depends(require_roles(ADMIN, MEDICO)),
) -> dict[str, Any]:
    return reports.riepilogo_finanziario(start_date, end_date, scoped_professional_id(user, professional_id))


@app.get("/api/financial/by-professional")
def api_financial_by_professional(
    start_date: date | None = Query(None, alias="startDate"),
    end_date: date | None = Query(None, alias="endDate"),
    professional_id: int | None = Query(None, alias="professionalId"),
    user: User = Depends(require_roles(ADMIN, MEDICO)),
) -> list[dict]:
    return reports.ricavi_per_professionista(start_date, end_date, scoped_professional_id(user, professional_id))


@app.get("/api/financial/by-type")
def api_financial_by_type(
    start_date: date | None = Query(None, alias="startDate"),
    end_date: date | None = Query(None, alias="endDate"),
    professional_id: int | None = Query(None, alias="professionalId"),
    user: User = Depends(require_roles(ADMIN, MEDICO)),
) -> list[dict]:
    return reports.ricavi_per_tipo(start_date, end_date, scoped_professional_id(user, professional_id))


@app.post("/api/financial/preview")
def api_financial_preview(payload: SplitPreviewIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    """Anteprima della ripartizione, senza salvare nulla."""
    return compute_split(payload.values, payload.commission_rate).as_dict()
