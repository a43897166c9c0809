from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from .auth_models import UserRole
from .models import AppointmentStatus, Gender, ProcedureType


# Schemi Auth

class RegisterIn(BaseModel):
    email: str = Field(..., min_length=3)
    password: str = Field(..., min_length=6)
    name: str = Field(..., min_length=1)
    phone: str | None = None
    role: UserRole = UserRole.RECEPCIONISTA


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: dict[str, Any]


class ProfileUpdateIn(BaseModel):
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    password: str | None = Field(default=None, min_length=6)
    role: UserRole | None = None


class UserCreateIn(RegisterIn):
    pass


# Schemi Domain

class ProfessionalCreateIn(BaseModel):
    user_id: int
    specialty: str = Field(..., min_length=1)
    commission: Decimal | None = Field(default=None, ge=0, le=1)


class ProfessionalFieldsIn(BaseModel):
    specialty: str | None = None
    commission: Decimal | None = Field(default=None, ge=0, le=1)


class ProfessionalUserFieldsIn(BaseModel):
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    is_active: bool | None = None


class ProfessionalUpdateIn(BaseModel):
    professional: ProfessionalFieldsIn | None = None
    user: ProfessionalUserFieldsIn | None = None


class PatientCreateIn(BaseModel):
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    email: str | None = None
    cpf: str | None = None
    rg: str | None = None
    profession: str | None = None
    birth_date: date | None = None
    gender: Gender = Gender.OTHER
    address: str | None = None
    observations: str | None = None


class PatientUpdateIn(BaseModel):
    name: str | None = None
    phone: str | None = None
    email: str | None = None
    cpf: str | None = None
    rg: str | None = None
    profession: str | None = None
    birth_date: date | None = None
    gender: Gender | None = None
    address: str | None = None
    observations: str | None = None
    needs_completion: bool | None = None


class QuickPatientIn(BaseModel):
    name: str
    phone: str | None = None


class ProcedureCreateIn(BaseModel):
    name: str = Field(..., min_length=1)
    description: str | None = None
    type: ProcedureType
    value: Decimal = Field(..., ge=0)


class ProcedureUpdateIn(BaseModel):
    name: str | None = None
    description: str | None = None
    type: ProcedureType | None = None
    value: Decimal | None = Field(default=None, ge=0)


class AppointmentCreateIn(BaseModel):
    professional_id: int
    scheduled_at: datetime
    procedure_ids: list[int] = Field(default_factory=list)
    # opzionale: pre-agendamento con solo nome/telefono
    patient_id: int | None = None
    patient_name: str | None = None
    patient_phone: str | None = None
    notes: str | None = None


class StatusUpdateIn(BaseModel):
    status: AppointmentStatus


class CompletePatientInfoIn(BaseModel):
    patient_id: int


class EvolutionIn(BaseModel):
    appointment_id: int
    subjective: str | None = None
    objective: str | None = None
    assessment: str | None = None
    plan: str | None = None
    diagnostics: str | None = None
    prescription: str | None = None
    exams: str | None = None
    symptoms: str | None = None
    diagnosis: str | None = None
    notes: str | None = None
    # procedure effettivamente eseguite; None = tutte quelle assegnate
    performed_procedure_ids: list[int] | None = None


class SplitPreviewIn(BaseModel):
    values: list[Decimal] = Field(default_factory=list)
    commission_rate: Decimal | None = Field(default=None, ge=0, le=1)
