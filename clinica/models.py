from __future__ import annotations

import enum
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .auth_models import User
from .db import Base


def _values(enum_cls: type[enum.Enum]) -> list[str]:
    return [m.value for m in enum_cls]


class AppointmentStatus(enum.Enum):
    SCHEDULED = "scheduled"
    WAITING = "waiting"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ProcedureType(enum.Enum):
    CONSULTATION = "consultation"
    EXAM = "exam"
    PROCEDURE = "procedure"


class Gender(enum.Enum):
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"


class Professional(Base):
    __tablename__ = "professionals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, unique=True)
    specialty: Mapped[str] = mapped_column(String(120), nullable=False)
    # quota della clinica (0..1); NULL = non configurata
    commission: Mapped[Decimal | None] = mapped_column(Numeric(5, 4), nullable=True)

    user: Mapped["User"] = relationship(back_populates="professional")
    appointments: Mapped[list["Appointment"]] = relationship(back_populates="professional")

    def __repr__(self) -> str:
        return f"Professional({self.user_id}, {self.specialty})"


class Patient(Base):
    __tablename__ = "patients"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    email: Mapped[str | None] = mapped_column(String(120), nullable=True)
    phone: Mapped[str] = mapped_column(String(30), nullable=False)
    cpf: Mapped[str | None] = mapped_column(String(14), nullable=True)
    rg: Mapped[str | None] = mapped_column(String(20), nullable=True)
    profession: Mapped[str | None] = mapped_column(String(120), nullable=True)
    birth_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    gender: Mapped[Gender] = mapped_column(
        Enum(Gender, values_callable=_values), default=Gender.OTHER, nullable=False
    )
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    observations: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    # cadastro rapido: dati da completare al check-in
    needs_completion: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    appointments: Mapped[list["Appointment"]] = relationship(back_populates="patient")
    evolutions: Mapped[list["Evolution"]] = relationship(back_populates="patient")

    def __repr__(self) -> str:
        return f"Patient({self.name})"


class Procedure(Base):
    __tablename__ = "procedures"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[ProcedureType] = mapped_column(Enum(ProcedureType, values_callable=_values), nullable=False)
    value: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)


class AppointmentProcedure(Base):
    __tablename__ = "appointment_procedures"
    __table_args__ = (
        UniqueConstraint("appointment_id", "procedure_id", name="uq_app_proc"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    appointment_id: Mapped[int] = mapped_column(ForeignKey("appointments.id"), nullable=False)
    procedure_id: Mapped[int] = mapped_column(ForeignKey("procedures.id"), nullable=False)
    # marcata alla chiusura della visita: entra nel conteggio finanziario
    performed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class Appointment(Base):
    __tablename__ = "appointments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # opzionale: pre-agendamento senza paziente registrato
    patient_id: Mapped[int | None] = mapped_column(ForeignKey("patients.id"), nullable=True)
    patient_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    patient_phone: Mapped[str | None] = mapped_column(String(30), nullable=True)
    professional_id: Mapped[int] = mapped_column(ForeignKey("professionals.id"), nullable=False)

    scheduled_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    status: Mapped[AppointmentStatus] = mapped_column(
        Enum(AppointmentStatus, values_callable=_values), default=AppointmentStatus.SCHEDULED, nullable=False
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_pending: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    checked_in_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    patient: Mapped["Patient"] = relationship(back_populates="appointments")
    professional: Mapped["Professional"] = relationship(back_populates="appointments")
    procedures: Mapped[list["Procedure"]] = relationship(
        secondary="appointment_procedures", order_by="Procedure.id"
    )
    evolution: Mapped["Evolution"] = relationship(back_populates="appointment", uselist=False)
    financial_record: Mapped["FinancialRecord"] = relationship(back_populates="appointment", uselist=False)


class Evolution(Base):
    __tablename__ = "evolutions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    appointment_id: Mapped[int] = mapped_column(ForeignKey("appointments.id"), nullable=False, unique=True)
    professional_id: Mapped[int] = mapped_column(ForeignKey("professionals.id"), nullable=False)
    patient_id: Mapped[int | None] = mapped_column(ForeignKey("patients.id"), nullable=True)

    # SOAP
    subjective: Mapped[str | None] = mapped_column(Text, nullable=True)
    objective: Mapped[str | None] = mapped_column(Text, nullable=True)
    assessment: Mapped[str | None] = mapped_column(Text, nullable=True)
    plan: Mapped[str | None] = mapped_column(Text, nullable=True)

    diagnostics: Mapped[str | None] = mapped_column(Text, nullable=True)
    prescription: Mapped[str | None] = mapped_column(Text, nullable=True)
    exams: Mapped[str | None] = mapped_column(Text, nullable=True)

    # campi legacy
    symptoms: Mapped[str | None] = mapped_column(Text, nullable=True)
    diagnosis: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    appointment: Mapped["Appointment"] = relationship(back_populates="evolution")
    professional: Mapped["Professional"] = relationship()
    patient: Mapped["Patient"] = relationship(back_populates="evolutions")


class FinancialRecord(Base):
    __tablename__ = "financial_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    appointment_id: Mapped[int] = mapped_column(ForeignKey("appointments.id"), nullable=False, unique=True)
    professional_id: Mapped[int] = mapped_column(ForeignKey("professionals.id"), nullable=False)

    total_value: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(5, 4), nullable=False)
    clinic_commission: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    professional_value: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    appointment: Mapped["Appointment"] = relationship(back_populates="financial_record")
    professional: Mapped["Professional"] = relationship()
