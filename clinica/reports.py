"""
Report finanziari: aggregati sui FinancialRecord creati alla chiusura delle visite.
Periodo [dal, al] inclusivo, sulla data di creazione del record.
"""
from __future__ import annotations

from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import Select, and_, func, select

from .auth_models import User
from .db import db_session
from .financial import ZERO, round_money
from .models import AppointmentProcedure, FinancialRecord, Procedure, Professional
from .services import financial_record_flat


def _in_period(q: Select, dal: date | None, al: date | None, professional_id: int | None) -> Select:
    if dal is not None:
        q = q.where(FinancialRecord.created_at >= datetime.combine(dal, datetime.min.time()))
    if al is not None:
        q = q.where(FinancialRecord.created_at < datetime.combine(al + timedelta(days=1), datetime.min.time()))
    if professional_id is not None:
        q = q.where(FinancialRecord.professional_id == professional_id)
    return q


def _money(value: Any) -> Decimal:
    # SUM su SQLite torna float/int: si riporta a Decimal al centesimo
    return round_money(Decimal(str(value))) if value is not None else ZERO


def record_per_professionista(professional_id: int, giorno: date | None = None) -> list[dict[str, Any]]:
    q = _in_period(select(FinancialRecord), giorno, giorno, professional_id)
    with db_session() as s:
        rows = s.scalars(q.order_by(FinancialRecord.created_at.asc(), FinancialRecord.id))
        return [financial_record_flat(r) for r in rows]


def riepilogo_finanziario(
    dal: date | None = None, al: date | None = None, professional_id: int | None = None
) -> dict[str, Any]:
    q = _in_period(
        select(
            func.count(FinancialRecord.id),
            func.sum(FinancialRecord.total_value),
            func.sum(FinancialRecord.clinic_commission),
            func.sum(FinancialRecord.professional_value),
        ),
        dal,
        al,
        professional_id,
    )
    with db_session() as s:
        count, total, clinic, professional = s.execute(q).one()
        return {
            "records": count or 0,
            "total_value": _money(total),
            "clinic_commission": _money(clinic),
            "professional_value": _money(professional),
        }


def ricavi_per_professionista(
    dal: date | None = None, al: date | None = None, professional_id: int | None = None
) -> list[dict[str, Any]]:
    """Una riga per professionista, ordinate per totale decrescente."""
    q = _in_period(
        select(
            Professional.id,
            User.name,
            Professional.commission,
            func.count(FinancialRecord.id),
            func.sum(FinancialRecord.total_value),
            func.sum(FinancialRecord.clinic_commission),
            func.sum(FinancialRecord.professional_value),
        )
        .join(Professional, Professional.id == FinancialRecord.professional_id)
        .join(User, User.id == Professional.user_id)
        .group_by(Professional.id, User.name, Professional.commission),
        dal,
        al,
        professional_id,
    )
    with db_session() as s:
        out = [
            {
                "professional_id": pid,
                "professional_name": name,
                "commission": commission,
                "appointments_count": count,
                "total_value": _money(total),
                "clinic_commission": _money(clinic),
                "professional_value": _money(professional),
            }
            for pid, name, commission, count, total, clinic, professional in s.execute(q).all()
        ]
    out.sort(key=lambda r: r["total_value"], reverse=True)
    return out


def ricavi_per_tipo(
    dal: date | None = None, al: date | None = None, professional_id: int | None = None
) -> list[dict[str, Any]]:
    """Fatturato per tipo di procedura, contando solo le procedure eseguite."""
    q = _in_period(
        select(Procedure.type, func.count(Procedure.id), func.sum(Procedure.value))
        .select_from(FinancialRecord)
        .join(
            AppointmentProcedure,
            and_(
                AppointmentProcedure.appointment_id == FinancialRecord.appointment_id,
                AppointmentProcedure.performed.is_(True),
            ),
        )
        .join(Procedure, Procedure.id == AppointmentProcedure.procedure_id)
        .group_by(Procedure.type),
        dal,
        al,
        professional_id,
    )
    with db_session() as s:
        rows = [
            {"type": ptype.value, "count": count, "total_value": _money(total)}
            for ptype, count, total in s.execute(q).all()
        ]
    rows.sort(key=lambda r: r["total_value"], reverse=True)
    return rows
