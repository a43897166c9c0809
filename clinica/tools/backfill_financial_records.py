from __future__ import annotations

import argparse
import logging

from sqlalchemy import select
from sqlalchemy.orm import selectinload

from clinica.config import LOG_FORMAT, LOG_LEVEL
from clinica.db import db_session, engine
from clinica.financial import split_for_procedures
from clinica.models import Appointment, AppointmentProcedure, AppointmentStatus, FinancialRecord, Professional

logger = logging.getLogger(__name__)


def backfill(dry_run: bool = False) -> int:
    """
    Crea il record finanziario per le visite concluse che non ne hanno uno
    (es. chiuse con FINANCIAL_MODULE_ENABLED=false).
    Le procedure senza flag "performed" vengono considerate tutte eseguite.
    Ritorna il numero di record creati.
    """
    created = 0
    with db_session() as s:
        q = (
            select(Appointment)
            .outerjoin(FinancialRecord, FinancialRecord.appointment_id == Appointment.id)
            .where(Appointment.status == AppointmentStatus.COMPLETED, FinancialRecord.id.is_(None))
            .options(selectinload(Appointment.procedures))
            .order_by(Appointment.id)
        )
        for app in s.scalars(q).all():
            links = list(
                s.scalars(select(AppointmentProcedure).where(AppointmentProcedure.appointment_id == app.id))
            )
            performed_ids = {ap.procedure_id for ap in links if ap.performed} or {ap.procedure_id for ap in links}
            procedures = [p for p in app.procedures if p.id in performed_ids]

            prof = s.get(Professional, app.professional_id)
            split = split_for_procedures(procedures, prof.commission, prof.id)
            print(f"- appuntamento {app.id}: totale={split.total_value} clinica={split.clinic_commission}")
            if dry_run:
                continue

            for ap in links:
                ap.performed = ap.procedure_id in performed_ids
            s.add(
                FinancialRecord(
                    appointment_id=app.id,
                    professional_id=app.professional_id,
                    total_value=split.total_value,
                    commission_rate=split.commission_rate,
                    clinic_commission=split.clinic_commission,
                    professional_value=split.professional_value,
                    created_at=app.finished_at or app.scheduled_at,
                )
            )
            created += 1

    logger.info("Backfill record finanziari: %s creati", created)
    return created


def main() -> None:
    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
    parser = argparse.ArgumentParser(description="Crea i record finanziari mancanti per le visite concluse")
    parser.add_argument("--dry-run", action="store_true", help="Mostra cosa verrebbe creato senza scrivere")
    args = parser.parse_args()

    print("DB:", engine.url)
    n = backfill(dry_run=args.dry_run)
    print(f"Record creati: {n}")


if __name__ == "__main__":
    main()
