from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy import select

from .auth_models import User, UserRole
from .auth_security import hash_password
from .db import db_session
from .models import Procedure, ProcedureType, Professional

logger = logging.getLogger(__name__)


def seed_base() -> None:
    """
    Popola dati minimi (idempotente):
    - utenti (admin, medico, recepcionista)
    - profilo professionale del medico
    - procedure di base
    """
    with db_session() as s:
        # Utenti
        utenti = [
            ("admin@clinica.com", "admin123", "Administrador", "(11) 99999-9999", UserRole.ADMIN),
            ("medico@clinica.com", "medico123", "Dr. João Silva", "(11) 98888-8888", UserRole.MEDICO),
            ("recepcao@clinica.com", "recepcao123", "Maria Santos", "(11) 97777-7777", UserRole.RECEPCIONISTA),
        ]
        for email, password, name, phone, role in utenti:
            if s.execute(select(User).where(User.email == email)).scalar_one_or_none() is None:
                s.add(User(email=email, password_hash=hash_password(password), name=name, phone=phone, role=role))
                logger.info("Seed: creato utente %s", email)

        s.flush()

        # Profilo professionale
        medico = s.execute(select(User).where(User.email == "medico@clinica.com")).scalar_one()
        if s.execute(select(Professional).where(Professional.user_id == medico.id)).scalar_one_or_none() is None:
            s.add(Professional(user_id=medico.id, specialty="Gastroenterologia", commission=Decimal("0.30")))

        # Procedure
        procedure = [
            ("CONSULTA COM GASTRO", "Consulta com gastroenterologista", ProcedureType.CONSULTATION, Decimal("250.00")),
            ("ENDOSCOPIA", "Endoscopia digestiva alta", ProcedureType.EXAM, Decimal("250.00")),
        ]
        for name, description, ptype, value in procedure:
            if s.execute(select(Procedure).where(Procedure.name == name)).scalar_one_or_none() is None:
                s.add(Procedure(name=name, description=description, type=ptype, value=value))
