from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select

from .auth_models import User, UserRole
from .auth_security import hash_password, verify_password
from .db import db_session
from .errors import NotFoundError, PermissionDeniedError, ValidationError

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("name", "email", "phone", "role", "is_active", "password")


def user_flat(u: User) -> dict[str, Any]:
    """Dati utente senza password_hash."""
    return {
        "id": u.id,
        "email": u.email,
        "name": u.name,
        "phone": u.phone,
        "role": u.role.value,
        "is_active": u.is_active,
    }


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _as_role(role: UserRole | str) -> UserRole:
    try:
        return role if isinstance(role, UserRole) else UserRole(role)
    except ValueError:
        raise ValidationError(f"Ruolo non valido: {role}") from None


def crea_utente(email: str, password: str, name: str, role: UserRole | str, phone: str | None = None) -> dict[str, Any]:
    email = _normalize_email(email)
    if not email or not password or not (name or "").strip():
        raise ValidationError("Email, password e nome sono obbligatori.")
    if len(password) < 6:
        raise ValidationError("La password deve avere almeno 6 caratteri.")

    with db_session() as s:
        exists = s.execute(select(User).where(User.email == email)).scalar_one_or_none()
        if exists:
            raise ValidationError("Email già registrata.")

        u = User(
            email=email,
            password_hash=hash_password(password),
            name=name.strip(),
            phone=phone,
            role=_as_role(role),
            is_active=True,
        )
        s.add(u)
        s.flush()
        logger.info("Utente creato: id=%s ruolo=%s", u.id, u.role.value)
        return user_flat(u)


def autentica(email: str, password: str) -> User | None:
    email = _normalize_email(email)
    with db_session() as s:
        u = s.execute(select(User).where(User.email == email)).scalar_one_or_none()
        if not u or not u.is_active:
            return None
        ok, new_hash = verify_password(password, u.password_hash)
        if not ok:
            return None
        if new_hash:
            u.password_hash = new_hash
            logger.info("Hash password aggiornato per utente %s", u.id)
        return u


def get_utente_by_id(user_id: int) -> User | None:
    with db_session() as s:
        return s.get(User, user_id)


def lista_utenti_attivi() -> list[dict[str, Any]]:
    with db_session() as s:
        users = s.scalars(select(User).where(User.is_active.is_(True)).order_by(User.name))
        return [user_flat(u) for u in users]


def aggiorna_utente(user_id: int, data: dict[str, Any], allow_role_change: bool = False) -> dict[str, Any]:
    """
    Aggiorna i campi ammessi. Il ruolo si cambia solo se allow_role_change
    (l'utente non può promuoversi dal proprio profilo).
    """
    with db_session() as s:
        u = s.get(User, user_id)
        if not u:
            raise NotFoundError("Utente non trovato.")

        for key, value in data.items():
            if key not in UPDATABLE_FIELDS or value is None:
                continue
            if key == "role":
                role = _as_role(value)
                if role != u.role and not allow_role_change:
                    raise PermissionDeniedError("Non è permesso cambiare il ruolo dell'utente.")
                u.role = role
            elif key == "email":
                email = _normalize_email(value)
                clash = s.execute(select(User).where(User.email == email, User.id != u.id)).scalar_one_or_none()
                if clash:
                    raise ValidationError("Email già in uso.")
                u.email = email
            elif key == "password":
                if len(value) < 6:
                    raise ValidationError("La password deve avere almeno 6 caratteri.")
                u.password_hash = hash_password(value)
            else:
                setattr(u, key, value)

        s.flush()
        return user_flat(u)
