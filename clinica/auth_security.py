from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt
from passlib.context import CryptContext

from .config import JWT_ALG, JWT_EXPIRE_MINUTES, JWT_SECRET

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> tuple[bool, str | None]:
    """
    Verifica la password. Il secondo valore è il nuovo hash quando quello
    salvato usa parametri deprecati (da riscrivere sul DB), altrimenti None.
    """
    return pwd_context.verify_and_update(password, password_hash)


def create_access_token(subject: int, extra: dict[str, Any] | None = None) -> str:
    """
    subject: id utente, nel claim "sub" come stringa.
    extra: claim aggiuntivi per la UI (role, email, name).
    """
    now = datetime.now(timezone.utc)
    claims: dict[str, Any] = dict(extra or {})
    claims.update(
        sub=str(subject),
        iat=int(now.timestamp()),
        exp=int((now + timedelta(minutes=JWT_EXPIRE_MINUTES)).timestamp()),
    )
    return jwt.encode(claims, JWT_SECRET, algorithm=JWT_ALG)


def token_user_id(token: str) -> int | None:
    """Id utente dal token, None se firma/scadenza/formato non validi."""
    try:
        sub = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG]).get("sub")
    except JWTError:
        return None
    return int(sub) if isinstance(sub, str) and sub.isdigit() else None
