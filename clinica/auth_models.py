from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Enum, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


class UserRole(enum.Enum):
    ADMIN = "admin"
    MEDICO = "medico"
    RECEPCIONISTA = "recepcionista"


class User(Base):
    """
    Utente applicativo per autenticazione.
    - email univoca (salvata in minuscolo)
    - password_hash con bcrypt (passlib)
    - role: decide quali transizioni e viste sono esposte
    """
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(120), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(30), nullable=True)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole, values_callable=lambda e: [m.value for m in e]), nullable=False
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    professional: Mapped["Professional"] = relationship(back_populates="user", uselist=False)  # noqa: F821

    def __repr__(self) -> str:
        return f"User({self.email}, {self.role.value})"
