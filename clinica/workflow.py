"""
Ciclo di vita dell'appuntamento e ordinamento della fila d'attesa.

Logica pura (niente DB): services.py la usa per validare le transizioni
e per ordinare la fila prima di restituirla.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any, TypeVar

from .errors import InvalidTransitionError, ValidationError
from .models import AppointmentStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

S = AppointmentStatus

# Grafo delle transizioni: solo in avanti, annullamento da ogni stato non terminale
TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    S.SCHEDULED: frozenset({S.WAITING, S.CANCELLED}),
    S.WAITING: frozenset({S.IN_PROGRESS, S.CANCELLED}),
    S.IN_PROGRESS: frozenset({S.COMPLETED, S.CANCELLED}),
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in TRANSITIONS.items() if not targets)

# Priorità di visualizzazione nella fila (più basso = più in alto)
STATUS_PRIORITY: dict[AppointmentStatus, int] = {
    S.IN_PROGRESS: 1,
    S.WAITING: 2,
    S.SCHEDULED: 3,
    S.COMPLETED: 4,
    S.CANCELLED: 5,
}

ACTIVE_QUEUE_STATUSES = (S.SCHEDULED, S.WAITING, S.IN_PROGRESS)


def as_status(value: AppointmentStatus | str) -> AppointmentStatus:
    if isinstance(value, AppointmentStatus):
        return value
    try:
        return AppointmentStatus(value)
    except ValueError:
        raise ValidationError(f"Stato non valido: {value}") from None


def allowed_targets(current: AppointmentStatus | str) -> frozenset[AppointmentStatus]:
    return TRANSITIONS[as_status(current)]


def can_transition(current: AppointmentStatus | str, target: AppointmentStatus | str) -> bool:
    return as_status(target) in allowed_targets(current)


def ensure_transition(current: AppointmentStatus | str, target: AppointmentStatus | str) -> AppointmentStatus:
    """Valida l'arco current -> target e restituisce lo stato di arrivo; altrimenti InvalidTransitionError."""
    cur, tgt = as_status(current), as_status(target)
    if tgt not in TRANSITIONS[cur]:
        logger.warning("Transizione rifiutata: %s -> %s", cur.value, tgt.value)
        raise InvalidTransitionError(cur.value, tgt.value)
    return tgt


# =========================
# Ordinamento fila
# =========================
def _field(item: Any, name: str) -> Any:
    if isinstance(item, Mapping):
        return item.get(name)
    return getattr(item, name, None)


def _as_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def queue_timestamp(item: Any) -> datetime | None:
    """
    Orario di riferimento nella fila:
    - in_progress: inizio visita
    - waiting: check-in
    Se manca il timbro si ripiega sull'orario prenotato.
    """
    status = as_status(_field(item, "status"))
    scheduled = _as_datetime(_field(item, "scheduled_at"))
    checked_in = _as_datetime(_field(item, "checked_in_at"))
    if status is S.IN_PROGRESS:
        return _as_datetime(_field(item, "started_at")) or checked_in or scheduled
    if status is S.WAITING:
        return checked_in or scheduled
    return None


def queue_sort_key(item: Any) -> tuple[int, datetime]:
    status = as_status(_field(item, "status"))
    # per gli altri gruppi la chiave è costante: sorted() è stabile e mantiene l'ordine d'ingresso
    return STATUS_PRIORITY[status], queue_timestamp(item) or datetime.min


def order_queue(items: Iterable[T]) -> list[T]:
    """Ordina appuntamenti (ORM o dict) per la fila. Deterministico e stabile."""
    return sorted(items, key=queue_sort_key)
