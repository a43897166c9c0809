from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from . import config
from .errors import MissingCommissionRateError, ValidationError

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


@dataclass(frozen=True)
class FinancialSplit:
    total_value: Decimal
    commission_rate: Decimal
    clinic_commission: Decimal
    professional_value: Decimal

    def as_dict(self) -> dict[str, str]:
        return {
            "total_value": str(self.total_value),
            "commission_rate": str(self.commission_rate),
            "clinic_commission": str(self.clinic_commission),
            "professional_value": str(self.professional_value),
        }


def to_decimal(value: Any) -> Decimal:
    try:
        # passando da str si evita di portarsi dietro l'errore binario dei float
        d = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Valore monetario non valido: {value!r}") from None
    if not d.is_finite():
        raise ValidationError(f"Valore monetario non valido: {value!r}")
    return d


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def validate_rate(rate: Any) -> Decimal:
    r = to_decimal(rate)
    if not (Decimal(0) <= r <= Decimal(1)):
        raise ValidationError(f"Commissione fuori intervallo [0, 1]: {r}")
    return r


def resolve_commission_rate(rate: Any | None, professional_id: int | None = None) -> Decimal:
    """
    Commissione effettiva della clinica.
    Se il professionista non ne ha una: default configurato con WARNING,
    oppure errore se REQUIRE_COMMISSION_RATE è attivo.
    """
    if rate is not None:
        return validate_rate(rate)

    if config.REQUIRE_COMMISSION_RATE:
        raise MissingCommissionRateError(professional_id)

    logger.warning(
        "Commissione non configurata (professionista=%s): uso il default %s",
        professional_id,
        config.DEFAULT_COMMISSION_RATE,
    )
    return validate_rate(config.DEFAULT_COMMISSION_RATE)


def compute_split(values: Iterable[Any], commission_rate: Any | None, professional_id: int | None = None) -> FinancialSplit:
    """
    total = somma dei valori
    clinic = total * rate (arrotondato al centesimo)
    professional = total - clinic  (così la somma torna sempre esatta)
    """
    rate = resolve_commission_rate(commission_rate, professional_id)

    total = ZERO
    for v in values:
        d = to_decimal(v)
        if d < 0:
            raise ValidationError(f"Valore negativo non ammesso: {d}")
        total += d
    total = round_money(total)

    clinic = round_money(total * rate)
    return FinancialSplit(
        total_value=total,
        commission_rate=rate,
        clinic_commission=clinic,
        professional_value=total - clinic,
    )


def _is_performed(item: Any) -> bool:
    for flag in ("checked", "performed"):
        value = item.get(flag) if isinstance(item, Mapping) else getattr(item, flag, None)
        if value is not None:
            return bool(value)
    return True


def _value_of(item: Any) -> Any:
    return item.get("value") if isinstance(item, Mapping) else item.value


def split_for_procedures(procedures: Iterable[Any], commission_rate: Any | None, professional_id: int | None = None) -> FinancialSplit:
    """Come compute_split, ma su procedure (ORM o dict); conta solo quelle eseguite (checked/performed)."""
    performed = [_value_of(p) for p in procedures if _is_performed(p)]
    return compute_split(performed, commission_rate, professional_id)
