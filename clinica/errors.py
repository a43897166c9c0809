"""Eccezioni di dominio, tradotte in risposte HTTP da api_main."""
from __future__ import annotations


class ClinicError(Exception):
    """Base per tutti gli errori applicativi."""


class NotFoundError(ClinicError):
    pass


class ValidationError(ClinicError, ValueError):
    pass


class PermissionDeniedError(ClinicError):
    pass


class InvalidTransitionError(ValidationError):
    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Transizione di stato non consentita: {current} -> {target}")


class MissingCommissionRateError(ValidationError):
    def __init__(self, professional_id: int | None = None) -> None:
        self.professional_id = professional_id
        who = f"professionista {professional_id}" if professional_id is not None else "professionista"
        super().__init__(f"Commissione non configurata per il {who}.")
