"""
Fixture condivise: DB SQLite in memoria, ricreato a ogni test.
"""
import os
from datetime import datetime
from decimal import Decimal

# Prima di importare clinica: engine in memoria e segreto di test
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("JWT_SECRET", "test-secret")

import pytest
from fastapi.testclient import TestClient

from clinica import services
from clinica.auth_models import UserRole
from clinica.auth_service import crea_utente
from clinica.db import Base, engine
from clinica.models import ProcedureType


@pytest.fixture(autouse=True)
def clean_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def admin():
    return crea_utente("admin@test.local", "secret123", "Admin", UserRole.ADMIN)


@pytest.fixture
def doctor():
    user = crea_utente("doc@test.local", "secret123", "Dr. House", UserRole.MEDICO)
    return services.crea_professionista(user["id"], "Clinica Generale", Decimal("0.20"))


@pytest.fixture
def procedures():
    return [
        services.crea_procedura({"name": "Consulta", "type": ProcedureType.CONSULTATION, "value": "50.00"}),
        services.crea_procedura({"name": "Esame", "type": ProcedureType.EXAM, "value": "30.00"}),
        services.crea_procedura({"name": "Medicazione", "type": ProcedureType.PROCEDURE, "value": "20.00"}),
    ]


@pytest.fixture
def patient(admin):
    return services.crea_paziente({"name": "Mario Rossi", "phone": "333 1234567"}, created_by=admin["id"])


@pytest.fixture
def book(doctor, patient, procedures):
    """Factory: prenota per oggi all'ora indicata, con tutte le procedure."""

    def _book(hour: int = 9, minute: int = 0, **kwargs):
        when = datetime.now().replace(hour=hour, minute=minute, second=0, microsecond=0)
        params = {
            "professional_id": doctor["id"],
            "scheduled_at": when,
            "procedure_ids": [p["id"] for p in procedures],
            "patient_id": patient["id"],
        }
        params.update(kwargs)
        return services.prenota_appuntamento(**params)

    return _book


@pytest.fixture
def client():
    from clinica.api_main import app

    # il context manager esegue il lifespan (create_all + seed)
    with TestClient(app) as c:
        yield c
