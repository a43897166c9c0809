from __future__ import annotations

import os
from decimal import Decimal
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


# DB SQLite su file nella root del progetto, sovrascrivibile via env
DB_PATH = Path(__file__).resolve().parents[1] / "clinica.sqlite"
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DB_PATH}")
DB_ECHO = _flag("DB_ECHO", "false")

# In produzione: mettila in variabile d'ambiente
JWT_SECRET = os.getenv("JWT_SECRET", "CHANGE_ME_DEV_SECRET")
JWT_ALG = "HS256"
JWT_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", "1440"))

# Quota trattenuta dalla clinica quando il professionista non ne ha una propria
DEFAULT_COMMISSION_RATE = Decimal(os.getenv("DEFAULT_COMMISSION_RATE", "0.20"))
REQUIRE_COMMISSION_RATE = _flag("REQUIRE_COMMISSION_RATE", "false")
FINANCIAL_MODULE_ENABLED = _flag("FINANCIAL_MODULE_ENABLED", "true")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

API_BASE = os.getenv("API_BASE", "http://127.0.0.1:8000")
