"""
config.py
=========
Environment driven settings for the dispatch service.
Values are read once at import time; a local .env file is honoured.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

DB_PATH = os.getenv("VET_DISPATCH_DB", "data/vet_dispatch.db")
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DB_PATH}")
# Seconds a SQLite writer waits for the lock held by a concurrent claim
SQLITE_BUSY_TIMEOUT = float(os.getenv("SQLITE_BUSY_TIMEOUT", "30"))

# ---------------------------------------------------------------------------
# Dispatch behaviour
# ---------------------------------------------------------------------------

# Links embedded in outgoing e-mails are built from this
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")

CASE_TTL_MINUTES = int(os.getenv("CASE_TTL_MINUTES", "60"))
SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "60"))
SELECTION_MAX_TRIES = int(os.getenv("SELECTION_MAX_TRIES", "4"))

# "none" or "notify_operator"
ESCALATION_POLICY = os.getenv("ESCALATION_POLICY", "none").lower()
OPERATOR_EMAIL = os.getenv("OPERATOR_EMAIL")

# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

# "console" logs messages instead of sending them (local demo mode)
EMAIL_PROVIDER = os.getenv("EMAIL_PROVIDER", "console").lower()
EMAIL_API_URL = os.getenv("EMAIL_API_URL", "https://api.resend.com/emails")
EMAIL_API_KEY = os.getenv("EMAIL_API_KEY")
EMAIL_FROM_ADDRESS = os.getenv("EMAIL_FROM_ADDRESS", "Veterinary System <noreply@animalwellness.shop>")

FANOUT_WORKERS = int(os.getenv("FANOUT_WORKERS", "8"))
SEND_MAX_TRIES = int(os.getenv("SEND_MAX_TRIES", "3"))
SEND_TIMEOUT_SECONDS = float(os.getenv("SEND_TIMEOUT_SECONDS", "5"))

# ---------------------------------------------------------------------------
# Web app
# ---------------------------------------------------------------------------

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",") if o.strip()]
SEED_DEMO_VETS = os.getenv("SEED_DEMO_VETS", "false").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
