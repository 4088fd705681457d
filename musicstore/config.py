import os
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env from the project root, whatever the working directory
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./musicstore.db")

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
JWT_SECRET = os.getenv("JWT_SECRET", "")

CHARGE_CURRENCY = os.getenv("CHARGE_CURRENCY", "usd")
CHARGE_DESCRIPTION = os.getenv("CHARGE_DESCRIPTION", "GoMusic charge...")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Intents untouched for this long are picked up by the reconciler
RECONCILE_AFTER_SECONDS = int(os.getenv("RECONCILE_AFTER_SECONDS", "300"))

# A request holds its intent for this long before another may take it over
CHARGE_LEASE_SECONDS = int(os.getenv("CHARGE_LEASE_SECONDS", "120"))
