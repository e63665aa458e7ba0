"""Environment-driven settings for the credits backend.

Values are read once at import, after backend/.env has been loaded.
Plan allotments and pricing are not configured here; see
services/plan_registry.py.
"""
import os
from pathlib import Path

from dotenv import load_dotenv

BACKEND_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BACKEND_DIR / ".env")

# Mongo
MONGO_URL = os.getenv("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.getenv("DB_NAME", "assignsavvy")
MONGO_TIMEOUT_MS = int(os.getenv("MONGO_TIMEOUT_MS", "5000"))

# Auth (tokens are issued by the web app; this service verifies them)
JWT_SECRET = os.getenv("JWT_SECRET", "your-secret-key-change-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRATION_HOURS = int(os.getenv("JWT_EXPIRATION_HOURS", "24"))

# Providers
LLM_MODEL = os.getenv("LLM_MODEL", "gemini-2.0-flash")
PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "120"))

# Ledger monitoring
STALE_RESERVATION_MINUTES = int(os.getenv("STALE_RESERVATION_MINUTES", "30"))

# Stripe
STRIPE_API_KEY = os.getenv("STRIPE_API_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")

# Runtime
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
ENABLE_SCHEDULER = os.getenv("ENABLE_SCHEDULER", "true").strip().lower() == "true"


def is_test_run() -> bool:
    """True under pytest (conftest sets PYTEST_RUNNING)."""
    return os.getenv("PYTEST_RUNNING") == "1"
