"""
Configuration & Constants for the Intro Network API

Everything configurable lives here:
  - Database and external service credentials
  - Geocoding provider + job runner tuning
  - CSV import limits
  - Email notification settings

Values come from the environment (``.env`` is loaded on import).
"""

from pathlib import Path
import os
from dotenv import load_dotenv

load_dotenv()

# ===========================================
# Paths
# ===========================================
BASE_DIR = Path(__file__).parent

# ===========================================
# API Keys
# ===========================================
def _get_valid_key(key_name: str) -> str:
    """Get API key, returning empty string if it's a placeholder."""
    key = os.getenv(key_name, "")
    # Filter out placeholder values
    if not key or "your" in key.lower() or key.startswith("sk-your"):
        return ""
    return key

GOOGLE_MAPS_API_KEY = _get_valid_key("GOOGLE_MAPS_API_KEY")
RESEND_API_KEY = _get_valid_key("RESEND_API_KEY")

# ===========================================
# Database
# ===========================================
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "sqlite+aiosqlite:///./intro_network.db",
)

# ===========================================
# Geocoding
# ===========================================
GOOGLE_GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"
GEOCODE_TIMEOUT_SECONDS = float(os.getenv("GEOCODE_TIMEOUT_SECONDS", "20"))
GEOCODE_DELAY_SECONDS = float(os.getenv("GEOCODE_DELAY_SECONDS", "0.1"))  # between provider calls

# Background sweep job
GEOCODE_JOB_TIMEOUT = float(os.getenv("GEOCODE_JOB_TIMEOUT", "300"))  # 5 minutes
GEOCODE_JOB_TRIES = int(os.getenv("GEOCODE_JOB_TRIES", "3"))
GEOCODE_JOB_BACKOFF_SECONDS = float(os.getenv("GEOCODE_JOB_BACKOFF_SECONDS", "5"))

# ===========================================
# CSV Import
# ===========================================
IMPORT_CHUNK_SIZE = 1000
MAX_IMPORT_BYTES = 20 * 1024 * 1024  # 20MB
ALLOWED_IMPORT_EXTENSIONS = (".csv", ".txt")

# ===========================================
# Notifications
# ===========================================
NOTIFICATION_FROM_EMAIL = os.getenv("NOTIFICATION_FROM_EMAIL", "Intro Network <intros@mail.example.com>")
APP_URL = os.getenv("APP_URL", "http://localhost:3000")

# ===========================================
# HTTP server
# ===========================================
ALLOWED_ORIGINS = [
    o.strip()
    for o in os.getenv("ALLOWED_ORIGINS", "http://localhost:3000,http://localhost:3001").split(",")
    if o.strip()
]
RATE_LIMIT_PER_MINUTE = int(os.getenv("RATE_LIMIT_PER_MINUTE", "120"))

# ===========================================
# Auth
# ===========================================
JWT_SECRET = os.getenv("JWT_SECRET", "")
JWKS_URL = os.getenv("JWKS_URL", "")
JWT_AUDIENCE = os.getenv("JWT_AUDIENCE", "authenticated")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
