import json
import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "postgresql+psycopg2://postgres:postgres@db:5432/daylight_matching")
MATCHING_BACKEND = os.getenv("MATCHING_BACKEND", "postgres").strip().lower()
_default_migrations = Path(__file__).resolve().parents[1] / "migrations"
MIGRATIONS_DIR = Path(os.getenv("MIGRATIONS_DIR", str(_default_migrations)))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "")
JWT_SECRET = os.getenv("JWT_SECRET", "")

MIN_GROUP_SIZE = int(os.getenv("MIN_GROUP_SIZE", "4"))
TARGET_GROUP_SIZE = int(os.getenv("TARGET_GROUP_SIZE", "5"))
MAX_GROUP_SIZE = int(os.getenv("MAX_GROUP_SIZE", "6"))

MATCHING_TIMEOUT_SECONDS = float(os.getenv("MATCHING_TIMEOUT_SECONDS", "10"))

# Auto-matching picks up events starting in [now + lead, now + lead + window).
AUTO_MATCHING_LEAD_HOURS = float(os.getenv("AUTO_MATCHING_LEAD_HOURS", "24"))
AUTO_MATCHING_WINDOW_HOURS = float(os.getenv("AUTO_MATCHING_WINDOW_HOURS", "1"))

CHAT_PROVISIONER_URL = os.getenv("CHAT_PROVISIONER_URL", "").strip()
CHAT_PROVISIONER_TIMEOUT_SECONDS = float(os.getenv("CHAT_PROVISIONER_TIMEOUT_SECONDS", "5"))
PROVISIONING_MAX_ATTEMPTS = int(os.getenv("PROVISIONING_MAX_ATTEMPTS", "6"))
PROVISIONING_WORKERS = int(os.getenv("PROVISIONING_WORKERS", "2"))
PROVISIONING_HISTORY_LIMIT = int(os.getenv("PROVISIONING_HISTORY_LIMIT", "1000"))
# Seconds to wait before each retry, first retry first. The last value repeats.
PROVISIONING_BACKOFF_SECONDS = [
    float(v) for v in os.getenv("PROVISIONING_BACKOFF_SECONDS", "2,5,15,30,60,180").split(",") if v.strip()
]

DEFAULT_MATCHING_CONFIG: dict[str, Any] = {
    "COSINE_W": float(os.getenv("COSINE_W", "0.70")),
    "LIFESTYLE_W": float(os.getenv("LIFESTYLE_W", "0.15")),
    "COMFORT_W": float(os.getenv("COMFORT_W", "0.15")),
    "LIFESTYLE_TOLERANCE": float(os.getenv("LIFESTYLE_TOLERANCE", "0.20")),
    "GENDER_DEPENDS_POLICY": os.getenv("GENDER_DEPENDS_POLICY", "shared_intent"),
}

if os.getenv("MATCHING_CONFIG_JSON"):
    try:
        DEFAULT_MATCHING_CONFIG.update(json.loads(os.getenv("MATCHING_CONFIG_JSON", "{}")))
    except json.JSONDecodeError:
        logger.warning("Ignoring MATCHING_CONFIG_JSON: not valid JSON")
