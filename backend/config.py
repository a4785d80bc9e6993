import os
import secrets
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("CLASSCHECK_DB_PATH", BASE_DIR / "database" / "classcheck.db"))
SIGNING_KEY = (
    os.getenv("CLASSCHECK_SIGNING_KEY", "").strip()
    or secrets.token_urlsafe(32)
)
AUTH_TOKEN_TTL_SECONDS = int(os.getenv("CLASSCHECK_AUTH_TOKEN_TTL_SECONDS", "43200"))
DB_BUSY_TIMEOUT_SECONDS = float(os.getenv("CLASSCHECK_DB_BUSY_TIMEOUT_SECONDS", "10"))
LOG_LEVEL = (os.getenv("CLASSCHECK_LOG_LEVEL", "INFO").strip() or "INFO").upper()


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_positive_int(value: str | None, fallback: int) -> int:
    try:
        parsed = int(value) if value is not None else fallback
    except ValueError:
        return fallback
    return parsed if parsed > 0 else fallback


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("CLASSCHECK_CORS_ALLOW_ORIGINS"),
    ["http://localhost:8081", "http://127.0.0.1:8081"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("CLASSCHECK_CORS_ALLOW_METHODS"),
    ["GET", "POST", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("CLASSCHECK_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("CLASSCHECK_CORS_ALLOW_CREDENTIALS"), True)
ENABLE_DEBUG_ENDPOINTS = _parse_bool(os.getenv("CLASSCHECK_ENABLE_DEBUG_ENDPOINTS"), False)

# Network gate. The bypass sentinel only works when explicitly enabled.
ALLOW_DEBUG_BYPASS = _parse_bool(os.getenv("CLASSCHECK_ALLOW_DEBUG_BYPASS"), False)
DEBUG_BYPASS_NETWORK_ID = (
    os.getenv("CLASSCHECK_DEBUG_BYPASS_NETWORK_ID", "DEBUG_BSSID").strip() or "DEBUG_BSSID"
)

# Reject codes submitted by students outside the session's department/section.
ENFORCE_SCOPE_MATCH = _parse_bool(os.getenv("CLASSCHECK_ENFORCE_SCOPE_MATCH"), True)

REPORTS_DEFAULT_LIMIT = _parse_positive_int(os.getenv("CLASSCHECK_REPORTS_DEFAULT_LIMIT"), 10)
REPORTS_MAX_LIMIT = _parse_positive_int(os.getenv("CLASSCHECK_REPORTS_MAX_LIMIT"), 100)
