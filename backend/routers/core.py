from fastapi import APIRouter, Depends, HTTPException

from backend.config import (
    ALLOW_DEBUG_BYPASS,
    DB_PATH,
    ENABLE_DEBUG_ENDPOINTS,
    ENFORCE_SCOPE_MATCH,
    REPORTS_DEFAULT_LIMIT,
    REPORTS_MAX_LIMIT,
)
from backend.security import require_session
from backend.services.sessions import OTP_MAX, OTP_MIN, QR_TOKEN_BYTES

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/debug/dbpath")
def dbpath(_session: dict = Depends(require_session)):
    if not ENABLE_DEBUG_ENDPOINTS:
        raise HTTPException(status_code=404, detail="Not found.")
    return {"db_path": str(DB_PATH)}


@router.get("/config/attendance")
def attendance_config():
    return {
        "allow_debug_bypass": ALLOW_DEBUG_BYPASS,
        "enforce_scope_match": ENFORCE_SCOPE_MATCH,
        "otp_range": [OTP_MIN, OTP_MAX],
        "qr_token_bytes": QR_TOKEN_BYTES,
        "reports_default_limit": REPORTS_DEFAULT_LIMIT,
        "reports_max_limit": REPORTS_MAX_LIMIT,
    }
