from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.security import require_teacher
from backend.services import sessions

router = APIRouter()


class SessionStart(BaseModel):
    subject: str
    section: str | None = None
    bssid: str
    ssid: str | None = None


class SessionEnd(BaseModel):
    session_id: int


@router.post("/sessions/start", status_code=201)
def start_session(payload: SessionStart, teacher: dict = Depends(require_teacher)):
    subject = payload.subject.strip()
    section = payload.section.strip() if payload.section else None
    bssid = payload.bssid.strip()

    if not subject:
        raise HTTPException(status_code=400, detail="Subject is required.")
    if not bssid:
        raise HTTPException(status_code=400, detail="Classroom WiFi BSSID is required.")

    return sessions.start_session(
        teacher["user_id"],
        subject,
        section,
        bssid,
        ssid=payload.ssid,
        department=teacher["department"],
    )


@router.get("/sessions/active")
def active_session(teacher: dict = Depends(require_teacher)):
    return sessions.get_active_session(teacher["user_id"])


@router.post("/sessions/end")
def end_session(payload: SessionEnd, teacher: dict = Depends(require_teacher)):
    result = sessions.end_session(payload.session_id, teacher["user_id"])
    return {
        "message": "Session ended",
        "session": result["session"],
        "marked_absent": result["absent_count"],
    }
