from datetime import date

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from backend.security import require_student, require_teacher
from backend.services import reports, schedule
from backend.services.verification import verify_code, verify_network

router = APIRouter()


class WifiCheck(BaseModel):
    session_id: int
    bssid: str | None = None


class AttendanceMark(BaseModel):
    session_id: int
    code: str
    method: str


@router.post("/attendance/verify-wifi")
def verify_wifi(payload: WifiCheck, student: dict = Depends(require_student)):
    return verify_network(payload.session_id, student, payload.bssid)


@router.post("/attendance/mark", status_code=201)
def mark_attendance(payload: AttendanceMark, student: dict = Depends(require_student)):
    return verify_code(
        payload.session_id,
        student,
        payload.code,
        payload.method.strip().lower(),
    )


@router.get("/attendance/session/{session_id}")
def session_attendance(session_id: int, _teacher: dict = Depends(require_teacher)):
    return reports.session_roster(session_id)


@router.get("/attendance/student")
def student_history(student: dict = Depends(require_student)):
    return reports.student_history(student["user_id"])


@router.get("/attendance/dashboard")
def student_dashboard(student: dict = Depends(require_student)):
    return reports.student_dashboard(
        student["user_id"],
        student["section"],
        student["department"],
        schedule.local_now(),
    )


@router.get("/attendance/stats")
def student_stats(student: dict = Depends(require_student)):
    return reports.student_stats(student["user_id"])


@router.get("/attendance/reports")
def teacher_reports(
    limit: int | None = Query(default=None, ge=1),
    teacher: dict = Depends(require_teacher),
):
    return reports.teacher_reports(teacher["user_id"], limit)


@router.get("/attendance/reports/filter")
def filtered_reports(date: date, teacher: dict = Depends(require_teacher)):
    return reports.reports_on_date(teacher["user_id"], date)
