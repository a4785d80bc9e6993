"""
Session lifecycle: schedule-gated start, active lookup, and close with the
absentee sweep and history snapshot.
"""

import logging
import secrets
import sqlite3
from datetime import datetime
from typing import Any

from backend.errors import Forbidden, SessionNotFound
from backend.services import schedule
from database.db import (
    delete_session,
    get_session,
    get_user_by_id,
    insert_absences,
    insert_history,
    insert_session,
    list_active_sessions_for_teacher,
    list_attendance_for_session,
    list_students,
    mark_session_closed,
    qr_code_in_use,
    to_stamp,
    write_transaction,
)

logger = logging.getLogger(__name__)

OTP_MIN = 1000
OTP_MAX = 9999
QR_TOKEN_BYTES = 16


def mint_otp() -> str:
    return str(OTP_MIN + secrets.randbelow(OTP_MAX - OTP_MIN + 1))


def mint_qr_token() -> str:
    return secrets.token_hex(QR_TOKEN_BYTES)


def _unique_qr_token(cur: sqlite3.Cursor) -> str:
    token = mint_qr_token()
    while qr_code_in_use(cur, token):
        token = mint_qr_token()
    return token


def start_session(
    teacher_id: int,
    subject: str,
    section: str | None,
    bssid: str | None,
    *,
    ssid: str | None = None,
    department: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Open a live session for a scheduled class.

    Any session the teacher still has open is closed first, inside the same
    write transaction, through the regular close path (absentee sweep and
    history snapshot included).
    """
    moment = now or schedule.local_now()
    routine = schedule.authorize(teacher_id, subject, section, moment)

    teacher = get_user_by_id(teacher_id)
    if teacher and teacher["department"] is not None:
        department = teacher["department"]

    started_at = to_stamp(moment)
    with write_transaction() as conn:
        cur = conn.cursor()
        for previous in list_active_sessions_for_teacher(teacher_id, conn=conn):
            _, marked = _archive_session(conn, previous, ended_at=started_at)
            logger.info(
                "Superseded session %s for teacher %s (%s absentees marked)",
                previous["id"],
                teacher_id,
                marked,
            )

        otp = mint_otp()
        qr_code = _unique_qr_token(cur)
        session_id = insert_session(
            cur,
            teacher_id=teacher_id,
            subject=routine["subject"],
            section=routine["section"],
            department=department,
            bssid=bssid,
            ssid=ssid,
            otp=otp,
            qr_code=qr_code,
            start_time=started_at,
            routine_id=routine["id"],
        )

    logger.info(
        "Started session %s for teacher %s (%s / %s, routine %s)",
        session_id,
        teacher_id,
        routine["subject"],
        routine["section"],
        routine["id"],
    )
    return {
        "id": session_id,
        "teacher_id": teacher_id,
        "subject": routine["subject"],
        "section": routine["section"],
        "department": department,
        "bssid": bssid,
        "ssid": ssid,
        "otp": otp,
        "qr_code": qr_code,
        "start_time": started_at,
        "end_time": None,
        "is_active": True,
        "routine_id": routine["id"],
    }


def get_active_session(teacher_id: int) -> dict[str, Any] | None:
    sessions = list_active_sessions_for_teacher(teacher_id)
    return sessions[0] if sessions else None


def end_session(session_id: int, teacher_id: int, *, now: datetime | None = None) -> dict[str, Any]:
    """
    Close a live session owned by `teacher_id`.

    Returns `{"session": closed_session, "absent_count": newly_marked}`.
    Archived sessions are no longer in the live store, so a second close
    raises SessionNotFound.
    """
    ended_at = to_stamp(now or schedule.local_now())
    with write_transaction() as conn:
        session = get_session(session_id, conn=conn)
        if not session:
            raise SessionNotFound()
        if int(session["teacher_id"]) != int(teacher_id):
            raise Forbidden()

        closed, marked = _archive_session(conn, session, ended_at=ended_at)

    logger.info("Ended session %s for teacher %s (%s absentees marked)", session_id, teacher_id, marked)
    return {"session": closed, "absent_count": marked}


def _archive_session(
    conn: sqlite3.Connection,
    session: dict[str, Any],
    *,
    ended_at: str,
) -> tuple[dict[str, Any], int]:
    cur = conn.cursor()
    session_id = int(session["id"])
    end_time = session["end_time"] or ended_at

    mark_session_closed(cur, session_id, end_time)

    roster_ids = {int(s["id"]) for s in list_students(session["department"], session["section"], conn=conn)}
    records = list_attendance_for_session(session_id, conn=conn)
    recorded_ids = {int(r["student_id"]) for r in records}
    present_ids = {int(r["student_id"]) for r in records if r["status"] == "present"}

    absentees = roster_ids - recorded_ids
    marked = insert_absences(cur, session_id=session_id, student_ids=sorted(absentees), created_at=end_time)

    present_count = len(present_ids & roster_ids)
    absent_count = len(roster_ids) - present_count
    archived = insert_history(
        cur,
        session,
        end_time=end_time,
        present_count=present_count,
        absent_count=absent_count,
    )
    if not archived:
        logger.warning("Session %s already had a history entry; keeping the original", session_id)

    delete_session(cur, session_id)

    closed = dict(session)
    closed["is_active"] = False
    closed["end_time"] = end_time
    closed["present_count"] = present_count
    closed["absent_count"] = absent_count
    return closed, marked
