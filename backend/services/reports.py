"""
Read-side projections over live sessions, archived history and the ledger.

Attendance rows may point at a live session, an archived one, or (for
orphaned rows) neither; the helpers below merge the two session sources by id
and fall back to a placeholder summary.
"""

from datetime import date, datetime, time
from typing import Any

from backend import config
from backend.errors import SessionNotFound
from backend.services.schedule import weekday_name
from database.db import (
    clock_minutes,
    find_active_session,
    get_attendance_record,
    get_history,
    get_history_by_ids,
    get_session,
    get_sessions_by_ids,
    list_attendance_for_session,
    list_attendance_for_student,
    list_history_for_teacher,
    list_history_started_between,
    list_routines_for_section,
    list_routines_for_teacher,
    list_students,
    to_stamp,
)

UNKNOWN_SUBJECT = "Unknown Session"


def _history_summary(entry: dict[str, Any]) -> dict[str, Any]:
    return {
        "session_id": entry["id"],
        "subject": entry["subject"],
        "section": entry["section"],
        "department": entry["department"],
        "date": entry["start_time"],
        "start_time": entry["start_time"],
        "end_time": entry["end_time"],
        "is_active": False,
        "present_count": entry["present_count"],
        "absent_count": entry["absent_count"],
    }


def _session_summary(source: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": source["id"],
        "subject": source["subject"],
        "section": source["section"],
        "start_time": source["start_time"],
        "end_time": source["end_time"],
    }


def _placeholder_summary(record: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": record["session_id"],
        "subject": UNKNOWN_SUBJECT,
        "section": None,
        "start_time": record["created_at"],
        "end_time": record["created_at"],
    }


def _session_sources(session_ids: list[int]) -> dict[int, dict[str, Any]]:
    merged = get_sessions_by_ids(session_ids)
    merged.update(get_history_by_ids(session_ids))
    return merged


def clamp_limit(limit: int | None) -> int:
    if limit is None:
        return config.REPORTS_DEFAULT_LIMIT
    return max(1, min(int(limit), config.REPORTS_MAX_LIMIT))


def teacher_reports(teacher_id: int, limit: int | None = None) -> list[dict[str, Any]]:
    rows = list_history_for_teacher(teacher_id, limit=clamp_limit(limit))
    return [_history_summary(row) for row in rows]


def reports_on_date(teacher_id: int, day: date) -> list[dict[str, Any]]:
    start = to_stamp(datetime.combine(day, time.min))
    end = to_stamp(datetime.combine(day, time(23, 59, 59, 999000)))
    rows = list_history_started_between(teacher_id, start, end)
    return [_history_summary(row) for row in rows]


def student_dashboard(
    student_id: int,
    section: str | None,
    department: str | None,
    now: datetime,
) -> list[dict[str, Any]]:
    day = weekday_name(now)
    routines = [
        r for r in list_routines_for_section(section, day)
        if r["teacher_department"] == department
    ]
    routines.sort(key=lambda r: (clock_minutes(r["start_time"]), r["id"]))

    out: list[dict[str, Any]] = []
    for routine in routines:
        status = "upcoming"
        session_id = None
        session = find_active_session(routine["subject"], routine["section"], department)
        if session:
            status = "ongoing"
            session_id = session["id"]
            if get_attendance_record(session["id"], student_id):
                status = "present"

        out.append(
            {
                "subject": routine["subject"],
                "section": routine["section"],
                "day": routine["day"],
                "start_time": routine["start_time"],
                "end_time": routine["end_time"],
                "teacher_name": routine["teacher_name"],
                "status": status,
                "session_id": session_id,
            }
        )
    return out


def student_history(student_id: int) -> list[dict[str, Any]]:
    records = list_attendance_for_student(student_id)
    sources = _session_sources([r["session_id"] for r in records])

    out: list[dict[str, Any]] = []
    for record in records:
        source = sources.get(int(record["session_id"]))
        summary = _session_summary(source) if source else _placeholder_summary(record)
        out.append({**record, "session": summary})
    return out


def student_stats(student_id: int) -> list[dict[str, Any]]:
    """Per-subject present count, recorded total and percentage."""
    records = list_attendance_for_student(student_id)
    sources = _session_sources([r["session_id"] for r in records])

    by_subject: dict[str, dict[str, int]] = {}
    for record in records:
        source = sources.get(int(record["session_id"]))
        subject = source["subject"] if source else UNKNOWN_SUBJECT
        bucket = by_subject.setdefault(subject, {"present_count": 0, "total_count": 0})
        bucket["total_count"] += 1
        if record["status"] == "present":
            bucket["present_count"] += 1

    return [
        {
            "subject": subject,
            "present_count": counts["present_count"],
            "total_count": counts["total_count"],
            "percentage": round(100.0 * counts["present_count"] / counts["total_count"], 1),
        }
        for subject, counts in sorted(by_subject.items())
    ]


def session_roster(session_id: int) -> list[dict[str, Any]]:
    """Live view of the expected roster left-joined with ledger rows."""
    session = get_session(session_id) or get_history(session_id)
    if not session:
        raise SessionNotFound()

    students = list_students(session["department"], session["section"])
    records = {int(r["student_id"]): r for r in list_attendance_for_session(session_id)}

    out: list[dict[str, Any]] = []
    for student in students:
        record = records.get(int(student["id"]))
        out.append(
            {
                "student": {
                    "id": student["id"],
                    "name": student["full_name"],
                    "roll_number": student["roll_number"],
                },
                "status": record["status"] if record else "absent",
                "method": record["method"] if record else None,
                "created_at": record["created_at"] if record else None,
            }
        )
    return out


def teacher_routines_today(teacher_id: int, now: datetime) -> list[dict[str, Any]]:
    return list_routines_for_teacher(teacher_id, weekday_name(now))
