from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime

import pytest

import backend.config as config
import database.db as db
from backend.errors import (
    AlreadyMarked,
    Forbidden,
    InvalidCode,
    InvalidMethod,
    NoSchedule,
    OutOfWindow,
    ScopeMismatch,
    SessionInactive,
    SessionNotFound,
    WifiMismatch,
)
from backend.services import reports, schedule, sessions, verification


def _count_attendance(session_id: int) -> int:
    return len(db.list_attendance_for_session(session_id))


def _start(school, **kwargs):
    return sessions.start_session(school.teacher["user_id"], "Algorithms", "A", "NET1", **kwargs)


# -----------------------------
# Schedule gate
# -----------------------------
@pytest.mark.parametrize("hh, mm", [(9, 0), (9, 30), (10, 0)])
def test_authorize_accepts_inside_window_including_boundaries(school, hh, mm):
    routine = schedule.authorize(school.teacher["user_id"], "Algorithms", "A", datetime(2026, 10, 19, hh, mm))
    assert routine["id"] == school.routine_id


@pytest.mark.parametrize("hh, mm", [(8, 59), (10, 1), (23, 0)])
def test_authorize_rejects_outside_window(school, hh, mm):
    with pytest.raises(OutOfWindow):
        schedule.authorize(school.teacher["user_id"], "Algorithms", "A", datetime(2026, 10, 19, hh, mm))


def test_authorize_rejects_day_without_routine(school):
    sunday = datetime(2026, 10, 18, 8, 0)
    with pytest.raises(NoSchedule):
        schedule.authorize(school.teacher["user_id"], "Algorithms", "A", sunday)


def test_authorize_needs_matching_subject_and_section(school):
    with pytest.raises(NoSchedule):
        schedule.authorize(school.teacher["user_id"], "Algorithms", "B", datetime(2026, 10, 19, 9, 15))
    with pytest.raises(NoSchedule):
        schedule.authorize(school.rival["user_id"], "Algorithms", "A", datetime(2026, 10, 19, 9, 15))


def test_authorize_compares_unpadded_clock_values_numerically(school):
    db.add_routine(school.teacher["user_id"], "Compilers", "A", "Monday", "9:05", "13:00")
    routine = schedule.authorize(school.teacher["user_id"], "Compilers", "A", datetime(2026, 10, 19, 10, 30))
    assert routine["start_time"] == "09:05"
    with pytest.raises(OutOfWindow):
        schedule.authorize(school.teacher["user_id"], "Compilers", "A", datetime(2026, 10, 19, 9, 4))


def test_add_routine_rejects_windows_crossing_midnight(store):
    teacher_id = db.add_user("Night Owl", "owl", "secret", "teacher", department="CSE")
    with pytest.raises(ValueError):
        db.add_routine(teacher_id, "Astronomy", "A", "Friday", "23:00", "01:00")
    with pytest.raises(ValueError):
        db.add_routine(teacher_id, "Astronomy", "A", "Funday", "20:00", "21:00")


# -----------------------------
# Session store
# -----------------------------
def test_start_session_mints_secrets_and_stamps_routine(school):
    session = _start(school, ssid="Room-101")

    assert session["is_active"] is True
    assert session["end_time"] is None
    assert session["routine_id"] == school.routine_id
    assert session["department"] == "CSE"
    assert session["ssid"] == "Room-101"
    assert len(session["otp"]) == 4 and session["otp"].isdigit()
    assert 1000 <= int(session["otp"]) <= 9999
    assert len(session["qr_code"]) == 32
    int(session["qr_code"], 16)

    assert sessions.get_active_session(school.teacher["user_id"]) == db.get_session(session["id"])


def test_get_active_session_is_none_without_live_session(school):
    assert sessions.get_active_session(school.teacher["user_id"]) is None


def test_start_session_propagates_schedule_failures(school, clock):
    clock.moment = datetime(2026, 10, 19, 8, 59)
    with pytest.raises(OutOfWindow):
        _start(school)
    clock.moment = datetime(2026, 10, 18, 8, 0)
    with pytest.raises(NoSchedule):
        _start(school)
    assert sessions.get_active_session(school.teacher["user_id"]) is None


def test_mint_otp_stays_in_four_digit_range():
    for _ in range(500):
        assert 1000 <= int(sessions.mint_otp()) <= 9999


def test_starting_again_archives_the_previous_session(school, clock):
    first = _start(school)
    verification.verify_code(first["id"], school.students[0], first["otp"], "otp")

    clock.moment = datetime(2026, 10, 19, 9, 20)
    second = _start(school)

    assert second["id"] != first["id"]
    assert db.get_session(first["id"]) is None
    assert sessions.get_active_session(school.teacher["user_id"])["id"] == second["id"]
    assert len(db.list_active_sessions_for_teacher(school.teacher["user_id"])) == 1

    history = db.get_history(first["id"])
    assert history["present_count"] == 1
    assert history["absent_count"] == 2
    assert history["end_time"] == db.to_stamp(clock.moment)
    assert _count_attendance(first["id"]) == 3


# -----------------------------
# Verification engine
# -----------------------------
def test_check_network_is_pure_and_honours_bypass_flag():
    session = {"bssid": "aa:bb:cc:dd:ee:ff"}
    verification.check_network(session, "aa:bb:cc:dd:ee:ff")
    with pytest.raises(WifiMismatch):
        verification.check_network(session, "DEBUG_BSSID", allow_debug_bypass=False, bypass_network_id="DEBUG_BSSID")
    verification.check_network(session, "DEBUG_BSSID", allow_debug_bypass=True, bypass_network_id="DEBUG_BSSID")
    with pytest.raises(WifiMismatch):
        verification.check_network(session, None)


def test_verify_network_accepts_matching_bssid(school):
    session = _start(school)
    ack = verification.verify_network(session["id"], school.students[0], "NET1")
    assert ack == {"message": "WiFi verified", "session_id": session["id"]}
    assert _count_attendance(session["id"]) == 0


def test_verify_network_rejects_mismatch_and_disabled_bypass(school):
    session = _start(school)
    with pytest.raises(WifiMismatch):
        verification.verify_network(session["id"], school.students[0], "NET2")
    with pytest.raises(WifiMismatch):
        verification.verify_network(session["id"], school.students[0], config.DEBUG_BYPASS_NETWORK_ID)


def test_verify_network_bypass_when_enabled(school, monkeypatch):
    monkeypatch.setattr(config, "ALLOW_DEBUG_BYPASS", True)
    session = _start(school)
    ack = verification.verify_network(session["id"], school.students[0], config.DEBUG_BYPASS_NETWORK_ID)
    assert ack["session_id"] == session["id"]


def test_verify_network_short_circuits_when_already_marked(school):
    session = _start(school)
    verification.verify_code(session["id"], school.students[0], session["otp"], "otp")
    with pytest.raises(AlreadyMarked):
        verification.verify_network(session["id"], school.students[0], "NET1")


def test_verify_network_rejects_closed_or_missing_session(school):
    session = _start(school)
    sessions.end_session(session["id"], school.teacher["user_id"])
    with pytest.raises(SessionInactive):
        verification.verify_network(session["id"], school.students[0], "NET1")
    with pytest.raises(SessionInactive):
        verification.verify_network(9999, school.students[0], "NET1")


def test_verify_code_with_otp_succeeds_once(school):
    session = _start(school)
    student = school.students[0]

    record = verification.verify_code(session["id"], student, session["otp"], "otp")
    assert record["status"] == "present"
    assert record["method"] == "otp"
    assert record["device_id"] == "device-1"
    assert record["student_id"] == student["user_id"]

    with pytest.raises(AlreadyMarked):
        verification.verify_code(session["id"], student, session["otp"], "otp")
    assert _count_attendance(session["id"]) == 1


def test_verify_code_with_qr_token(school):
    session = _start(school)
    record = verification.verify_code(session["id"], school.students[1], session["qr_code"], "qr")
    assert record["method"] == "qr"

    with pytest.raises(InvalidCode):
        verification.verify_code(session["id"], school.students[2], session["otp"], "qr")


def test_invalid_code_does_not_consume_the_duplicate_guard(school):
    session = _start(school)
    student = school.students[0]
    wrong = "0000"

    with pytest.raises(InvalidCode):
        verification.verify_code(session["id"], student, wrong, "otp")
    assert _count_attendance(session["id"]) == 0

    record = verification.verify_code(session["id"], student, session["otp"], "otp")
    assert record["status"] == "present"


def test_verify_code_rejects_unknown_method(school):
    session = _start(school)
    with pytest.raises(InvalidMethod):
        verification.verify_code(session["id"], school.students[0], session["otp"], "manual")


def test_verify_code_rejects_inactive_session(school):
    with pytest.raises(SessionInactive):
        verification.verify_code(4242, school.students[0], "1234", "otp")


def test_verify_code_scope_mismatch(school):
    session = _start(school)
    with pytest.raises(ScopeMismatch):
        verification.verify_code(session["id"], school.student_b, session["otp"], "otp")
    with pytest.raises(ScopeMismatch):
        verification.verify_code(session["id"], school.student_eee, session["otp"], "otp")


def test_scope_check_can_be_disabled(school, monkeypatch):
    monkeypatch.setattr(config, "ENFORCE_SCOPE_MATCH", False)
    session = _start(school)
    record = verification.verify_code(session["id"], school.student_eee, session["otp"], "otp")
    assert record["status"] == "present"


def test_concurrent_duplicate_submissions_leave_one_record(school):
    session = _start(school)
    student = school.students[0]

    def submit(_):
        try:
            verification.verify_code(session["id"], student, session["otp"], "otp")
            return "ok"
        except AlreadyMarked:
            return "dup"

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(submit, range(8)))

    assert outcomes.count("ok") == 1
    assert outcomes.count("dup") == 7
    assert _count_attendance(session["id"]) == 1


# -----------------------------
# Session closer
# -----------------------------
def test_end_session_scenario(school, clock):
    session = _start(school)
    student = school.students[0]

    verification.verify_network(session["id"], student, "NET1")
    verification.verify_code(session["id"], student, session["otp"], "otp")

    clock.moment = datetime(2026, 10, 19, 9, 55)
    result = sessions.end_session(session["id"], school.teacher["user_id"])

    closed = result["session"]
    assert result["absent_count"] == 2
    assert closed["is_active"] is False
    assert closed["end_time"] == db.to_stamp(clock.moment)

    history = db.get_history(session["id"])
    assert history["present_count"] == 1
    assert history["absent_count"] == 2
    assert history["present_count"] + history["absent_count"] == 3
    assert history["start_time"] == session["start_time"]

    records = db.list_attendance_for_session(session["id"])
    absent = [r for r in records if r["status"] == "absent"]
    assert {r["student_id"] for r in absent} == {s["user_id"] for s in school.students[1:]}
    assert all(r["method"] == "manual" for r in absent)
    assert sessions.get_active_session(school.teacher["user_id"]) is None


def test_end_session_with_full_attendance_marks_nobody(school):
    session = _start(school)
    for student in school.students:
        verification.verify_code(session["id"], student, session["otp"], "otp")

    result = sessions.end_session(session["id"], school.teacher["user_id"])
    assert result["absent_count"] == 0
    assert db.get_history(session["id"])["present_count"] == 3


def test_end_session_twice_keeps_single_history(school):
    session = _start(school)
    sessions.end_session(session["id"], school.teacher["user_id"])
    history = db.get_history(session["id"])
    records_before = _count_attendance(session["id"])

    with pytest.raises(SessionNotFound):
        sessions.end_session(session["id"], school.teacher["user_id"])

    assert db.get_history(session["id"]) == history
    assert _count_attendance(session["id"]) == records_before


def test_end_session_rejects_other_teacher(school):
    session = _start(school)
    with pytest.raises(Forbidden):
        sessions.end_session(session["id"], school.rival["user_id"])
    assert db.get_session(session["id"])["is_active"] is True


def test_end_unknown_session(school):
    with pytest.raises(SessionNotFound):
        sessions.end_session(123456, school.teacher["user_id"])


def test_absence_and_history_writes_ignore_repeats(school):
    session = _start(school)
    verification.verify_code(session["id"], school.students[0], session["otp"], "otp")
    ids = [s["user_id"] for s in school.students]

    with db.write_transaction() as conn:
        cur = conn.cursor()
        assert db.insert_absences(cur, session_id=session["id"], student_ids=ids, created_at="x") == 2
        assert db.insert_absences(cur, session_id=session["id"], student_ids=ids, created_at="x") == 0
        assert db.insert_absences(cur, session_id=session["id"], student_ids=[], created_at="x") == 0

        stored = db.get_session(session["id"], conn=conn)
        assert db.insert_history(cur, stored, end_time="e", present_count=1, absent_count=2) is True
        assert db.insert_history(cur, stored, end_time="e", present_count=0, absent_count=3) is False

    assert db.get_history(session["id"])["present_count"] == 1
    assert db.get_attendance_record(session["id"], ids[0])["status"] == "present"


# -----------------------------
# Reports
# -----------------------------
def test_teacher_reports_newest_first_with_limit(school, clock):
    first = _start(school)
    clock.moment = datetime(2026, 10, 19, 9, 30)
    sessions.end_session(first["id"], school.teacher["user_id"])

    clock.moment = datetime(2026, 10, 19, 9, 40)
    second = _start(school)
    verification.verify_code(second["id"], school.students[0], second["otp"], "otp")
    clock.moment = datetime(2026, 10, 19, 9, 50)
    sessions.end_session(second["id"], school.teacher["user_id"])

    rows = reports.teacher_reports(school.teacher["user_id"])
    assert [r["session_id"] for r in rows] == [second["id"], first["id"]]
    assert rows[0]["present_count"] == 1 and rows[0]["absent_count"] == 2
    assert rows[1]["present_count"] == 0 and rows[1]["absent_count"] == 3
    assert rows[0]["is_active"] is False

    assert [r["session_id"] for r in reports.teacher_reports(school.teacher["user_id"], 1)] == [second["id"]]
    assert reports.teacher_reports(school.rival["user_id"]) == []


def test_reports_on_date_uses_calendar_day_bounds(school, clock):
    db.add_routine(school.teacher["user_id"], "Night Lab", "A", "Monday", "00:00", "00:30")
    clock.moment = datetime(2026, 10, 19, 0, 0)
    early = sessions.start_session(school.teacher["user_id"], "Night Lab", "A", "NET1")
    sessions.end_session(early["id"], school.teacher["user_id"])

    clock.moment = datetime(2026, 10, 19, 9, 15)
    later = _start(school)
    sessions.end_session(later["id"], school.teacher["user_id"])

    rows = reports.reports_on_date(school.teacher["user_id"], date(2026, 10, 19))
    assert [r["session_id"] for r in rows] == [early["id"], later["id"]]
    assert reports.reports_on_date(school.teacher["user_id"], date(2026, 10, 18)) == []
    assert reports.reports_on_date(school.teacher["user_id"], date(2026, 10, 20)) == []


def test_session_roster_live_and_archived(school):
    session = _start(school)
    verification.verify_code(session["id"], school.students[0], session["qr_code"], "qr")

    live = reports.session_roster(session["id"])
    assert [row["student"]["id"] for row in live] == [s["user_id"] for s in school.students]
    assert live[0]["status"] == "present" and live[0]["method"] == "qr"
    assert live[1] == {
        "student": {"id": school.students[1]["user_id"], "name": "Student 2", "roll_number": "A02"},
        "status": "absent",
        "method": None,
        "created_at": None,
    }

    sessions.end_session(session["id"], school.teacher["user_id"])
    archived = reports.session_roster(session["id"])
    assert archived[1]["status"] == "absent"
    assert archived[1]["method"] == "manual"
    assert archived[1]["created_at"] is not None

    with pytest.raises(SessionNotFound):
        reports.session_roster(31337)


def test_student_history_merges_sources_and_falls_back(school, clock):
    student = school.students[0]
    closed = _start(school)
    verification.verify_code(closed["id"], student, closed["otp"], "otp")
    sessions.end_session(closed["id"], school.teacher["user_id"])

    clock.moment = datetime(2026, 10, 19, 9, 45)
    live = _start(school)
    verification.verify_code(live["id"], student, live["otp"], "otp")

    db.insert_attendance(
        session_id=777,
        student_id=student["user_id"],
        status="present",
        method="otp",
        device_id=None,
        created_at="2026-10-19T09:50:00.000",
    )

    rows = reports.student_history(student["user_id"])
    assert [r["session_id"] for r in rows] == [777, live["id"], closed["id"]]
    assert rows[0]["session"] == {
        "id": 777,
        "subject": "Unknown Session",
        "section": None,
        "start_time": "2026-10-19T09:50:00.000",
        "end_time": "2026-10-19T09:50:00.000",
    }
    assert rows[1]["session"]["subject"] == "Algorithms"
    assert rows[1]["session"]["end_time"] is None
    assert rows[2]["session"]["end_time"] is not None


def test_student_dashboard_tracks_status(school, clock):
    db.add_routine(school.teacher["user_id"], "Databases", "A", "Monday", "11:00", "12:00")
    eee_teacher = db.add_user("Volta", "volta", "secret", "teacher", department="EEE")
    db.add_routine(eee_teacher, "Circuits", "A", "Monday", "08:00", "09:00")

    student = school.students[0]
    args = (student["user_id"], "A", "CSE")

    rows = reports.student_dashboard(*args, clock.moment)
    assert [(r["subject"], r["status"]) for r in rows] == [("Algorithms", "upcoming"), ("Databases", "upcoming")]

    session = _start(school)
    rows = reports.student_dashboard(*args, clock.moment)
    assert rows[0]["status"] == "ongoing"
    assert rows[0]["session_id"] == session["id"]
    assert rows[1]["session_id"] is None

    verification.verify_code(session["id"], student, session["otp"], "otp")
    assert reports.student_dashboard(*args, clock.moment)[0]["status"] == "present"

    tuesday = datetime(2026, 10, 20, 9, 15)
    assert reports.student_dashboard(*args, tuesday) == []


def test_student_stats_per_subject(school, clock):
    student = school.students[0]
    first = _start(school)
    verification.verify_code(first["id"], student, first["otp"], "otp")
    sessions.end_session(first["id"], school.teacher["user_id"])

    clock.moment = datetime(2026, 10, 19, 9, 30)
    second = _start(school)
    sessions.end_session(second["id"], school.teacher["user_id"])

    assert reports.student_stats(student["user_id"]) == [
        {"subject": "Algorithms", "present_count": 1, "total_count": 2, "percentage": 50.0}
    ]
    assert reports.student_stats(school.student_b["user_id"]) == []


def test_clamp_limit_bounds(monkeypatch):
    monkeypatch.setattr(config, "REPORTS_DEFAULT_LIMIT", 10)
    monkeypatch.setattr(config, "REPORTS_MAX_LIMIT", 100)
    assert reports.clamp_limit(None) == 10
    assert reports.clamp_limit(0) == 1
    assert reports.clamp_limit(5000) == 100
