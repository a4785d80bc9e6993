from datetime import datetime
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

import backend.config as config
import backend.main as main
import database.db as db
from backend.security import issue_session_token
from backend.services import schedule

# 2026-10-19 is a Monday.
MONDAY_0915 = datetime(2026, 10, 19, 9, 15)


class FixedClock:
    def __init__(self, moment: datetime):
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment


def _principal(user_id: int, role: str, department: str | None, section: str | None, device_id: str | None):
    return {
        "user_id": user_id,
        "role": role,
        "department": department,
        "section": section,
        "device_id": device_id,
    }


def _headers(principal: dict) -> dict:
    token, _ = issue_session_token(
        principal["user_id"],
        role=principal["role"],
        department=principal["department"],
        section=principal["section"],
        device_id=principal["device_id"],
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def store(tmp_path, monkeypatch):
    test_db = tmp_path / "classcheck_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)
    monkeypatch.setattr(db, "PASSWORD_HASH_ITERATIONS", 1_000)

    db.create_tables()
    return test_db


@pytest.fixture()
def clock(monkeypatch):
    fixed = FixedClock(MONDAY_0915)
    monkeypatch.setattr(schedule, "local_now", fixed)
    return fixed


@pytest.fixture()
def school(store, clock):
    """
    One CSE teacher with an Algorithms/A routine on Mondays 09:00-10:00,
    three CSE/A students, plus one CSE/B and one EEE/A student.
    """
    teacher_id = db.add_user("Ada Lovelace", "ada", "secret", "teacher", department="CSE")
    rival_id = db.add_user("Alan Turing", "alan", "secret", "teacher", department="CSE")

    section_a = [
        db.add_user(
            f"Student {n}",
            f"student{n}",
            "secret",
            "student",
            department="CSE",
            section="A",
            roll_number=f"A{n:02d}",
            device_id=f"device-{n}",
        )
        for n in (1, 2, 3)
    ]
    section_b = db.add_user(
        "Student B", "studentb", "secret", "student", department="CSE", section="B", roll_number="B01"
    )
    other_dept = db.add_user(
        "Student E", "studente", "secret", "student", department="EEE", section="A", roll_number="E01"
    )

    routine_id = db.add_routine(teacher_id, "Algorithms", "A", "Monday", "09:00", "10:00")

    teacher = _principal(teacher_id, "teacher", "CSE", None, None)
    rival = _principal(rival_id, "teacher", "CSE", None, None)
    students = [_principal(sid, "student", "CSE", "A", f"device-{n}") for n, sid in enumerate(section_a, start=1)]
    student_b = _principal(section_b, "student", "CSE", "B", None)
    student_eee = _principal(other_dept, "student", "EEE", "A", None)

    return SimpleNamespace(
        teacher=teacher,
        rival=rival,
        students=students,
        student_b=student_b,
        student_eee=student_eee,
        routine_id=routine_id,
        headers=_headers,
    )


@pytest.fixture()
def client(store):
    with TestClient(main.app) as c:
        yield c
