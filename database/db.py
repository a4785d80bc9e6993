import hashlib
import hmac
import secrets
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterable, Iterator, Literal

from backend.config import DB_BUSY_TIMEOUT_SECONDS, DB_PATH


PASSWORD_HASH_ALGO = "pbkdf2_sha256"
PASSWORD_HASH_ITERATIONS = 120_000

WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")

Role = Literal["teacher", "student"]
AttendanceStatus = Literal["present", "absent"]
AttendanceMethod = Literal["otp", "qr", "manual"]

SESSION_COLUMNS = """
    id, teacher_id, subject, section, department, bssid, ssid,
    otp, qr_code, start_time, end_time, is_active, routine_id
"""
HISTORY_COLUMNS = """
    id, teacher_id, subject, section, department, bssid, ssid,
    start_time, end_time, present_count, absent_count, routine_id, archived_at
"""
ATTENDANCE_COLUMNS = "id, session_id, student_id, status, method, device_id, created_at"


def _hash_password(password: str, *, salt: str | None = None) -> str:
    salt_value = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        PASSWORD_HASH_ITERATIONS,
    ).hex()
    return f"{PASSWORD_HASH_ALGO}${PASSWORD_HASH_ITERATIONS}${salt_value}${digest}"


def _verify_password(password: str, password_hash: str) -> bool:
    try:
        algo, rounds_text, salt_value, expected_digest = password_hash.split("$", 3)
        rounds = int(rounds_text)
    except (ValueError, TypeError):
        return False

    if algo != PASSWORD_HASH_ALGO or rounds <= 0:
        return False

    candidate_digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        rounds,
    ).hex()
    return hmac.compare_digest(candidate_digest, expected_digest)


def to_stamp(value: datetime) -> str:
    # Millisecond ISO text sorts chronologically as a string.
    return value.isoformat(timespec="milliseconds")


def normalize_clock(value: str) -> str:
    """Return a clock string like "9:05" or "09:05:00" as zero-padded "HH:MM"."""
    parts = (value or "").strip().split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"Invalid clock time: {value!r}")
    try:
        hh = int(parts[0])
        mm = int(parts[1])
    except ValueError:
        raise ValueError(f"Invalid clock time: {value!r}") from None
    if not (0 <= hh <= 23 and 0 <= mm <= 59):
        raise ValueError(f"Invalid clock time: {value!r}")
    return f"{hh:02d}:{mm:02d}"


def clock_minutes(value: str) -> int:
    hh, mm = normalize_clock(value).split(":")
    return int(hh) * 60 + int(mm)


def connect_db():
    conn = sqlite3.connect(str(DB_PATH), timeout=DB_BUSY_TIMEOUT_SECONDS, check_same_thread=False)
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


@contextmanager
def write_transaction() -> Iterator[sqlite3.Connection]:
    """
    Open a connection holding the database write lock until commit.

    `BEGIN IMMEDIATE` makes concurrent writers queue behind each other, which
    is what serializes close-then-open for a teacher.
    """
    conn = connect_db()
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.commit()
    except BaseException:
        conn.rollback()
        raise
    finally:
        conn.close()


def create_tables():
    conn = connect_db()
    cursor = conn.cursor()

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        full_name TEXT NOT NULL,
        username TEXT NOT NULL UNIQUE COLLATE NOCASE,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL CHECK(role IN ('teacher', 'student')),
        department TEXT,
        section TEXT,
        roll_number TEXT,
        device_id TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_users_roster ON users (role, department, section)"
    )

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS class_routines (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        teacher_id INTEGER NOT NULL,
        subject TEXT NOT NULL,
        section TEXT,
        day TEXT NOT NULL,               -- Monday..Sunday
        start_time TEXT NOT NULL,        -- HH:MM
        end_time TEXT NOT NULL,          -- HH:MM
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (teacher_id) REFERENCES users(id) ON DELETE CASCADE
    )
    """)
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_routines_lookup ON class_routines (teacher_id, subject, section, day)"
    )

    # Live sessions only; closed sessions move to class_history.
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS sessions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        teacher_id INTEGER NOT NULL,
        subject TEXT NOT NULL,
        section TEXT,
        department TEXT,
        bssid TEXT,
        ssid TEXT,
        otp TEXT NOT NULL,
        qr_code TEXT NOT NULL UNIQUE,
        start_time TEXT NOT NULL,
        end_time TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        routine_id INTEGER
    )
    """)
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_sessions_teacher_active ON sessions (teacher_id, is_active)"
    )

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS attendance (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id INTEGER NOT NULL,
        student_id INTEGER NOT NULL,
        status TEXT NOT NULL CHECK(status IN ('present', 'absent')),
        method TEXT NOT NULL CHECK(method IN ('otp', 'qr', 'manual')),
        device_id TEXT,
        created_at TEXT NOT NULL,
        UNIQUE(session_id, student_id)
    )
    """)
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_attendance_student ON attendance (student_id, created_at)"
    )

    # id is the closed session's id, so archiving twice is a no-op.
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS class_history (
        id INTEGER PRIMARY KEY,
        teacher_id INTEGER NOT NULL,
        subject TEXT NOT NULL,
        section TEXT,
        department TEXT,
        bssid TEXT,
        ssid TEXT,
        start_time TEXT NOT NULL,
        end_time TEXT NOT NULL,
        present_count INTEGER NOT NULL DEFAULT 0,
        absent_count INTEGER NOT NULL DEFAULT 0,
        routine_id INTEGER,
        archived_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_history_teacher ON class_history (teacher_id, start_time)"
    )

    conn.commit()
    conn.close()


# -----------------------------
# Row mapping
# -----------------------------
def _session_from_row(row) -> dict[str, Any]:
    return {
        "id": row[0],
        "teacher_id": row[1],
        "subject": row[2],
        "section": row[3],
        "department": row[4],
        "bssid": row[5],
        "ssid": row[6],
        "otp": row[7],
        "qr_code": row[8],
        "start_time": row[9],
        "end_time": row[10],
        "is_active": bool(row[11]),
        "routine_id": row[12],
    }


def _history_from_row(row) -> dict[str, Any]:
    return {
        "id": row[0],
        "teacher_id": row[1],
        "subject": row[2],
        "section": row[3],
        "department": row[4],
        "bssid": row[5],
        "ssid": row[6],
        "start_time": row[7],
        "end_time": row[8],
        "present_count": row[9],
        "absent_count": row[10],
        "routine_id": row[11],
        "archived_at": row[12],
    }


def _attendance_from_row(row) -> dict[str, Any]:
    return {
        "id": row[0],
        "session_id": row[1],
        "student_id": row[2],
        "status": row[3],
        "method": row[4],
        "device_id": row[5],
        "created_at": row[6],
    }


def _user_from_row(row) -> dict[str, Any]:
    return {
        "id": row[0],
        "full_name": row[1],
        "username": row[2],
        "role": row[3],
        "department": row[4],
        "section": row[5],
        "roll_number": row[6],
        "device_id": row[7],
    }


def _routine_from_row(row) -> dict[str, Any]:
    return {
        "id": row[0],
        "teacher_id": row[1],
        "subject": row[2],
        "section": row[3],
        "day": row[4],
        "start_time": row[5],
        "end_time": row[6],
    }


# -----------------------------
# Users (identity + roster directory)
# -----------------------------
def add_user(
    full_name: str,
    username: str,
    password: str,
    role: Role,
    *,
    department: str | None = None,
    section: str | None = None,
    roll_number: str | None = None,
    device_id: str | None = None,
) -> int:
    clean_username = username.strip()
    clean_password = password.strip()
    if not clean_username or not clean_password:
        raise ValueError("Username and password are required.")

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO users (
            full_name, username, password_hash, role,
            department, section, roll_number, device_id
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            full_name.strip(),
            clean_username,
            _hash_password(clean_password),
            role,
            department,
            section,
            roll_number,
            device_id,
        ),
    )
    user_id = int(cur.lastrowid)
    conn.commit()
    conn.close()
    return user_id


def get_user_by_id(user_id: int) -> dict[str, Any] | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, full_name, username, role, department, section, roll_number, device_id
        FROM users
        WHERE id = ?
        """,
        (user_id,),
    )
    row = cur.fetchone()
    conn.close()
    return _user_from_row(row) if row else None


def verify_user_credentials(username: str, password: str) -> dict[str, Any] | None:
    clean_username = username.strip()
    clean_password = password.strip()
    if not clean_username or not clean_password:
        return None

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, full_name, username, role, department, section, roll_number, device_id,
               password_hash
        FROM users
        WHERE username = ? COLLATE NOCASE
        """,
        (clean_username,),
    )
    row = cur.fetchone()
    conn.close()

    if not row:
        return None
    if not _verify_password(clean_password, row[8]):
        return None
    return _user_from_row(row)


def list_students(
    department: str | None,
    section: str | None,
    *,
    conn: sqlite3.Connection | None = None,
) -> list[dict[str, Any]]:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    where = ["role = 'student'"]
    params: list[Any] = []
    if department is not None:
        where.append("department = ?")
        params.append(department)
    if section is not None:
        where.append("section = ?")
        params.append(section)
    where_sql = " AND ".join(where)

    try:
        cur = active_conn.cursor()
        cur.execute(
            f"""
            SELECT id, full_name, username, role, department, section, roll_number, device_id
            FROM users
            WHERE {where_sql}
            ORDER BY roll_number, full_name, id
            """,
            params,
        )
        return [_user_from_row(row) for row in cur.fetchall()]
    finally:
        if owns_conn:
            active_conn.close()


# -----------------------------
# Routines (schedule directory)
# -----------------------------
def add_routine(
    teacher_id: int,
    subject: str,
    section: str | None,
    day: str,
    start_time: str,
    end_time: str,
) -> int:
    clean_day = day.strip().title()
    if clean_day not in WEEKDAYS:
        raise ValueError(f"Invalid weekday: {day!r}")
    start = normalize_clock(start_time)
    end = normalize_clock(end_time)
    if clock_minutes(end) <= clock_minutes(start):
        raise ValueError("Routine windows must end after they start on the same day.")

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO class_routines (teacher_id, subject, section, day, start_time, end_time)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (teacher_id, subject.strip(), section, clean_day, start, end),
    )
    routine_id = int(cur.lastrowid)
    conn.commit()
    conn.close()
    return routine_id


def find_routine(teacher_id: int, subject: str, section: str | None, day: str) -> dict[str, Any] | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, teacher_id, subject, section, day, start_time, end_time
        FROM class_routines
        WHERE teacher_id = ?
          AND subject = ?
          AND section IS ?
          AND day = ?
        ORDER BY start_time, id
        """,
        (teacher_id, subject, section, day),
    )
    rows = cur.fetchall()
    conn.close()
    if not rows:
        return None
    return _routine_from_row(rows[0])


def list_routines_for_teacher(teacher_id: int, day: str) -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, teacher_id, subject, section, day, start_time, end_time
        FROM class_routines
        WHERE teacher_id = ? AND day = ?
        ORDER BY start_time, id
        """,
        (teacher_id, day),
    )
    rows = cur.fetchall()
    conn.close()
    return [_routine_from_row(row) for row in rows]


def list_routines_for_section(section: str | None, day: str) -> list[dict[str, Any]]:
    """Routines for a section on a weekday, with the teacher's department attached."""
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT r.id, r.teacher_id, r.subject, r.section, r.day, r.start_time, r.end_time,
               u.department, u.full_name
        FROM class_routines r
        LEFT JOIN users u ON u.id = r.teacher_id
        WHERE r.section IS ? AND r.day = ?
        ORDER BY r.start_time, r.id
        """,
        (section, day),
    )
    rows = cur.fetchall()
    conn.close()

    out: list[dict[str, Any]] = []
    for row in rows:
        routine = _routine_from_row(row)
        routine["teacher_department"] = row[7]
        routine["teacher_name"] = row[8]
        out.append(routine)
    return out


# -----------------------------
# Sessions (live store)
# -----------------------------
def insert_session(
    cur: sqlite3.Cursor,
    *,
    teacher_id: int,
    subject: str,
    section: str | None,
    department: str | None,
    bssid: str | None,
    ssid: str | None,
    otp: str,
    qr_code: str,
    start_time: str,
    routine_id: int | None,
) -> int:
    cur.execute(
        """
        INSERT INTO sessions (
            teacher_id, subject, section, department, bssid, ssid,
            otp, qr_code, start_time, end_time, is_active, routine_id
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, 1, ?)
        """,
        (teacher_id, subject, section, department, bssid, ssid, otp, qr_code, start_time, routine_id),
    )
    return int(cur.lastrowid)


def qr_code_in_use(cur: sqlite3.Cursor, qr_code: str) -> bool:
    cur.execute("SELECT 1 FROM sessions WHERE qr_code = ?", (qr_code,))
    return cur.fetchone() is not None


def get_session(session_id: int, *, conn: sqlite3.Connection | None = None) -> dict[str, Any] | None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.execute(f"SELECT {SESSION_COLUMNS} FROM sessions WHERE id = ?", (session_id,))
        row = cur.fetchone()
        return _session_from_row(row) if row else None
    finally:
        if owns_conn:
            active_conn.close()


def list_active_sessions_for_teacher(
    teacher_id: int,
    *,
    conn: sqlite3.Connection | None = None,
) -> list[dict[str, Any]]:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.execute(
            f"""
            SELECT {SESSION_COLUMNS}
            FROM sessions
            WHERE teacher_id = ? AND is_active = 1
            ORDER BY start_time DESC, id DESC
            """,
            (teacher_id,),
        )
        return [_session_from_row(row) for row in cur.fetchall()]
    finally:
        if owns_conn:
            active_conn.close()


def find_active_session(subject: str, section: str | None, department: str | None) -> dict[str, Any] | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {SESSION_COLUMNS}
        FROM sessions
        WHERE subject = ?
          AND section IS ?
          AND department IS ?
          AND is_active = 1
        ORDER BY start_time DESC, id DESC
        LIMIT 1
        """,
        (subject, section, department),
    )
    row = cur.fetchone()
    conn.close()
    return _session_from_row(row) if row else None


def mark_session_closed(cur: sqlite3.Cursor, session_id: int, end_time: str) -> None:
    cur.execute(
        """
        UPDATE sessions
        SET is_active = 0,
            end_time = COALESCE(end_time, ?)
        WHERE id = ?
        """,
        (end_time, session_id),
    )


def delete_session(cur: sqlite3.Cursor, session_id: int) -> None:
    cur.execute("DELETE FROM sessions WHERE id = ?", (session_id,))


def get_sessions_by_ids(session_ids: Iterable[int]) -> dict[int, dict[str, Any]]:
    ids = sorted({int(i) for i in session_ids})
    if not ids:
        return {}
    placeholders = ", ".join("?" for _ in ids)
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(f"SELECT {SESSION_COLUMNS} FROM sessions WHERE id IN ({placeholders})", ids)
    rows = cur.fetchall()
    conn.close()
    return {int(row[0]): _session_from_row(row) for row in rows}


# -----------------------------
# Attendance ledger
# -----------------------------
def insert_attendance(
    *,
    session_id: int,
    student_id: int,
    status: AttendanceStatus,
    method: AttendanceMethod,
    device_id: str | None,
    created_at: str,
    conn: sqlite3.Connection | None = None,
) -> dict[str, Any]:
    """
    Append one ledger row. Raises `sqlite3.IntegrityError` when the
    (session_id, student_id) pair already has a record.
    """
    owns_conn = conn is None
    active_conn = conn or connect_db()
    cur = active_conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO attendance (session_id, student_id, status, method, device_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (session_id, student_id, status, method, device_id, created_at),
        )
        record_id = int(cur.lastrowid)
        if owns_conn:
            active_conn.commit()
    finally:
        if owns_conn:
            active_conn.close()

    return {
        "id": record_id,
        "session_id": session_id,
        "student_id": student_id,
        "status": status,
        "method": method,
        "device_id": device_id,
        "created_at": created_at,
    }


def insert_absences(
    cur: sqlite3.Cursor,
    *,
    session_id: int,
    student_ids: Iterable[int],
    created_at: str,
) -> int:
    """Bulk-append absent/manual rows, ignoring pairs that already exist."""
    rows = [(session_id, int(student_id), created_at) for student_id in student_ids]
    if not rows:
        return 0
    cur.executemany(
        """
        INSERT OR IGNORE INTO attendance (session_id, student_id, status, method, device_id, created_at)
        VALUES (?, ?, 'absent', 'manual', NULL, ?)
        """,
        rows,
    )
    return max(0, cur.rowcount)


def get_attendance_record(session_id: int, student_id: int) -> dict[str, Any] | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {ATTENDANCE_COLUMNS}
        FROM attendance
        WHERE session_id = ? AND student_id = ?
        """,
        (session_id, student_id),
    )
    row = cur.fetchone()
    conn.close()
    return _attendance_from_row(row) if row else None


def list_attendance_for_session(
    session_id: int,
    *,
    conn: sqlite3.Connection | None = None,
) -> list[dict[str, Any]]:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.execute(
            f"""
            SELECT {ATTENDANCE_COLUMNS}
            FROM attendance
            WHERE session_id = ?
            ORDER BY created_at, id
            """,
            (session_id,),
        )
        return [_attendance_from_row(row) for row in cur.fetchall()]
    finally:
        if owns_conn:
            active_conn.close()


def list_attendance_for_student(student_id: int) -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {ATTENDANCE_COLUMNS}
        FROM attendance
        WHERE student_id = ?
        ORDER BY created_at DESC, id DESC
        """,
        (student_id,),
    )
    rows = cur.fetchall()
    conn.close()
    return [_attendance_from_row(row) for row in rows]


# -----------------------------
# Class history (archive)
# -----------------------------
def insert_history(
    cur: sqlite3.Cursor,
    session: dict[str, Any],
    *,
    end_time: str,
    present_count: int,
    absent_count: int,
) -> bool:
    """Archive a closed session. Returns False when it was already archived."""
    cur.execute(
        """
        INSERT OR IGNORE INTO class_history (
            id, teacher_id, subject, section, department, bssid, ssid,
            start_time, end_time, present_count, absent_count, routine_id
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            session["id"],
            session["teacher_id"],
            session["subject"],
            session["section"],
            session["department"],
            session["bssid"],
            session["ssid"],
            session["start_time"],
            end_time,
            present_count,
            absent_count,
            session["routine_id"],
        ),
    )
    return cur.rowcount == 1


def get_history(history_id: int) -> dict[str, Any] | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(f"SELECT {HISTORY_COLUMNS} FROM class_history WHERE id = ?", (history_id,))
    row = cur.fetchone()
    conn.close()
    return _history_from_row(row) if row else None


def get_history_by_ids(history_ids: Iterable[int]) -> dict[int, dict[str, Any]]:
    ids = sorted({int(i) for i in history_ids})
    if not ids:
        return {}
    placeholders = ", ".join("?" for _ in ids)
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(f"SELECT {HISTORY_COLUMNS} FROM class_history WHERE id IN ({placeholders})", ids)
    rows = cur.fetchall()
    conn.close()
    return {int(row[0]): _history_from_row(row) for row in rows}


def list_history_for_teacher(teacher_id: int, *, limit: int) -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {HISTORY_COLUMNS}
        FROM class_history
        WHERE teacher_id = ?
        ORDER BY end_time DESC, id DESC
        LIMIT ?
        """,
        (teacher_id, limit),
    )
    rows = cur.fetchall()
    conn.close()
    return [_history_from_row(row) for row in rows]


def list_history_started_between(teacher_id: int, start: str, end: str) -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {HISTORY_COLUMNS}
        FROM class_history
        WHERE teacher_id = ?
          AND start_time >= ?
          AND start_time <= ?
        ORDER BY start_time ASC, id ASC
        """,
        (teacher_id, start, end),
    )
    rows = cur.fetchall()
    conn.close()
    return [_history_from_row(row) for row in rows]
