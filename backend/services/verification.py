"""
Two-step proof of presence.

The `check_*` functions are pure decisions over an already-loaded session;
`verify_network` and `verify_code` load the session, run the checks and, for
codes, append the ledger row. The (session, student) uniqueness lives in the
store, so `AlreadyMarked` on the code step comes from the insert itself.
"""

import logging
import sqlite3
from datetime import datetime
from typing import Any

from backend import config
from backend.errors import (
    AlreadyMarked,
    InvalidCode,
    InvalidMethod,
    ScopeMismatch,
    SessionInactive,
    WifiMismatch,
)
from backend.services import schedule
from database.db import (
    get_attendance_record,
    get_session,
    insert_attendance,
    to_stamp,
    write_transaction,
)

logger = logging.getLogger(__name__)

CODE_METHODS = {"otp", "qr"}


def check_session_active(session: dict[str, Any] | None) -> dict[str, Any]:
    if not session or not session["is_active"]:
        raise SessionInactive()
    return session


def check_network(
    session: dict[str, Any],
    submitted_network_id: str | None,
    *,
    allow_debug_bypass: bool = False,
    bypass_network_id: str | None = None,
) -> None:
    submitted = (submitted_network_id or "").strip()
    if submitted and submitted == (session["bssid"] or "").strip():
        return
    if allow_debug_bypass and bypass_network_id and submitted == bypass_network_id:
        return
    raise WifiMismatch()


def check_scope(session: dict[str, Any], caller: dict[str, Any]) -> None:
    if caller.get("department") != session["department"]:
        raise ScopeMismatch(
            f"You belong to {caller.get('department')}, this class is for {session['department']}."
        )
    if session["section"] and caller.get("section") != session["section"]:
        raise ScopeMismatch(
            f"You are in Section {caller.get('section')}, this class is for Section {session['section']}."
        )


def check_code(session: dict[str, Any], code: str | None, method: str) -> None:
    if method not in CODE_METHODS:
        raise InvalidMethod()
    submitted = (code or "").strip()
    if method == "otp":
        if submitted != session["otp"]:
            raise InvalidCode("Invalid OTP.")
    elif submitted != session["qr_code"]:
        raise InvalidCode("Invalid QR Code.")


def verify_network(session_id: int, caller: dict[str, Any], network_id: str | None) -> dict[str, Any]:
    student_id = int(caller["user_id"])
    try:
        session = check_session_active(get_session(session_id))

        if get_attendance_record(session_id, student_id):
            raise AlreadyMarked()

        check_network(
            session,
            network_id,
            allow_debug_bypass=config.ALLOW_DEBUG_BYPASS,
            bypass_network_id=config.DEBUG_BYPASS_NETWORK_ID,
        )
    except (SessionInactive, AlreadyMarked, WifiMismatch) as e:
        logger.warning("WiFi check rejected for student %s on session %s: %s", student_id, session_id, e.code)
        raise

    return {"message": "WiFi verified", "session_id": session_id}


def verify_code(
    session_id: int,
    caller: dict[str, Any],
    code: str | None,
    method: str,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    student_id = int(caller["user_id"])
    created_at = to_stamp(now or schedule.local_now())
    try:
        # Same write lock as the close path, so a record can't land after the sweep.
        with write_transaction() as conn:
            session = check_session_active(get_session(session_id, conn=conn))
            if config.ENFORCE_SCOPE_MATCH:
                check_scope(session, caller)
            check_code(session, code, method)

            try:
                record = insert_attendance(
                    session_id=session_id,
                    student_id=student_id,
                    status="present",
                    method=method,
                    device_id=caller.get("device_id"),
                    created_at=created_at,
                    conn=conn,
                )
            except sqlite3.IntegrityError:
                raise AlreadyMarked() from None
    except (SessionInactive, ScopeMismatch, InvalidMethod, InvalidCode, AlreadyMarked) as e:
        logger.warning(
            "Code check rejected for student %s on session %s: %s",
            student_id,
            session_id,
            e.code,
        )
        raise

    logger.info("Marked student %s present on session %s via %s", student_id, session_id, method)
    return record
