from typing import Literal

ErrorCategory = Literal["authorization", "validation", "conflict", "infrastructure"]


class AttendanceError(Exception):
    """
    Base class for every failure the attendance engine reports to a caller.

    Each subclass carries a stable machine-readable `code`, the taxonomy
    `category` it belongs to, and the HTTP status the API answers with.
    """

    code = "attendance_error"
    category: ErrorCategory = "validation"
    status_code = 400
    default_message = "Attendance request failed."

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_payload(self) -> dict[str, str]:
        return {"detail": self.message, "code": self.code}


# -----------------------------
# Validation
# -----------------------------
class NoSchedule(AttendanceError):
    code = "no_schedule"
    default_message = "No class schedule found for today."


class OutOfWindow(AttendanceError):
    code = "out_of_window"
    default_message = "Class can only be started inside its scheduled window."


class SessionInactive(AttendanceError):
    code = "session_inactive"
    default_message = "Session is not active."


class WifiMismatch(AttendanceError):
    code = "wifi_mismatch"
    default_message = "WiFi location mismatch. Please connect to the correct classroom WiFi."


class InvalidMethod(AttendanceError):
    code = "invalid_method"
    default_message = "Invalid method."


class InvalidCode(AttendanceError):
    code = "invalid_code"
    default_message = "Invalid code."


class ScopeMismatch(AttendanceError):
    code = "scope_mismatch"
    status_code = 403
    default_message = "This class is not for your department or section."


# -----------------------------
# State conflicts
# -----------------------------
class AlreadyMarked(AttendanceError):
    code = "already_marked"
    category: ErrorCategory = "conflict"
    status_code = 409
    default_message = "Attendance already marked."


class SessionNotFound(AttendanceError):
    code = "not_found"
    category: ErrorCategory = "conflict"
    status_code = 404
    default_message = "Session not found."


# -----------------------------
# Authorization
# -----------------------------
class Forbidden(AttendanceError):
    code = "forbidden"
    category: ErrorCategory = "authorization"
    status_code = 403
    default_message = "Not authorized."


# -----------------------------
# Infrastructure
# -----------------------------
class StoreUnavailable(AttendanceError):
    code = "store_unavailable"
    category: ErrorCategory = "infrastructure"
    status_code = 503
    default_message = "Attendance store unavailable. Please retry."
