from datetime import datetime
from typing import Any

from backend.errors import NoSchedule, OutOfWindow
from database.db import WEEKDAYS, clock_minutes, find_routine


def local_now() -> datetime:
    return datetime.now()


def weekday_name(moment: datetime) -> str:
    return WEEKDAYS[moment.weekday()]


def minutes_since_midnight(moment: datetime) -> int:
    return moment.hour * 60 + moment.minute


def in_window(moment: datetime, start_time: str, end_time: str) -> bool:
    """Inclusive on both ends, at minute resolution."""
    now_minutes = minutes_since_midnight(moment)
    return clock_minutes(start_time) <= now_minutes <= clock_minutes(end_time)


def authorize(teacher_id: int, subject: str, section: str | None, now: datetime) -> dict[str, Any]:
    """
    Return the routine that allows `teacher_id` to start `subject`/`section` at `now`.

    Raises NoSchedule when the teacher has no such class on this weekday and
    OutOfWindow when it exists but `now` is outside its time window.
    """
    day = weekday_name(now)
    routine = find_routine(teacher_id, subject, section, day)
    if not routine:
        raise NoSchedule(f"No class schedule found for {subject} on {day}.")

    if not in_window(now, routine["start_time"], routine["end_time"]):
        raise OutOfWindow(
            f"Class can only be started between {routine['start_time']} and "
            f"{routine['end_time']}. Current time: {now.strftime('%H:%M')}."
        )
    return routine
