from fastapi import APIRouter, Depends

from backend.security import require_teacher
from backend.services import schedule
from backend.services.reports import teacher_routines_today

router = APIRouter()


@router.get("/routines/teacher")
def teacher_routines(teacher: dict = Depends(require_teacher)):
    return teacher_routines_today(teacher["user_id"], schedule.local_now())
