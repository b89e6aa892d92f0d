from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from app.api.deps import get_current_user_id
from app.core.database import get_db
from app.schemas import EnrollmentOut
from app.services import enrollments

router = APIRouter(prefix="/enrollments", tags=["enrollments"])


@router.get("")
def my_enrollments(
    status: str | None = Query(None, description="ACTIVE | REVOKED"),
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Courses the student can open; refreshed by the UI after a successful verify."""
    rows = enrollments.list_enrollments(db, user_id, status=status)
    return {"success": True, "data": [EnrollmentOut.model_validate(e).model_dump(mode="json") for e in rows]}
