from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from auth.utils import get_current_user
from db.database import get_db
from db.models import User
from services.reminder_service import pending_reminders, serialize_reminder
from utils.datetime_utils import utcnow

router = APIRouter(prefix="/reminders", tags=["reminders"], dependencies=[Depends(get_current_user)])


@router.get("/pending")
def list_pending_reminders(
    limit: int = Query(default=100, ge=1, le=500),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Reminders devices should schedule locally, soonest first."""
    rows = pending_reminders(db, user.id, utcnow(), limit=limit)
    return {"reminders": [serialize_reminder(row) for row in rows]}
