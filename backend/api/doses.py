from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from auth.utils import get_current_user
from db.database import get_db
from db.models import User
from services.adherence_session import session_for_user
from services.errors import DoseTrackingError, http_status_for

router = APIRouter(prefix="/doses", tags=["doses"], dependencies=[Depends(get_current_user)])


class MarkTakenRequest(BaseModel):
    taken_at: Optional[datetime] = None  # defaults to now


def _http_error(db: Session, exc: DoseTrackingError) -> HTTPException:
    db.rollback()
    return HTTPException(status_code=http_status_for(exc), detail=str(exc))


@router.get("/today")
def doses_today(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    session = session_for_user(db, user)
    try:
        view = session.today_view(user.id)
    except DoseTrackingError as exc:
        raise _http_error(db, exc)
    db.commit()
    return view


@router.post("/refresh")
def refresh_doses(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    session = session_for_user(db, user)
    try:
        result = session.refresh(user.id)
    except DoseTrackingError as exc:
        raise _http_error(db, exc)
    db.commit()
    return result.as_dict()


@router.post("/{log_id}/taken")
def mark_dose_taken(
    log_id: int,
    payload: Optional[MarkTakenRequest] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    session = session_for_user(db, user)
    try:
        entry = session.mark_taken(user.id, log_id, taken_at=payload.taken_at if payload else None)
    except DoseTrackingError as exc:
        raise _http_error(db, exc)
    db.commit()
    return entry


@router.post("/{log_id}/skip")
def mark_dose_skipped(
    log_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    session = session_for_user(db, user)
    try:
        entry = session.mark_skipped(user.id, log_id)
    except DoseTrackingError as exc:
        raise _http_error(db, exc)
    db.commit()
    return entry
