from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from auth.utils import get_current_user
from config import settings
from db.database import get_db
from db.models import User
from services.adherence_session import session_for_user
from services.dose_schedule import interval_options
from services.dose_store import SqlAlchemyDoseStore
from services.errors import DoseTrackingError, http_status_for
from services.medicine_service import (
    create_medicine,
    deactivate_medicine,
    delete_medicine,
    get_medicine_or_raise,
    list_medicines,
    serialize_medicine,
    update_medicine,
)
from services.reminder_service import cancel_medicine_reminders

router = APIRouter(prefix="/medicines", tags=["medicines"], dependencies=[Depends(get_current_user)])


class MedicineCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    dose: Optional[str] = None
    frequency: int
    timing: str = "after_meal"  # before_meal | after_meal | anytime
    start_date: date
    duration_days: int
    custom_dose_times: Optional[list[str]] = None  # "HH:MM" or "HH:MM:SS"
    dose_interval_hours: Optional[float] = None


class MedicineEdit(BaseModel):
    name: Optional[str] = None
    dose: Optional[str] = None
    frequency: Optional[int] = None
    timing: Optional[str] = None
    start_date: Optional[date] = None
    duration_days: Optional[int] = None
    custom_dose_times: Optional[list[str]] = None
    dose_interval_hours: Optional[float] = None


def _http_error(db: Session, exc: DoseTrackingError) -> HTTPException:
    db.rollback()
    return HTTPException(status_code=http_status_for(exc), detail=str(exc))


@router.get("")
def get_medicines(
    include_inactive: bool = False,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    session = session_for_user(db, user)
    return {"medicines": list_medicines(session.store, user.id, session.today(), include_inactive=include_inactive)}


@router.get("/interval-options")
def get_interval_options(frequency: int, timing: str = "anytime"):
    return {"frequency": frequency, "timing": timing, "options": interval_options(frequency, timing)}


@router.get("/{medicine_id}")
def get_medicine(
    medicine_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    session = session_for_user(db, user)
    try:
        medicine = get_medicine_or_raise(session.store, user.id, medicine_id)
    except DoseTrackingError as exc:
        raise _http_error(db, exc)
    return serialize_medicine(medicine, session.today())


@router.post("", status_code=status.HTTP_201_CREATED)
def add_medicine(
    payload: MedicineCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    session = session_for_user(db, user)
    try:
        medicine = create_medicine(session.store, user.id, payload.model_dump(), session.today())
        session.regenerate_forward(user.id, medicine.id, settings.FORWARD_SCHEDULE_DAYS)
        session.refresh(user.id)
    except DoseTrackingError as exc:
        raise _http_error(db, exc)
    db.commit()
    return serialize_medicine(medicine, session.today())


@router.put("/{medicine_id}")
def edit_medicine(
    medicine_id: int,
    payload: MedicineEdit,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    session = session_for_user(db, user)
    changes = payload.model_dump(exclude_unset=True)
    try:
        result = update_medicine(session.store, user.id, medicine_id, changes, session.today())
        if result.schedule_changed:
            cancel_medicine_reminders(db, medicine_id, session.now())
            session.regenerate_forward(user.id, medicine_id, settings.FORWARD_SCHEDULE_DAYS)
            session.refresh(user.id)
    except DoseTrackingError as exc:
        raise _http_error(db, exc)
    db.commit()
    body = serialize_medicine(result.medicine, session.today())
    body["resynced"] = result.resynced
    body["deleted_logs"] = result.deleted_logs
    return body


@router.post("/{medicine_id}/deactivate")
def deactivate(
    medicine_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    session = session_for_user(db, user)
    try:
        medicine = deactivate_medicine(session.store, user.id, medicine_id)
    except DoseTrackingError as exc:
        raise _http_error(db, exc)
    cancel_medicine_reminders(db, medicine_id, session.now())
    db.commit()
    return serialize_medicine(medicine, session.today())


@router.delete("/{medicine_id}")
def remove_medicine(
    medicine_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    store = SqlAlchemyDoseStore(db)
    try:
        delete_medicine(store, user.id, medicine_id)
    except DoseTrackingError as exc:
        raise _http_error(db, exc)
    db.commit()
    return {"status": "ok", "deleted": medicine_id}
