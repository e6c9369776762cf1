import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from auth.utils import get_current_user, hash_password, verify_password
from db.database import get_db
from db.models import User, UserSettings
from services.adherence_session import user_timezone
from utils.datetime_utils import is_valid_timezone

router = APIRouter(prefix="/settings", tags=["settings"])
logger = logging.getLogger(__name__)


class SettingsUpdate(BaseModel):
    timezone: Optional[str] = None
    reminders_enabled: Optional[bool] = None
    display_name: Optional[str] = None
    date_of_birth: Optional[date] = None


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str


def _settings_row(user: User, db: Session) -> UserSettings:
    s = user.settings
    if s is None:
        s = UserSettings(user_id=user.id)
        db.add(s)
        db.flush()
        user.settings = s
    return s


def _serialize(user: User) -> dict:
    s = user.settings
    return {
        "display_name": user.display_name,
        "date_of_birth": user.date_of_birth.isoformat() if user.date_of_birth else None,
        "timezone": user_timezone(user),
        "reminders_enabled": bool(s.reminders_enabled) if s is not None else True,
    }


@router.get("")
def get_settings(user: User = Depends(get_current_user)):
    return _serialize(user)


@router.put("")
def update_settings(
    update: SettingsUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    payload = update.model_dump(exclude_unset=True)
    s = _settings_row(user, db)

    if "timezone" in payload:
        tz_name = (payload["timezone"] or "").strip()
        if not is_valid_timezone(tz_name):
            raise HTTPException(status_code=400, detail=f"Unknown timezone: {tz_name or '(empty)'}")
        s.timezone = tz_name
    if payload.get("reminders_enabled") is not None:
        s.reminders_enabled = bool(payload["reminders_enabled"])
    if "display_name" in payload:
        display_name = " ".join((payload["display_name"] or "").split())
        if not display_name:
            raise HTTPException(status_code=400, detail="Display name cannot be empty")
        user.display_name = display_name
    if "date_of_birth" in payload:
        dob = payload["date_of_birth"]
        if dob is not None and dob > date.today():
            raise HTTPException(status_code=400, detail="Date of birth cannot be in the future")
        user.date_of_birth = dob

    db.commit()
    return _serialize(user)


@router.post("/password/change")
def change_password(
    req: ChangePasswordRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    current = (req.current_password or "").strip()
    new_password = req.new_password or ""
    if not current:
        raise HTTPException(status_code=400, detail="Current password is required")
    if not verify_password(current, user.password_hash):
        raise HTTPException(status_code=401, detail="Current password is incorrect")
    if len(new_password) < 8:
        raise HTTPException(status_code=400, detail="New password must be at least 8 characters")
    if verify_password(new_password, user.password_hash):
        raise HTTPException(status_code=400, detail="New password must be different from current password")

    user.password_hash = hash_password(new_password)
    # Invalidates every issued session token.
    user.token_version = int(user.token_version or 0) + 1
    db.commit()
    logger.info("Password changed for user %s", user.id)
    return {"status": "ok"}
