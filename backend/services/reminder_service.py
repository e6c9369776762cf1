"""Dose reminders and the notification outbox.

Reminders fire a fixed lead time before each dose. Delivery is best-effort:
the outbox only records what devices should show, and nothing in the dosing
path waits on it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Protocol, runtime_checkable

from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from config import settings
from db.models import ScheduledReminder
from utils.datetime_utils import ensure_aware

logger = logging.getLogger(__name__)

REMINDER_TITLE = "Medicine Reminder"
DEFAULT_LEAD = timedelta(minutes=settings.REMINDER_LEAD_MINUTES)


@dataclass(frozen=True)
class DoseReminder:
    reminder_key: str
    medicine_id: int
    title: str
    body: str
    fire_at: datetime
    channel: str
    user_id: int | None = None

    def as_payload(self) -> dict[str, Any]:
        return {
            "id": self.reminder_key,
            "medicine_id": self.medicine_id,
            "title": self.title,
            "body": self.body,
            "fire_at": self.fire_at.isoformat(),
            "channel": self.channel,
        }


@runtime_checkable
class ReminderSink(Protocol):
    def schedule(self, reminders: list[DoseReminder]) -> int: ...


def reminder_key(medicine_id: int, instant: datetime) -> str:
    return f"dose:{medicine_id}:{instant.date().isoformat()}:{instant.strftime('%H:%M:%S')}"


def _lead_phrase(lead: timedelta) -> str:
    minutes = int(lead.total_seconds() // 60)
    if minutes and minutes % 60 == 0:
        hours = minutes // 60
        return "1 hour" if hours == 1 else f"{hours} hours"
    return "1 minute" if minutes == 1 else f"{minutes} minutes"


def build_dose_reminders(
    medicine_id: int,
    medicine_name: str,
    instants: Iterable[datetime],
    now: datetime,
    *,
    lead: timedelta = DEFAULT_LEAD,
    channel: str | None = None,
    user_id: int | None = None,
) -> list[DoseReminder]:
    """One reminder per dose whose fire time is still ahead of `now`."""
    current = ensure_aware(now)
    body = f"{medicine_name} – take in {_lead_phrase(lead)}!"
    out: list[DoseReminder] = []
    for instant in instants:
        fire_at = ensure_aware(instant) - lead
        if fire_at <= current:
            continue
        out.append(
            DoseReminder(
                reminder_key=reminder_key(medicine_id, instant),
                medicine_id=medicine_id,
                title=REMINDER_TITLE,
                body=body,
                fire_at=fire_at,
                channel=channel or settings.REMINDER_CHANNEL,
                user_id=user_id,
            )
        )
    return out


class OutboxReminderSink:
    """Writes reminders to ``scheduled_reminders``; existing keys are left alone."""

    def __init__(self, db: Session):
        self.db = db

    def schedule(self, reminders: list[DoseReminder]) -> int:
        if not reminders:
            return 0
        dialect = self.db.get_bind().dialect.name
        insert = postgresql_insert if dialect == "postgresql" else sqlite_insert
        for reminder in reminders:
            if reminder.user_id is None:
                raise ValueError(f"Reminder {reminder.reminder_key} has no user")
        written = 0
        # A failed insert only rolls back this savepoint; the caller's dose logs stay.
        with self.db.begin_nested():
            for reminder in reminders:
                stmt = insert(ScheduledReminder).values(
                    reminder_key=reminder.reminder_key,
                    user_id=reminder.user_id,
                    medicine_id=reminder.medicine_id,
                    title=reminder.title,
                    body=reminder.body,
                    channel=reminder.channel,
                    fire_at=reminder.fire_at.astimezone(timezone.utc),
                )
                stmt = stmt.on_conflict_do_nothing(index_elements=[ScheduledReminder.reminder_key])
                result = self.db.execute(stmt)
                written += max(result.rowcount or 0, 0)
        if written:
            logger.info("Queued %s dose reminders", written)
        return written


def pending_reminders(db: Session, user_id: int, now: datetime, limit: int = 100) -> list[ScheduledReminder]:
    """Reminders that have not fired yet, soonest first."""
    cutoff = ensure_aware(now).astimezone(timezone.utc)
    return (
        db.query(ScheduledReminder)
        .filter(ScheduledReminder.user_id == user_id, ScheduledReminder.fire_at > cutoff)
        .order_by(ScheduledReminder.fire_at.asc(), ScheduledReminder.id.asc())
        .limit(limit)
        .all()
    )


def cancel_medicine_reminders(db: Session, medicine_id: int, now: datetime) -> int:
    """Drop reminders for a medicine that have not fired yet."""
    cutoff = ensure_aware(now).astimezone(timezone.utc)
    deleted = (
        db.query(ScheduledReminder)
        .filter(ScheduledReminder.medicine_id == medicine_id, ScheduledReminder.fire_at > cutoff)
        .delete(synchronize_session=False)
    )
    return int(deleted or 0)


def serialize_reminder(row: ScheduledReminder) -> dict[str, Any]:
    return {
        "id": row.reminder_key,
        "medicine_id": row.medicine_id,
        "title": row.title,
        "body": row.body,
        "fire_at": ensure_aware(row.fire_at).isoformat() if row.fire_at else None,
        "channel": row.channel,
    }
