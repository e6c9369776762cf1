"""Per-user dose tracking for the current local day.

Each trigger (opening the app, an edit, a date rollover) calls ``refresh``,
which recomputes today's date, materializes any missing dose logs for the
user's active medicines and hands upcoming reminders to the configured sink.
``today_view`` classifies the stored logs against the current time for display.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy.orm import Session

from config import settings
from db.models import Medicine, MedicineLog
from services.dose_materializer import materialize_today, materialize_window
from services.dose_schedule import Regimen, derive_dose_times, regimen_from_medicine
from services.dose_status import DOSE_STATES, classify
from services.dose_store import DoseStore, SqlAlchemyDoseStore
from services.errors import AlreadyTaken, InvalidRegimen, LogNotFound, MedicineNotFound
from services.reminder_service import DEFAULT_LEAD, OutboxReminderSink, ReminderSink, build_dose_reminders
from utils.datetime_utils import (
    combine_local,
    ensure_aware,
    format_time_of_day,
    parse_time_of_day,
    today_for_tz,
    utcnow,
)
from utils.med_utils import display_name, timing_label

logger = logging.getLogger(__name__)


@dataclass
class MaterializationResult:
    day: date
    medicines: int = 0
    inserted: int = 0
    reminders: int = 0
    skipped_medicine_ids: list[int] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "date": self.day.isoformat(),
            "medicines": self.medicines,
            "inserted": self.inserted,
            "reminders": self.reminders,
            "skipped_medicine_ids": list(self.skipped_medicine_ids),
        }


class AdherenceSession:
    def __init__(
        self,
        store: DoseStore,
        *,
        tz_name: str | None = None,
        reminder_sink: ReminderSink | None = None,
        clock: Callable[[], datetime] = utcnow,
        reminder_lead: timedelta = DEFAULT_LEAD,
    ):
        self.store = store
        self.tz_name = tz_name
        self.reminder_sink = reminder_sink
        self.clock = clock
        self.reminder_lead = reminder_lead

    def now(self) -> datetime:
        return ensure_aware(self.clock())

    def today(self, now: datetime | None = None) -> date:
        return today_for_tz(self.tz_name, now if now is not None else self.now())

    def _active_regimens(self, user_id: int, result: MaterializationResult) -> list[tuple[Medicine, Regimen]]:
        out: list[tuple[Medicine, Regimen]] = []
        for medicine in self.store.list_medicines(user_id):
            try:
                out.append((medicine, regimen_from_medicine(medicine)))
            except InvalidRegimen as exc:
                logger.warning("Skipping medicine %s with invalid regimen: %s", medicine.id, exc)
                result.skipped_medicine_ids.append(medicine.id)
        return out

    def _schedule_reminders(
        self,
        medicine: Medicine,
        regimen: Regimen,
        day: date,
        current: datetime,
        closed_slots: set[tuple[int, Any]],
    ) -> int:
        instants = [
            combine_local(day, t, self.tz_name)
            for t in derive_dose_times(regimen, day)
            if (medicine.id, t) not in closed_slots
        ]
        reminders = build_dose_reminders(
            medicine.id,
            display_name(medicine.name, medicine.dose),
            instants,
            current,
            lead=self.reminder_lead,
            user_id=medicine.user_id,
        )
        if not reminders:
            return 0
        try:
            return int(self.reminder_sink.schedule(reminders) or 0)
        except Exception:
            logger.exception("Failed to schedule reminders for medicine %s", medicine.id)
            return 0

    def refresh(self, user_id: int, day: date | None = None, now: datetime | None = None) -> MaterializationResult:
        """Create today's missing dose logs. Safe to call any number of times."""
        current = ensure_aware(now) if now is not None else self.now()
        target = day or self.today(current)
        result = MaterializationResult(day=target)

        existing = self.store.logs_for_date(user_id, target)
        closed_slots = {
            (log.medicine_id, parse_time_of_day(log.scheduled_time))
            for log in existing
            if log.status != "pending"
        }
        for medicine, regimen in self._active_regimens(user_id, result):
            result.medicines += 1
            new_logs = materialize_today(regimen, target, existing)
            if new_logs:
                result.inserted += self.store.insert_logs_if_absent(new_logs)
            if self.reminder_sink is not None:
                result.reminders += self._schedule_reminders(medicine, regimen, target, current, closed_slots)
        self.store.flush()

        if result.inserted:
            logger.info("Materialized %s dose logs for user %s on %s", result.inserted, user_id, target)
        return result

    def regenerate_forward(self, user_id: int, medicine_id: int, days: int) -> int:
        """Materialize `days` days starting today for one medicine, after an edit."""
        medicine = self.store.get_medicine(user_id, medicine_id)
        if medicine is None:
            raise MedicineNotFound(f"Medicine {medicine_id} not found")
        regimen = regimen_from_medicine(medicine)
        start = self.today()
        window = [start + timedelta(days=offset) for offset in range(max(int(days), 0))]
        if not window:
            return 0
        existing = self.store.logs_for_medicine(medicine_id, window)
        inserted = self.store.insert_logs_if_absent(materialize_window(regimen, window, existing))
        self.store.flush()
        return inserted

    def _entry(self, log: MedicineLog, medicine: Medicine, current: datetime) -> dict[str, Any]:
        status = classify(log, current, self.tz_name)
        return {
            "log_id": log.id,
            "medicine_id": medicine.id,
            "medicine_name": medicine.name,
            "dose": medicine.dose,
            "scheduled_date": log.scheduled_date.isoformat(),
            "scheduled_time": format_time_of_day(parse_time_of_day(log.scheduled_time)),
            "scheduled_at": status.scheduled_at.isoformat(),
            "status": log.status,
            "state": status.state,
            "detail": status.detail,
            "taken_at": ensure_aware(log.taken_at).isoformat() if log.taken_at else None,
        }

    def today_view(self, user_id: int, now: datetime | None = None) -> dict[str, Any]:
        current = ensure_aware(now) if now is not None else self.now()
        day = self.today(current)
        self.refresh(user_id, day, now=current)

        # Deactivated medicines still show the doses already taken or skipped today.
        medicines = {m.id: m for m in self.store.list_medicines(user_id, include_inactive=True)}
        entries = [
            self._entry(log, medicines[log.medicine_id], current)
            for log in self.store.logs_for_date(user_id, day)
            if log.medicine_id in medicines and (medicines[log.medicine_id].is_active or log.status != "pending")
        ]
        entries.sort(key=lambda e: (e["scheduled_time"], e["medicine_name"].lower(), e["log_id"]))

        groups: dict[int, dict[str, Any]] = {}
        for entry in entries:
            medicine = medicines[entry["medicine_id"]]
            group = groups.get(medicine.id)
            if group is None:
                group = {
                    "medicine_id": medicine.id,
                    "name": medicine.name,
                    "dose": medicine.dose,
                    "timing": medicine.timing,
                    "timing_label": timing_label(medicine.timing),
                    "doses": [],
                }
                groups[medicine.id] = group
            group["doses"].append(entry)

        counts = Counter(entry["state"] for entry in entries)
        summary = {state: counts.get(state, 0) for state in DOSE_STATES}
        summary["total"] = len(entries)
        summary["taken"] = summary["taken_on_time"] + summary["taken_off_schedule"]

        return {
            "date": day.isoformat(),
            "timezone": self.tz_name or "UTC",
            "medicines": list(groups.values()),
            "doses": entries,
            "summary": summary,
        }

    def _pending_log(self, user_id: int, log_id: int) -> MedicineLog:
        log = self.store.get_log(user_id, log_id)
        if log is None:
            raise LogNotFound(f"Dose log {log_id} not found")
        if log.status != "pending":
            raise AlreadyTaken(log_id, log.status)
        return log

    def mark_taken(self, user_id: int, log_id: int, taken_at: datetime | None = None) -> dict[str, Any]:
        """Move a pending dose to taken. Taken or skipped logs are left untouched."""
        log = self._pending_log(user_id, log_id)
        stamp = ensure_aware(taken_at) if taken_at is not None else self.now()
        log.status = "taken"
        log.taken_at = stamp.astimezone(timezone.utc)
        self.store.flush()
        return self._entry(log, log.medicine, self.now())

    def mark_skipped(self, user_id: int, log_id: int) -> dict[str, Any]:
        log = self._pending_log(user_id, log_id)
        log.status = "skipped"
        self.store.flush()
        return self._entry(log, log.medicine, self.now())


def user_timezone(user: Any) -> str:
    user_settings = getattr(user, "settings", None)
    tz_name = getattr(user_settings, "timezone", None) if user_settings is not None else None
    return (tz_name or "").strip() or settings.DEFAULT_TIMEZONE


def session_for_user(db: Session, user: Any, clock: Callable[[], datetime] = utcnow) -> AdherenceSession:
    """Session over the SQL store, with the outbox sink when reminders are on."""
    user_settings = getattr(user, "settings", None)
    reminders_on = bool(getattr(user_settings, "reminders_enabled", True)) if user_settings is not None else True
    return AdherenceSession(
        SqlAlchemyDoseStore(db),
        tz_name=user_timezone(user),
        reminder_sink=OutboxReminderSink(db) if reminders_on else None,
        clock=clock,
    )
