from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from db.models import Medicine
from services.dose_materializer import needs_resync, resynchronize, stale_pending_logs
from services.dose_schedule import (
    CustomTimes,
    EvenInterval,
    Regimen,
    build_regimen,
    interval_options,
    regimen_from_medicine,
    schedule_summary,
)
from services.dose_store import DoseStore
from services.errors import DuplicateMedicine, InvalidRegimen, MedicineNotFound
from utils.datetime_utils import days_remaining, format_time_of_day
from utils.med_utils import (
    canonical_medicine_name,
    display_name,
    dump_dose_time_list,
    normalize_medicine_name,
    parse_dose_time_list,
    split_name_and_dose,
    timing_label,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMING = "after_meal"
REGIMEN_FIELDS = ("frequency", "timing", "start_date", "duration_days", "custom_dose_times", "dose_interval_hours")


@dataclass(frozen=True)
class MedicineUpdate:
    medicine: Medicine
    resynced: bool = False
    deleted_logs: int = 0
    schedule_changed: bool = False


def _parse_start_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value or "").strip())
    except ValueError:
        raise InvalidRegimen("start_date must be YYYY-MM-DD")


def _name_and_dose(raw_name: Any, raw_dose: Any) -> tuple[str, str | None]:
    name = canonical_medicine_name(raw_name)
    dose = canonical_medicine_name(raw_dose) or None
    if name and not dose:
        split_name, split_dose = split_name_and_dose(name)
        if split_dose:
            name, dose = split_name, split_dose
    if not name:
        raise InvalidRegimen("Medicine name is required")
    return name, dose


def _regimen_from_fields(fields: dict[str, Any], user_id: int, medicine_id: int | None = None) -> Regimen:
    return build_regimen(
        frequency=fields.get("frequency"),
        timing=fields.get("timing") or DEFAULT_TIMING,
        start_date=_parse_start_date(fields.get("start_date")),
        duration_days=fields.get("duration_days"),
        custom_times=fields.get("custom_dose_times") or None,
        interval_hours=fields.get("dose_interval_hours"),
        medicine_id=medicine_id,
        user_id=user_id,
    )


def _regimen_columns(regimen: Regimen) -> dict[str, Any]:
    spec = regimen.dose_spec
    custom = [format_time_of_day(t) for t in spec.times] if isinstance(spec, CustomTimes) else []
    return {
        "frequency": regimen.frequency,
        "timing": regimen.timing,
        "start_date": regimen.start_date,
        "duration_days": regimen.duration_days,
        "custom_dose_times": dump_dose_time_list(custom),
        "dose_interval_hours": float(spec.hours) if isinstance(spec, EvenInterval) else None,
    }


def is_current(medicine: Medicine, today: date) -> bool:
    """Active and its validity window has not ended."""
    if not medicine.is_active:
        return False
    return days_remaining(medicine.start_date, int(medicine.duration_days or 0), today) > 0


def _ensure_unique_name(
    store: DoseStore,
    user_id: int,
    name: str,
    today: date,
    exclude_id: int | None = None,
) -> None:
    target = normalize_medicine_name(name)
    for medicine in store.list_medicines(user_id):
        if medicine.id == exclude_id:
            continue
        if normalize_medicine_name(medicine.name) == target and is_current(medicine, today):
            raise DuplicateMedicine(f"'{medicine.name}' is already on your current medicine list")


def get_medicine_or_raise(store: DoseStore, user_id: int, medicine_id: int) -> Medicine:
    medicine = store.get_medicine(user_id, medicine_id)
    if medicine is None:
        raise MedicineNotFound(f"Medicine {medicine_id} not found")
    return medicine


def create_medicine(store: DoseStore, user_id: int, fields: dict[str, Any], today: date) -> Medicine:
    name, dose = _name_and_dose(fields.get("name"), fields.get("dose"))
    regimen = _regimen_from_fields(fields, user_id)
    _ensure_unique_name(store, user_id, name, today)

    medicine = Medicine(user_id=user_id, name=name, dose=dose, is_active=True, **_regimen_columns(regimen))
    store.add_medicine(medicine)
    logger.info("Created medicine %s for user %s (%s doses/day)", medicine.id, user_id, regimen.frequency)
    return medicine


def _current_fields(medicine: Medicine) -> dict[str, Any]:
    return {
        "frequency": medicine.frequency,
        "timing": medicine.timing,
        "start_date": medicine.start_date,
        "duration_days": medicine.duration_days,
        "custom_dose_times": parse_dose_time_list(medicine.custom_dose_times),
        "dose_interval_hours": medicine.dose_interval_hours,
    }


def update_medicine(
    store: DoseStore,
    user_id: int,
    medicine_id: int,
    changes: dict[str, Any],
    today: date,
) -> MedicineUpdate:
    """Apply an edit. A changed dosing shape wipes the medicine's logs.

    When only the dose times move, pending logs from `today` on that no longer
    match are dropped and taken history is kept.
    """
    medicine = get_medicine_or_raise(store, user_id, medicine_id)
    try:
        old: Regimen | None = regimen_from_medicine(medicine)
    except InvalidRegimen:
        old = None

    merged = _current_fields(medicine)
    for key in REGIMEN_FIELDS:
        if key in changes:
            merged[key] = changes[key]
    if "dose_interval_hours" not in changes and merged["frequency"] != medicine.frequency:
        # The stored interval was sized for the old frequency.
        merged["dose_interval_hours"] = None
    new = _regimen_from_fields(merged, user_id, medicine_id=medicine.id)

    name, dose = medicine.name, medicine.dose
    if "name" in changes or "dose" in changes:
        name, dose = _name_and_dose(changes.get("name", medicine.name), changes.get("dose", medicine.dose))
    if medicine.is_active and normalize_medicine_name(name) != normalize_medicine_name(medicine.name):
        _ensure_unique_name(store, user_id, name, today, exclude_id=medicine.id)

    columns = _regimen_columns(new)
    schedule_changed = old is None or schedule_summary(old) != schedule_summary(new)
    medicine.name = name
    medicine.dose = dose
    for key, value in columns.items():
        setattr(medicine, key, value)
    store.flush()

    if old is None or needs_resync(old, new):
        deleted = resynchronize(store, new)
        return MedicineUpdate(medicine=medicine, resynced=True, deleted_logs=deleted, schedule_changed=True)

    deleted = 0
    if schedule_changed:
        stale = stale_pending_logs(new, store.logs_for_medicine(medicine.id), today)
        deleted = store.delete_logs(log.id for log in stale)
        if deleted:
            logger.info("Dropped %s stale pending logs for medicine %s", deleted, medicine.id)
    return MedicineUpdate(medicine=medicine, deleted_logs=deleted, schedule_changed=schedule_changed)


def deactivate_medicine(store: DoseStore, user_id: int, medicine_id: int) -> Medicine:
    """Soft delete: stops scheduling, keeps every log."""
    medicine = get_medicine_or_raise(store, user_id, medicine_id)
    medicine.is_active = False
    store.flush()
    logger.info("Deactivated medicine %s for user %s", medicine_id, user_id)
    return medicine


def delete_medicine(store: DoseStore, user_id: int, medicine_id: int) -> None:
    medicine = get_medicine_or_raise(store, user_id, medicine_id)
    store.delete_medicine(medicine)
    logger.info("Deleted medicine %s for user %s", medicine_id, user_id)


def serialize_medicine(medicine: Medicine, today: date) -> dict[str, Any]:
    duration = int(medicine.duration_days or 0)
    try:
        regimen = regimen_from_medicine(medicine)
        schedule = schedule_summary(regimen)
        end_date = regimen.end_date.isoformat()
    except InvalidRegimen as exc:
        logger.warning("Medicine %s has an invalid stored regimen: %s", medicine.id, exc)
        schedule, end_date = None, None
    return {
        "id": medicine.id,
        "name": medicine.name,
        "dose": medicine.dose,
        "display_name": display_name(medicine.name, medicine.dose),
        "frequency": medicine.frequency,
        "timing": medicine.timing,
        "timing_label": timing_label(medicine.timing),
        "start_date": medicine.start_date.isoformat() if medicine.start_date else None,
        "duration_days": duration,
        "end_date": end_date,
        "days_remaining": days_remaining(medicine.start_date, duration, today) if medicine.start_date else 0,
        "is_active": bool(medicine.is_active),
        "custom_dose_times": parse_dose_time_list(medicine.custom_dose_times),
        "dose_interval_hours": medicine.dose_interval_hours,
        "interval_options": interval_options(medicine.frequency or 1, medicine.timing or DEFAULT_TIMING),
        "schedule": schedule,
    }


def list_medicines(
    store: DoseStore,
    user_id: int,
    today: date,
    include_inactive: bool = False,
) -> list[dict[str, Any]]:
    return [
        serialize_medicine(medicine, today)
        for medicine in store.list_medicines(user_id, include_inactive=include_inactive)
    ]
