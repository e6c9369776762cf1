from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import TYPE_CHECKING, Any, Iterable

from services.dose_schedule import Regimen, derive_dose_times
from services.errors import InvalidRegimen
from utils.datetime_utils import parse_time_of_day

if TYPE_CHECKING:
    from services.dose_store import DoseStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NewDoseLog:
    medicine_id: int
    scheduled_date: date
    scheduled_time: time
    status: str = "pending"
    taken_at: datetime | None = None

    @property
    def slot_key(self) -> tuple[int, date, time]:
        return (self.medicine_id, self.scheduled_date, self.scheduled_time)


def _existing_slots(existing_logs: Iterable[Any], medicine_id: int) -> set[tuple[date, time]]:
    slots: set[tuple[date, time]] = set()
    for log in existing_logs:
        if log.medicine_id != medicine_id:
            continue
        slots.add((log.scheduled_date, parse_time_of_day(log.scheduled_time)))
    return slots


def _require_medicine_id(regimen: Regimen) -> int:
    if regimen.medicine_id is None:
        raise InvalidRegimen("Regimen is not attached to a medicine")
    return int(regimen.medicine_id)


def materialize_window(
    regimen: Regimen,
    days: Iterable[date],
    existing_logs: Iterable[Any],
) -> list[NewDoseLog]:
    """Pending logs for every derived slot in `days` that has no log yet.

    Insert-only: existing logs are never removed or changed, so repeated calls
    with the logs already written yield nothing.
    """
    medicine_id = _require_medicine_id(regimen)
    seen = _existing_slots(existing_logs, medicine_id)
    out: list[NewDoseLog] = []
    for day in days:
        for dose_time in derive_dose_times(regimen, day):
            slot = (day, dose_time)
            if slot in seen:
                continue
            seen.add(slot)
            out.append(NewDoseLog(medicine_id=medicine_id, scheduled_date=day, scheduled_time=dose_time))
    return out


def materialize_today(regimen: Regimen, day: date, existing_logs: Iterable[Any]) -> list[NewDoseLog]:
    existing_for_day = [log for log in existing_logs if log.scheduled_date == day]
    return materialize_window(regimen, [day], existing_for_day)


def needs_resync(old: Regimen, new: Regimen) -> bool:
    """The dosing shape changed: frequency or the number of custom times differs."""
    return old.frequency != new.frequency or old.custom_time_count != new.custom_time_count


def stale_pending_logs(regimen: Regimen, logs: Iterable[Any], from_day: date) -> list[Any]:
    """Pending logs on or after `from_day` whose slot the regimen no longer derives.

    Used when an edit moves dose times without changing the dosing shape;
    taken and skipped logs are history and are never returned.
    """
    wanted: dict[date, set[time]] = {}
    stale = []
    for log in logs:
        if log.medicine_id != regimen.medicine_id or log.status != "pending" or log.scheduled_date < from_day:
            continue
        day = log.scheduled_date
        if day not in wanted:
            wanted[day] = set(derive_dose_times(regimen, day))
        if parse_time_of_day(log.scheduled_time) not in wanted[day]:
            stale.append(log)
    return stale


def resynchronize(store: DoseStore, regimen: Regimen) -> int:
    """Delete every log of the medicine, taken history included.

    Destructive by contract: logs are regenerated by the next materialization.
    """
    medicine_id = _require_medicine_id(regimen)
    deleted = store.delete_logs_for_medicine(medicine_id)
    logger.info("Resynchronized medicine %s: deleted %s dose logs", medicine_id, deleted)
    return deleted
