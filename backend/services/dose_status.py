"""Display state for a dose log relative to the current time.

Recomputed on every read and never stored, so thresholds can change without a
data migration. Priority order:

    taken, -2h <= taken_at - scheduled <= +1h   -> taken_on_time
    taken, otherwise                            -> taken_off_schedule
    skipped                                     -> skipped
    pending, now - scheduled > 1h               -> missed
    pending, 0 <= scheduled - now <= 1h         -> due_soon
    pending, otherwise                          -> pending
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from utils.datetime_utils import combine_local, ensure_aware, format_clock_12h, parse_time_of_day, resolve_zone

PENDING = "pending"
DUE_SOON = "due_soon"
MISSED = "missed"
SKIPPED = "skipped"
TAKEN_ON_TIME = "taken_on_time"
TAKEN_OFF_SCHEDULE = "taken_off_schedule"
DOSE_STATES = (PENDING, DUE_SOON, MISSED, SKIPPED, TAKEN_ON_TIME, TAKEN_OFF_SCHEDULE)
TAKEN_STATES = frozenset({TAKEN_ON_TIME, TAKEN_OFF_SCHEDULE})

EARLY_TOLERANCE = timedelta(hours=2)
LATE_TOLERANCE = timedelta(hours=1)
MISSED_AFTER = timedelta(hours=1)
DUE_SOON_WINDOW = timedelta(hours=1)


@dataclass(frozen=True)
class DoseStatus:
    state: str
    detail: str
    scheduled_at: datetime

    @property
    def is_taken(self) -> bool:
        return self.state in TAKEN_STATES

    @property
    def needs_action(self) -> bool:
        return self.state in {PENDING, DUE_SOON}


def scheduled_instant(log: Any, tz_name: str | None = None) -> datetime:
    return combine_local(log.scheduled_date, parse_time_of_day(log.scheduled_time), tz_name)


def is_off_schedule(taken_at: datetime, scheduled_at: datetime) -> bool:
    delta = ensure_aware(taken_at) - scheduled_at
    return delta < -EARLY_TOLERANCE or delta > LATE_TOLERANCE


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def format_span(delta: timedelta) -> str:
    minutes = max(0, _round_half_up(delta.total_seconds() / 60))
    hours, mins = divmod(minutes, 60)
    if hours and mins:
        return f"{hours}h {mins}m"
    if hours:
        return f"{hours}h"
    return f"{mins}m"


def relative_hint(scheduled_at: datetime, now: datetime) -> str:
    """"2h later", "45m later", "now" or "20m overdue"."""
    diff = scheduled_at - ensure_aware(now)
    seconds = diff.total_seconds()
    if seconds >= 3600:
        return f"{_round_half_up(seconds / 3600)}h later"
    minutes = _round_half_up(seconds / 60)
    if minutes > 0:
        return f"{minutes}m later"
    if minutes == 0:
        return "now"
    return f"{-minutes}m overdue"


def classify(log: Any, now: datetime, tz_name: str | None = None) -> DoseStatus:
    scheduled_at = scheduled_instant(log, tz_name)
    current = ensure_aware(now)
    status = str(log.status or PENDING).strip().lower()

    if status == "taken":
        taken_at = getattr(log, "taken_at", None)
        if taken_at is None:
            return DoseStatus(TAKEN_ON_TIME, "Taken", scheduled_at)
        local_taken = ensure_aware(taken_at).astimezone(resolve_zone(tz_name))
        if is_off_schedule(taken_at, scheduled_at):
            return DoseStatus(TAKEN_OFF_SCHEDULE, f"Taken off-schedule at {format_clock_12h(local_taken)}", scheduled_at)
        return DoseStatus(TAKEN_ON_TIME, f"Taken at {format_clock_12h(local_taken)}", scheduled_at)

    if status == "skipped":
        return DoseStatus(SKIPPED, "Skipped", scheduled_at)

    overdue = current - scheduled_at
    if overdue > MISSED_AFTER:
        return DoseStatus(MISSED, f"missed by {format_span(overdue)}", scheduled_at)
    if timedelta(0) <= scheduled_at - current <= DUE_SOON_WINDOW:
        return DoseStatus(DUE_SOON, relative_hint(scheduled_at, current), scheduled_at)
    return DoseStatus(PENDING, relative_hint(scheduled_at, current), scheduled_at)
