"""Regimen model and dose-time derivation.

A regimen carries exactly one dose spec:

    CustomTimes(times)   caller-chosen, strictly increasing, len == frequency
    FixedSlots()         frequency <= 3 and timing != anytime: 08:00, 14:00, 20:00
    EvenInterval(hours)  frequency > 3 or timing == anytime: from 08:00 every `hours`

Regimens are validated when constructed, so `derive_dose_times` only ever sees
consistent input and stays a pure function of (regimen, day).
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, time
from typing import Any, Union

from services.errors import InvalidRegimen
from utils.datetime_utils import end_of_window, format_time_of_day, in_date_window, parse_time_of_day
from utils.med_utils import TIMING_OPTIONS, normalize_timing, parse_dose_time_list

MIN_FREQUENCY = 1
MAX_FREQUENCY = 10
MAX_FIXED_SLOT_FREQUENCY = 3
FIXED_SLOTS = (time(8, 0), time(14, 0), time(20, 0))
FIRST_DOSE_HOUR = 8
WAKING_WINDOW_HOURS = 15
HOURS_PER_DAY = 24


@dataclass(frozen=True)
class CustomTimes:
    times: tuple[time, ...]


@dataclass(frozen=True)
class FixedSlots:
    pass


@dataclass(frozen=True)
class EvenInterval:
    hours: float


DoseSpec = Union[CustomTimes, FixedSlots, EvenInterval]


def default_interval_hours(frequency: int) -> int:
    return max(1, WAKING_WINDOW_HOURS // max(int(frequency), 1))


def uses_fixed_slots(frequency: int, timing: str) -> bool:
    return int(frequency) <= MAX_FIXED_SLOT_FREQUENCY and timing != "anytime"


def _interval_clock(frequency: int, hours: float) -> list[tuple[int, int]]:
    out: list[tuple[int, int]] = []
    for step in range(frequency):
        at = FIRST_DOSE_HOUR + step * hours
        h = math.floor(at)
        m = math.floor((at - h) * 60 + 0.5)
        if m == 60:
            h += 1
            m = 0
        out.append((h, m))
    return out


def _validate_dose_spec(frequency: int, timing: str, spec: Any) -> None:
    if isinstance(spec, CustomTimes):
        times = spec.times
        if len(times) != frequency:
            raise InvalidRegimen(
                f"{len(times)} dose times were given but frequency is {frequency}; "
                f"select exactly {frequency} times or clear them"
            )
        for prev, cur in zip(times, times[1:]):
            if cur <= prev:
                raise InvalidRegimen("Custom dose times must be strictly increasing")
        return
    if isinstance(spec, FixedSlots):
        if not uses_fixed_slots(frequency, timing):
            raise InvalidRegimen("Fixed slots only apply to 1-3 daily doses tied to meals")
        return
    if isinstance(spec, EvenInterval):
        if uses_fixed_slots(frequency, timing):
            raise InvalidRegimen("Interval dosing needs more than 3 daily doses or anytime timing")
        hours = spec.hours
        if isinstance(hours, bool) or not isinstance(hours, (int, float)) or not math.isfinite(hours) or hours <= 0:
            raise InvalidRegimen("dose_interval_hours must be a positive number")
        clock = _interval_clock(frequency, float(hours))
        if clock[-1][0] >= HOURS_PER_DAY:
            raise InvalidRegimen(
                f"{frequency} doses every {hours:g}h starting at {FIRST_DOSE_HOUR:02d}:00 run past midnight"
            )
        for prev, cur in zip(clock, clock[1:]):
            if cur <= prev:
                raise InvalidRegimen(
                    f"dose_interval_hours {hours:g} is too short; doses would share the same minute"
                )
        return
    raise InvalidRegimen("Regimen needs exactly one dose spec")


@dataclass(frozen=True)
class Regimen:
    frequency: int
    timing: str
    start_date: date
    duration_days: int
    dose_spec: DoseSpec
    is_active: bool = True
    medicine_id: int | None = None
    user_id: int | None = None

    def __post_init__(self) -> None:
        if isinstance(self.frequency, bool) or not isinstance(self.frequency, int):
            raise InvalidRegimen("frequency must be an integer")
        if not MIN_FREQUENCY <= self.frequency <= MAX_FREQUENCY:
            raise InvalidRegimen(f"frequency must be between {MIN_FREQUENCY} and {MAX_FREQUENCY}")
        if self.timing not in TIMING_OPTIONS:
            raise InvalidRegimen("timing must be before_meal, after_meal, or anytime")
        if not isinstance(self.start_date, date):
            raise InvalidRegimen("start_date must be a date")
        if isinstance(self.duration_days, bool) or not isinstance(self.duration_days, int) or self.duration_days <= 0:
            raise InvalidRegimen("duration_days must be a positive integer")
        _validate_dose_spec(self.frequency, self.timing, self.dose_spec)

    @property
    def end_date(self) -> date:
        """Exclusive end of the validity window."""
        return end_of_window(self.start_date, self.duration_days)

    @property
    def custom_time_count(self) -> int:
        return len(self.dose_spec.times) if isinstance(self.dose_spec, CustomTimes) else 0

    def covers(self, day: date) -> bool:
        return bool(self.is_active) and in_date_window(day, self.start_date, self.duration_days)


def _coerce_int(value: Any, field: str) -> int:
    if isinstance(value, bool):
        raise InvalidRegimen(f"{field} must be an integer")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise InvalidRegimen(f"{field} must be an integer")
    if isinstance(value, float) and number != value:
        raise InvalidRegimen(f"{field} must be an integer")
    return number


def build_regimen(
    *,
    frequency: Any,
    timing: str | None,
    start_date: date,
    duration_days: Any,
    custom_times: list[str] | list[time] | None = None,
    interval_hours: float | None = None,
    is_active: bool = True,
    medicine_id: int | None = None,
    user_id: int | None = None,
) -> Regimen:
    """Pick the dose-spec variant from raw regimen fields and validate."""
    freq = _coerce_int(frequency, "frequency")
    timing_norm = normalize_timing(timing)

    spec: DoseSpec
    if custom_times:
        try:
            parsed = tuple(parse_time_of_day(t) for t in custom_times)
        except ValueError as exc:
            raise InvalidRegimen(str(exc))
        spec = CustomTimes(times=parsed)
    elif uses_fixed_slots(freq, timing_norm):
        spec = FixedSlots()
    else:
        hours = interval_hours if interval_hours not in (None, 0) else default_interval_hours(freq)
        try:
            hours = float(hours)
        except (TypeError, ValueError):
            raise InvalidRegimen("dose_interval_hours must be a positive number")
        spec = EvenInterval(hours=hours)

    return Regimen(
        frequency=freq,
        timing=timing_norm,
        start_date=start_date,
        duration_days=_coerce_int(duration_days, "duration_days"),
        dose_spec=spec,
        is_active=bool(is_active),
        medicine_id=medicine_id,
        user_id=user_id,
    )


def regimen_from_medicine(medicine: Any) -> Regimen:
    """Build the regimen for a stored medicine row."""
    return build_regimen(
        frequency=medicine.frequency,
        timing=medicine.timing,
        start_date=medicine.start_date,
        duration_days=medicine.duration_days,
        custom_times=parse_dose_time_list(getattr(medicine, "custom_dose_times", None)),
        interval_hours=getattr(medicine, "dose_interval_hours", None),
        is_active=medicine.is_active if medicine.is_active is not None else True,
        medicine_id=medicine.id,
        user_id=getattr(medicine, "user_id", None),
    )


def derive_dose_times(regimen: Regimen, day: date) -> list[time]:
    """Ordered wall-clock dose times for `day`; empty outside the window or when inactive."""
    if not regimen.covers(day):
        return []

    spec = regimen.dose_spec
    if isinstance(spec, CustomTimes):
        return list(spec.times)
    if isinstance(spec, FixedSlots):
        return list(FIXED_SLOTS[: regimen.frequency])
    return [time(h, m) for h, m in _interval_clock(regimen.frequency, spec.hours)]


def interval_options(frequency: int, timing: str = "anytime") -> list[int]:
    """Whole-hour intervals that fit the waking window for `frequency` doses."""
    freq = max(int(frequency), 1)
    if uses_fixed_slots(freq, normalize_timing(timing)):
        return []
    return list(range(1, default_interval_hours(freq) + 1))


def schedule_summary(regimen: Regimen) -> dict[str, Any]:
    spec = regimen.dose_spec
    if isinstance(spec, CustomTimes):
        strategy, times, hours = "custom", list(spec.times), None
    elif isinstance(spec, FixedSlots):
        strategy, times, hours = "fixed", list(FIXED_SLOTS[: regimen.frequency]), None
    else:
        strategy = "interval"
        times = [time(h, m) for h, m in _interval_clock(regimen.frequency, spec.hours)]
        hours = spec.hours
    return {
        "strategy": strategy,
        "dose_times": [format_time_of_day(t) for t in times],
        "interval_hours": hours,
    }
