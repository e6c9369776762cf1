from datetime import datetime, date, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def resolve_zone(tz_name: str | None) -> ZoneInfo | timezone:
    """Return the user's zone, falling back to UTC for empty or unknown names."""
    if tz_name:
        try:
            return ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError, OSError):
            pass
    return timezone.utc


def is_valid_timezone(tz_name: str | None) -> bool:
    if not tz_name:
        return False
    try:
        ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        return False
    return True


def today_for_tz(tz_name: str | None, now: datetime | None = None) -> date:
    """Return today's date in the user's timezone."""
    return local_now(tz_name, now).date()


def ensure_aware(value: datetime) -> datetime:
    """Naive datetimes are treated as UTC (SQLite drops tzinfo on read)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def local_now(tz_name: str | None, now: datetime | None = None) -> datetime:
    current = ensure_aware(now) if now is not None else utcnow()
    return current.astimezone(resolve_zone(tz_name))


def combine_local(d: date, t: time, tz_name: str | None = None) -> datetime:
    """Build the aware instant for a local wall-clock date and time of day."""
    return datetime.combine(d, t.replace(tzinfo=None), tzinfo=resolve_zone(tz_name))


def end_of_window(start: date, days: int) -> date:
    """Exclusive end of a date-only window of `days` days."""
    return start + timedelta(days=days)


def in_date_window(d: date, start: date, days: int) -> bool:
    return start <= d < end_of_window(start, days)


def days_remaining(start: date, days: int, today: date) -> int:
    return max(0, (end_of_window(start, days) - today).days)


def parse_time_of_day(raw: str | time) -> time:
    """Parse "HH:MM" or "HH:MM:SS" into a time. Raises ValueError."""
    if isinstance(raw, time):
        return raw.replace(tzinfo=None, microsecond=0)
    text = str(raw or "").strip()
    parts = text.split(":")
    if len(parts) not in (2, 3) or not all(p.isdigit() for p in parts):
        raise ValueError(f"Invalid time of day: {raw!r}")
    hour, minute = int(parts[0]), int(parts[1])
    second = int(parts[2]) if len(parts) == 3 else 0
    return time(hour, minute, second)


def format_time_of_day(value: time) -> str:
    return value.strftime("%H:%M:%S")


def format_clock_12h(value: datetime | time) -> str:
    return value.strftime("%I:%M %p").lstrip("0")
