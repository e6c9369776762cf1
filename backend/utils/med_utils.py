"""Shared helpers for medicine names, doses and timing labels."""

import json
import re

# ---------------------------------------------------------------------------
# Timing
# ---------------------------------------------------------------------------

TIMING_OPTIONS = ("before_meal", "after_meal", "anytime")

TIMING_LABELS = {
    "before_meal": "before meal",
    "after_meal": "after meal",
    "anytime": "anytime",
}


def timing_label(timing: str | None) -> str:
    return TIMING_LABELS.get(str(timing or "").strip().lower(), "anytime")


def normalize_timing(timing: str | None) -> str:
    t = "_".join(str(timing or "").strip().lower().replace("-", " ").split())
    return t


# ---------------------------------------------------------------------------
# Names
# ---------------------------------------------------------------------------

DOSE_RE = re.compile(
    r"\b(\d[\d,.\s]*(mcg|mg|g|iu|ml|units?|tabs?|caps?|drops?))\b",
    re.IGNORECASE,
)


def normalize_medicine_name(value: str | None) -> str:
    return " ".join((value or "").lower().split())


def canonical_medicine_name(value: str | None) -> str:
    return " ".join((value or "").strip().split())


def split_name_and_dose(text: str) -> tuple[str, str]:
    """Split "Metformin 500mg" into ("Metformin", "500mg")."""
    cleaned = " ".join(str(text or "").split()).strip()
    m = DOSE_RE.search(cleaned)
    if not m:
        return cleaned, ""
    dose = m.group(0).strip()
    name = (cleaned[:m.start()] + cleaned[m.end():]).strip()
    name = re.sub(r"\s*[+\-,]\s*$", "", name).strip()
    if not name:
        return dose, ""
    return name, dose


def display_name(name: str, dose: str | None = None) -> str:
    return f"{name} ({dose})" if dose else name


# ---------------------------------------------------------------------------
# Stored dose-time lists
# ---------------------------------------------------------------------------

def parse_dose_time_list(raw: str | None) -> list[str]:
    """Parse the JSON text column holding custom dose times."""
    if not raw:
        return []
    txt = raw.strip()
    if not txt:
        return []
    try:
        arr = json.loads(txt)
    except json.JSONDecodeError:
        # Legacy comma separated values.
        return [piece.strip() for piece in txt.split(",") if piece.strip()]
    if not isinstance(arr, list):
        return []
    return [str(entry).strip() for entry in arr if str(entry).strip()]


def dump_dose_time_list(times: list[str]) -> str | None:
    return json.dumps(list(times)) if times else None
