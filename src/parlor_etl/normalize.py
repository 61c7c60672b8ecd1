"""Normalization functions for parlor CSV ingestion.

All functions accept str | None and return the appropriate type or None.
Free-text values come from hand-maintained Japanese spreadsheets, so numbers
arrive with unit suffixes (台, 分, 枚), full-width digits and thousands
separators.
"""

from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime

_LEADING_INT_RE = re.compile(r"[-+]?\d+")
_LEADING_NUMBER_RE = re.compile(r"[-+]?\d+(?:\.\d+)?")
_WALK_MINUTES_RE = re.compile(r"徒歩\s*(\d+)\s*分")
_TAG_SPLIT_RE = re.compile(r"[,、／/]")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


def to_halfwidth(value: str | None) -> str | None:
    """NFKC-fold full-width digits and punctuation ("７分" → "7分")."""
    v = trim(value)
    if v is None:
        return None
    return unicodedata.normalize("NFKC", v)


# ---------------------------------------------------------------------------
# Rule 3: numbers embedded in free text
# ---------------------------------------------------------------------------

def parse_leading_int(value: str | None) -> int | None:
    """Return the first integer found in free text ("7分" → 7, "約 450台" → 450).

    Thousands separators are removed before matching.
    """
    v = to_halfwidth(value)
    if v is None:
        return None
    m = _LEADING_INT_RE.search(v.replace(",", ""))
    return int(m.group(0)) if m else None


def parse_machine_count(value: str | None) -> int | None:
    """Parse a machine-count cell such as "約1,020台"."""
    v = to_halfwidth(value)
    if v is None:
        return None
    cleaned = v.replace("台", "").replace("約", "").replace(",", "").strip()
    return parse_leading_int(cleaned)


def parse_float(value: str | None) -> float | None:
    """Parse the first decimal number in free text, or None."""
    v = to_halfwidth(value)
    if v is None:
        return None
    m = _LEADING_NUMBER_RE.search(v.replace(",", ""))
    return float(m.group(0)) if m else None


def parse_walk_minutes(value: str | None) -> int | None:
    """Return walk minutes from access text.

    Prefers an explicit "徒歩N分" phrase (so "JR線 3番出口 徒歩7分" → 7), then
    falls back to the first integer in the text.
    """
    v = to_halfwidth(value)
    if v is None:
        return None
    m = _WALK_MINUTES_RE.search(v)
    if m:
        return int(m.group(1))
    return parse_leading_int(v)


def parse_event_frequency(value: str | None) -> float | None:
    """Bonus-event days per month.  A weekly figure ("週1回") is multiplied by 4."""
    n = parse_float(value)
    if n is None:
        return None
    if "週" in (value or ""):
        return n * 4
    return n


# ---------------------------------------------------------------------------
# Rule 4: flags and tag lists
# ---------------------------------------------------------------------------

def parse_parking(value: str | None) -> bool:
    """True when the parking description says parking exists (あり / 有 / 提携)."""
    v = trim(value)
    if v is None:
        return False
    return any(marker in v for marker in ("あり", "有", "提携"))


def parse_smoking_allowed(value: str | None) -> bool:
    """Smoking is allowed unless the policy mentions 禁煙."""
    v = trim(value)
    if v is None:
        return False
    return "禁煙" not in v


def parse_bool(value: object) -> bool:
    """Lenient truthiness for JSON and CSV flags (true/1/yes/○)."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    v = trim(str(value)) if value is not None else None
    if v is None:
        return False
    return v.lower() in {"true", "1", "yes", "y", "t", "○", "あり"}


def split_tags(value: str | None) -> list[str]:
    """Split a tag list on commas, ideographic commas and slashes."""
    v = trim(value)
    if v is None:
        return []
    return [part.strip() for part in _TAG_SPLIT_RE.split(v) if part.strip()]


# ---------------------------------------------------------------------------
# Rule 5: dates
# ---------------------------------------------------------------------------

def parse_iso_date(value: str | None) -> date | None:
    """Parse YYYY-MM-DD or YYYY/MM/DD; None when unparseable."""
    v = trim(value)
    if v is None:
        return None
    for fmt in ("%Y-%m-%d", "%Y/%m/%d"):
        try:
            return datetime.strptime(v[:10], fmt).date()
        except ValueError:
            continue
    return None


def day_of_week(d: date) -> int:
    """0=Sunday .. 6=Saturday, always derived from the date itself."""
    return (d.weekday() + 1) % 7


def round_half_up(value: float) -> int:
    """Round to the nearest integer with .5 going up (72.5 → 73, -2.5 → -2)."""
    return int((value + 0.5) // 1)
