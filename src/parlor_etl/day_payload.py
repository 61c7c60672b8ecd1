"""parlor_etl.day_payload

Decoder for JSON arrays embedded in CSV cells of the store production export.

Each production row is one (store_id, element, 情報) triple where element is
``day_N``, ``machine_day_N`` or ``top10_day_N`` and 情報 holds a JSON array,
often still wearing a layer of CSV quoting.  Elements carry ``year`` and
``month``; the day of month comes from the element name.

Decoding never raises.  Anything that fails the structural pre-check, the
JSON parse or the shape checks becomes a ``DecodeFailure`` and is logged, and
sibling payloads are unaffected.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from parlor_etl.defaults import default_for
from parlor_etl.models import (
    DecodeFailure,
    MachineDayResult,
    MachineDaySummary,
    StoreDaySummary,
    Top10DayRanking,
    Top10Entry,
    UnitResult,
)
from parlor_etl.normalize import parse_bool, round_half_up, trim

log = logging.getLogger(__name__)

STORE_DAY = "store_day"
MACHINE_DAY = "machine_day"
TOP10_DAY = "top10_day"

_COLUMN_RE = re.compile(r"^(?:(machine|top10)_)?day_(\d{1,2})$")
_KIND_BY_PREFIX = {None: STORE_DAY, "machine": MACHINE_DAY, "top10": TOP10_DAY}


class PayloadShapeError(ValueError):
    """An element of a decoded array does not have the expected shape."""


@dataclass
class DecodeResult:
    store_days: list[StoreDaySummary] = field(default_factory=list)
    machine_days: list[MachineDaySummary] = field(default_factory=list)
    top10_days: list[Top10DayRanking] = field(default_factory=list)
    failures: list[DecodeFailure] = field(default_factory=list)

    def extend(self, other: "DecodeResult") -> None:
        self.store_days.extend(other.store_days)
        self.machine_days.extend(other.machine_days)
        self.top10_days.extend(other.top10_days)
        self.failures.extend(other.failures)


# ---------------------------------------------------------------------------
# Column names
# ---------------------------------------------------------------------------

def parse_day_column(name: str | None) -> tuple[str, int] | None:
    """Return (payload kind, day of month) for day_N / machine_day_N / top10_day_N."""
    v = trim(name)
    if v is None:
        return None
    m = _COLUMN_RE.match(v.lower())
    if not m:
        return None
    day = int(m.group(2))
    if not 1 <= day <= 31:
        return None
    return _KIND_BY_PREFIX[m.group(1)], day


# ---------------------------------------------------------------------------
# JSON cell
# ---------------------------------------------------------------------------

def decode_json_array(raw: str | None) -> list[Any] | None:
    """Repair and parse a JSON array cell; None when it is not a complete array.

    Steps: strip one layer of outer quotes, un-double internal quotes, require
    ``[ ... ]`` after trimming, parse.  Truncated payloads fail the bracket
    check rather than being partially parsed.
    """
    if raw is None:
        return None
    text = raw.strip()
    stripped = len(text) >= 2 and text.startswith('"') and text.endswith('"')
    if stripped:
        text = text[1:-1].replace('""', '"').strip()
    if not (text.startswith("[") and text.endswith("]")):
        return None
    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        if stripped or '""' not in text:
            return None
        # Doubled quotes without an outer wrapper: un-double and retry.
        try:
            value = json.loads(text.replace('""', '"'))
        except json.JSONDecodeError:
            return None
    return value if isinstance(value, list) else None


# ---------------------------------------------------------------------------
# Element helpers
# ---------------------------------------------------------------------------

def _int_field(obj: dict[str, Any], key: str, default: int) -> int:
    value = obj.get(key)
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise PayloadShapeError(f"'{key}' is not numeric: {value!r}")
    try:
        return round_half_up(float(str(value).replace(",", "")))
    except ValueError:
        raise PayloadShapeError(f"'{key}' is not numeric: {value!r}")


def _element_date(element: Any, day: int) -> date:
    if not isinstance(element, dict):
        raise PayloadShapeError(f"element is {type(element).__name__}, expected object")
    if element.get("year") in (None, "") or element.get("month") in (None, ""):
        raise PayloadShapeError("element has no year/month")
    year = _int_field(element, "year", 0)
    month = _int_field(element, "month", 0)
    try:
        return date(year, month, day)
    except ValueError as exc:
        raise PayloadShapeError(f"invalid date {year}-{month}-{day}: {exc}")


def _machine_result(machine_id: str, data: Any) -> MachineDayResult:
    if not isinstance(data, dict):
        raise PayloadShapeError(f"machine {machine_id} entry is not an object")
    units: dict[str, UnitResult] = {}
    raw_units = data.get("units") or {}
    if not isinstance(raw_units, dict):
        raise PayloadShapeError(f"machine {machine_id} units is not an object")
    for unit_id, u in raw_units.items():
        if not isinstance(u, dict):
            continue
        rate = u.get("rate")
        units[str(unit_id)] = UnitResult(
            unit_id=str(unit_id),
            difference=_int_field(u, "diff", 0),
            games=_int_field(u, "games", 0),
            payout_rate=str(rate) if rate not in (None, "") else None,
        )

    total_diff = _int_field(data, "total_diff", 0)
    avg_diff = _int_field(data, "avg_diff", 0)
    total_games = _int_field(data, "total_games", 0)
    if units:
        unit_diffs = [u.difference for u in units.values()]
        if total_diff == 0:
            total_diff = sum(unit_diffs)
        if avg_diff == 0:
            avg_diff = round_half_up(sum(unit_diffs) / len(unit_diffs))
        if total_games == 0:
            total_games = sum(u.games for u in units.values())

    name = data.get("machine_name")
    return MachineDayResult(
        machine_id=machine_id,
        machine_name=str(name) if name not in (None, "") else None,
        total_difference=total_diff,
        average_difference=avg_diff,
        total_games=total_games,
        units=units,
    )


def _top10_entries(raw: Any) -> list[Top10Entry]:
    if not isinstance(raw, list):
        raise PayloadShapeError("top10 is not a list")
    entries: list[Top10Entry] = []
    for position, item in enumerate(raw, start=1):
        if not isinstance(item, dict):
            continue
        unit = item.get("unit", item.get("unit_id"))
        name = item.get("machine_name")
        machine_id = item.get("machine_id")
        entries.append(Top10Entry(
            rank=_int_field(item, "rank", position),
            machine_name=str(name) if name not in (None, "") else None,
            machine_id=str(machine_id) if machine_id not in (None, "") else None,
            unit_id=str(unit) if unit not in (None, "") else None,
            difference=_int_field(item, "diff", 0),
            games=_int_field(item, "games", 0),
        ))
    entries.sort(key=lambda e: e.rank)
    return entries


# ---------------------------------------------------------------------------
# Public decoder
# ---------------------------------------------------------------------------

def decode_day_cell(store_id: str, column: str, raw: str | None) -> DecodeResult:
    """Decode one day-indexed cell for one store into tagged records."""
    result = DecodeResult()
    parsed = parse_day_column(column)
    if parsed is None:
        result.failures.append(DecodeFailure(store_id, column, "not a day-indexed column"))
        return result
    kind, day = parsed

    elements = decode_json_array(raw)
    if elements is None:
        reason = "malformed or truncated JSON array"
        log.warning("Skipping %s for store %s: %s", column, store_id, reason)
        result.failures.append(DecodeFailure(store_id, column, reason))
        return result

    for idx, element in enumerate(elements):
        try:
            d = _element_date(element, day)
            if kind == STORE_DAY:
                weather = element.get("weather")
                result.store_days.append(StoreDaySummary(
                    store_id=store_id,
                    date=d,
                    total_difference=_int_field(
                        element, "total_diff", default_for("store_day", "total_difference")),
                    average_difference=_int_field(
                        element, "avg_diff", default_for("store_day", "average_difference")),
                    average_games=_int_field(
                        element, "avg_games", default_for("store_day", "average_games")),
                    total_visitors=_int_field(
                        element, "total_visitors", default_for("store_day", "total_visitors")),
                    is_event_day=(
                        parse_bool(element["is_event"]) if "is_event" in element
                        else default_for("store_day", "is_event_day")
                    ),
                    weather=trim(str(weather)) if weather is not None else None,
                ))
            elif kind == MACHINE_DAY:
                raw_machines = element.get("machines") or {}
                if not isinstance(raw_machines, dict):
                    raise PayloadShapeError("machines is not an object")
                machines = {
                    str(mid): _machine_result(str(mid), data)
                    for mid, data in raw_machines.items()
                }
                result.machine_days.append(MachineDaySummary(store_id, d, machines))
            else:
                result.top10_days.append(
                    Top10DayRanking(store_id, d, _top10_entries(element.get("top10") or []))
                )
        except PayloadShapeError as exc:
            log.warning("Skipping %s[%d] for store %s: %s", column, idx, store_id, exc)
            result.failures.append(DecodeFailure(store_id, column, f"element {idx}: {exc}"))
    return result
