"""parlor_etl.defaults

Every default the normalizers and the decoder substitute, in one table.

Each entry names the entity, the field, the value used and the condition
that triggers it.  Normalizers read values through ``default_for`` so the
table is the single place a default can change, and tests enumerate it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class FieldDefault:
    entity: str
    field: str
    value: Any
    trigger: str


FIELD_DEFAULTS: tuple[FieldDefault, ...] = (
    # Store
    FieldDefault("store", "walk_distance_meters", 0, "no walk time attribute"),
    FieldDefault("store", "total_machines", 0, "machine count missing or unparseable"),
    FieldDefault("store", "pachinko_machines", 0, "machine count missing or unparseable"),
    FieldDefault("store", "pachislot_machines", 0, "machine count missing or unparseable"),
    FieldDefault("store", "parking_available", False, "no parking_info attribute"),
    FieldDefault("store", "smoking_allowed", False, "no smoking_policy attribute"),
    FieldDefault("store", "event_frequency", 0.0, "event_frequency missing or unparseable"),
    FieldDefault("store", "popular_machines", (), "no popular machine attribute"),
    FieldDefault("store", "is_active", True, "every ingested store"),
    # Machine
    FieldDefault("machine", "manufacturer", "", "maker column missing or blank"),
    FieldDefault("machine", "machine_type", "pachislot", "type column missing or blank"),
    FieldDefault("machine", "rtp_percentage", None, "payout column missing or unparseable"),
    FieldDefault("machine", "popularity_score", 50, "name matches no popularity keyword"),
    # Event
    FieldDefault("event", "event_type", "", "event_type missing"),
    FieldDefault("event", "bonus_multiplier", 1.0, "multiplier missing, unparseable or negative"),
    FieldDefault("event", "event_date", "today", "no day-indexed payload decoded"),
    # Store-day summary
    FieldDefault("store_day", "total_difference", 0, "total_diff missing"),
    FieldDefault("store_day", "average_difference", 0, "avg_diff missing"),
    FieldDefault("store_day", "average_games", 5000, "avg_games missing"),
    FieldDefault("store_day", "total_visitors", 200, "total_visitors missing"),
    FieldDefault("store_day", "is_event_day", False, "is_event missing"),
    # Machine-day summary
    FieldDefault("machine_day", "total_difference", "sum of unit diffs", "total_diff missing or 0 and units present"),
    FieldDefault("machine_day", "average_difference", "mean of unit diffs", "avg_diff missing or 0 and units present"),
    FieldDefault("machine_day", "total_games", "sum of unit games", "total_games missing or 0 and units present"),
)

_INDEX: dict[tuple[str, str], FieldDefault] = {(d.entity, d.field): d for d in FIELD_DEFAULTS}


def default_for(entity: str, field: str) -> Any:
    """Return the default value for (entity, field); KeyError if undocumented."""
    value = _INDEX[(entity, field)].value
    if isinstance(value, tuple):
        return list(value)
    return value
