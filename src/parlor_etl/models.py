"""parlor_etl.models

Canonical entity records and the tagged payload records decoded from the
embedded-JSON performance cells.

JSON-shaped columns (machine map, top-10 list, recommended machines, play
strategy) are typed here and converted with ``to_json()`` / ``from_json()``
at the persistence boundary only.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Any

from parlor_etl.normalize import day_of_week


def performance_key(store_id: str, d: date) -> str:
    """Synthetic DailyPerformance identifier."""
    return f"perf_{store_id}_{d.isoformat()}"


# ---------------------------------------------------------------------------
# Master data
# ---------------------------------------------------------------------------

@dataclass
class Store:
    store_id: str
    store_name: str
    prefecture: str
    city: str | None = None
    address: str | None = None
    full_address: str | None = None
    nearest_station: str | None = None
    walk_minutes: int | None = None
    walk_distance_meters: int = 0
    opening_hours: str | None = None
    total_machines: int = 0
    pachinko_machines: int = 0
    pachislot_machines: int = 0
    parking_available: bool = False
    smoking_allowed: bool = False
    event_frequency: float = 0.0
    latitude: float | None = None
    longitude: float | None = None
    phone_number: str | None = None
    website_url: str | None = None
    postal_code: str | None = None
    popular_machines: list[str] = field(default_factory=list)
    is_active: bool = True


@dataclass
class AttributeDetail:
    """One raw long-format row, kept verbatim for traceability."""

    entity_id: str
    element: str
    number: int | None
    element_name: str | None
    value: str | None
    category: str | None = None
    importance: str | None = None


@dataclass
class Machine:
    machine_id: str
    machine_name: str
    manufacturer: str = ""
    machine_type: str = "pachislot"
    rtp_percentage: float | None = None
    popularity_score: int = 50
    release_date: date | None = None
    is_active: bool = True


@dataclass
class Event:
    event_id: str
    event_name: str
    event_date: date
    target_stores: list[str] = field(default_factory=list)
    event_type: str = ""
    bonus_multiplier: float = 1.0
    description: str | None = None
    is_active: bool = True


# ---------------------------------------------------------------------------
# Decoded day payloads (tagged by shape)
# ---------------------------------------------------------------------------

@dataclass
class UnitResult:
    unit_id: str
    difference: int = 0
    games: int = 0
    payout_rate: str | None = None


@dataclass
class MachineDayResult:
    machine_id: str
    machine_name: str | None = None
    total_difference: int = 0
    average_difference: int = 0
    total_games: int = 0
    units: dict[str, UnitResult] = field(default_factory=dict)

    def to_json(self) -> dict[str, Any]:
        return {
            "machine_name": self.machine_name,
            "total_diff": self.total_difference,
            "avg_diff": self.average_difference,
            "total_games": self.total_games,
            "units": {
                uid: {"diff": u.difference, "games": u.games, "rate": u.payout_rate}
                for uid, u in self.units.items()
            },
        }

    @classmethod
    def from_json(cls, machine_id: str, data: dict[str, Any]) -> "MachineDayResult":
        units = {
            str(uid): UnitResult(
                unit_id=str(uid),
                difference=int(u.get("diff") or 0),
                games=int(u.get("games") or 0),
                payout_rate=u.get("rate"),
            )
            for uid, u in (data.get("units") or {}).items()
            if isinstance(u, dict)
        }
        return cls(
            machine_id=machine_id,
            machine_name=data.get("machine_name"),
            total_difference=int(data.get("total_diff") or 0),
            average_difference=int(data.get("avg_diff") or 0),
            total_games=int(data.get("total_games") or 0),
            units=units,
        )


@dataclass
class Top10Entry:
    rank: int
    machine_name: str | None = None
    machine_id: str | None = None
    unit_id: str | None = None
    difference: int = 0
    games: int = 0

    def to_json(self) -> dict[str, Any]:
        return {
            "rank": self.rank,
            "machine_name": self.machine_name,
            "machine_id": self.machine_id,
            "unit": self.unit_id,
            "diff": self.difference,
            "games": self.games,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "Top10Entry":
        unit = data.get("unit")
        return cls(
            rank=int(data.get("rank") or 0),
            machine_name=data.get("machine_name"),
            machine_id=data.get("machine_id"),
            unit_id=str(unit) if unit is not None else None,
            difference=int(data.get("diff") or 0),
            games=int(data.get("games") or 0),
        )


@dataclass
class StoreDaySummary:
    kind = "store_day"

    store_id: str
    date: date
    total_difference: int = 0
    average_difference: int = 0
    average_games: int = 0
    total_visitors: int = 0
    is_event_day: bool = False
    weather: str | None = None


@dataclass
class MachineDaySummary:
    kind = "machine_day"

    store_id: str
    date: date
    machines: dict[str, MachineDayResult] = field(default_factory=dict)


@dataclass
class Top10DayRanking:
    kind = "top10_day"

    store_id: str
    date: date
    entries: list[Top10Entry] = field(default_factory=list)


@dataclass
class DecodeFailure:
    store_id: str
    column: str
    reason: str


# ---------------------------------------------------------------------------
# Aggregated performance
# ---------------------------------------------------------------------------

@dataclass
class DailyPerformance:
    store_id: str
    date: date
    total_difference: int = 0
    average_difference: int = 0
    average_games: int = 0
    total_visitors: int = 0
    machines: dict[str, MachineDayResult] = field(default_factory=dict)
    top10: list[Top10Entry] = field(default_factory=list)
    is_event_day: bool = False
    weather: str | None = None

    @property
    def performance_id(self) -> str:
        return performance_key(self.store_id, self.date)

    @property
    def day_of_week(self) -> int:
        return day_of_week(self.date)

    def machines_json(self) -> dict[str, Any]:
        return {mid: m.to_json() for mid, m in self.machines.items()}

    def top10_json(self) -> list[dict[str, Any]]:
        return [e.to_json() for e in self.top10]


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------

@dataclass
class RecommendedMachine:
    machine_id: str
    machine_name: str
    unit_range: str
    expected_difference: int
    reason: str


@dataclass
class PlayStrategy:
    entry_time: str
    target_machines: list[str] = field(default_factory=list)
    avoid_machines: list[str] = field(default_factory=list)
    strategy: str = ""
    warnings: list[str] = field(default_factory=list)


@dataclass
class ScoreAnalysis:
    store_id: str
    analysis_date: date
    total_score: int
    base_score: float
    event_bonus: float
    machine_popularity: float
    access_score: float
    personal_adjustment: float
    predicted_win_rate: int
    confidence: int
    recommendation: str
    rationale: list[str] = field(default_factory=list)
    recommended_machines: list[RecommendedMachine] = field(default_factory=list)
    play_strategy: PlayStrategy | None = None
    comment: str = ""
    comment_source: str = "engine"

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["analysis_date"] = self.analysis_date.isoformat()
        return d
