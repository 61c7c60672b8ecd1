"""parlor_etl.ranking

Presentation ranking over the latest analysis of each active store.

Ranks are assigned over the whole list before any filter, so a store keeps
the same rank whichever prefecture or search filter is applied.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from parlor_etl.models import ScoreAnalysis, Store
from parlor_etl.scoring import score_to_rank

MAX_LIMIT = 100


@dataclass
class RankedStore:
    rank: int
    store_id: str
    store_name: str
    prefecture: str
    nearest_station: str | None
    total_score: int
    predicted_win_rate: int
    comment: str
    letter_rank: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _matches(entry: RankedStore, search: str) -> bool:
    needle = search.casefold()
    return any(
        needle in (value or "").casefold()
        for value in (entry.store_name, entry.nearest_station)
    )


def build_rankings(
    entries: list[tuple[Store, ScoreAnalysis]],
    prefecture: str | None = None,
    search: str | None = None,
    limit: int = 20,
    offset: int = 0,
) -> list[RankedStore]:
    if not 1 <= limit <= MAX_LIMIT:
        raise ValueError(f"limit must be between 1 and {MAX_LIMIT}, got {limit}")
    if offset < 0:
        raise ValueError(f"offset must be >= 0, got {offset}")

    ordered = sorted(entries, key=lambda e: (-e[1].total_score, e[0].store_id))
    ranked = [
        RankedStore(
            rank=n,
            store_id=store.store_id,
            store_name=store.store_name,
            prefecture=store.prefecture,
            nearest_station=store.nearest_station,
            total_score=analysis.total_score,
            predicted_win_rate=analysis.predicted_win_rate,
            comment=analysis.comment,
            letter_rank=score_to_rank(analysis.total_score),
        )
        for n, (store, analysis) in enumerate(ordered, start=1)
    ]
    if prefecture:
        ranked = [r for r in ranked if r.prefecture == prefecture]
    if search and search.strip():
        ranked = [r for r in ranked if _matches(r, search.strip())]
    return ranked[offset:offset + limit]
