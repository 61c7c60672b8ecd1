"""Unit test fixtures.

``FakeRepository`` implements the ParlorRepository contract in memory so the
ingestion and analysis pipelines can be exercised without PostgreSQL.
``unit_of_work`` snapshots all tables and restores them when the block raises.
"""

from __future__ import annotations

import copy
from contextlib import contextmanager
from datetime import date
from typing import Iterator

import pytest

from parlor_etl.models import (
    AttributeDetail,
    DailyPerformance,
    Event,
    Machine,
    MachineDayResult,
    ScoreAnalysis,
    Store,
    Top10Entry,
)
from parlor_etl.repository import INSERTED, OVERWRITTEN, SKIPPED, RepositoryError


class FakeRepository:
    def __init__(self) -> None:
        self.stores: dict[str, Store] = {}
        self.store_details: dict[tuple[str, str], AttributeDetail] = {}
        self.machines: dict[str, Machine] = {}
        self.machine_details: dict[tuple[str, str], AttributeDetail] = {}
        self.events: dict[str, Event] = {}
        self.performances: dict[tuple[str, date], DailyPerformance] = {}
        self.analyses: dict[tuple[str, date], ScoreAnalysis] = {}
        self.locked: list[str] = []
        # Store ids whose analysis upsert should fail, to exercise error paths.
        self.fail_analysis_for: set[str] = set()
        self.fail_performance_for: set[str] = set()

    # -- transactions -------------------------------------------------------

    def _tables(self) -> tuple:
        return (
            self.stores, self.store_details, self.machines, self.machine_details,
            self.events, self.performances, self.analyses,
        )

    @contextmanager
    def unit_of_work(self, name: str) -> Iterator[None]:
        snapshot = copy.deepcopy(self._tables())
        try:
            yield
        except Exception:
            (self.stores, self.store_details, self.machines, self.machine_details,
             self.events, self.performances, self.analyses) = snapshot
            raise

    def lock_store(self, store_id: str) -> None:
        self.locked.append(store_id)

    # -- reads --------------------------------------------------------------

    def get_existing_performance_dates(self, store_id: str) -> set[str]:
        return {d.isoformat() for (sid, d) in self.performances if sid == store_id}

    def get_performance_history(self, store_id: str, limit: int) -> list[DailyPerformance]:
        rows = [p for (sid, _), p in self.performances.items() if sid == store_id]
        rows.sort(key=lambda p: p.date, reverse=True)
        return copy.deepcopy(rows[:limit])

    def get_store(self, store_id: str) -> Store | None:
        return self.stores.get(store_id)

    def list_stores(self, active_only: bool = True) -> list[Store]:
        return [
            s for _, s in sorted(self.stores.items())
            if s.is_active or not active_only
        ]

    def list_machines(self) -> list[Machine]:
        return [m for _, m in sorted(self.machines.items())]

    def get_events_for_store(self, store_id: str, on_date: date) -> list[Event]:
        return [
            e for e in self.events.values()
            if e.is_active and e.event_date == on_date and store_id in e.target_stores
        ]

    def list_latest_analyses(self) -> list[tuple[Store, ScoreAnalysis]]:
        latest: dict[str, ScoreAnalysis] = {}
        for (sid, d), a in self.analyses.items():
            if sid not in latest or d > latest[sid].analysis_date:
                latest[sid] = a
        return [
            (self.stores[sid], a) for sid, a in sorted(latest.items())
            if sid in self.stores and self.stores[sid].is_active
        ]

    # -- writes -------------------------------------------------------------

    def upsert_store(self, store: Store) -> None:
        self.stores[store.store_id] = copy.deepcopy(store)

    def upsert_store_details(self, details: list[AttributeDetail]) -> int:
        for d in details:
            self.store_details[(d.entity_id, d.element, d.number)] = d
        return len(details)

    def set_store_active(self, store_id: str, active: bool) -> bool:
        store = self.stores.get(store_id)
        if store is None:
            return False
        store.is_active = active
        return True

    def delete_store(self, store_id: str) -> bool:
        if self.stores.pop(store_id, None) is None:
            return False
        for table in (self.store_details, self.performances, self.analyses):
            for key in [k for k in table if k[0] == store_id]:
                del table[key]
        return True

    def upsert_machine(self, machine: Machine) -> None:
        self.machines[machine.machine_id] = copy.deepcopy(machine)

    def upsert_machine_details(self, details: list[AttributeDetail]) -> int:
        for d in details:
            self.machine_details[(d.entity_id, d.element, d.number)] = d
        return len(details)

    def set_machine_popularity(self, machine_id: str, score: int) -> bool:
        machine = self.machines.get(machine_id)
        if machine is None:
            return False
        machine.popularity_score = score
        return True

    def upsert_event(self, event: Event) -> None:
        self.events[event.event_id] = copy.deepcopy(event)

    def upsert_performance(self, perf: DailyPerformance, force: bool) -> str:
        if perf.store_id in self.fail_performance_for:
            raise RepositoryError(f"simulated failure for {perf.store_id}")
        key = (perf.store_id, perf.date)
        existing = self.performances.get(key)
        if existing is None:
            self.performances[key] = copy.deepcopy(perf)
            return INSERTED
        if not force:
            return SKIPPED
        merged = copy.deepcopy(perf)
        merged.machines = {**existing.machines, **perf.machines}
        merged.top10 = list(perf.top10) if perf.top10 else existing.top10
        self.performances[key] = merged
        return OVERWRITTEN

    def merge_performance_enrichment(
        self,
        store_id: str,
        on_date: date,
        machines: dict[str, MachineDayResult],
        top10: list[Top10Entry] | None,
    ) -> bool:
        existing = self.performances.get((store_id, on_date))
        if existing is None:
            return False
        existing.machines.update(copy.deepcopy(machines))
        if top10 is not None:
            existing.top10 = list(top10)
        return True

    def upsert_score_analysis(self, analysis: ScoreAnalysis) -> None:
        if analysis.store_id in self.fail_analysis_for:
            raise RepositoryError(f"simulated failure for {analysis.store_id}")
        self.analyses[(analysis.store_id, analysis.analysis_date)] = copy.deepcopy(analysis)


@pytest.fixture
def repo() -> FakeRepository:
    return FakeRepository()
