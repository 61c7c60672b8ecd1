"""parlor_etl.analysis

Rerun analysis: score every active store for one date and persist the results.

Reads happen up front, scoring runs in a bounded thread pool (it is pure),
and the optional LLM commentary and the upserts run sequentially so one
connection is never shared between threads.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable

from parlor_etl.llm_commentary import Commentator, apply_commentary
from parlor_etl.models import DailyPerformance, Event, ScoreAnalysis, Store
from parlor_etl.normalize import day_of_week
from parlor_etl.repository import ParlorRepository, RepositoryError
from parlor_etl.scoring import (
    RECOMMENDATION_LABELS,
    EventContext,
    WeatherContext,
    score,
    score_to_rank,
)
from parlor_etl.scoring_rules import ScoringConfig

log = logging.getLogger(__name__)

DEFAULT_WORKERS = 4


@dataclass
class AnalysisCounters:
    stores_considered: int = 0
    stores_scored: int = 0
    stores_without_history: int = 0
    analyses_saved: int = 0
    analyses_failed: int = 0
    llm_comments: int = 0
    db_phase_errors: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


@dataclass
class _StoreInput:
    store: Store
    history: list[DailyPerformance]
    event: EventContext
    weather: WeatherContext


def build_event_context(events: list[Event], current: DailyPerformance | None) -> EventContext:
    """An event row wins; otherwise fall back to the current day's event flag."""
    if events:
        event = max(events, key=lambda e: (e.bonus_multiplier, e.event_id))
        return EventContext(
            is_event_day=True,
            event_type=event.event_type,
            bonus_multiplier=event.bonus_multiplier,
            event_name=event.event_name,
        )
    if current is not None and current.is_event_day:
        return EventContext(is_event_day=True)
    return EventContext()


def build_weather_context(
    current: DailyPerformance | None,
    analysis_date: date,
    holidays: Iterable[date] = (),
) -> WeatherContext:
    return WeatherContext(
        weather=current.weather if current is not None else None,
        day_of_week=day_of_week(analysis_date),
        is_holiday=analysis_date in set(holidays),
    )


def _gather_inputs(
    repo: ParlorRepository,
    stores: list[Store],
    analysis_date: date,
    config: ScoringConfig,
    holidays: tuple[date, ...],
) -> list[_StoreInput]:
    inputs = []
    for store in stores:
        history = repo.get_performance_history(store.store_id, config.history_limit)
        current = history[0] if history else None
        events = repo.get_events_for_store(store.store_id, analysis_date)
        inputs.append(_StoreInput(
            store=store,
            history=history,
            event=build_event_context(events, current),
            weather=build_weather_context(current, analysis_date, holidays),
        ))
    return inputs


def run_analysis(
    repo: ParlorRepository,
    analysis_date: date,
    config: ScoringConfig,
    counters: AnalysisCounters,
    store_ids: list[str] | None = None,
    workers: int = DEFAULT_WORKERS,
    holidays: Iterable[date] = (),
    commentator: Commentator | None = None,
) -> list[ScoreAnalysis]:
    """Score and persist analyses; returns the analyses that were saved."""
    stores = repo.list_stores(active_only=True)
    if store_ids:
        wanted = set(store_ids)
        stores = [s for s in stores if s.store_id in wanted]
        for missing in sorted(wanted - {s.store_id for s in stores}):
            counters.warnings.append(f"store {missing}: not found or inactive")
    counters.stores_considered += len(stores)

    machine_names = {m.machine_id: m.machine_name for m in repo.list_machines()}
    inputs = _gather_inputs(repo, stores, analysis_date, config, tuple(holidays))
    by_store = {i.store.store_id: i for i in inputs}

    scored: dict[str, ScoreAnalysis] = {}
    with ThreadPoolExecutor(max_workers=max(1, workers)) as executor:
        futures = {
            executor.submit(
                score, i.history, i.store, i.event, i.weather, config, analysis_date, machine_names,
            ): i.store.store_id
            for i in inputs
        }
        for future in as_completed(futures):
            scored[futures[future]] = future.result()
    counters.stores_scored += len(scored)

    saved: list[ScoreAnalysis] = []
    for store_id in sorted(scored):
        item = by_store[store_id]
        if not item.history:
            counters.stores_without_history += 1
            log.warning("Store %s has no performance history; scored with defaults", store_id)
        analysis = apply_commentary(commentator, item.store, scored[store_id])
        if analysis.comment_source == "llm":
            counters.llm_comments += 1
        try:
            with repo.unit_of_work(f"analysis_{store_id}"):
                repo.upsert_score_analysis(analysis)
        except RepositoryError as exc:
            counters.analyses_failed += 1
            counters.db_phase_errors += 1
            counters.warnings.append(f"store {store_id}: {exc}")
            continue
        counters.analyses_saved += 1
        saved.append(analysis)
    return saved


def build_analysis_report(
    analyses: list[ScoreAnalysis],
    counters: AnalysisCounters,
    analysis_date: date,
) -> str:
    lines = [
        "=" * 60,
        f"Score analysis for {analysis_date.isoformat()}",
        "=" * 60,
        f"  stores considered: {counters.stores_considered}",
        f"  analyses saved:    {counters.analyses_saved}",
        f"  analyses failed:   {counters.analyses_failed}",
        f"  LLM comments:      {counters.llm_comments}",
        "",
    ]
    for a in sorted(analyses, key=lambda a: (-a.total_score, a.store_id)):
        lines.append(
            f"  {a.store_id:<20} {a.total_score:>3} ({score_to_rank(a.total_score)})"
            f"  win {a.predicted_win_rate}%  conf {a.confidence}%"
            f"  {RECOMMENDATION_LABELS.get(a.recommendation, a.recommendation)}"
        )
    if counters.warnings:
        lines.append("")
        lines.append("Warnings:")
        lines.extend(f"  - {w}" for w in counters.warnings[:20])
    lines.append("=" * 60)
    return "\n".join(lines)
