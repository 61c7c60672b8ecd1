"""parlor_etl.import_store_production

Production (daily performance) normalizer and aggregator.

Processing order per file:
  1.  Decode every day-indexed cell (day_N, machine_day_N, top10_day_N) into
      tagged records; malformed cells become errors and are skipped.
  2.  Aggregate per store: a store-day summary anchors the DailyPerformance
      for its date; machine-day and top-10 records for that date are merged
      into it.  Machine/top-10 data without a summary creates nothing.
  3.  Per store: pre-flight read of existing dates, then chunks of
      PERFORMANCE_BATCH_SIZE records, each chunk in one unit of work holding
      the store lock:
        - new date              → insert the full record
        - existing date, forced → overwrite summary, merge machine/top-10
        - existing date         → skip summary, merge machine/top-10 in place
        - no summary            → merge machine/top-10 into an existing row, if any

Machine/top-10 merges apply regardless of the force flag; they enrich a
record rather than compete with its summary.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from parlor_etl.csv_dialect import PRODUCTION_DATA, resolve_long_columns
from parlor_etl.day_payload import DecodeResult, decode_day_cell, parse_day_column
from parlor_etl.defaults import default_for
from parlor_etl.models import (
    DailyPerformance,
    DecodeFailure,
    MachineDayResult,
    StoreDaySummary,
    Top10Entry,
)
from parlor_etl.normalize import parse_bool, parse_iso_date, round_half_up, trim
from parlor_etl.repository import (
    INSERTED,
    OVERWRITTEN,
    SKIPPED,
    ParlorRepository,
    RepositoryError,
)
from parlor_etl.shared import IngestResult, RejectWriter, RunCounters

log = logging.getLogger(__name__)

PERFORMANCE_BATCH_SIZE = 100


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

@dataclass
class Enrichment:
    machines: dict[str, MachineDayResult] = field(default_factory=dict)
    top10: list[Top10Entry] | None = None


@dataclass
class StoreAggregate:
    store_id: str
    performances: dict[date, DailyPerformance] = field(default_factory=dict)
    enrichments: dict[date, Enrichment] = field(default_factory=dict)

    def dates(self) -> list[date]:
        return sorted(set(self.performances) | set(self.enrichments))


def _performance_from_summary(summary: StoreDaySummary) -> DailyPerformance:
    return DailyPerformance(
        store_id=summary.store_id,
        date=summary.date,
        total_difference=summary.total_difference,
        average_difference=summary.average_difference,
        average_games=summary.average_games,
        total_visitors=summary.total_visitors,
        is_event_day=summary.is_event_day,
        weather=summary.weather,
    )


def aggregate_performances(decoded: DecodeResult) -> dict[str, StoreAggregate]:
    """Join the three sub-streams on (store_id, date)."""
    stores: dict[str, StoreAggregate] = {}

    def agg(store_id: str) -> StoreAggregate:
        return stores.setdefault(store_id, StoreAggregate(store_id))

    for summary in decoded.store_days:
        agg(summary.store_id).performances[summary.date] = _performance_from_summary(summary)
    for machine_day in decoded.machine_days:
        enrichment = agg(machine_day.store_id).enrichments.setdefault(machine_day.date, Enrichment())
        enrichment.machines.update(machine_day.machines)
    for ranking in decoded.top10_days:
        enrichment = agg(ranking.store_id).enrichments.setdefault(ranking.date, Enrichment())
        enrichment.top10 = list(ranking.entries)

    for aggregate in stores.values():
        for d, perf in aggregate.performances.items():
            enrichment = aggregate.enrichments.get(d)
            if enrichment is None:
                continue
            perf.machines.update(enrichment.machines)
            if enrichment.top10 is not None:
                perf.top10 = list(enrichment.top10)
    return stores


# ---------------------------------------------------------------------------
# Row decoding
# ---------------------------------------------------------------------------

def _flat_production_cell(store_id: str, day: date, raw: str | None) -> DecodeResult:
    """Decode a flat row's production_data JSON object for one (store, date)."""
    result = DecodeResult()
    try:
        data = json.loads(raw or "")
    except json.JSONDecodeError:
        data = None
    if not isinstance(data, dict):
        result.failures.append(DecodeFailure(store_id, "production_data", "not a JSON object"))
        return result

    def num(*keys: str, default: int = 0) -> int:
        for k in keys:
            if data.get(k) not in (None, ""):
                try:
                    return round_half_up(float(data[k]))
                except (TypeError, ValueError):
                    return default
        return default

    result.store_days.append(StoreDaySummary(
        store_id=store_id,
        date=day,
        total_difference=num("total_diff", "total_difference"),
        average_difference=num("avg_diff", "average_difference"),
        average_games=num("avg_games", "average_games",
                          default=default_for("store_day", "average_games")),
        total_visitors=num("total_visitors", default=default_for("store_day", "total_visitors")),
        is_event_day=parse_bool(data.get("is_event", data.get("is_event_day", False))),
        weather=trim(str(data["weather"])) if data.get("weather") is not None else None,
    ))
    return result


@dataclass
class ProductionBatch:
    decoded: DecodeResult = field(default_factory=DecodeResult)
    first_row: dict[str, int] = field(default_factory=dict)
    result: IngestResult = field(default_factory=lambda: IngestResult(PRODUCTION_DATA))
    rejected: list[tuple[int, str]] = field(default_factory=list)


def decode_production_rows(headers: list[str], rows: list[dict[str, str]]) -> ProductionBatch:
    """Decode every production row; failures are recorded per row and skipped."""
    cols = resolve_long_columns(headers)
    long_format = "element" in cols and "value" in cols
    batch = ProductionBatch()

    for idx, row in enumerate(rows, start=1):
        store_id = trim(row.get("store_id"))
        if store_id is None:
            batch.result.add_error(idx, "missing store_id")
            batch.rejected.append((idx, "missing_store_id"))
            continue
        batch.first_row.setdefault(store_id, idx)

        if long_format:
            column = trim(row.get(cols["element"])) or ""
            if parse_day_column(column) is None:
                batch.result.warnings.append(f"row {idx}: ignored non-day element {column!r}")
                continue
            decoded = decode_day_cell(store_id, column, row.get(cols["value"]))
        else:
            day = parse_iso_date(row.get("date"))
            if day is None:
                batch.result.add_error(idx, f"store {store_id}: unreadable date {row.get('date')!r}")
                batch.rejected.append((idx, "bad_date"))
                continue
            decoded = _flat_production_cell(store_id, day, row.get("production_data"))

        for failure in decoded.failures:
            batch.result.add_error(idx, f"store {store_id} {failure.column}: {failure.reason}")
        if decoded.failures:
            batch.rejected.append((idx, "malformed_payload"))
        batch.decoded.extend(decoded)
    return batch


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def _chunks(items: list[Any], size: int) -> list[list[Any]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


def _write_chunk(
    repo: ParlorRepository,
    aggregate: StoreAggregate,
    chunk: list[date],
    existing: set[str],
    force: bool,
) -> dict[str, int]:
    """Apply one chunk of dates; caller holds the unit of work."""
    counts = {"inserted": 0, "overwritten": 0, "skipped": 0, "enriched": 0, "unanchored": 0}
    repo.lock_store(aggregate.store_id)
    for d in chunk:
        perf = aggregate.performances.get(d)
        enrichment = aggregate.enrichments.get(d)
        status = SKIPPED
        if perf is not None and (force or d.isoformat() not in existing):
            status = repo.upsert_performance(perf, force)
        if status == INSERTED:
            counts["inserted"] += 1
            continue
        if status == OVERWRITTEN:
            counts["overwritten"] += 1
            continue
        if perf is not None:
            # Date already stored (pre-flight read or a concurrent run).
            counts["skipped"] += 1
        if enrichment is not None:
            merged = repo.merge_performance_enrichment(
                aggregate.store_id, d, enrichment.machines, enrichment.top10,
            )
            if merged:
                counts["enriched"] += 1
            elif perf is None:
                counts["unanchored"] += 1
    return counts


def _write_store(
    repo: ParlorRepository,
    aggregate: StoreAggregate,
    counters: RunCounters,
    result: IngestResult,
    first_row: int,
    force: bool,
    batch_size: int,
) -> None:
    existing = repo.get_existing_performance_dates(aggregate.store_id)
    for n, chunk in enumerate(_chunks(aggregate.dates(), batch_size)):
        try:
            with repo.unit_of_work(f"perf_{aggregate.store_id}_{n}"):
                counts = _write_chunk(repo, aggregate, chunk, existing, force)
        except RepositoryError as exc:
            counters.db_phase_errors += 1
            result.add_error(first_row, f"store {aggregate.store_id} performance chunk {n}: {exc}")
            log.warning("Performance chunk %d failed for store %s: %s", n, aggregate.store_id, exc)
            continue
        counters.performance_days_inserted += counts["inserted"]
        counters.performance_days_overwritten += counts["overwritten"]
        counters.performance_days_skipped_existing += counts["skipped"]
        counters.performance_enrichments_applied += counts["enriched"]
        counters.performance_enrichments_unanchored += counts["unanchored"]
        result.processed += len(chunk) - counts["unanchored"]
        if counts["unanchored"]:
            result.warnings.append(
                f"store {aggregate.store_id}: {counts['unanchored']} date(s) had machine/top10 "
                "data but no store-day summary"
            )


def ingest_store_production(
    repo: ParlorRepository,
    headers: list[str],
    rows: list[dict[str, str]],
    counters: RunCounters,
    rejects: RejectWriter,
    force: bool = False,
    batch_size: int = PERFORMANCE_BATCH_SIZE,
) -> IngestResult:
    """Decode, aggregate and persist one production file."""
    batch = decode_production_rows(headers, rows)
    result = batch.result
    counters.rows_read += len(rows)
    counters.payload_decode_failures += len(batch.decoded.failures)
    for idx, reason in batch.rejected:
        rejects.write(rows[idx - 1], reason)
        counters.rows_rejected += 1

    for store_id, aggregate in sorted(aggregate_performances(batch.decoded).items()):
        first_row = batch.first_row.get(store_id, 0)
        if repo.get_store(store_id) is None:
            result.add_error(first_row, f"store {store_id} is not registered; import its profile first")
            continue
        _write_store(repo, aggregate, counters, result, first_row, force, batch_size)

    counters.warnings.extend(result.warnings)
    return result
