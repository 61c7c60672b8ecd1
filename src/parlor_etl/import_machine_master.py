"""parlor_etl.import_machine_master

Machine master normalizer, popularity estimation and the two admin
operations that touch popularity outside of ingestion.

Accepted shapes:
  flat  — machine_id, machine_name, manufacturer, machine_type, rtp_percentage, release_date
  long  — machine_id, number, element, 要素名, 情報, 大項目 (one row per attribute)

Popularity is always estimated from the machine name at ingestion time; a
popularity column in the source is ignored.  Admins override it afterwards
with ``set_machine_popularity`` or recompute every machine with
``recalculate_machine_popularity``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from parlor_etl.csv_dialect import MACHINE_MASTER, resolve_long_columns
from parlor_etl.defaults import default_for
from parlor_etl.models import AttributeDetail, Machine
from parlor_etl.normalize import (
    normalize_space,
    parse_float,
    parse_iso_date,
    parse_leading_int,
    trim,
)
from parlor_etl.repository import ParlorRepository, RepositoryError
from parlor_etl.scoring_rules import ScoringConfig
from parlor_etl.shared import IngestResult, RejectWriter, RowNormalizationError, RunCounters

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Popularity
# ---------------------------------------------------------------------------

def estimate_machine_popularity(name: str | None, config: ScoringConfig) -> int:
    """Keyword-based popularity estimate in [0, ceiling].

    The highest matching keyword score wins over the base; bonus keywords
    (e.g. スマスロ) add on top.
    """
    score = config.popularity_base
    if name:
        matches = [s for kw, s in config.popularity_keywords.items() if kw in name]
        if matches:
            score = max(matches)
        for kw, bonus in config.popularity_bonus_keywords.items():
            if kw in name:
                score += bonus
    return int(max(0.0, min(config.popularity_ceiling, score)))


def recalculate_machine_popularity(
    repo: ParlorRepository,
    counters: RunCounters,
    config: ScoringConfig,
) -> int:
    """Re-estimate popularity for every machine; returns how many changed."""
    changed = 0
    for machine in repo.list_machines():
        score = estimate_machine_popularity(machine.machine_name, config)
        if score == machine.popularity_score:
            continue
        try:
            with repo.unit_of_work(f"rescore_{machine.machine_id}"):
                repo.set_machine_popularity(machine.machine_id, score)
        except RepositoryError as exc:
            counters.db_phase_errors += 1
            counters.warnings.append(f"machine {machine.machine_id}: {exc}")
            continue
        changed += 1
    counters.machines_rescored += changed
    return changed


def set_machine_popularity(repo: ParlorRepository, machine_id: str, score: int) -> bool:
    """Admin override of one machine's popularity."""
    if not 0 <= score <= 100:
        raise ValueError(f"popularity score must be in [0, 100], got {score}")
    return repo.set_machine_popularity(machine_id, score)


# ---------------------------------------------------------------------------
# Transforms
# ---------------------------------------------------------------------------

def normalize_machine_type(value: str | None) -> str:
    v = trim(value)
    if v is None:
        return default_for("machine", "machine_type")
    lowered = v.lower()
    if "pachinko" in lowered or "パチンコ" in v:
        return "pachinko"
    return "pachislot"


def _rtp(value: str) -> float | None:
    if trim(value) is None:
        return None
    n = parse_float(value)
    if n is None:
        raise RowNormalizationError(f"cannot read a payout percentage from {value!r}")
    return n


def _release_date(value: str) -> Any:
    if trim(value) is None:
        return None
    d = parse_iso_date(value)
    if d is None:
        raise RowNormalizationError(f"cannot read a date from {value!r}")
    return d


MACHINE_ATTRIBUTES: dict[str, tuple[str, Callable[[str], Any]]] = {
    "machine_name_jp": ("machine_name", normalize_space),
    "machine_name": ("machine_name", normalize_space),
    "maker_name": ("manufacturer", normalize_space),
    "manufacturer": ("manufacturer", normalize_space),
    "play_type": ("machine_type", normalize_machine_type),
    "machine_type": ("machine_type", normalize_machine_type),
    "payout_set_1": ("rtp_percentage", _rtp),
    "rtp_percentage": ("rtp_percentage", _rtp),
    "market_in_date": ("release_date", _release_date),
    "release_date": ("release_date", _release_date),
}

# Columns read from a flat machine row, in the order they are checked.
_FLAT_COLUMNS = ("machine_name", "manufacturer", "machine_type", "rtp_percentage", "release_date")


# ---------------------------------------------------------------------------
# Fold
# ---------------------------------------------------------------------------

@dataclass
class MachineBatch:
    machines: list[Machine] = field(default_factory=list)
    details: dict[str, list[AttributeDetail]] = field(default_factory=dict)
    first_row: dict[str, int] = field(default_factory=dict)
    result: IngestResult = field(default_factory=lambda: IngestResult(MACHINE_MASTER))
    rejected: list[tuple[int, str]] = field(default_factory=list)


def build_machine(machine_id: str, values: dict[str, Any], config: ScoringConfig) -> Machine:
    name = values.get("machine_name") or ""
    return Machine(
        machine_id=machine_id,
        machine_name=name,
        manufacturer=values.get("manufacturer") or default_for("machine", "manufacturer"),
        machine_type=values.get("machine_type") or default_for("machine", "machine_type"),
        rtp_percentage=values.get("rtp_percentage", default_for("machine", "rtp_percentage")),
        popularity_score=estimate_machine_popularity(name, config),
        release_date=values.get("release_date"),
    )


def _apply(
    batch: MachineBatch,
    values: dict[str, Any],
    idx: int,
    machine_id: str,
    key: str,
    raw: str,
) -> None:
    rule = MACHINE_ATTRIBUTES.get(key.lower())
    if rule is None:
        return
    target, transform = rule
    try:
        converted = transform(raw)
    except RowNormalizationError as exc:
        batch.result.add_error(idx, f"machine {machine_id} {key}: {exc}")
        batch.rejected.append((idx, f"bad_{key}"))
        return
    if converted is not None:
        values[target] = converted


def normalize_machine_rows(
    headers: list[str],
    rows: list[dict[str, str]],
    config: ScoringConfig,
) -> MachineBatch:
    """Build Machine records from flat or long-format rows."""
    cols = resolve_long_columns(headers)
    long_format = "element" in cols and "value" in cols
    batch = MachineBatch()
    values_by_machine: dict[str, dict[str, Any]] = {}

    for idx, row in enumerate(rows, start=1):
        machine_id = trim(row.get("machine_id"))
        if machine_id is None:
            batch.result.add_error(idx, "missing machine_id")
            batch.rejected.append((idx, "missing_machine_id"))
            continue
        batch.first_row.setdefault(machine_id, idx)
        values = values_by_machine.setdefault(machine_id, {})

        if long_format:
            element = trim(row.get(cols["element"]))
            if element is None:
                batch.result.add_error(idx, f"machine {machine_id}: missing attribute key")
                batch.rejected.append((idx, "missing_element"))
                continue
            raw = row.get(cols["value"]) or ""
            batch.details.setdefault(machine_id, []).append(AttributeDetail(
                entity_id=machine_id,
                element=element,
                number=parse_leading_int(row.get(cols.get("number", "number"))),
                element_name=trim(row.get(cols.get("element_name", "要素名"))),
                value=trim(raw),
                category=trim(row.get(cols.get("category", "大項目"))),
            ))
            _apply(batch, values, idx, machine_id, element, raw)
        else:
            for column in _FLAT_COLUMNS:
                if column in row:
                    _apply(batch, values, idx, machine_id, column, row[column] or "")

    for machine_id, values in values_by_machine.items():
        if not values.get("machine_name"):
            idx = batch.first_row[machine_id]
            batch.result.add_error(idx, f"machine {machine_id}: missing machine name")
            batch.rejected.append((idx, "missing_machine_name"))
            continue
        batch.machines.append(build_machine(machine_id, values, config))
    return batch


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------

def ingest_machine_master(
    repo: ParlorRepository,
    headers: list[str],
    rows: list[dict[str, str]],
    counters: RunCounters,
    rejects: RejectWriter,
    config: ScoringConfig,
) -> IngestResult:
    batch = normalize_machine_rows(headers, rows, config)
    result = batch.result
    counters.rows_read += len(rows)
    for idx, reason in batch.rejected:
        rejects.write(rows[idx - 1], reason)
        counters.rows_rejected += 1

    for machine_id, details in batch.details.items():
        try:
            with repo.unit_of_work(f"machine_detail_{machine_id}"):
                counters.machine_details_upserted += repo.upsert_machine_details(details)
        except RepositoryError as exc:
            counters.db_phase_errors += 1
            result.add_error(batch.first_row[machine_id], f"machine {machine_id} details: {exc}")

    for machine in batch.machines:
        try:
            with repo.unit_of_work(f"machine_{machine.machine_id}"):
                repo.upsert_machine(machine)
        except RepositoryError as exc:
            counters.db_phase_errors += 1
            result.add_error(batch.first_row[machine.machine_id], f"machine {machine.machine_id}: {exc}")
            continue
        counters.machines_upserted += 1
        result.processed += 1
    return result
