"""parlor_etl.import_event_master

Event master normalizer and ingestion.

Long-format rows (event_id, number, element, 要素名, 情報, 重要度) carry plain
attributes (event_name, event_type, expected_bonus, description) and
day-indexed JSON payloads (``day_N``) whose elements name a year, month and
participating store_id.  The earliest decoded date becomes the event date.

Flat rows (event_id, event_name, event_date, target_stores, event_type,
bonus_multiplier, description) are accepted as well.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable

from parlor_etl.csv_dialect import EVENT_MASTER, resolve_long_columns
from parlor_etl.day_payload import STORE_DAY, decode_json_array, parse_day_column
from parlor_etl.defaults import default_for
from parlor_etl.models import Event
from parlor_etl.normalize import normalize_space, parse_float, parse_iso_date, split_tags, trim
from parlor_etl.repository import ParlorRepository, RepositoryError
from parlor_etl.shared import IngestResult, RejectWriter, RowNormalizationError, RunCounters

log = logging.getLogger(__name__)


def _multiplier(value: str) -> float | None:
    if trim(value) is None:
        return None
    n = parse_float(value)
    if n is None:
        raise RowNormalizationError(f"cannot read a bonus multiplier from {value!r}")
    if n < 0:
        raise RowNormalizationError(f"bonus multiplier must be >= 0, got {n}")
    return n


def _event_date(value: str) -> date | None:
    if trim(value) is None:
        return None
    d = parse_iso_date(value)
    if d is None:
        raise RowNormalizationError(f"cannot read a date from {value!r}")
    return d


EVENT_ATTRIBUTES: dict[str, tuple[str, Callable[[str], Any]]] = {
    "event_name": ("event_name", normalize_space),
    "event_type": ("event_type", normalize_space),
    "expected_bonus": ("bonus_multiplier", _multiplier),
    "bonus_multiplier": ("bonus_multiplier", _multiplier),
    "description": ("description", normalize_space),
    "event_date": ("event_date", _event_date),
    "target_stores": ("target_stores", split_tags),
}

_FLAT_COLUMNS = tuple(EVENT_ATTRIBUTES)


@dataclass
class _EventDraft:
    values: dict[str, Any] = field(default_factory=dict)
    dates: list[date] = field(default_factory=list)
    stores: list[str] = field(default_factory=list)

    def add_store(self, store_id: str) -> None:
        if store_id not in self.stores:
            self.stores.append(store_id)


@dataclass
class EventBatch:
    events: list[Event] = field(default_factory=list)
    first_row: dict[str, int] = field(default_factory=dict)
    result: IngestResult = field(default_factory=lambda: IngestResult(EVENT_MASTER))
    rejected: list[tuple[int, str]] = field(default_factory=list)
    defaulted_dates: int = 0


def _decode_event_days(
    draft: _EventDraft,
    event_id: str,
    column: str,
    raw: str,
) -> str | None:
    """Collect dates and store ids from one day_N payload; returns a failure reason or None."""
    parsed = parse_day_column(column)
    if parsed is None or parsed[0] != STORE_DAY:
        return None
    day = parsed[1]
    elements = decode_json_array(raw)
    if elements is None:
        return f"{column}: malformed or truncated JSON array"
    for element in elements:
        if not isinstance(element, dict):
            continue
        try:
            draft.dates.append(date(int(element["year"]), int(element["month"]), day))
        except (KeyError, TypeError, ValueError):
            log.warning("Event %s %s: element without a usable year/month", event_id, column)
            continue
        store_id = element.get("store_id")
        if store_id is None and isinstance(element.get("data"), dict):
            store_id = element["data"].get("store_id")
        if store_id not in (None, ""):
            draft.add_store(str(store_id))
    return None


def _apply(batch: EventBatch, draft: _EventDraft, idx: int, event_id: str, key: str, raw: str) -> None:
    rule = EVENT_ATTRIBUTES.get(key.lower())
    if rule is None:
        return
    target, transform = rule
    try:
        converted = transform(raw)
    except RowNormalizationError as exc:
        batch.result.add_error(idx, f"event {event_id} {key}: {exc}")
        batch.rejected.append((idx, f"bad_{key}"))
        return
    if converted is None:
        return
    if target == "target_stores":
        for store_id in converted:
            draft.add_store(store_id)
    elif target == "event_date":
        draft.dates.append(converted)
    else:
        draft.values[target] = converted


def build_event(event_id: str, draft: _EventDraft, today: date) -> tuple[Event, bool]:
    """Return (event, date_was_defaulted)."""
    defaulted = not draft.dates
    event_date = min(draft.dates) if draft.dates else today
    bonus = draft.values.get("bonus_multiplier")
    return Event(
        event_id=event_id,
        event_name=draft.values.get("event_name") or "",
        event_date=event_date,
        target_stores=list(draft.stores),
        event_type=draft.values.get("event_type") or default_for("event", "event_type"),
        bonus_multiplier=bonus if bonus is not None else default_for("event", "bonus_multiplier"),
        description=draft.values.get("description"),
    ), defaulted


def normalize_event_rows(
    headers: list[str],
    rows: list[dict[str, str]],
    today: date | None = None,
) -> EventBatch:
    """Build Event records from long or flat rows.

    ``today`` is the fallback event date when no day payload decodes; it is a
    last resort and every use is logged.
    """
    today = today or date.today()
    cols = resolve_long_columns(headers)
    long_format = "element" in cols and "value" in cols
    batch = EventBatch()
    drafts: dict[str, _EventDraft] = {}

    for idx, row in enumerate(rows, start=1):
        event_id = trim(row.get("event_id"))
        if event_id is None:
            batch.result.add_error(idx, "missing event_id")
            batch.rejected.append((idx, "missing_event_id"))
            continue
        batch.first_row.setdefault(event_id, idx)
        draft = drafts.setdefault(event_id, _EventDraft())

        if long_format:
            element = trim(row.get(cols["element"]))
            if element is None:
                batch.result.add_error(idx, f"event {event_id}: missing attribute key")
                batch.rejected.append((idx, "missing_element"))
                continue
            raw = row.get(cols["value"]) or ""
            if parse_day_column(element) is not None:
                failure = _decode_event_days(draft, event_id, element, raw)
                if failure:
                    log.warning("Event %s: %s", event_id, failure)
                    batch.result.warnings.append(f"event {event_id} {failure}")
                continue
            _apply(batch, draft, idx, event_id, element, raw)
        else:
            for column in _FLAT_COLUMNS:
                if column in row:
                    _apply(batch, draft, idx, event_id, column, row[column] or "")

    for event_id, draft in drafts.items():
        if not draft.values.get("event_name"):
            idx = batch.first_row[event_id]
            batch.result.add_error(idx, f"event {event_id}: missing event name")
            batch.rejected.append((idx, "missing_event_name"))
            continue
        event, defaulted = build_event(event_id, draft, today)
        if defaulted:
            batch.defaulted_dates += 1
            log.warning("Event %s: no dated payload decoded; using %s", event_id, today)
            batch.result.warnings.append(f"event {event_id}: date defaulted to {today.isoformat()}")
        batch.events.append(event)
    return batch


def ingest_event_master(
    repo: ParlorRepository,
    headers: list[str],
    rows: list[dict[str, str]],
    counters: RunCounters,
    rejects: RejectWriter,
    today: date | None = None,
) -> IngestResult:
    batch = normalize_event_rows(headers, rows, today)
    result = batch.result
    counters.rows_read += len(rows)
    counters.events_defaulted_date += batch.defaulted_dates
    for idx, reason in batch.rejected:
        rejects.write(rows[idx - 1], reason)
        counters.rows_rejected += 1

    for event in batch.events:
        try:
            with repo.unit_of_work(f"event_{event.event_id}"):
                repo.upsert_event(event)
        except RepositoryError as exc:
            counters.db_phase_errors += 1
            result.add_error(batch.first_row[event.event_id], f"event {event.event_id}: {exc}")
            continue
        counters.events_upserted += 1
        result.processed += 1
    counters.warnings.extend(result.warnings)
    return result
