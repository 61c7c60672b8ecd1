"""parlor_etl.import_store_profile

Store profile ("long format") normalizer and ingestion.

Input rows: store_id, number, element, 要素名, 情報, 大項目, 重要度 — one row per
store attribute.  Rows are folded per store_id through ``STORE_ATTRIBUTES``,
a table of attribute key → (target field, transform).  Every row, recognized
or not, is also kept verbatim in the store_detail side table.

Admission: a folded store needs a non-empty name and prefecture.  Stores
without them are rejected with an error; their detail rows are still kept.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from parlor_etl.csv_dialect import STORE_PROFILE, resolve_long_columns
from parlor_etl.defaults import default_for
from parlor_etl.models import AttributeDetail, Store
from parlor_etl.normalize import (
    normalize_space,
    parse_event_frequency,
    parse_float,
    parse_leading_int,
    parse_machine_count,
    parse_parking,
    parse_smoking_allowed,
    parse_walk_minutes,
    split_tags,
    trim,
)
from parlor_etl.repository import ParlorRepository, RepositoryError
from parlor_etl.scoring_rules import ScoringConfig
from parlor_etl.shared import IngestResult, RejectWriter, RowNormalizationError, RunCounters

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Transforms
# ---------------------------------------------------------------------------

def _text(value: str) -> str | None:
    return normalize_space(value)


def _required_int(parser: Callable[[str], int | None]) -> Callable[[str], int | None]:
    def transform(value: str) -> int | None:
        if trim(value) is None:
            return None
        n = parser(value)
        if n is None:
            raise RowNormalizationError(f"cannot read a number from {value!r}")
        return n
    return transform


def _float(value: str) -> float | None:
    if trim(value) is None:
        return None
    n = parse_float(value)
    if n is None:
        raise RowNormalizationError(f"cannot read a number from {value!r}")
    return n


def _frequency(value: str) -> float | None:
    if trim(value) is None:
        return None
    n = parse_event_frequency(value)
    if n is None:
        raise RowNormalizationError(f"cannot read an event frequency from {value!r}")
    return n


def _coordinates(value: str) -> tuple[float, float] | None:
    v = trim(value)
    if v is None:
        return None
    parts = [p.strip() for p in v.replace("、", ",").split(",")]
    try:
        lat, lng = float(parts[0]), float(parts[1])
    except (IndexError, ValueError):
        raise RowNormalizationError(f"coordinates must be 'lat,lng', got {value!r}")
    return lat, lng


# Attribute key → (target field, transform).  Transforms return None for
# blank cells and raise RowNormalizationError for unreadable ones.
STORE_ATTRIBUTES: dict[str, tuple[str, Callable[[str], Any]]] = {
    "official_store_name": ("store_name", _text),
    "official_store_name_image": ("store_name", _text),
    "official_store_name2": ("store_name", _text),
    "store_name": ("store_name", _text),
    "prefecture": ("prefecture", _text),
    "city": ("city", _text),
    "full_address": ("full_address", _text),
    "nearest_station": ("nearest_station", _text),
    "walk_minutes": ("walk_minutes", _required_int(parse_leading_int)),
    "station_access": ("walk_minutes", _required_int(parse_walk_minutes)),
    "business_hours": ("opening_hours", _text),
    "opening_hours": ("opening_hours", _text),
    "total_machines": ("total_machines", _required_int(parse_machine_count)),
    "pachinko_machines": ("pachinko_machines", _required_int(parse_machine_count)),
    "pachislot_machines": ("pachislot_machines", _required_int(parse_machine_count)),
    "phone_number": ("phone_number", trim),
    "website_url": ("website_url", trim),
    "postal_code": ("postal_code", trim),
    "parking_info": ("parking_available", parse_parking),
    "smoking_policy": ("smoking_allowed", parse_smoking_allowed),
    "event_frequency": ("event_frequency", _frequency),
    "latitude": ("latitude", _float),
    "longitude": ("longitude", _float),
    "coordinates": ("coordinates", _coordinates),
    "popular_machines": ("popular_machines", split_tags),
    "special_features": ("popular_machines", split_tags),
}


# ---------------------------------------------------------------------------
# Fold
# ---------------------------------------------------------------------------

@dataclass
class StoreProfileBatch:
    stores: list[Store] = field(default_factory=list)
    details: dict[str, list[AttributeDetail]] = field(default_factory=dict)
    # store_id → 1-based index of its first row, for error reporting
    first_row: dict[str, int] = field(default_factory=dict)
    result: IngestResult = field(default_factory=lambda: IngestResult(STORE_PROFILE))
    rejected: list[tuple[int, str]] = field(default_factory=list)


def build_store(store_id: str, values: dict[str, Any], config: ScoringConfig) -> Store:
    """Assemble a Store from folded attribute values, applying the default table."""
    walk_minutes = values.get("walk_minutes")
    if walk_minutes is not None:
        walk_distance = int(round(walk_minutes * config.walking_meters_per_minute))
    else:
        walk_distance = default_for("store", "walk_distance_meters")

    full_address = values.get("full_address")
    address = full_address.split(",")[0].split("、")[0].strip() if full_address else None

    latitude = values.get("latitude")
    longitude = values.get("longitude")
    if values.get("coordinates"):
        latitude, longitude = values["coordinates"]

    def pick(name: str) -> Any:
        value = values.get(name)
        return value if value is not None else default_for("store", name)

    return Store(
        store_id=store_id,
        store_name=values.get("store_name") or "",
        prefecture=values.get("prefecture") or "",
        city=values.get("city"),
        address=address,
        full_address=full_address,
        nearest_station=values.get("nearest_station"),
        walk_minutes=walk_minutes,
        walk_distance_meters=walk_distance,
        opening_hours=values.get("opening_hours"),
        total_machines=pick("total_machines"),
        pachinko_machines=pick("pachinko_machines"),
        pachislot_machines=pick("pachislot_machines"),
        parking_available=pick("parking_available"),
        smoking_allowed=pick("smoking_allowed"),
        event_frequency=float(pick("event_frequency")),
        latitude=latitude,
        longitude=longitude,
        phone_number=values.get("phone_number"),
        website_url=values.get("website_url"),
        postal_code=values.get("postal_code"),
        popular_machines=values.get("popular_machines") or default_for("store", "popular_machines"),
        is_active=default_for("store", "is_active"),
    )


def normalize_store_rows(
    headers: list[str],
    rows: list[dict[str, str]],
    config: ScoringConfig,
) -> StoreProfileBatch:
    """Fold long-format rows into Store records plus per-row errors."""
    cols = resolve_long_columns(headers)
    batch = StoreProfileBatch()
    values_by_store: dict[str, dict[str, Any]] = {}

    for idx, row in enumerate(rows, start=1):
        store_id = trim(row.get("store_id"))
        element = trim(row.get(cols.get("element", "element")))
        if store_id is None:
            batch.result.add_error(idx, "missing store_id")
            batch.rejected.append((idx, "missing_store_id"))
            continue
        if element is None:
            batch.result.add_error(idx, f"store {store_id}: missing attribute key")
            batch.rejected.append((idx, "missing_element"))
            continue

        batch.first_row.setdefault(store_id, idx)
        values = values_by_store.setdefault(store_id, {})
        raw_value = row.get(cols.get("value", "情報")) or ""
        batch.details.setdefault(store_id, []).append(AttributeDetail(
            entity_id=store_id,
            element=element,
            number=parse_leading_int(row.get(cols.get("number", "number"))),
            element_name=trim(row.get(cols.get("element_name", "要素名"))),
            value=trim(raw_value),
            category=trim(row.get(cols.get("category", "大項目"))),
            importance=trim(row.get(cols.get("importance", "重要度"))),
        ))

        rule = STORE_ATTRIBUTES.get(element.lower())
        if rule is None:
            continue
        target, transform = rule
        try:
            converted = transform(raw_value)
        except RowNormalizationError as exc:
            batch.result.add_error(idx, f"store {store_id} {element}: {exc}")
            batch.rejected.append((idx, f"bad_{element}"))
            continue
        if converted is not None:
            values[target] = converted

    for store_id, values in values_by_store.items():
        store = build_store(store_id, values, config)
        missing = [
            label for label, value in (("name", store.store_name), ("prefecture", store.prefecture))
            if not value
        ]
        if missing:
            idx = batch.first_row[store_id]
            batch.result.add_error(idx, f"store {store_id}: missing {' and '.join(missing)}")
            batch.rejected.append((idx, f"missing_{'_'.join(missing)}"))
            continue
        batch.stores.append(store)
    return batch


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------

def ingest_store_profile(
    repo: ParlorRepository,
    headers: list[str],
    rows: list[dict[str, str]],
    counters: RunCounters,
    rejects: RejectWriter,
    config: ScoringConfig,
) -> IngestResult:
    """Normalize and upsert one store profile file.  Re-running it is a no-op."""
    batch = normalize_store_rows(headers, rows, config)
    result = batch.result
    counters.rows_read += len(rows)
    for idx, reason in batch.rejected:
        rejects.write(rows[idx - 1], reason)
        counters.rows_rejected += 1

    for store_id, details in batch.details.items():
        try:
            with repo.unit_of_work(f"store_detail_{store_id}"):
                counters.store_details_upserted += repo.upsert_store_details(details)
        except RepositoryError as exc:
            counters.db_phase_errors += 1
            result.add_error(batch.first_row[store_id], f"store {store_id} details: {exc}")

    for store in batch.stores:
        try:
            with repo.unit_of_work(f"store_{store.store_id}"):
                repo.upsert_store(store)
        except RepositoryError as exc:
            counters.db_phase_errors += 1
            result.add_error(batch.first_row[store.store_id], f"store {store.store_id}: {exc}")
            continue
        counters.stores_upserted += 1
        result.processed += 1

    log.info(
        "store profile: %d stores saved, %d errors", result.processed, result.errored
    )
    return result
