"""parlor_etl.repository

Read/write contract between the ingestion + scoring core and the persisted
store, plus its PostgreSQL implementation.

The CLI opens one psycopg connection, wraps it in ``PgRepository`` and passes
that object to every pipeline function.  Nothing in the core looks a
connection up on its own, so unit tests hand the same functions an in-memory
repository instead.

Transactions: the connection runs with autocommit off.  ``unit_of_work`` wraps
a block in a SAVEPOINT so a failure rolls back only that block; the caller
commits (or, for dry runs, rolls back) the outer transaction.
"""

from __future__ import annotations

import re
from contextlib import contextmanager
from datetime import date
from typing import Any, Iterator, Protocol

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from parlor_etl.models import (
    AttributeDetail,
    DailyPerformance,
    Event,
    Machine,
    MachineDayResult,
    PlayStrategy,
    RecommendedMachine,
    ScoreAnalysis,
    Store,
    Top10Entry,
)

INSERTED = "inserted"
OVERWRITTEN = "overwritten"
SKIPPED = "skipped"

_SAVEPOINT_RE = re.compile(r"[^A-Za-z0-9_]")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class RepositoryError(RuntimeError):
    """The persisted store rejected or failed a read/write."""


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------

class ParlorRepository(Protocol):
    # Reads
    def get_existing_performance_dates(self, store_id: str) -> set[str]: ...

    def get_performance_history(self, store_id: str, limit: int) -> list[DailyPerformance]: ...

    def get_store(self, store_id: str) -> Store | None: ...

    def list_stores(self, active_only: bool = True) -> list[Store]: ...

    def list_machines(self) -> list[Machine]: ...

    def get_events_for_store(self, store_id: str, on_date: date) -> list[Event]: ...

    def list_latest_analyses(self) -> list[tuple[Store, ScoreAnalysis]]: ...

    # Writes
    def upsert_store(self, store: Store) -> None: ...

    def upsert_store_details(self, details: list[AttributeDetail]) -> int: ...

    def set_store_active(self, store_id: str, active: bool) -> bool: ...

    def delete_store(self, store_id: str) -> bool: ...

    def upsert_machine(self, machine: Machine) -> None: ...

    def upsert_machine_details(self, details: list[AttributeDetail]) -> int: ...

    def set_machine_popularity(self, machine_id: str, score: int) -> bool: ...

    def upsert_event(self, event: Event) -> None: ...

    def upsert_performance(self, perf: DailyPerformance, force: bool) -> str: ...

    def merge_performance_enrichment(
        self,
        store_id: str,
        on_date: date,
        machines: dict[str, MachineDayResult],
        top10: list[Top10Entry] | None,
    ) -> bool: ...

    def upsert_score_analysis(self, analysis: ScoreAnalysis) -> None: ...

    # Transaction helpers
    def lock_store(self, store_id: str) -> None: ...

    def unit_of_work(self, name: str) -> Any: ...


# ---------------------------------------------------------------------------
# Row → record helpers
# ---------------------------------------------------------------------------

_STORE_COLUMNS = (
    "store_id", "store_name", "prefecture", "city", "address", "full_address",
    "nearest_station", "walk_minutes", "walk_distance_meters", "opening_hours",
    "total_machines", "pachinko_machines", "pachislot_machines",
    "parking_available", "smoking_allowed", "event_frequency",
    "latitude", "longitude", "phone_number", "website_url", "postal_code",
    "popular_machines", "is_active",
)


def _store_from_row(row: dict[str, Any]) -> Store:
    values = {c: row[c] for c in _STORE_COLUMNS}
    values["event_frequency"] = float(values["event_frequency"] or 0)
    values["popular_machines"] = list(values["popular_machines"] or [])
    return Store(**values)


def _machine_from_row(row: dict[str, Any]) -> Machine:
    return Machine(
        machine_id=row["machine_id"],
        machine_name=row["machine_name"],
        manufacturer=row["manufacturer"] or "",
        machine_type=row["machine_type"],
        rtp_percentage=float(row["rtp_percentage"]) if row["rtp_percentage"] is not None else None,
        popularity_score=row["popularity_score"],
        release_date=row["release_date"],
        is_active=row["is_active"],
    )


def _event_from_row(row: dict[str, Any]) -> Event:
    return Event(
        event_id=row["event_id"],
        event_name=row["event_name"],
        event_date=row["event_date"],
        target_stores=list(row["target_stores"] or []),
        event_type=row["event_type"] or "",
        bonus_multiplier=float(row["bonus_multiplier"]),
        description=row["description"],
        is_active=row["is_active"],
    )


def _performance_from_row(row: dict[str, Any]) -> DailyPerformance:
    machines = {
        str(mid): MachineDayResult.from_json(str(mid), data)
        for mid, data in (row["machine_performances"] or {}).items()
        if isinstance(data, dict)
    }
    top10 = [
        Top10Entry.from_json(e)
        for e in (row["top10_rankings"] or [])
        if isinstance(e, dict)
    ]
    return DailyPerformance(
        store_id=row["store_id"],
        date=row["performance_date"],
        total_difference=row["total_difference"],
        average_difference=row["average_difference"],
        average_games=row["average_games"],
        total_visitors=row["total_visitors"],
        machines=machines,
        top10=top10,
        is_event_day=row["is_event_day"],
        weather=row["weather"],
    )


def _analysis_from_row(row: dict[str, Any]) -> ScoreAnalysis:
    strategy = row["play_strategy"]
    return ScoreAnalysis(
        store_id=row["store_id"],
        analysis_date=row["analysis_date"],
        total_score=row["total_score"],
        base_score=float(row["base_score"]),
        event_bonus=float(row["event_bonus"]),
        machine_popularity=float(row["machine_popularity"]),
        access_score=float(row["access_score"]),
        personal_adjustment=float(row["personal_adjustment"]),
        predicted_win_rate=row["predicted_win_rate"],
        confidence=row["confidence"],
        recommendation=row["recommendation"],
        rationale=list(row["rationale"] or []),
        recommended_machines=[RecommendedMachine(**m) for m in (row["recommended_machines"] or [])],
        play_strategy=PlayStrategy(**strategy) if strategy else None,
        comment=row["comment"] or "",
        comment_source=row["comment_source"],
    )


# ---------------------------------------------------------------------------
# PostgreSQL implementation
# ---------------------------------------------------------------------------

class PgRepository:
    """ParlorRepository over one psycopg 3 connection (autocommit off)."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    # -- transaction helpers -------------------------------------------------

    @contextmanager
    def unit_of_work(self, name: str) -> Iterator[None]:
        sp_name = _SAVEPOINT_RE.sub("_", name)[:60] or "uow"
        self._conn.execute(f"SAVEPOINT {sp_name}")
        try:
            yield
        except psycopg.Error as exc:
            self._conn.execute(f"ROLLBACK TO SAVEPOINT {sp_name}")
            raise RepositoryError(str(exc)) from exc
        except Exception:
            self._conn.execute(f"ROLLBACK TO SAVEPOINT {sp_name}")
            raise
        else:
            self._conn.execute(f"RELEASE SAVEPOINT {sp_name}")

    def lock_store(self, store_id: str) -> None:
        self._conn.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (store_id,))

    def _fetchall(self, sql: str, params: tuple = ()) -> list[dict[str, Any]]:
        with self._conn.cursor(row_factory=dict_row) as cur:
            cur.execute(sql, params)
            return cur.fetchall()

    # -- reads ---------------------------------------------------------------

    def get_existing_performance_dates(self, store_id: str) -> set[str]:
        rows = self._conn.execute(
            "SELECT performance_date FROM store_performance WHERE store_id = %s",
            (store_id,),
        ).fetchall()
        return {r[0].isoformat() for r in rows}

    def get_performance_history(self, store_id: str, limit: int) -> list[DailyPerformance]:
        rows = self._fetchall(
            """
            SELECT * FROM store_performance
            WHERE store_id = %s
            ORDER BY performance_date DESC
            LIMIT %s
            """,
            (store_id, limit),
        )
        return [_performance_from_row(r) for r in rows]

    def get_store(self, store_id: str) -> Store | None:
        rows = self._fetchall("SELECT * FROM store WHERE store_id = %s", (store_id,))
        return _store_from_row(rows[0]) if rows else None

    def list_stores(self, active_only: bool = True) -> list[Store]:
        sql = "SELECT * FROM store"
        if active_only:
            sql += " WHERE is_active"
        return [_store_from_row(r) for r in self._fetchall(sql + " ORDER BY store_id")]

    def list_machines(self) -> list[Machine]:
        rows = self._fetchall("SELECT * FROM machine ORDER BY machine_id")
        return [_machine_from_row(r) for r in rows]

    def get_events_for_store(self, store_id: str, on_date: date) -> list[Event]:
        rows = self._fetchall(
            """
            SELECT * FROM store_event
            WHERE is_active
              AND event_date = %s
              AND %s = ANY(target_stores)
            ORDER BY event_id
            """,
            (on_date, store_id),
        )
        return [_event_from_row(r) for r in rows]

    def list_latest_analyses(self) -> list[tuple[Store, ScoreAnalysis]]:
        rows = self._fetchall(
            """
            SELECT DISTINCT ON (sa.store_id) sa.*, row_to_json(s) AS store_row
            FROM score_analysis sa
            JOIN store s ON s.store_id = sa.store_id
            WHERE s.is_active
            ORDER BY sa.store_id, sa.analysis_date DESC
            """
        )
        out: list[tuple[Store, ScoreAnalysis]] = []
        for r in rows:
            out.append((_store_from_row(r["store_row"]), _analysis_from_row(r)))
        return out

    # -- master data writes --------------------------------------------------

    def upsert_store(self, store: Store) -> None:
        cols = ", ".join(_STORE_COLUMNS)
        placeholders = ", ".join(["%s"] * len(_STORE_COLUMNS))
        updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in _STORE_COLUMNS if c != "store_id")
        self._conn.execute(
            f"""
            INSERT INTO store ({cols}) VALUES ({placeholders})
            ON CONFLICT (store_id) DO UPDATE SET {updates}, updated_at = now()
            """,
            tuple(getattr(store, c) for c in _STORE_COLUMNS),
        )

    def upsert_store_details(self, details: list[AttributeDetail]) -> int:
        for d in details:
            self._conn.execute(
                """
                INSERT INTO store_detail
                  (store_id, element, number, element_name, value, category, importance)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (store_id, element, (COALESCE(number, -1))) DO UPDATE SET
                  element_name = EXCLUDED.element_name,
                  value = EXCLUDED.value,
                  category = EXCLUDED.category,
                  importance = EXCLUDED.importance,
                  updated_at = now()
                """,
                (d.entity_id, d.element, d.number, d.element_name, d.value,
                 d.category, d.importance),
            )
        return len(details)

    def set_store_active(self, store_id: str, active: bool) -> bool:
        cur = self._conn.execute(
            "UPDATE store SET is_active = %s, updated_at = now() WHERE store_id = %s",
            (active, store_id),
        )
        return cur.rowcount > 0

    def delete_store(self, store_id: str) -> bool:
        self._conn.execute("DELETE FROM score_analysis WHERE store_id = %s", (store_id,))
        self._conn.execute("DELETE FROM store_performance WHERE store_id = %s", (store_id,))
        self._conn.execute("DELETE FROM store_detail WHERE store_id = %s", (store_id,))
        cur = self._conn.execute("DELETE FROM store WHERE store_id = %s", (store_id,))
        return cur.rowcount > 0

    def upsert_machine(self, machine: Machine) -> None:
        self._conn.execute(
            """
            INSERT INTO machine
              (machine_id, machine_name, manufacturer, machine_type,
               rtp_percentage, popularity_score, release_date, is_active)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (machine_id) DO UPDATE SET
              machine_name = EXCLUDED.machine_name,
              manufacturer = EXCLUDED.manufacturer,
              machine_type = EXCLUDED.machine_type,
              rtp_percentage = EXCLUDED.rtp_percentage,
              popularity_score = EXCLUDED.popularity_score,
              release_date = EXCLUDED.release_date,
              is_active = EXCLUDED.is_active,
              updated_at = now()
            """,
            (machine.machine_id, machine.machine_name, machine.manufacturer,
             machine.machine_type, machine.rtp_percentage, machine.popularity_score,
             machine.release_date, machine.is_active),
        )

    def upsert_machine_details(self, details: list[AttributeDetail]) -> int:
        for d in details:
            self._conn.execute(
                """
                INSERT INTO machine_detail
                  (machine_id, element, number, element_name, value, category)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (machine_id, element, (COALESCE(number, -1))) DO UPDATE SET
                  element_name = EXCLUDED.element_name,
                  value = EXCLUDED.value,
                  category = EXCLUDED.category,
                  updated_at = now()
                """,
                (d.entity_id, d.element, d.number, d.element_name, d.value, d.category),
            )
        return len(details)

    def set_machine_popularity(self, machine_id: str, score: int) -> bool:
        cur = self._conn.execute(
            "UPDATE machine SET popularity_score = %s, updated_at = now() WHERE machine_id = %s",
            (score, machine_id),
        )
        return cur.rowcount > 0

    def upsert_event(self, event: Event) -> None:
        self._conn.execute(
            """
            INSERT INTO store_event
              (event_id, event_name, event_date, target_stores, event_type,
               bonus_multiplier, description, is_active)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (event_id) DO UPDATE SET
              event_name = EXCLUDED.event_name,
              event_date = EXCLUDED.event_date,
              target_stores = EXCLUDED.target_stores,
              event_type = EXCLUDED.event_type,
              bonus_multiplier = EXCLUDED.bonus_multiplier,
              description = EXCLUDED.description,
              is_active = EXCLUDED.is_active,
              updated_at = now()
            """,
            (event.event_id, event.event_name, event.event_date, event.target_stores,
             event.event_type, event.bonus_multiplier, event.description, event.is_active),
        )

    # -- performance writes --------------------------------------------------

    def upsert_performance(self, perf: DailyPerformance, force: bool) -> str:
        params = (
            perf.performance_id, perf.store_id, perf.date,
            perf.total_difference, perf.average_difference,
            perf.average_games, perf.total_visitors,
            Jsonb(perf.machines_json()), Jsonb(perf.top10_json()),
            perf.day_of_week, perf.is_event_day, perf.weather,
        )
        insert_sql = """
            INSERT INTO store_performance
              (performance_id, store_id, performance_date,
               total_difference, average_difference, average_games, total_visitors,
               machine_performances, top10_rankings,
               day_of_week, is_event_day, weather)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """
        if not force:
            row = self._conn.execute(
                insert_sql + " ON CONFLICT (store_id, performance_date) DO NOTHING RETURNING 1",
                params,
            ).fetchone()
            return INSERTED if row else SKIPPED
        row = self._conn.execute(
            insert_sql
            + """
            ON CONFLICT (store_id, performance_date) DO UPDATE SET
              total_difference = EXCLUDED.total_difference,
              average_difference = EXCLUDED.average_difference,
              average_games = EXCLUDED.average_games,
              total_visitors = EXCLUDED.total_visitors,
              machine_performances =
                store_performance.machine_performances || EXCLUDED.machine_performances,
              top10_rankings = CASE
                WHEN jsonb_array_length(EXCLUDED.top10_rankings) > 0
                  THEN EXCLUDED.top10_rankings
                ELSE store_performance.top10_rankings
              END,
              day_of_week = EXCLUDED.day_of_week,
              is_event_day = EXCLUDED.is_event_day,
              weather = COALESCE(EXCLUDED.weather, store_performance.weather),
              updated_at = now()
            RETURNING (xmax = 0) AS inserted
            """,
            params,
        ).fetchone()
        return INSERTED if row[0] else OVERWRITTEN

    def merge_performance_enrichment(
        self,
        store_id: str,
        on_date: date,
        machines: dict[str, MachineDayResult],
        top10: list[Top10Entry] | None,
    ) -> bool:
        machines_json = {mid: m.to_json() for mid, m in machines.items()}
        top10_json = [e.to_json() for e in top10] if top10 else None
        cur = self._conn.execute(
            """
            UPDATE store_performance SET
              machine_performances = machine_performances || %s,
              top10_rankings = COALESCE(%s, top10_rankings),
              updated_at = now()
            WHERE store_id = %s AND performance_date = %s
            """,
            (Jsonb(machines_json),
             Jsonb(top10_json) if top10_json is not None else None,
             store_id, on_date),
        )
        return cur.rowcount > 0

    # -- analysis writes -----------------------------------------------------

    def upsert_score_analysis(self, analysis: ScoreAnalysis) -> None:
        d = analysis.to_dict()
        self._conn.execute(
            """
            INSERT INTO score_analysis
              (store_id, analysis_date, total_score, base_score, event_bonus,
               machine_popularity, access_score, personal_adjustment,
               predicted_win_rate, confidence, recommendation, rationale,
               recommended_machines, play_strategy, comment, comment_source)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (store_id, analysis_date) DO UPDATE SET
              total_score = EXCLUDED.total_score,
              base_score = EXCLUDED.base_score,
              event_bonus = EXCLUDED.event_bonus,
              machine_popularity = EXCLUDED.machine_popularity,
              access_score = EXCLUDED.access_score,
              personal_adjustment = EXCLUDED.personal_adjustment,
              predicted_win_rate = EXCLUDED.predicted_win_rate,
              confidence = EXCLUDED.confidence,
              recommendation = EXCLUDED.recommendation,
              rationale = EXCLUDED.rationale,
              recommended_machines = EXCLUDED.recommended_machines,
              play_strategy = EXCLUDED.play_strategy,
              comment = EXCLUDED.comment,
              comment_source = EXCLUDED.comment_source,
              computed_at = now()
            """,
            (analysis.store_id, analysis.analysis_date, analysis.total_score,
             analysis.base_score, analysis.event_bonus, analysis.machine_popularity,
             analysis.access_score, analysis.personal_adjustment,
             analysis.predicted_win_rate, analysis.confidence, analysis.recommendation,
             Jsonb(d["rationale"]), Jsonb(d["recommended_machines"]),
             Jsonb(d["play_strategy"]), analysis.comment, analysis.comment_source),
        )
