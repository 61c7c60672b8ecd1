"""Integration tests for PgRepository.

Run against an ephemeral PostgreSQL database with the full schema applied via
the db_conn fixture in conftest.py.
"""

from __future__ import annotations

from datetime import date, timedelta

import pytest

from parlor_etl.analysis import AnalysisCounters, run_analysis
from parlor_etl.models import (
    AttributeDetail,
    DailyPerformance,
    Event,
    Machine,
    MachineDayResult,
    Store,
    Top10Entry,
    UnitResult,
)
from parlor_etl.repository import (
    INSERTED,
    OVERWRITTEN,
    SKIPPED,
    PgRepository,
    RepositoryError,
)
from parlor_etl.scoring import score
from parlor_etl.scoring_rules import ScoringConfig

DAY = date(2025, 8, 9)


def _store(store_id: str = "s001", **kw) -> Store:
    return Store(store_id, f"店舗{store_id}", "東京都", nearest_station="新宿",
                 popular_machines=["北斗"], event_frequency=8.0, **kw)


def _perf(store_id: str = "s001", d: date = DAY, avg: int = 100, **kw) -> DailyPerformance:
    return DailyPerformance(store_id, d, total_difference=avg * 500, average_difference=avg,
                            average_games=6000, total_visitors=250, **kw)


def _machine_result(machine_id: str, diff: int) -> MachineDayResult:
    return MachineDayResult(machine_id, f"機種{machine_id}", diff, diff, 5000,
                            {"1": UnitResult("1", diff, 5000, "105%")})


@pytest.fixture
def repo(db_conn):
    conn, _ = db_conn
    r = PgRepository(conn)
    r.upsert_store(_store())
    conn.commit()
    return r


def _count(conn, table: str) -> int:
    return conn.execute(f"SELECT count(*) FROM {table}").fetchone()[0]


# ---------------------------------------------------------------------------
# Master data
# ---------------------------------------------------------------------------

class TestMasterData:
    def test_store_round_trip_and_idempotent(self, db_conn, repo):
        conn, _ = db_conn
        repo.upsert_store(_store(walk_minutes=5, walk_distance_meters=400))
        repo.upsert_store(_store(walk_minutes=5, walk_distance_meters=400))
        store = repo.get_store("s001")
        assert store.walk_distance_meters == 400
        assert store.popular_machines == ["北斗"]
        assert store.event_frequency == 8.0
        assert _count(conn, "store") == 1

    def test_store_details_keyed_by_element_and_number(self, db_conn, repo):
        conn, _ = db_conn
        details = [AttributeDetail("s001", "prefecture", 1, "都道府県", "東京都", "基本情報", "高")]
        repo.upsert_store_details(details)
        repo.upsert_store_details(details)
        assert _count(conn, "store_detail") == 1

    def test_store_details_keep_repeated_element_per_number(self, db_conn, repo):
        conn, _ = db_conn
        repo.upsert_store_details([
            AttributeDetail("s001", "event_note", 20, "イベント", "毎月7日"),
            AttributeDetail("s001", "event_note", 21, "イベント", "毎月17日"),
            AttributeDetail("s001", "memo", None, "メモ", "a"),
        ])
        repo.upsert_store_details([AttributeDetail("s001", "memo", None, "メモ", "b")])
        rows = conn.execute(
            "SELECT element, number, value FROM store_detail ORDER BY element, number"
        ).fetchall()
        assert rows == [("event_note", 20, "毎月7日"), ("event_note", 21, "毎月17日"), ("memo", None, "b")]

    def test_machine_details_keep_repeated_element_per_number(self, db_conn, repo):
        conn, _ = db_conn
        repo.upsert_machine_details([
            AttributeDetail("m1", "feature", 1, "特徴", "AT機"),
            AttributeDetail("m1", "feature", 2, "特徴", "天井あり"),
        ])
        assert _count(conn, "machine_detail") == 2

    def test_list_stores_active_only(self, repo):
        repo.upsert_store(_store("s002"))
        assert repo.set_store_active("s002", False) is True
        assert [s.store_id for s in repo.list_stores()] == ["s001"]
        assert len(repo.list_stores(active_only=False)) == 2
        assert repo.set_store_active("missing", False) is False

    def test_machine_popularity(self, repo):
        repo.upsert_machine(Machine("m1", "スマスロ北斗の拳", rtp_percentage=97.9, popularity_score=90))
        assert repo.set_machine_popularity("m1", 40) is True
        (machine,) = repo.list_machines()
        assert machine.popularity_score == 40
        assert machine.rtp_percentage == 97.9
        assert repo.set_machine_popularity("m9", 40) is False

    def test_events_for_store(self, repo):
        repo.upsert_event(Event("e1", "周年", DAY, ["s001", "s002"], "special_day", 1.5))
        repo.upsert_event(Event("e2", "取材", DAY, ["s002"]))
        repo.upsert_event(Event("e3", "旧", DAY - timedelta(days=1), ["s001"]))
        (event,) = repo.get_events_for_store("s001", DAY)
        assert event.event_id == "e1"
        assert event.bonus_multiplier == 1.5


# ---------------------------------------------------------------------------
# Performance
# ---------------------------------------------------------------------------

class TestPerformance:
    def test_insert_skip_overwrite(self, repo):
        assert repo.upsert_performance(_perf(), force=False) == INSERTED
        assert repo.upsert_performance(_perf(avg=5), force=False) == SKIPPED
        assert repo.get_performance_history("s001", 7)[0].average_difference == 100
        assert repo.upsert_performance(_perf(avg=5), force=True) == OVERWRITTEN
        assert repo.get_performance_history("s001", 7)[0].average_difference == 5

    def test_forced_new_row_counts_as_insert(self, repo):
        assert repo.upsert_performance(_perf(), force=True) == INSERTED

    def test_overwrite_merges_machine_map(self, repo):
        repo.upsert_performance(_perf(machines={"m1": _machine_result("m1", 1500)}), force=False)
        repo.upsert_performance(_perf(machines={"m2": _machine_result("m2", -300)}), force=True)
        (perf,) = repo.get_performance_history("s001", 7)
        assert sorted(perf.machines) == ["m1", "m2"]
        assert perf.machines["m1"].units["1"].payout_rate == "105%"

    def test_enrichment_merges_and_replaces_top10(self, repo):
        repo.upsert_performance(_perf(machines={"m1": _machine_result("m1", 1500)},
                                      top10=[Top10Entry(1, "A")]), force=False)
        assert repo.merge_performance_enrichment(
            "s001", DAY, {"m2": _machine_result("m2", 10)}, [Top10Entry(1, "B"), Top10Entry(2, "C")],
        ) is True
        (perf,) = repo.get_performance_history("s001", 7)
        assert sorted(perf.machines) == ["m1", "m2"]
        assert [e.machine_name for e in perf.top10] == ["B", "C"]

    def test_enrichment_without_top10_keeps_existing(self, repo):
        repo.upsert_performance(_perf(top10=[Top10Entry(1, "A")]), force=False)
        repo.merge_performance_enrichment("s001", DAY, {"m2": _machine_result("m2", 10)}, None)
        (perf,) = repo.get_performance_history("s001", 7)
        assert [e.machine_name for e in perf.top10] == ["A"]

    def test_enrichment_without_row(self, repo):
        assert repo.merge_performance_enrichment("s001", DAY, {}, None) is False

    def test_history_most_recent_first(self, repo):
        for i in range(10):
            repo.upsert_performance(_perf(d=DAY - timedelta(days=i), avg=i), force=False)
        history = repo.get_performance_history("s001", 3)
        assert [p.date for p in history] == [DAY, DAY - timedelta(days=1), DAY - timedelta(days=2)]
        assert repo.get_existing_performance_dates("s001") >= {DAY.isoformat()}

    def test_day_of_week_stored(self, db_conn, repo):
        conn, _ = db_conn
        repo.upsert_performance(_perf(), force=False)
        row = conn.execute("SELECT day_of_week FROM store_performance").fetchone()
        assert row[0] == 6


# ---------------------------------------------------------------------------
# Score analysis
# ---------------------------------------------------------------------------

class TestScoreAnalysis:
    def test_full_replace_per_store_and_date(self, db_conn, repo):
        conn, _ = db_conn
        history = [_perf(machines={"m1": _machine_result("m1", 3000)})]
        first = score(history, _store(), analysis_date=DAY)
        repo.upsert_score_analysis(first)
        second = score([_perf(avg=-300)], _store(), analysis_date=DAY)
        repo.upsert_score_analysis(second)
        assert _count(conn, "score_analysis") == 1
        ((_, stored),) = repo.list_latest_analyses()
        assert stored.total_score == second.total_score
        assert stored.recommended_machines == []
        assert stored.play_strategy == second.play_strategy

    def test_latest_per_store_only_active(self, repo):
        repo.upsert_store(_store("s002"))
        for d in (DAY - timedelta(days=1), DAY):
            repo.upsert_score_analysis(score([_perf(d=d)], _store(), analysis_date=d))
        repo.upsert_score_analysis(score([_perf("s002")], _store("s002"), analysis_date=DAY))
        repo.set_store_active("s002", False)
        latest = repo.list_latest_analyses()
        assert [(s.store_id, a.analysis_date) for s, a in latest] == [("s001", DAY)]
        assert latest[0][0].store_name == "店舗s001"

    def test_recommended_machines_round_trip(self, repo):
        analysis = score([_perf(machines={"m1": _machine_result("m1", 3000)})], _store(), analysis_date=DAY)
        repo.upsert_score_analysis(analysis)
        ((_, stored),) = repo.list_latest_analyses()
        assert stored.recommended_machines == analysis.recommended_machines
        assert stored.rationale == analysis.rationale

    def test_delete_store_removes_dependents(self, db_conn, repo):
        conn, _ = db_conn
        repo.upsert_store_details([AttributeDetail("s001", "city", 1, "市区町村", "新宿区")])
        repo.upsert_performance(_perf(), force=False)
        repo.upsert_score_analysis(score([_perf()], _store(), analysis_date=DAY))
        assert repo.delete_store("s001") is True
        for table in ("store", "store_detail", "store_performance", "score_analysis"):
            assert _count(conn, table) == 0
        assert repo.delete_store("s001") is False


# ---------------------------------------------------------------------------
# Units of work
# ---------------------------------------------------------------------------

class TestUnitOfWork:
    def test_python_error_rolls_back_unit_only(self, repo):
        repo.upsert_store(_store("s002"))
        with pytest.raises(ValueError):
            with repo.unit_of_work("store_s003"):
                repo.upsert_store(_store("s003"))
                raise ValueError("boom")
        assert repo.get_store("s003") is None
        assert repo.get_store("s002") is not None

    def test_db_error_becomes_repository_error(self, repo):
        with pytest.raises(RepositoryError):
            with repo.unit_of_work("perf_unknown"):
                repo.upsert_performance(_perf("unregistered"), force=False)
        # Connection stays usable after the rolled-back unit.
        repo.upsert_performance(_perf(), force=False)
        assert len(repo.get_performance_history("s001", 7)) == 1

    def test_analysis_rerun_end_to_end(self, db_conn, repo):
        conn, _ = db_conn
        repo.upsert_store(_store("s002", parking_available=True))
        for i, avg in enumerate([300, 100, 50]):
            repo.upsert_performance(_perf("s001", DAY - timedelta(days=i), avg), force=False)
        repo.upsert_performance(_perf("s002", DAY, -200), force=False)
        repo.upsert_event(Event("e1", "新台入替", DAY, ["s002"], "new_machine"))
        counters = AnalysisCounters()
        saved = run_analysis(repo, DAY, ScoringConfig(), counters, workers=2)
        conn.commit()
        assert counters.analyses_saved == 2
        assert {a.store_id for a in saved} == {"s001", "s002"}
        row = conn.execute(
            "SELECT event_bonus FROM score_analysis WHERE store_id = 's002'"
        ).fetchone()
        assert float(row[0]) > 0
