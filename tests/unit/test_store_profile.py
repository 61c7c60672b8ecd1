"""Unit tests for import_store_profile.py — long-format store profile fold."""

from __future__ import annotations

import csv
from pathlib import Path

import pytest

from parlor_etl.import_store_profile import (
    build_store,
    ingest_store_profile,
    normalize_store_rows,
)
from parlor_etl.scoring_rules import ScoringConfig
from parlor_etl.shared import RejectWriter, RunCounters

HEADERS = ["store_id", "number", "element", "要素名", "情報", "大項目", "重要度"]


def _row(store_id: str, element: str, value: str, number: str = "1") -> dict[str, str]:
    return {
        "store_id": store_id, "number": number, "element": element,
        "要素名": element, "情報": value, "大項目": "基本情報", "重要度": "高",
    }


def _full_store(store_id: str = "s001") -> list[dict[str, str]]:
    return [
        _row(store_id, "official_store_name", "マルハン新宿東宝ビル店"),
        _row(store_id, "prefecture", "東京都"),
        _row(store_id, "city", "新宿区"),
        _row(store_id, "full_address", "東京都新宿区歌舞伎町1-19-1, 新宿東宝ビル"),
        _row(store_id, "nearest_station", "新宿"),
        _row(store_id, "station_access", "JR新宿駅東口 徒歩5分"),
        _row(store_id, "total_machines", "約1,020台"),
        _row(store_id, "pachislot_machines", "540台"),
        _row(store_id, "parking_info", "提携駐車場あり"),
        _row(store_id, "smoking_policy", "全面禁煙"),
        _row(store_id, "event_frequency", "週2回"),
        _row(store_id, "popular_machines", "北斗の拳、バイオハザード"),
        _row(store_id, "x_unmapped_note", "keep me"),
    ]


@pytest.fixture
def config() -> ScoringConfig:
    return ScoringConfig()


class TestNormalizeStoreRows:
    def test_full_fold(self, config):
        batch = normalize_store_rows(HEADERS, _full_store(), config)
        assert batch.result.errored == 0
        (store,) = batch.stores
        assert store.store_name == "マルハン新宿東宝ビル店"
        assert store.prefecture == "東京都"
        assert store.address == "東京都新宿区歌舞伎町1-19-1"
        assert store.walk_minutes == 5
        assert store.walk_distance_meters == 400
        assert store.total_machines == 1020
        assert store.pachislot_machines == 540
        assert store.pachinko_machines == 0
        assert store.parking_available is True
        assert store.smoking_allowed is False
        assert store.event_frequency == 8.0
        assert store.popular_machines == ["北斗の拳", "バイオハザード"]
        assert store.is_active is True

    def test_every_row_kept_as_detail(self, config):
        batch = normalize_store_rows(HEADERS, _full_store(), config)
        details = batch.details["s001"]
        assert len(details) == 13
        assert details[-1].element == "x_unmapped_note"
        assert details[-1].value == "keep me"
        assert details[0].importance == "高"

    def test_missing_walk_defaults_to_zero(self, config):
        rows = [_row("s2", "store_name", "A店"), _row("s2", "prefecture", "大阪府")]
        (store,) = normalize_store_rows(HEADERS, rows, config).stores
        assert store.walk_distance_meters == 0
        assert store.walk_minutes is None

    def test_missing_prefecture_rejected(self, config):
        rows = [_row("s3", "store_name", "B店")]
        batch = normalize_store_rows(HEADERS, rows, config)
        assert batch.stores == []
        assert batch.result.errored == 1
        assert "missing prefecture" in str(batch.result.errors[0])
        assert batch.details["s3"]

    def test_missing_store_id_is_row_error(self, config):
        rows = [_row("", "store_name", "C店")] + _full_store()
        batch = normalize_store_rows(HEADERS, rows, config)
        assert batch.result.errors[0].row_index == 1
        assert len(batch.stores) == 1

    def test_unreadable_count_is_row_error_store_kept(self, config):
        rows = _full_store() + [_row("s001", "total_machines", "不明")]
        batch = normalize_store_rows(HEADERS, rows, config)
        assert batch.result.errored == 1
        assert batch.result.errors[0].row_index == 14
        assert batch.stores[0].total_machines == 1020

    def test_coordinates(self, config):
        rows = [
            _row("s4", "store_name", "D店"), _row("s4", "prefecture", "東京都"),
            _row("s4", "coordinates", "35.6938, 139.7034"),
        ]
        (store,) = normalize_store_rows(HEADERS, rows, config).stores
        assert (store.latitude, store.longitude) == (35.6938, 139.7034)

    def test_walking_speed_from_config(self):
        store = build_store("s5", {"store_name": "E", "prefecture": "P", "walk_minutes": 3},
                            ScoringConfig(walking_meters_per_minute=100))
        assert store.walk_distance_meters == 300


class TestIngestStoreProfile:
    def test_idempotent(self, repo, config, tmp_path: Path):
        rows = _full_store() + _full_store("s002")
        counters = RunCounters()
        rejects = RejectWriter(tmp_path / "rejects.csv")
        first = ingest_store_profile(repo, HEADERS, rows, counters, rejects, config)
        snapshot = (dict(repo.stores), dict(repo.store_details))
        second = ingest_store_profile(repo, HEADERS, rows, counters, rejects, config)
        rejects.close()
        assert first.processed == second.processed == 2
        assert (repo.stores, repo.store_details) == snapshot
        assert len(repo.stores) == 2

    def test_rejects_written(self, repo, config, tmp_path: Path):
        rejects_path = tmp_path / "rejects.csv"
        rejects = RejectWriter(rejects_path)
        counters = RunCounters()
        result = ingest_store_profile(
            repo, HEADERS, [_row("s9", "store_name", "F店")], counters, rejects, config,
        )
        rejects.close()
        assert result.processed == 0
        assert result.success is False
        assert counters.rows_rejected == 1
        with rejects_path.open(encoding="utf-8") as fh:
            (reject,) = list(csv.DictReader(fh))
        assert reject["_reject_reason"] == "missing_prefecture"

    def test_partial_success(self, repo, config, tmp_path: Path):
        rows = _full_store() + [_row("s9", "store_name", "F店")]
        rejects = RejectWriter(tmp_path / "rejects.csv")
        result = ingest_store_profile(repo, HEADERS, rows, RunCounters(), rejects, config)
        rejects.close()
        assert result.success is True
        assert result.processed == 1
        assert result.errored == 1
        assert result.to_dict()["errors"] == ["row 14: store s9: missing prefecture"]

    def test_repeated_element_rows_kept_per_number(self, repo, config, tmp_path: Path):
        rows = _full_store() + [
            _row("s001", "event_note", "毎月7日", number="20"),
            _row("s001", "event_note", "毎月17日", number="21"),
        ]
        rejects = RejectWriter(tmp_path / "rejects.csv")
        ingest_store_profile(repo, HEADERS, rows, RunCounters(), rejects, config)
        rejects.close()
        notes = sorted(
            (number, d.value) for (_, element, number), d in repo.store_details.items()
            if element == "event_note"
        )
        assert notes == [(20, "毎月7日"), (21, "毎月17日")]
