"""Unit tests for import_machine_master.py — machine fold and popularity."""

from __future__ import annotations

from datetime import date
from pathlib import Path

import pytest

from parlor_etl.import_machine_master import (
    estimate_machine_popularity,
    ingest_machine_master,
    normalize_machine_rows,
    normalize_machine_type,
    recalculate_machine_popularity,
    set_machine_popularity,
)
from parlor_etl.models import Machine
from parlor_etl.scoring_rules import ScoringConfig
from parlor_etl.shared import RejectWriter, RunCounters

FLAT_HEADERS = ["machine_id", "machine_name", "manufacturer", "machine_type", "rtp_percentage", "release_date"]
LONG_HEADERS = ["machine_id", "number", "element", "要素名", "情報", "大項目"]


def _flat(machine_id: str, name: str, **kw: str) -> dict[str, str]:
    row = {h: "" for h in FLAT_HEADERS}
    row.update(machine_id=machine_id, machine_name=name, **kw)
    return row


def _long(machine_id: str, element: str, value: str) -> dict[str, str]:
    return {
        "machine_id": machine_id, "number": "1", "element": element,
        "要素名": element, "情報": value, "大項目": "機種情報",
    }


@pytest.fixture
def config() -> ScoringConfig:
    return ScoringConfig()


class TestPopularity:
    @pytest.mark.parametrize("name,expected", [
        ("バイオハザード RE:2", 90),
        ("スマスロ北斗の拳", 90),
        ("スマスロ バイオハザード", 95),
        ("アイムジャグラーEX", 50),
        ("", 50),
        (None, 50),
    ])
    def test_estimate(self, config, name, expected):
        assert estimate_machine_popularity(name, config) == expected

    def test_recalculate_updates_only_changed(self, repo, config):
        repo.upsert_machine(Machine("m1", "スマスロ北斗の拳", popularity_score=50))
        repo.upsert_machine(Machine("m2", "アイムジャグラーEX", popularity_score=50))
        counters = RunCounters()
        assert recalculate_machine_popularity(repo, counters, config) == 1
        assert repo.machines["m1"].popularity_score == 90
        assert counters.machines_rescored == 1

    def test_set_override(self, repo):
        repo.upsert_machine(Machine("m1", "x"))
        assert set_machine_popularity(repo, "m1", 12) is True
        assert repo.machines["m1"].popularity_score == 12

    def test_set_unknown_machine(self, repo):
        assert set_machine_popularity(repo, "nope", 12) is False

    def test_set_out_of_range(self, repo):
        with pytest.raises(ValueError):
            set_machine_popularity(repo, "m1", 101)


class TestNormalizeMachineRows:
    def test_flat(self, config):
        rows = [_flat("m1", "スマスロ北斗の拳", manufacturer="サミー", rtp_percentage="97.9%",
                      release_date="2023/04/03")]
        batch = normalize_machine_rows(FLAT_HEADERS, rows, config)
        (machine,) = batch.machines
        assert machine.manufacturer == "サミー"
        assert machine.machine_type == "pachislot"
        assert machine.rtp_percentage == 97.9
        assert machine.release_date == date(2023, 4, 3)
        assert machine.popularity_score == 90
        assert batch.details == {}

    def test_long_format(self, config):
        rows = [
            _long("m7", "machine_name_jp", "パチンコ エヴァンゲリオン"),
            _long("m7", "maker_name", "ビスティ"),
            _long("m7", "play_type", "パチンコ"),
            _long("m7", "spec_note", "1/319"),
        ]
        batch = normalize_machine_rows(LONG_HEADERS, rows, config)
        (machine,) = batch.machines
        assert machine.machine_name == "パチンコ エヴァンゲリオン"
        assert machine.machine_type == "pachinko"
        assert machine.popularity_score == 85
        assert len(batch.details["m7"]) == 4

    def test_defaults(self, config):
        (machine,) = normalize_machine_rows(FLAT_HEADERS, [_flat("m2", "無名機")], config).machines
        assert machine.manufacturer == ""
        assert machine.rtp_percentage is None
        assert machine.popularity_score == 50

    def test_missing_name_rejected(self, config):
        batch = normalize_machine_rows(FLAT_HEADERS, [_flat("m3", "")], config)
        assert batch.machines == []
        assert batch.rejected == [(1, "missing_machine_name")]

    def test_bad_rtp_is_row_error(self, config):
        batch = normalize_machine_rows(FLAT_HEADERS, [_flat("m4", "X", rtp_percentage="高め")], config)
        assert batch.result.errored == 1
        assert batch.machines[0].rtp_percentage is None

    @pytest.mark.parametrize("raw,expected", [
        ("パチンコ", "pachinko"), ("Pachinko", "pachinko"), ("スロット", "pachislot"), (None, "pachislot"),
    ])
    def test_machine_type(self, raw, expected):
        assert normalize_machine_type(raw) == expected


class TestIngestMachineMaster:
    def test_upsert_and_rerun(self, repo, config, tmp_path: Path):
        rows = [_flat("m1", "スマスロ北斗の拳"), _flat("m2", "ジャグラー")]
        rejects = RejectWriter(tmp_path / "r.csv")
        counters = RunCounters()
        ingest_machine_master(repo, FLAT_HEADERS, rows, counters, rejects, config)
        result = ingest_machine_master(repo, FLAT_HEADERS, rows, counters, rejects, config)
        rejects.close()
        assert result.processed == 2
        assert sorted(repo.machines) == ["m1", "m2"]
        assert counters.machines_upserted == 4
