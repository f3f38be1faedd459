"""
test_snapshot.py - Snapshot document, file I/O and fallback
"""

import json
import pytest
from decimal import Decimal

from crowdmarket import (
    PLAYER_ACCOUNT as PLAYER, MarketEngine, PersistenceFailure, SnapshotNotFound,
    load_or_default, load_snapshot, save_snapshot,
)
from crowdmarket.snapshot import restore_ledger, snapshot_document, write_snapshot


def _same_state(a, b):
    assert list(a.stocks.items()) == list(b.stocks.items())
    assert list(a.portfolios.items()) == list(b.portfolios.items())
    assert list(a.parameters.items()) == list(b.parameters.items())
    assert a.start_time == b.start_time


@pytest.fixture
def busy_engine(engine):
    engine.trade("alice", "GRAVITY", "buy", 3)
    engine.trade("bob", "GRAVITY", "buy", 3)
    engine.trade(PLAYER, "NPCLIFE", "buy", 2, cash_hint=1234)
    engine.issue_stock("carol", "SNOW", "Snow Co", "snowLevel")
    return engine


class TestDocument:

    def test_round_trip(self, busy_engine, clock):
        ledger = busy_engine.ledger
        restored = restore_ledger(snapshot_document(ledger, clock()))
        _same_state(ledger, restored)

    def test_round_trip_through_json(self, busy_engine, clock):
        text = json.dumps(snapshot_document(busy_engine.ledger, clock()))
        restored = restore_ledger(json.loads(text))
        _same_state(busy_engine.ledger, restored)
        # Tie on GRAVITY keeps the incumbent after a restore
        assert restored.find_stock("GRAVITY").top_holder == "alice"

    def test_decimals_are_strings(self, busy_engine, clock):
        document = snapshot_document(busy_engine.ledger, clock())
        assert isinstance(document["stocks"][0]["price"], str)
        assert isinstance(document["portfolios"][0]["cash"], str)
        assert document["savedAt"] == clock().isoformat()

    def test_schema_violation(self, ledger, clock):
        document = snapshot_document(ledger, clock())
        document["stocks"][0]["price"] = 45.0
        with pytest.raises(PersistenceFailure):
            restore_ledger(document)

    def test_missing_section(self, ledger, clock):
        document = snapshot_document(ledger, clock())
        del document["parameters"]
        with pytest.raises(PersistenceFailure):
            restore_ledger(document)

    def test_conservation_violation(self, ledger, clock):
        document = snapshot_document(ledger, clock())
        document["stocks"][0]["houseShares"] = 10
        with pytest.raises(PersistenceFailure):
            restore_ledger(document)

    def test_parameter_out_of_bounds(self, ledger, clock):
        document = snapshot_document(ledger, clock())
        document["parameters"][0]["value"] = "999999"
        with pytest.raises(PersistenceFailure):
            restore_ledger(document)

    def test_naive_last_active(self, busy_engine, clock):
        document = snapshot_document(busy_engine.ledger, clock())
        document["portfolios"][-1]["lastActive"] = "2024-05-01T12:00:00"
        with pytest.raises(PersistenceFailure):
            restore_ledger(document)

    def test_naive_start_time(self, ledger, clock):
        document = snapshot_document(ledger, clock())
        document["startTime"] = "2024-05-01T12:00:00"
        with pytest.raises(PersistenceFailure):
            restore_ledger(document)

    def test_wrong_kind_for_identity(self, busy_engine, clock):
        document = snapshot_document(busy_engine.ledger, clock())
        for portfolio in document["portfolios"]:
            if portfolio["identity"] == "alice":
                portfolio["kind"] = "house"
        with pytest.raises(PersistenceFailure):
            restore_ledger(document)


class TestFiles:

    def test_save_and_load(self, busy_engine, tmp_path):
        path = tmp_path / "state.json"
        save_snapshot(busy_engine.ledger, path)
        _same_state(busy_engine.ledger, load_snapshot(path))

    def test_write_is_atomic(self, ledger, clock, tmp_path):
        path = tmp_path / "state.json"
        write_snapshot(path, snapshot_document(ledger, clock()))
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]

    def test_creates_parent_directories(self, ledger, clock, tmp_path):
        path = tmp_path / "nested" / "dir" / "state.json"
        write_snapshot(path, snapshot_document(ledger, clock()))
        assert path.exists()

    def test_unserializable_document(self, tmp_path):
        with pytest.raises(PersistenceFailure):
            write_snapshot(tmp_path / "state.json", {"bad": Decimal("1")})
        assert list(tmp_path.iterdir()) == []

    def test_missing_file(self, tmp_path):
        with pytest.raises(SnapshotNotFound):
            load_snapshot(tmp_path / "absent.json")

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json")
        with pytest.raises(PersistenceFailure):
            load_snapshot(path)


class TestFallback:

    def test_missing_falls_back(self, config, clock, tmp_path):
        ledger, restored = load_or_default(tmp_path / "absent.json", config, clock())
        assert not restored
        assert sorted(ledger.stocks) == ["GRAVITY", "NPCLIFE"]

    def test_corrupt_falls_back(self, config, clock, tmp_path):
        path = tmp_path / "state.json"
        path.write_text('{"savedAt": "x"}')
        ledger, restored = load_or_default(path, config, clock())
        assert not restored
        assert ledger.verify_conservation()["valid"]

    def test_naive_timestamp_falls_back_and_keeps_trading(self, busy_engine, config, clock, tmp_path):
        path = tmp_path / "state.json"
        document = save_snapshot(busy_engine.ledger, path, saved_at=clock())
        for portfolio in document["portfolios"]:
            portfolio["lastActive"] = "2024-05-01T12:00:00"
        path.write_text(json.dumps(document))

        ledger, restored = load_or_default(path, config, clock())
        assert not restored
        engine = MarketEngine(ledger=ledger, config=config, clock=clock)
        clock.advance(config.idle_expiry_seconds + 1)
        assert engine.trade("alice", "GRAVITY", "buy", 1).shares_owned == 1

    def test_valid_restores(self, busy_engine, config, clock, tmp_path):
        path = tmp_path / "state.json"
        save_snapshot(busy_engine.ledger, path)
        ledger, restored = load_or_default(path, config, clock())
        assert restored
        assert ledger.has_stock("SNOW")
