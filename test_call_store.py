"""
test_call_store.py - JSON call store persistence checks.

Usage: pytest test_call_store.py -q
"""

from __future__ import annotations

import json
import os
import sys
from datetime import date
from pathlib import Path

import pytest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from call_store import JsonCallStore
from models import AdjustmentRecord, CallRecord, Category, FeedSource, ReconcileWindow, UnmatchedReason
from reconcile import StorageWriteError

DAY = ReconcileWindow.single_day(date(2025, 12, 16))


def _feed_a(record_id: str, timestamp: str = "2025-12-16T11:28:00", **extra) -> CallRecord:
    extra.setdefault("category", Category.STATIC)
    extra.setdefault("payout", 12.5)
    return CallRecord(
        record_id=record_id,
        source=FeedSource.FEED_A,
        caller_id="7278043296",
        timestamp=timestamp,
        **extra,
    )


def _feed_b(record_id: str, timestamp: str = "2025-12-16T11:30:00", **extra) -> CallRecord:
    return CallRecord(
        record_id=record_id,
        source=FeedSource.FEED_B,
        caller_id="(727) 804-3296",
        timestamp=timestamp,
        payout=12.5,
        revenue=25.0,
        **extra,
    )


@pytest.fixture
def store(tmp_path: Path) -> JsonCallStore:
    return JsonCallStore(str(tmp_path / "calls.json"))


def test_state_survives_reload(store: JsonCallStore) -> None:
    store.upsert_feed_a_calls([_feed_a("A1")])
    store.upsert_feed_b_calls([_feed_b("B1")])
    store.add_adjustments([AdjustmentRecord(caller_id="7278043296", timestamp="2025-12-16T11:29:00", amount=-5)])

    reloaded = JsonCallStore(str(store.path))

    assert list(reloaded.state.feed_a_calls) == ["A1"]
    assert list(reloaded.state.feed_b_calls) == ["B1"]
    assert len(reloaded.state.adjustments) == 1
    assert reloaded.state.updated_at is not None
    assert not list(store.path.parent.glob("calls-*.tmp"))


def test_upsert_forces_source(store: JsonCallStore) -> None:
    store.upsert_feed_b_calls([_feed_a("X1")])
    assert store.state.feed_b_calls["X1"].source == FeedSource.FEED_B


def test_reingest_keeps_persisted_link_and_adjustment(store: JsonCallStore) -> None:
    store.upsert_feed_a_calls([_feed_a("A1")])
    store.persist_match("A1", "B1", 12.5, 25.0)
    store.persist_adjustment("A1", -5.0, "2025-12-16T11:29:00", "rate_change")

    store.upsert_feed_a_calls([_feed_a("A1", payout=13.0)])

    call = store.state.feed_a_calls["A1"]
    assert call.payout == 13.0
    assert call.matched_counterpart_id == "B1"
    assert call.matched_revenue == 25.0
    assert call.adjustment_amount == -5.0


def test_persist_match_is_fill_only(store: JsonCallStore) -> None:
    store.upsert_feed_a_calls([_feed_a("A1")])
    store.upsert_feed_b_calls([_feed_b("B1"), _feed_b("B2")])

    assert store.persist_match("A1", "B1", 12.5, 25.0) is True
    assert store.persist_match("A1", "B2", 99.0, 99.0) is False
    assert store.persist_match("A1", "B1", 99.0, 99.0) is False

    call = store.state.feed_a_calls["A1"]
    assert call.matched_counterpart_id == "B1"
    assert call.matched_payout == 12.5
    assert store.state.feed_b_calls["B1"].matched_counterpart_id == "A1"
    assert store.state.feed_b_calls["B2"].matched_counterpart_id is None


def test_persist_match_fills_zero_amount_link(store: JsonCallStore) -> None:
    store.upsert_feed_a_calls([_feed_a("A1", matched_counterpart_id="B1", matched_payout=0.0)])
    assert store.persist_match("A1", "B1", 12.5, 25.0) is True
    assert store.state.feed_a_calls["A1"].matched_payout == 12.5


def test_persist_to_unknown_call_raises(store: JsonCallStore) -> None:
    with pytest.raises(StorageWriteError):
        store.persist_match("missing", "B1", 1.0, 1.0)
    with pytest.raises(StorageWriteError):
        store.persist_adjustment("missing", 1.0, "2025-12-16T11:00:00")


def test_persist_adjustment_is_fill_only(store: JsonCallStore) -> None:
    store.upsert_feed_a_calls([_feed_a("A1")])
    assert store.persist_adjustment("A1", -5.0, "2025-12-16T11:29:00", "rate_change") is True
    assert store.persist_adjustment("A1", 7.0, "2025-12-16T11:40:00") is False

    call = store.state.feed_a_calls["A1"]
    assert call.adjustment_amount == -5.0
    assert call.adjustment_time == "2025-12-16T11:29:00"
    assert call.adjustment_classification == "rate_change"


def test_add_adjustments_skips_known_keys(store: JsonCallStore) -> None:
    adjustment = AdjustmentRecord(caller_id="7278043296", timestamp="2025-12-16T11:29:00", amount=-5)
    assert store.add_adjustments([adjustment, adjustment.model_copy()]) == 1
    assert store.add_adjustments([adjustment]) == 0


def test_fetch_filters_by_window_and_category(store: JsonCallStore) -> None:
    store.upsert_feed_a_calls(
        [
            _feed_a("A1"),
            _feed_a("A2", timestamp="2025-12-17T00:10:00"),
            _feed_a("A3", category=Category.API),
            _feed_a("A4", category=None),
        ]
    )
    store.upsert_feed_b_calls(
        [
            _feed_b("B1", target_name="Appliance Repair - Static Line"),
            _feed_b("B2", target_name="Pest Control API"),
            _feed_b("B3"),
        ]
    )

    feed_a = store.fetch_feed_a_calls(DAY, Category.STATIC)
    assert sorted(call.record_id for call in feed_a) == ["A1", "A4"]
    assert len(store.fetch_feed_a_calls(DAY)) == 3

    feed_b = store.fetch_feed_b_calls(DAY, Category.STATIC)
    assert sorted(call.record_id for call in feed_b) == ["B1", "B3"]


def test_fetched_records_are_copies(store: JsonCallStore) -> None:
    store.upsert_feed_a_calls([_feed_a("A1")])
    fetched = store.fetch_feed_a_calls(DAY)[0]
    fetched.matched_counterpart_id = "tampered"
    assert store.state.feed_a_calls["A1"].matched_counterpart_id is None


def test_unmatched_entries_are_upserted_and_cleared_on_link(store: JsonCallStore) -> None:
    store.upsert_feed_a_calls([_feed_a("A1")])
    store.upsert_feed_b_calls([_feed_b("B1")])
    record = store.state.feed_b_calls["B1"]

    store.persist_unmatched(record, UnmatchedReason.NO_CANDIDATE_IN_WINDOW)
    store.persist_unmatched(record, UnmatchedReason.ALL_CANDIDATES_CONSUMED)
    entries = store.unmatched_entries("feed_b")
    assert len(entries) == 1
    assert entries[0].reason == UnmatchedReason.ALL_CANDIDATES_CONSUMED

    store.persist_match("A1", "B1", 12.5, 25.0)
    assert store.unmatched_entries() == []


def test_unmatched_adjustment_entry(store: JsonCallStore) -> None:
    adjustment = AdjustmentRecord(caller_id="anonymous", timestamp="2025-12-16T11:29:00", amount=-5)
    store.persist_unmatched(adjustment, UnmatchedReason.INVALID_CALLER_ID)

    [entry] = store.unmatched_entries("adjustment")
    assert entry.amount == -5.0
    assert entry.key == f"adjustment:{adjustment.key}"


def test_unreadable_store_raises_value_error(tmp_path: Path) -> None:
    path = tmp_path / "calls.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ValueError):
        JsonCallStore(str(path))


def test_reset_removes_file(store: JsonCallStore) -> None:
    store.upsert_feed_a_calls([_feed_a("A1")])
    assert store.path.exists()

    store.reset()

    assert not store.path.exists()
    assert store.state.feed_a_calls == {}


def test_saved_payload_is_plain_json(store: JsonCallStore) -> None:
    store.upsert_feed_a_calls([_feed_a("A1")])
    payload = json.loads(store.path.read_text(encoding="utf-8"))
    assert payload["feed_a_calls"]["A1"]["category"] == "STATIC"
    assert payload["feed_a_calls"]["A1"]["source"] == "feed_a"


def test_deferred_saves_write_once_on_exit(store: JsonCallStore, monkeypatch: pytest.MonkeyPatch) -> None:
    store.upsert_feed_a_calls([_feed_a("A1"), _feed_a("A2", "2025-12-16T12:00:00")])
    store.upsert_feed_b_calls([_feed_b("B1"), _feed_b("B2", "2025-12-16T12:01:00")])

    saves = []
    original_save = store.save
    monkeypatch.setattr(store, "save", lambda: saves.append(1) or original_save())

    with store.deferred_saves():
        with store.deferred_saves():
            assert store.persist_match("A1", "B1", 12.5, 25.0) is True
        assert store.persist_match("A2", "B2", 12.5, 25.0) is True
        assert store.persist_adjustment("A1", -5.0, "2025-12-16T11:29:00") is True
        assert saves == []

    assert len(saves) == 1
    reloaded = JsonCallStore(str(store.path))
    assert reloaded.state.feed_a_calls["A2"].matched_counterpart_id == "B2"
    assert reloaded.state.feed_a_calls["A1"].adjustment_amount == -5.0


def test_deferred_saves_without_writes_do_not_touch_disk(store: JsonCallStore) -> None:
    with store.deferred_saves():
        store.fetch_feed_a_calls(DAY)
    assert not store.path.exists()
