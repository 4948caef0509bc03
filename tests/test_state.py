"""
Unit tests for ExporterState and StateStore
"""

import json
from datetime import datetime, timezone

import pytest

from aws_cost_exporter.billing_period import BillingPeriod
from aws_cost_exporter.exceptions import CorruptState, StorageFailure
from aws_cost_exporter.state import ExporterState, StateStore
from conftest import ts

JAN = BillingPeriod.parse("20240101-20240201")
FEB = BillingPeriod.parse("20240201-20240301")


class TestExporterState:
    """Test watermark bookkeeping."""

    def test_watermark_absent(self, empty_state):
        assert empty_state.watermark(JAN) is None

    def test_advance_is_monotonic(self, empty_state):
        empty_state.advance(JAN, ts(2024, 1, 5))
        empty_state.advance(JAN, ts(2024, 1, 3))

        assert empty_state.watermark(JAN) == ts(2024, 1, 5)

        empty_state.advance(JAN, ts(2024, 1, 7))
        assert empty_state.watermark(JAN) == ts(2024, 1, 7)

    def test_prune(self, empty_state):
        empty_state.advance(JAN, ts(2024, 1, 5))
        empty_state.advance(FEB, ts(2024, 2, 5))

        assert empty_state.prune([FEB]) == ["20240101-20240201"]
        assert list(empty_state.last_modified) == ["20240201-20240301"]

    def test_dict_round_trip(self):
        state = ExporterState(periods=[JAN, FEB])
        state.advance(FEB, ts(2024, 2, 5, 4, 5, 6))

        data = state.to_dict()
        restored = ExporterState.from_dict(data)

        assert data == {
            "periods": ["20240101-20240201", "20240201-20240301"],
            "lastModified": {"20240201-20240301": "2024-02-05T04:05:06+00:00"},
        }
        assert restored == state

    def test_naive_timestamp_is_utc(self):
        state = ExporterState.from_dict({"periods": [], "lastModified": {"20240101-20240201": "2024-01-05T00:00:00"}})

        assert state.watermark(JAN) == datetime(2024, 1, 5, tzinfo=timezone.utc)

    @pytest.mark.parametrize(
        "data",
        [
            [],
            {"periods": "20240101-20240201"},
            {"periods": ["garbage"]},
            {"lastModified": {"garbage": "2024-01-05T00:00:00"}},
            {"lastModified": {"20240101-20240201\n": "2024-01-05T00:00:00"}},
            {"periods": ["20240101-20240201\n"]},
            {"lastModified": {"20240101-20240201": "yesterday"}},
            {"lastModified": {"20240101-20240201": 12}},
        ],
    )
    def test_corrupt(self, data):
        with pytest.raises(CorruptState):
            ExporterState.from_dict(data)


class TestStateStore:
    """Test persisting state."""

    def test_missing_file_is_empty(self, state_store):
        state = state_store.load()

        assert state.periods == []
        assert state.last_modified == {}

    def test_save_and_load(self, state_store):
        state = ExporterState(periods=[JAN])
        state.advance(JAN, ts(2024, 1, 5))

        state_store.save(state)

        assert state_store.load() == state
        assert [p.name for p in state_store.path.parent.iterdir() if p.name.endswith(".tmp")] == []

    def test_save_overwrites(self, state_store):
        state = ExporterState(periods=[JAN])
        state_store.save(state)
        state.periods = [JAN, FEB]
        state_store.save(state)

        assert json.loads(state_store.path.read_text())["periods"] == ["20240101-20240201", "20240201-20240301"]

    def test_corrupt_file(self, state_store):
        state_store.path.write_text("{ not json")

        with pytest.raises(CorruptState):
            state_store.load()

    def test_creates_parent_directory(self, tmp_path):
        store = StateStore({"storage": {"state_path": str(tmp_path / "nested" / "state.json")}})

        store.save(ExporterState())

        assert store.load() == ExporterState()

    def test_write_failure(self, state_store):
        state_store.path.mkdir()

        with pytest.raises(StorageFailure):
            state_store.save(ExporterState(periods=[JAN]))

        assert [p.name for p in state_store.path.parent.iterdir() if p.name.endswith(".tmp")] == []
