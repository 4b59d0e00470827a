"""Tests for the monotonic per-stream checkpoint."""

from __future__ import annotations

from datetime import timedelta

import pytest

from src.healthsync.errors import PersistenceError
from src.healthsync.sync.checkpoint import SyncCheckpointStore, anchor_key
from src.healthsync.sync.store import MemorySettingsStore
from src.healthsync.tests.conftest import TEST_NOW


class TestSyncCheckpointStore:
    def test_never_synced_is_none(self, checkpoints: SyncCheckpointStore) -> None:
        assert checkpoints.get("healthkit") is None

    def test_advance_persists(self, checkpoints: SyncCheckpointStore, store: MemorySettingsStore) -> None:
        assert checkpoints.advance("healthkit", TEST_NOW) == TEST_NOW
        assert checkpoints.get("healthkit") == TEST_NOW
        assert store.get(anchor_key("healthkit")) == "2026-02-21T12:00:00.000Z"

    def test_never_moves_backwards(self, checkpoints: SyncCheckpointStore) -> None:
        checkpoints.advance("healthkit", TEST_NOW)
        assert checkpoints.advance("healthkit", TEST_NOW - timedelta(hours=1)) == TEST_NOW
        assert checkpoints.get("healthkit") == TEST_NOW

    def test_monotonic_over_a_sequence(self, checkpoints: SyncCheckpointStore) -> None:
        offsets = [3, 1, 5, 5, 2, 8, 0]
        seen = []
        for hours in offsets:
            checkpoints.advance("healthkit", TEST_NOW + timedelta(hours=hours))
            seen.append(checkpoints.get("healthkit"))
        assert seen == sorted(seen)
        assert seen[-1] == TEST_NOW + timedelta(hours=8)

    def test_streams_are_independent(self, checkpoints: SyncCheckpointStore) -> None:
        checkpoints.advance("healthkit", TEST_NOW)
        assert checkpoints.get("healthkit.workouts") is None
        assert checkpoints.snapshot(["healthkit", "healthkit.workouts"]) == {
            "healthkit": TEST_NOW,
            "healthkit.workouts": None,
        }

    def test_clear(self, checkpoints: SyncCheckpointStore) -> None:
        checkpoints.advance("healthkit", TEST_NOW)
        checkpoints.clear("healthkit")
        assert checkpoints.get("healthkit") is None

    def test_corrupt_value_raises(self) -> None:
        checkpoints = SyncCheckpointStore(MemorySettingsStore({anchor_key("healthkit"): "yesterday"}))
        with pytest.raises(PersistenceError):
            checkpoints.get("healthkit")
