"""Tests for SyncManager: throttling, outcomes, checkpoints and backfill runs."""

from __future__ import annotations

import asyncio
import copy
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from tenacity import wait_none

from src.healthsync.config_loader import CollectorConfig, config_from_mapping
from src.healthsync.errors import SyncInProgressError
from src.healthsync.sync.backfill import AggregateStatus, FullBackfillProgressTracker
from src.healthsync.sync.checkpoint import SyncCheckpointStore
from src.healthsync.sync.dedup import UploadLedger
from src.healthsync.sync.delivery import BatchDelivery
from src.healthsync.sync.engine import IncrementalSyncEngine
from src.healthsync.sync.scheduler import (
    LAST_SYNC_KEY,
    SyncManager,
    SyncOutcome,
    SyncStatus,
    outcome_status,
)
from src.healthsync.sync.store import MemorySettingsStore
from src.healthsync.tests.conftest import (
    HEART_RATE,
    STEPS,
    TEST_DEVICE,
    TEST_NOW,
    UTC,
    FakeSource,
    FixedClock,
    RecordingUploader,
    quantity,
    workout,
)

DAY1 = datetime(2026, 2, 19, 9, 0, tzinfo=timezone.utc)
DAY2 = datetime(2026, 2, 20, 9, 0, tzinfo=timezone.utc)


class TestCategories:
    def test_all_disabled_by_default(self, manager: SyncManager) -> None:
        toggles = manager.categories()
        assert "steps" in toggles
        assert not any(toggles.values())

    def test_toggle(self, manager: SyncManager, store: MemorySettingsStore) -> None:
        manager.set_category_enabled("steps", True)
        assert manager.enabled_categories() == {"steps"}
        assert store.get("dataCollect.steps") is True

    def test_unknown_category(self, manager: SyncManager) -> None:
        with pytest.raises(KeyError):
            manager.set_category_enabled("telepathy", True)


class TestOutcomeStatus:
    @pytest.mark.parametrize(
        ("uploaded", "errors", "expected"),
        [
            (3, 0, SyncStatus.SUCCESS),
            (3, 1, SyncStatus.PARTIAL),
            (0, 2, SyncStatus.FAILED),
            (0, 0, SyncStatus.NO_NEW_DATA),
        ],
    )
    def test_rules(self, uploaded: int, errors: int, expected: SyncStatus) -> None:
        assert outcome_status(uploaded, errors) is expected

    def test_summary(self) -> None:
        outcome = SyncOutcome(SyncStatus.FAILED, TEST_NOW, TEST_NOW, failures={"a": "x", "b": "y"})
        assert outcome.summary == "2 sync errors"
        assert SyncOutcome(SyncStatus.SUCCESS, TEST_NOW, TEST_NOW).summary is None


class TestSync:
    @pytest.mark.asyncio
    async def test_success_commits_checkpoint(
        self,
        manager: SyncManager,
        source: FakeSource,
        uploader: RecordingUploader,
        checkpoints: SyncCheckpointStore,
    ) -> None:
        manager.set_category_enabled("steps", True)
        source.add(quantity(STEPS, DAY1, 50, "count"), quantity(STEPS, DAY2, 70, "count", minutes=5))

        outcome = await manager.sync()

        assert outcome.status is SyncStatus.SUCCESS
        assert outcome.detail.files_uploaded == 2
        assert outcome.detail.samples_collected == 2
        assert outcome.detail.streams_run == 2
        assert len(uploader.files) == 2
        assert checkpoints.get("healthkit") == DAY2 + timedelta(minutes=5)
        assert checkpoints.get("healthkit.workouts") is None
        assert manager.last_sync_date() == TEST_NOW

    @pytest.mark.asyncio
    async def test_no_new_data_leaves_checkpoint(
        self, manager: SyncManager, checkpoints: SyncCheckpointStore
    ) -> None:
        manager.set_category_enabled("steps", True)
        outcome = await manager.sync()
        assert outcome.status is SyncStatus.NO_NEW_DATA
        assert outcome.failures == {}
        assert checkpoints.get("healthkit") is None

    @pytest.mark.asyncio
    async def test_throttled_within_interval(
        self, manager: SyncManager, clock: FixedClock, source: FakeSource
    ) -> None:
        manager.set_category_enabled("steps", True)
        assert await manager.sync() is not None

        clock.advance(seconds=120)
        assert await manager.sync() is None
        assert await manager.sync(force=True) is not None

        clock.advance(seconds=301)
        assert await manager.sync() is not None

    @pytest.mark.asyncio
    async def test_failed_upload_holds_checkpoint(
        self,
        manager: SyncManager,
        source: FakeSource,
        uploader: RecordingUploader,
        checkpoints: SyncCheckpointStore,
    ) -> None:
        manager.set_category_enabled("steps", True)
        source.add(quantity(STEPS, DAY1, 50, "count"), quantity(STEPS, DAY2, 70, "count"))
        uploader.rejected["/2026/02/19/"] = 400

        outcome = await manager.sync()

        assert outcome.status is SyncStatus.PARTIAL
        assert len(outcome.failures) == 1
        (key,) = outcome.failures
        assert key.startswith("healthkit/imports/fitness/apple-health/raw/2026/02/19/")
        assert checkpoints.get("healthkit") == DAY1 - timedelta(milliseconds=1)

    @pytest.mark.asyncio
    async def test_type_failure_reported(
        self, manager: SyncManager, source: FakeSource
    ) -> None:
        manager.set_category_enabled("heart_rate", True)
        source.failing[HEART_RATE] = "authorization denied"

        outcome = await manager.sync()

        assert outcome.status is SyncStatus.FAILED
        assert outcome.failures == {f"healthkit/{HEART_RATE}": "authorization denied"}
        assert outcome.summary == "1 sync error"

    @pytest.mark.asyncio
    async def test_type_failure_holds_checkpoint_before_window(
        self,
        manager: SyncManager,
        source: FakeSource,
        checkpoints: SyncCheckpointStore,
    ) -> None:
        manager.set_category_enabled("steps", True)
        manager.set_category_enabled("heart_rate", True)
        source.add(quantity(STEPS, DAY1, 50, "count"))
        source.failing[HEART_RATE] = "database locked"

        outcome = await manager.sync()

        assert outcome.status is SyncStatus.PARTIAL
        window_start = TEST_NOW - timedelta(days=7)
        assert checkpoints.get("healthkit") == window_start - timedelta(milliseconds=1)

    @pytest.mark.asyncio
    async def test_failed_type_recovered_on_next_pass(
        self,
        manager: SyncManager,
        source: FakeSource,
        uploader: RecordingUploader,
        clock: FixedClock,
        checkpoints: SyncCheckpointStore,
    ) -> None:
        manager.set_category_enabled("steps", True)
        manager.set_category_enabled("heart_rate", True)
        source.add(
            quantity(STEPS, DAY1, 50, "count"),
            quantity(HEART_RATE, DAY1, 61, "count/min"),
        )
        source.failing[HEART_RATE] = "database locked"
        await manager.sync()
        assert not any(b"heart-rate" in data for data in uploader.files.values())

        source.failing.clear()
        clock.advance(minutes=10)
        outcome = await manager.sync()

        assert outcome.status is SyncStatus.SUCCESS
        assert any(b"heart-rate" in data for data in uploader.files.values())
        assert checkpoints.get("healthkit") == DAY1 + timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_instant_sample_at_checkpoint_uploaded_once(
        self,
        manager: SyncManager,
        source: FakeSource,
        uploader: RecordingUploader,
        clock: FixedClock,
        checkpoints: SyncCheckpointStore,
    ) -> None:
        manager.set_category_enabled("steps", True)
        source.add(quantity(STEPS, DAY1, 12, "count", minutes=0))

        for _ in range(3):
            await manager.sync(force=True)
            clock.advance(seconds=1)

        assert len(uploader.calls) == 1
        assert checkpoints.get("healthkit") == DAY1

    @pytest.mark.asyncio
    async def test_no_categories_reported_once(self, manager: SyncManager) -> None:
        outcome = await manager.sync()
        assert outcome.status is SyncStatus.FAILED
        assert outcome.failures == {"healthkit": "No data sources enabled"}

    @pytest.mark.asyncio
    async def test_unavailable_source_is_distinct(
        self, manager: SyncManager, source: FakeSource
    ) -> None:
        manager.set_category_enabled("steps", True)
        source.available = False
        outcome = await manager.sync()
        assert outcome.status is SyncStatus.FAILED
        assert list(outcome.failures) == ["healthkit"]
        assert "not available" in outcome.failures["healthkit"]

    @pytest.mark.asyncio
    async def test_workout_stream_checkpointed_separately(
        self,
        manager: SyncManager,
        source: FakeSource,
        checkpoints: SyncCheckpointStore,
    ) -> None:
        manager.set_category_enabled("workouts", True)
        source.add(workout("A", DAY1, minutes=30))

        outcome = await manager.sync()

        assert outcome.status is SyncStatus.SUCCESS
        assert checkpoints.get("healthkit.workouts") == DAY1 + timedelta(minutes=30)
        assert checkpoints.get("healthkit") is None

    @pytest.mark.asyncio
    async def test_unchanged_workout_not_reuploaded(
        self,
        manager: SyncManager,
        source: FakeSource,
        uploader: RecordingUploader,
        checkpoints: SyncCheckpointStore,
    ) -> None:
        manager.set_category_enabled("workouts", True)
        source.add(workout("A", DAY1))
        await manager.sync()
        checkpoints.clear("healthkit.workouts")

        outcome = await manager.sync(force=True)

        assert outcome.detail.files_skipped == 1
        assert outcome.detail.files_uploaded == 0
        assert len(uploader.calls) == 1

    @pytest.mark.asyncio
    async def test_outcome_persisted(self, manager: SyncManager, store: MemorySettingsStore) -> None:
        outcome = await manager.sync()
        assert manager.last_outcome() == outcome
        assert store.get(LAST_SYNC_KEY) == "2026-02-21T12:00:00.000Z"

    @pytest.mark.asyncio
    async def test_corrupt_last_sync_date_does_not_block(
        self, manager: SyncManager, store: MemorySettingsStore
    ) -> None:
        manager.set_category_enabled("steps", True)
        store.set(LAST_SYNC_KEY, "garbage")
        assert await manager.sync() is not None


class TestBackfillRun:
    @pytest.mark.asyncio
    async def test_runs_every_day(
        self,
        manager: SyncManager,
        source: FakeSource,
        uploader: RecordingUploader,
        sleep_mock: AsyncMock,
    ) -> None:
        manager.set_category_enabled("steps", True)
        source.add(quantity(STEPS, DAY1, 50, "count"), quantity(STEPS, DAY2, 70, "count"))

        outcome = await manager.run_backfill()

        assert outcome.kind == "backfill"
        assert outcome.status is SyncStatus.SUCCESS
        assert outcome.detail.streams_run == 3
        assert outcome.detail.files_uploaded == 2
        assert manager.tracker.progress.status is AggregateStatus.DONE
        sleep_mock.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_backfill_leaves_incremental_checkpoints(
        self, manager: SyncManager, source: FakeSource, store: MemorySettingsStore
    ) -> None:
        manager.set_category_enabled("steps", True)
        source.add(quantity(STEPS, DAY1, 50, "count"))
        await manager.run_backfill()
        assert store.keys("sync.anchor.") == []

    @pytest.mark.asyncio
    async def test_failed_day_reported_and_retryable(
        self,
        manager: SyncManager,
        source: FakeSource,
        uploader: RecordingUploader,
    ) -> None:
        manager.set_category_enabled("steps", True)
        source.add(quantity(STEPS, DAY1, 50, "count"), quantity(STEPS, DAY2, 70, "count"))
        uploader.rejected["/2026/02/20/"] = 500

        outcome = await manager.run_backfill()
        assert outcome.status is SyncStatus.PARTIAL
        assert list(outcome.failures) == ["backfill/2026-02-20"]
        assert manager.tracker.progress.status is AggregateStatus.ERROR

        uploader.rejected.clear()
        assert manager.retry_failed() == 1
        second = await manager.run_backfill()
        assert second.status is SyncStatus.SUCCESS
        assert manager.tracker.progress.status is AggregateStatus.DONE

    @pytest.mark.asyncio
    async def test_rate_limit_between_days(
        self,
        collector_config: CollectorConfig,
        store: MemorySettingsStore,
        source: FakeSource,
        uploader: RecordingUploader,
        clock: FixedClock,
    ) -> None:
        raw = copy.deepcopy(collector_config._raw)
        raw["backfill"] = {"rate_limit_ms": 250}
        config = config_from_mapping(raw)
        engine = IncrementalSyncEngine(
            source, SyncCheckpointStore(store), config=config,
            device_info=TEST_DEVICE, local_tz=UTC, clock=clock,
        )
        delivery = BatchDelivery(uploader, UploadLedger(store), config.upload, wait=wait_none())
        tracker = FullBackfillProgressTracker(store, engine, delivery, local_tz=UTC, clock=clock)
        sleep = AsyncMock()
        manager = SyncManager(store, engine, delivery, tracker, clock=clock, sleep=sleep)
        manager.set_category_enabled("steps", True)
        source.add(quantity(STEPS, DAY1, 50, "count"))

        await manager.run_backfill()

        assert sleep.await_count == 2
        sleep.assert_awaited_with(0.25)

    @pytest.mark.asyncio
    async def test_no_data_is_no_new_data(self, manager: SyncManager) -> None:
        manager.set_category_enabled("steps", True)
        outcome = await manager.run_backfill()
        assert outcome.status is SyncStatus.NO_NEW_DATA
        assert manager.tracker.progress is None

    @pytest.mark.asyncio
    async def test_second_start_rejected_then_cancelled(self, manager: SyncManager) -> None:
        manager.set_category_enabled("steps", True)
        task = manager.start_backfill()
        with pytest.raises(SyncInProgressError):
            manager.start_backfill()

        assert await manager.cancel_backfill() is True
        assert task.done()
        assert await manager.cancel_backfill() is False

    @pytest.mark.asyncio
    async def test_background_run_completes(
        self, manager: SyncManager, source: FakeSource
    ) -> None:
        manager.set_category_enabled("steps", True)
        source.add(quantity(STEPS, DAY2, 70, "count"))
        task = manager.start_backfill()
        outcome = await asyncio.wait_for(task, timeout=5)
        assert outcome.status is SyncStatus.SUCCESS
        assert not manager.backfill_running

    @pytest.mark.asyncio
    async def test_reset(self, manager: SyncManager, source: FakeSource) -> None:
        manager.set_category_enabled("steps", True)
        source.add(quantity(STEPS, DAY2, 70, "count"))
        await manager.run_backfill()

        manager.reset_backfill()
        assert manager.tracker.progress is None
