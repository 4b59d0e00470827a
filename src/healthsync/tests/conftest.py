"""Shared fixtures and fakes for the health-data sync engine tests."""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock
from zoneinfo import ZoneInfo

import pytest
from tenacity import wait_none

from src.healthsync.base import (
    WORKOUT_TYPE_ID,
    CategoryRecord,
    DeviceInfo,
    HealthDataSource,
    QuantityRecord,
    RawRecord,
    RoutePoint,
    Uploader,
    WorkoutRecord,
    WorkoutStatistic,
)
from src.healthsync.config_loader import CollectorConfig, load_collector_config
from src.healthsync.errors import QueryError, UploadError
from src.healthsync.sync.backfill import FullBackfillProgressTracker
from src.healthsync.sync.checkpoint import SyncCheckpointStore
from src.healthsync.sync.dedup import UploadLedger
from src.healthsync.sync.delivery import BatchDelivery
from src.healthsync.sync.engine import IncrementalSyncEngine
from src.healthsync.sync.scheduler import SyncManager
from src.healthsync.sync.store import MemorySettingsStore

# Canonical "now" for every test: Saturday 2026-02-21 12:00 UTC
TEST_NOW = datetime(2026, 2, 21, 12, 0, tzinfo=timezone.utc)
UTC = ZoneInfo("UTC")
TEST_DEVICE = DeviceInfo(name="Test iPhone", model="iPhone16,1", system_version="19.2")

STEPS = "HKQuantityTypeIdentifierStepCount"
HEART_RATE = "HKQuantityTypeIdentifierHeartRate"
DISTANCE = "HKQuantityTypeIdentifierDistanceWalkingRunning"
ACTIVE_ENERGY = "HKQuantityTypeIdentifierActiveEnergyBurned"
SLEEP = "HKCategoryTypeIdentifierSleepAnalysis"
MINDFUL = "HKCategoryTypeIdentifierMindfulSession"


# ---------------------------------------------------------------------------
# Record builders
# ---------------------------------------------------------------------------


def quantity(
    type_id: str,
    start: datetime,
    value: float,
    unit: str,
    minutes: int = 1,
    source: str = "Apple Watch",
    **kwargs: Any,
) -> QuantityRecord:
    return QuantityRecord(
        type_id=type_id,
        start=start,
        end=start + timedelta(minutes=minutes),
        source=source,
        value=value,
        unit=unit,
        **kwargs,
    )


def category(
    type_id: str,
    start: datetime,
    value: int,
    minutes: int = 30,
    source: str = "Apple Watch",
    **kwargs: Any,
) -> CategoryRecord:
    return CategoryRecord(
        type_id=type_id,
        start=start,
        end=start + timedelta(minutes=minutes),
        source=source,
        value=value,
        **kwargs,
    )


def workout(
    uuid: str,
    start: datetime,
    minutes: int = 30,
    activity_type: int = 37,
    source: str = "Apple Watch",
    statistics: tuple[WorkoutStatistic, ...] = (),
    **kwargs: Any,
) -> WorkoutRecord:
    return WorkoutRecord(
        type_id=WORKOUT_TYPE_ID,
        start=start,
        end=start + timedelta(minutes=minutes),
        source=source,
        uuid=uuid,
        activity_type=activity_type,
        duration_s=minutes * 60.0,
        statistics=statistics,
        **kwargs,
    )


def route_point(timestamp: datetime, lat: float = 37.77, lon: float = -122.42) -> RoutePoint:
    return RoutePoint(
        timestamp=timestamp,
        lat=lat,
        lon=lon,
        alt=12.0,
        h_acc=4.0,
        v_acc=3.0,
        speed=2.8,
        speed_acc=0.5,
        course=181.0,
        course_acc=5.0,
    )


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeSource(HealthDataSource):
    """In-memory data source with per-type failure injection."""

    SOURCE_ID = "fake"
    DISPLAY_NAME = "Fake Source"

    def __init__(self) -> None:
        self.records: dict[str, list[RawRecord]] = defaultdict(list)
        self.routes: dict[str, list[RoutePoint]] = {}
        self.failing: dict[str, str] = {}
        self.failing_routes: set[str] = set()
        self.available = True
        self.earliest: datetime | None = None
        self.queries: list[tuple[str, datetime, datetime]] = []

    def add(self, *records: RawRecord) -> None:
        for record in records:
            self.records[record.type_id].append(record)

    def is_available(self) -> bool:
        return self.available

    async def query_records(
        self, type_id: str, window_start: datetime, window_end: datetime
    ) -> list[RawRecord]:
        self.queries.append((type_id, window_start, window_end))
        if type_id in self.failing:
            raise QueryError(type_id, self.failing[type_id])
        return [
            r for r in self.records.get(type_id, [])
            if window_start <= r.start < window_end
        ]

    async def discover_earliest_record_date(self, type_ids: set[str]) -> datetime | None:
        if self.earliest is not None:
            return self.earliest
        starts = [r.start for t in type_ids for r in self.records.get(t, [])]
        return min(starts) if starts else None

    async def query_route(self, workout: WorkoutRecord) -> list[RoutePoint] | None:
        if workout.uuid in self.failing_routes:
            raise RuntimeError("route query timed out")
        return self.routes.get(workout.uuid)

    @property
    def queried_types(self) -> list[str]:
        return [type_id for type_id, _, _ in self.queries]


class RecordingUploader(Uploader):
    """Keeps every uploaded file; paths in ``rejected`` fail with the given status."""

    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}
        self.calls: list[str] = []
        self.rejected: dict[str, int] = {}

    async def upload_file(self, path: str, data: bytes) -> None:
        self.calls.append(path)
        for marker, status in self.rejected.items():
            if marker in path:
                raise UploadError(path, f"HTTP {status}", status_code=status)
        self.files[path] = data


class FixedClock:
    """Injectable UTC clock that only moves when told to."""

    def __init__(self, now: datetime = TEST_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def collector_config() -> CollectorConfig:
    """Load the real bundled collector config."""
    return load_collector_config()


@pytest.fixture
def store() -> MemorySettingsStore:
    return MemorySettingsStore()


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def uploader() -> RecordingUploader:
    return RecordingUploader()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def checkpoints(store: MemorySettingsStore) -> SyncCheckpointStore:
    return SyncCheckpointStore(store)


@pytest.fixture
def engine(
    source: FakeSource,
    checkpoints: SyncCheckpointStore,
    collector_config: CollectorConfig,
    clock: FixedClock,
) -> IncrementalSyncEngine:
    return IncrementalSyncEngine(
        source,
        checkpoints,
        config=collector_config,
        device_info=TEST_DEVICE,
        local_tz=UTC,
        clock=clock,
    )


@pytest.fixture
def delivery(
    uploader: RecordingUploader,
    store: MemorySettingsStore,
    collector_config: CollectorConfig,
) -> BatchDelivery:
    return BatchDelivery(uploader, UploadLedger(store), collector_config.upload, wait=wait_none())


@pytest.fixture
def tracker(
    store: MemorySettingsStore,
    engine: IncrementalSyncEngine,
    delivery: BatchDelivery,
    clock: FixedClock,
) -> FullBackfillProgressTracker:
    return FullBackfillProgressTracker(store, engine, delivery, local_tz=UTC, clock=clock)


@pytest.fixture
def sleep_mock() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def manager(
    store: MemorySettingsStore,
    engine: IncrementalSyncEngine,
    delivery: BatchDelivery,
    tracker: FullBackfillProgressTracker,
    clock: FixedClock,
    sleep_mock: AsyncMock,
) -> SyncManager:
    return SyncManager(store, engine, delivery, tracker, clock=clock, sleep=sleep_mock)
