"""IncrementalSyncEngine: one query → normalize → bucket → batch pass.

Per pass::

    IDLE → QUERYING → NORMALIZING → BATCHING → COMPLETED | PARTIALLY_FAILED

The engine reads the stream checkpoint but never writes it during a pass.
The caller uploads the returned batches and, once delivery is confirmed,
calls ``commit()`` with the value from ``safe_watermark()``.  A crash
anywhere before that leaves the old checkpoint in place, so the next pass
re-delivers instead of losing data.

Two streams run through the engine independently:

- samples  — every enabled sample type, one file per local day
- workouts — one file per session, addressed by session uuid
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from enum import Enum
from typing import Callable, Iterable, Sequence

from src.healthsync.base import (
    WORKOUT_TYPE_ID,
    CollectionStats,
    DeviceInfo,
    HealthDataSource,
    NormalizedSample,
    UploadBatch,
    WorkoutRecord,
    utc_now,
)
from src.healthsync.buckets import bucket, local_timezone
from src.healthsync.config_loader import CollectorConfig, StreamConfig, get_collector_config
from src.healthsync.errors import NoEnabledCategoriesError, QueryError, SourceUnavailableError
from src.healthsync.normalizer import SampleNormalizer
from src.healthsync.payloads import build_day_batches, build_workout_batch
from src.healthsync.sync.checkpoint import CHECKPOINT_RESOLUTION, SyncCheckpointStore

logger = logging.getLogger("healthsync.sync.engine")


class PassState(str, Enum):
    IDLE = "idle"
    QUERYING = "querying"
    NORMALIZING = "normalizing"
    BATCHING = "batching"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"


@dataclass
class SyncPassResult:
    """Everything one pass produced.

    Attributes:
        stream_key:   Stream the pass ran for ("backfill" for a backfill window).
        batches:      Upload batches, oldest day first.
        stats:        Aggregate query statistics.
        failed_types: Source type → failure reason for types whose query failed.
        state:        Terminal pass state.
        synced_at:    Timestamp of the pass; embedded in paths and envelopes.
        window_start: Inclusive lower bound of the queried window.
        window_end:   Exclusive upper bound of the queried window.
    """

    stream_key: str
    synced_at: datetime
    window_start: datetime
    window_end: datetime
    batches: list[UploadBatch] = field(default_factory=list)
    stats: CollectionStats = field(default_factory=CollectionStats)
    failed_types: dict[str, str] = field(default_factory=dict)
    state: PassState = PassState.COMPLETED

    @property
    def has_data(self) -> bool:
        return bool(self.batches)

    def hold_watermark(self, watermark: datetime | None) -> datetime | None:
        """Clamp a delivery watermark for the types this pass failed to read.

        A failed type returned nothing for the window, so the stream may not
        move past the start of the window until a later pass reads it.
        """
        if watermark is None or not self.failed_types:
            return watermark
        return min(watermark, self.window_start - CHECKPOINT_RESOLUTION)


def safe_watermark(
    delivered: Sequence[UploadBatch], failed: Sequence[UploadBatch] = ()
) -> datetime | None:
    """Return the watermark a stream may commit after a round of uploads.

    With every batch delivered this is the latest candidate.  When some
    batches failed, the watermark is held just before the earliest start
    among the failed batches so the next pass queries them again.  Returns
    None when nothing was delivered.
    """
    if not delivered:
        return None
    candidate = max(batch.watermark_candidate for batch in delivered)
    if failed:
        floor = min(batch.earliest_start for batch in failed) - CHECKPOINT_RESOLUTION
        candidate = min(candidate, floor)
    return candidate


class IncrementalSyncEngine:
    """Build upload batches for everything new since a stream's checkpoint.

    Usage::

        engine = IncrementalSyncEngine(source, checkpoints)
        result = await engine.run_incremental_sync({"steps", "heart_rate"})
        # upload result.batches, then:
        watermark = safe_watermark(delivered, failed)
        engine.commit(result.stream_key, result.hold_watermark(watermark))
    """

    def __init__(
        self,
        source: HealthDataSource,
        checkpoints: SyncCheckpointStore,
        config: CollectorConfig | None = None,
        normalizer: SampleNormalizer | None = None,
        device_info: DeviceInfo | None = None,
        local_tz: tzinfo | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._source = source
        self._checkpoints = checkpoints
        self._config = config or get_collector_config()
        self._normalizer = normalizer or SampleNormalizer(self._config)
        self._device_info = device_info or DeviceInfo.current()
        self._local_tz = local_tz
        self._clock = clock
        self.state = PassState.IDLE

    @property
    def config(self) -> CollectorConfig:
        return self._config

    @property
    def source(self) -> HealthDataSource:
        return self._source

    @property
    def checkpoints(self) -> SyncCheckpointStore:
        return self._checkpoints

    @property
    def local_tz(self) -> tzinfo:
        return self._local_tz or local_timezone()

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    async def run_incremental_sync(self, enabled_category_ids: Iterable[str]) -> SyncPassResult:
        """Run one pass of the day-bucketed sample stream.

        Raises:
            SourceUnavailableError:   The data source cannot be used.
            NoEnabledCategoriesError: No category is enabled.
            PersistenceError:         The checkpoint cannot be read.
        """
        enabled = self.check_preconditions(enabled_category_ids)
        stream = self._config.samples_stream
        window_start, window_end, checkpoint = self._window(stream)
        synced_at = self._clock()

        type_ids = self._config.sample_types(enabled)
        return await self._collect_samples(
            stream, type_ids, window_start, window_end, synced_at, after=checkpoint
        )

    async def run_workout_sync(self, enabled_category_ids: Iterable[str]) -> SyncPassResult:
        """Run one pass of the per-session workout stream.

        A pass with no workout category enabled completes with no batches.

        Raises:
            SourceUnavailableError:   The data source cannot be used.
            NoEnabledCategoriesError: No category is enabled.
            PersistenceError:         The checkpoint cannot be read.
        """
        enabled = self.check_preconditions(enabled_category_ids)
        stream = self._config.workouts_stream
        window_start, window_end, checkpoint = self._window(stream)
        synced_at = self._clock()

        if not self._config.includes_workouts(enabled):
            self.state = PassState.COMPLETED
            return SyncPassResult(
                stream_key=stream.key, synced_at=synced_at,
                window_start=window_start, window_end=window_end,
            )
        return await self._collect_workouts(
            stream, window_start, window_end, synced_at, after=checkpoint
        )

    async def collect_window(
        self,
        enabled_category_ids: Iterable[str],
        window_start: datetime,
        window_end: datetime,
    ) -> SyncPassResult:
        """Collect samples and workouts whose start lies in an explicit window.

        Used by backfill; reads no checkpoint.  The returned batches carry
        their own stream keys.
        """
        enabled = self.check_preconditions(enabled_category_ids)
        synced_at = self._clock()

        samples = await self._collect_samples(
            self._config.samples_stream,
            self._config.sample_types(enabled),
            window_start, window_end, synced_at,
        )
        combined = SyncPassResult(
            stream_key="backfill", synced_at=synced_at,
            window_start=window_start, window_end=window_end,
            batches=list(samples.batches), stats=samples.stats,
            failed_types=dict(samples.failed_types),
        )
        if self._config.includes_workouts(enabled):
            workouts = await self._collect_workouts(
                self._config.workouts_stream, window_start, window_end, synced_at
            )
            combined.batches.extend(workouts.batches)
            combined.stats = combined.stats + workouts.stats
            combined.failed_types.update(workouts.failed_types)

        combined.state = (
            PassState.PARTIALLY_FAILED if combined.failed_types else PassState.COMPLETED
        )
        self.state = combined.state
        return combined

    def commit(self, stream_key: str, watermark: datetime | None) -> datetime | None:
        """Advance a stream's checkpoint after confirmed delivery.

        ``None`` (nothing delivered) leaves the checkpoint untouched.

        Raises:
            PersistenceError: If the checkpoint cannot be written.
        """
        if watermark is None:
            return self._checkpoints.get(stream_key)
        return self._checkpoints.advance(stream_key, watermark)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def check_preconditions(self, enabled_category_ids: Iterable[str]) -> set[str]:
        if not self._source.is_available():
            raise SourceUnavailableError(
                f"Data source {self._source.DISPLAY_NAME} is not available"
            )
        enabled = set(enabled_category_ids)
        if not enabled:
            raise NoEnabledCategoriesError()
        return enabled

    def _window(self, stream: StreamConfig) -> tuple[datetime, datetime, datetime | None]:
        now = self._clock()
        checkpoint = self._checkpoints.get(stream.key)
        if checkpoint is None:
            logger.info(
                "Stream %s has no checkpoint; looking back %d days",
                stream.key, self._config.initial_lookback_days,
            )
            return now - timedelta(days=self._config.initial_lookback_days), now, None
        return checkpoint, now, checkpoint

    async def _query(
        self, type_id: str, window_start: datetime, window_end: datetime,
        failed: dict[str, str], after: datetime | None = None,
    ) -> list:
        try:
            records = await self._source.query_records(type_id, window_start, window_end)
        except QueryError as exc:
            reason = exc.reason
        except Exception as exc:
            reason = str(exc) or type(exc).__name__
        else:
            if after is None:
                return records
            # Records ending at the checkpoint were delivered by an earlier pass.
            return [r for r in records if r.end > after]
        logger.warning("Query for %s failed: %s", type_id, reason)
        failed[type_id] = reason
        return []

    async def _collect_samples(
        self,
        stream: StreamConfig,
        type_ids: set[str],
        window_start: datetime,
        window_end: datetime,
        synced_at: datetime,
        after: datetime | None = None,
    ) -> SyncPassResult:
        result = SyncPassResult(
            stream_key=stream.key, synced_at=synced_at,
            window_start=window_start, window_end=window_end,
        )

        self.state = PassState.QUERYING
        raw_by_type: dict[str, list] = {}
        for type_id in sorted(type_ids):
            raw_by_type[type_id] = await self._query(
                type_id, window_start, window_end, result.failed_types, after
            )

        self.state = PassState.NORMALIZING
        samples: list[NormalizedSample] = []
        types_with_data = 0
        for type_id, records in raw_by_type.items():
            normalized = self._normalizer.normalize_all(records)
            if normalized:
                types_with_data += 1
            samples.extend(normalized)

        self.state = PassState.BATCHING
        result.batches = build_day_batches(
            bucket(samples, self.local_tz), stream, synced_at, self._device_info
        )
        result.stats = CollectionStats(
            types_queried=len(type_ids),
            types_with_data=types_with_data,
            samples_collected=len(samples),
        )
        result.state = PassState.PARTIALLY_FAILED if result.failed_types else PassState.COMPLETED
        self.state = result.state

        logger.info(
            "Stream %s: %d types queried, %d with data, %d samples in %d batches (%d failed types)",
            stream.key, result.stats.types_queried, result.stats.types_with_data,
            result.stats.samples_collected, len(result.batches), len(result.failed_types),
        )
        return result

    async def _collect_workouts(
        self,
        stream: StreamConfig,
        window_start: datetime,
        window_end: datetime,
        synced_at: datetime,
        after: datetime | None = None,
    ) -> SyncPassResult:
        result = SyncPassResult(
            stream_key=stream.key, synced_at=synced_at,
            window_start=window_start, window_end=window_end,
        )

        self.state = PassState.QUERYING
        records = await self._query(
            WORKOUT_TYPE_ID, window_start, window_end, result.failed_types, after
        )
        workouts = sorted(
            (r for r in records if isinstance(r, WorkoutRecord)),
            key=lambda w: (w.start, w.uuid),
        )

        self.state = PassState.NORMALIZING
        normalized = []
        for workout in workouts:
            try:
                route = await self._source.query_route(workout)
            except Exception as exc:
                # The session still uploads, without its route.
                logger.warning("Route query for workout %s failed: %s", workout.uuid, exc)
                route = None
            try:
                normalized.append(self._normalizer.normalize_workout(workout, route))
            except (ValueError, TypeError, ArithmeticError) as exc:
                logger.warning("Dropping workout %s: %s", workout.uuid, exc)

        self.state = PassState.BATCHING
        local_tz = self.local_tz
        result.batches = [
            build_workout_batch(w, stream, synced_at, self._device_info, local_tz)
            for w in normalized
        ]
        result.stats = CollectionStats(
            types_queried=1,
            types_with_data=1 if normalized else 0,
            samples_collected=len(normalized),
        )
        result.state = PassState.PARTIALLY_FAILED if result.failed_types else PassState.COMPLETED
        self.state = result.state

        logger.info(
            "Stream %s: %d workouts collected", stream.key, result.stats.samples_collected
        )
        return result
