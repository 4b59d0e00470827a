"""SyncManager: the caller side of the sync engine.

Coordinates a sync cycle:
1. Skip if the last sync finished within the throttle interval (unless forced)
2. Read the enabled categories fresh from the settings store
3. Run the sample stream, then the workout stream, each under its own lock
4. Upload every batch with capped exponential backoff
5. Commit each stream's checkpoint only from confirmed batches
6. Persist the last sync date and a typed outcome

It also drives the full-history backfill, optionally as a background task
that can be cancelled between (or during) days.

The data source is touched by one operation at a time: the sample pass, the
workout pass and each backfill day all acquire the same source lock.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable

from src.healthsync.base import format_timestamp, parse_timestamp, utc_now
from src.healthsync.config_loader import CollectorConfig, StreamConfig
from src.healthsync.errors import (
    NoEnabledCategoriesError,
    PersistenceError,
    SourceUnavailableError,
    SyncError,
    SyncInProgressError,
)
from src.healthsync.sync.backfill import DayState, FullBackfillProgressTracker, FullSyncProgress
from src.healthsync.sync.delivery import BatchDelivery
from src.healthsync.sync.engine import IncrementalSyncEngine, SyncPassResult
from src.healthsync.sync.store import SettingsStore

logger = logging.getLogger("healthsync.sync.scheduler")

CATEGORY_KEY_PREFIX = "dataCollect."
LAST_SYNC_KEY = "sync.lastSyncDate"
LAST_OUTCOME_KEY = "sync.lastOutcome"


def category_key(category_id: str) -> str:
    return f"{CATEGORY_KEY_PREFIX}{category_id}"


class SyncStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    NO_NEW_DATA = "no_new_data"


@dataclass
class SyncDetail:
    """Breakdown of one sync cycle.

    Attributes:
        samples_collected: Normalized samples plus workout sessions collected.
        types_queried:     Source types queried across streams.
        types_with_data:   Types that returned at least one usable record.
        files_uploaded:    Files the uploader confirmed.
        files_skipped:     Files skipped because identical content was stored.
        files_failed:      Entries in the failure map.
        streams_run:       Streams (or backfill days) that ran.
    """

    samples_collected: int = 0
    types_queried: int = 0
    types_with_data: int = 0
    files_uploaded: int = 0
    files_skipped: int = 0
    files_failed: int = 0
    streams_run: int = 0


@dataclass
class SyncOutcome:
    """Typed result of a sync cycle or backfill run.

    ``failures`` maps ``<stream>`` (pass-level), ``<stream>/<type_id>``
    (query) or ``<stream>/<upload_path>`` (upload) to an error message.
    """

    status: SyncStatus
    started_at: datetime
    finished_at: datetime
    kind: str = "incremental"
    failures: dict[str, str] = field(default_factory=dict)
    detail: SyncDetail = field(default_factory=SyncDetail)

    @property
    def summary(self) -> str | None:
        count = len(self.failures)
        if not count:
            return None
        return f"{count} sync error{'' if count == 1 else 's'}"

    def to_json(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "kind": self.kind,
            "started_at": format_timestamp(self.started_at),
            "finished_at": format_timestamp(self.finished_at),
            "failures": dict(self.failures),
            "detail": asdict(self.detail),
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "SyncOutcome":
        return cls(
            status=SyncStatus(data["status"]),
            kind=data.get("kind", "incremental"),
            started_at=parse_timestamp(data["started_at"]),
            finished_at=parse_timestamp(data["finished_at"]),
            failures=dict(data.get("failures") or {}),
            detail=SyncDetail(**(data.get("detail") or {})),
        )


def outcome_status(uploaded: int, errors: int) -> SyncStatus:
    if uploaded and not errors:
        return SyncStatus.SUCCESS
    if uploaded and errors:
        return SyncStatus.PARTIAL
    if errors:
        return SyncStatus.FAILED
    return SyncStatus.NO_NEW_DATA


class SyncManager:
    """Run sync cycles and the backfill against one data source.

    Usage::

        manager = SyncManager(store, engine, delivery, tracker)
        outcome = await manager.sync()            # throttled
        outcome = await manager.sync(force=True)  # always runs
        manager.start_backfill()
    """

    def __init__(
        self,
        store: SettingsStore,
        engine: IncrementalSyncEngine,
        delivery: BatchDelivery,
        tracker: FullBackfillProgressTracker,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._engine = engine
        self._delivery = delivery
        self._tracker = tracker
        self._clock = clock
        self._sleep = sleep
        self._stream_locks: dict[str, asyncio.Lock] = {
            self.config.samples_stream.key: asyncio.Lock(),
            self.config.workouts_stream.key: asyncio.Lock(),
        }
        self._source_lock = asyncio.Lock()
        self._backfill_task: asyncio.Task | None = None
        self._backfill_running = False

    @property
    def config(self) -> CollectorConfig:
        return self._engine.config

    @property
    def engine(self) -> IncrementalSyncEngine:
        return self._engine

    @property
    def tracker(self) -> FullBackfillProgressTracker:
        return self._tracker

    # ------------------------------------------------------------------
    # Categories
    # ------------------------------------------------------------------

    def categories(self) -> dict[str, bool]:
        """Return every known category id with its toggle state."""
        return {
            cid: bool(self._store.get(category_key(cid), False))
            for cid in self.config.category_ids
        }

    def enabled_categories(self) -> set[str]:
        return {cid for cid, enabled in self.categories().items() if enabled}

    def set_category_enabled(self, category_id: str, enabled: bool) -> None:
        """Toggle a category.

        Raises:
            KeyError:         Unknown category id.
            PersistenceError: The toggle cannot be stored.
        """
        if category_id not in self.config.categories:
            raise KeyError(f"Unknown category '{category_id}'")
        self._store.set(category_key(category_id), bool(enabled))
        logger.info("Category %s %s", category_id, "enabled" if enabled else "disabled")

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def last_sync_date(self) -> datetime | None:
        raw = self._store.get(LAST_SYNC_KEY)
        if not raw:
            return None
        try:
            return parse_timestamp(raw)
        except (AttributeError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Corrupt last sync date: {raw!r}") from exc

    def last_outcome(self) -> SyncOutcome | None:
        raw = self._store.get(LAST_OUTCOME_KEY)
        if not raw:
            return None
        try:
            return SyncOutcome.from_json(raw)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Ignoring unreadable last sync outcome: %s", exc)
            return None

    def checkpoints(self) -> dict[str, datetime | None]:
        return self._engine.checkpoints.snapshot(list(self._stream_locks))

    def should_sync(self, now: datetime | None = None) -> bool:
        """Return True if the throttle interval has elapsed since the last sync."""
        last = self.last_sync_date()
        if last is None:
            return True
        elapsed = ((now or self._clock()) - last).total_seconds()
        return elapsed >= self.config.throttle_seconds

    @property
    def backfill_running(self) -> bool:
        return self._backfill_running

    # ------------------------------------------------------------------
    # Incremental sync
    # ------------------------------------------------------------------

    async def sync(self, force: bool = False) -> SyncOutcome | None:
        """Run both streams once.

        Returns None when throttled.  Pass-level errors are reported in the
        outcome, never raised.
        """
        started_at = self._clock()
        try:
            throttled = not force and not self.should_sync(started_at)
        except PersistenceError as exc:
            logger.warning("Cannot read last sync date; syncing anyway: %s", exc)
            throttled = False
        if throttled:
            logger.debug("Sync throttled (interval %ds)", self.config.throttle_seconds)
            return None

        outcome = SyncOutcome(
            status=SyncStatus.NO_NEW_DATA, started_at=started_at, finished_at=started_at
        )
        try:
            enabled = self.enabled_categories()
        except PersistenceError as exc:
            outcome.failures[self.config.collector_id] = str(exc)
            return self._finish(outcome)

        streams = (
            (self.config.samples_stream, self._engine.run_incremental_sync),
            (self.config.workouts_stream, self._engine.run_workout_sync),
        )
        for stream, run_pass in streams:
            try:
                await self._run_stream(stream, run_pass, enabled, outcome)
            except (SourceUnavailableError, NoEnabledCategoriesError) as exc:
                # Same answer for every stream; report it once.
                logger.warning("Sync aborted: %s", exc)
                outcome.failures[self.config.collector_id] = str(exc)
                break
            except SyncError as exc:
                logger.error("Stream %s failed: %s", stream.key, exc)
                outcome.failures[stream.key] = str(exc)

        return self._finish(outcome)

    async def _run_stream(
        self,
        stream: StreamConfig,
        run_pass: Callable[[set[str]], Awaitable[SyncPassResult]],
        enabled: set[str],
        outcome: SyncOutcome,
    ) -> None:
        async with self._stream_locks[stream.key]:
            async with self._source_lock:
                result = await run_pass(enabled)

            detail = outcome.detail
            detail.streams_run += 1
            detail.samples_collected += result.stats.samples_collected
            detail.types_queried += result.stats.types_queried
            detail.types_with_data += result.stats.types_with_data
            for type_id, reason in result.failed_types.items():
                outcome.failures[f"{stream.key}/{type_id}"] = reason

            if not result.batches:
                return

            report = await self._delivery.deliver(result.batches)
            detail.files_uploaded += len(report.uploaded)
            detail.files_skipped += len(report.skipped)
            for batch, reason in report.failed:
                outcome.failures[f"{stream.key}/{batch.upload_path}"] = reason

            self._engine.commit(stream.key, result.hold_watermark(report.watermark()))

    def _finish(self, outcome: SyncOutcome) -> SyncOutcome:
        outcome.finished_at = self._clock()
        outcome.detail.files_failed = len(outcome.failures)
        outcome.status = outcome_status(outcome.detail.files_uploaded, len(outcome.failures))
        try:
            self._store.set(LAST_SYNC_KEY, format_timestamp(outcome.finished_at))
            self._store.set(LAST_OUTCOME_KEY, outcome.to_json())
        except PersistenceError as exc:
            logger.error("Could not persist sync outcome: %s", exc)

        log = logger.info if outcome.status is not SyncStatus.FAILED else logger.warning
        log(
            "%s sync finished: %s, %d uploaded, %d unchanged%s",
            outcome.kind.capitalize(), outcome.status.value,
            outcome.detail.files_uploaded, outcome.detail.files_skipped,
            f", {outcome.summary}" if outcome.summary else "",
        )
        return outcome

    # ------------------------------------------------------------------
    # Backfill
    # ------------------------------------------------------------------

    async def discover_backfill(self) -> FullSyncProgress | None:
        """Build (or return the existing) backfill grid for the enabled categories."""
        return await self._tracker.discover(self.enabled_categories())

    async def run_backfill(self) -> SyncOutcome:
        """Advance every eligible day, oldest first.

        Raises:
            SyncInProgressError: A backfill run is already active.
        """
        if self._backfill_running:
            raise SyncInProgressError("A backfill is already running")
        self._backfill_running = True
        try:
            return await self._run_backfill()
        finally:
            self._backfill_running = False

    async def _run_backfill(self) -> SyncOutcome:
        started_at = self._clock()
        outcome = SyncOutcome(
            status=SyncStatus.NO_NEW_DATA, started_at=started_at,
            finished_at=started_at, kind="backfill",
        )
        try:
            progress = await self.discover_backfill()
        except SyncError as exc:
            outcome.failures[self.config.collector_id] = str(exc)
            return self._finish(outcome)
        if progress is None:
            return self._finish(outcome)

        delay = self.config.backfill.rate_limit_ms / 1000.0
        days = self._tracker.eligible_days()
        logger.info("Backfill starting: %d eligible days", len(days))

        for index, day in enumerate(days):
            try:
                async with self._source_lock:
                    status = await self._tracker.advance(day)
            except PersistenceError as exc:
                outcome.failures[self.config.collector_id] = str(exc)
                break
            except SyncError as exc:
                outcome.failures[f"backfill/{day.isoformat()}"] = str(exc)
                continue

            outcome.detail.streams_run += 1
            report = self._tracker.last_report
            if report is not None:
                outcome.detail.files_uploaded += len(report.uploaded)
                outcome.detail.files_skipped += len(report.skipped)
            if status.state is DayState.ERROR:
                outcome.failures[f"backfill/{day.isoformat()}"] = status.reason or "error"

            if delay and index < len(days) - 1:
                await self._sleep(delay)

        return self._finish(outcome)

    def start_backfill(self) -> asyncio.Task:
        """Run the backfill as a background task.

        Raises:
            SyncInProgressError: A backfill is already running.
        """
        if self._backfill_task is not None and not self._backfill_task.done():
            raise SyncInProgressError("A backfill is already running")
        self._backfill_task = asyncio.create_task(self.run_backfill(), name="healthsync-backfill")
        self._backfill_task.add_done_callback(self._log_backfill_exit)
        return self._backfill_task

    @staticmethod
    def _log_backfill_exit(task: asyncio.Task) -> None:
        if task.cancelled():
            logger.info("Backfill cancelled")
        elif task.exception() is not None:
            logger.error("Backfill crashed: %s", task.exception())

    async def cancel_backfill(self) -> bool:
        """Cancel the background backfill.  The in-flight day stays syncing.

        Returns:
            True if a running backfill was cancelled.
        """
        task = self._backfill_task
        if task is None or task.done():
            return False
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        return True

    def retry_failed(self) -> int:
        return self._tracker.retry_failed()

    def reset_backfill(self) -> None:
        """Clear all backfill progress.

        Raises:
            SyncInProgressError: A backfill is running.
        """
        if self._backfill_running:
            raise SyncInProgressError("Cancel the running backfill before resetting it")
        self._tracker.reset()

    async def aclose(self) -> None:
        """Stop the backfill and release the uploader's connections."""
        await self.cancel_backfill()
        close = getattr(self._delivery.uploader, "aclose", None)
        if close is not None:
            await close()
