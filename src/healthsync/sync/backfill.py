"""Full-history backfill: a resumable year × month × day progress grid.

The grid is the only durable record of backfill progress.  It is built once
by ``discover()`` from the earliest record date through today, persisted
after every day-cell mutation, and cleared only by ``reset()``.

Day-cell transitions::

    pending → syncing → done
                      → error(reason) → pending   (retry_failed only)

Month and year rollups are computed from the day cells on demand and never
stored.  A cell found in ``syncing`` when no advance is in flight (the
process died mid-day) is re-run exactly like ``pending``.

Usage::

    tracker = FullBackfillProgressTracker(store, engine, delivery)
    await tracker.discover({"steps", "sleep_stages"})
    for day in tracker.eligible_days():
        await tracker.advance(day)
"""

from __future__ import annotations

import asyncio
import calendar
import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from enum import Enum
from typing import Any, Callable, Iterable, Mapping

from src.healthsync.base import format_timestamp, parse_timestamp, utc_now
from src.healthsync.buckets import local_timezone
from src.healthsync.errors import (
    InvalidTransitionError,
    PersistenceError,
    SyncError,
    SyncInProgressError,
)
from src.healthsync.sync.delivery import BatchDelivery, DeliveryReport
from src.healthsync.sync.engine import IncrementalSyncEngine
from src.healthsync.sync.store import SettingsStore

logger = logging.getLogger("healthsync.sync.backfill")

PROGRESS_KEY = "sync.fullProgress"
PROGRESS_FORMAT_VERSION = 1


class DayState(str, Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    DONE = "done"
    ERROR = "error"


class AggregateStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class DayStatus:
    """State of one day cell; ``reason`` is set only for errors."""

    state: DayState
    reason: str | None = None

    @classmethod
    def pending(cls) -> "DayStatus":
        return cls(DayState.PENDING)

    @classmethod
    def syncing(cls) -> "DayStatus":
        return cls(DayState.SYNCING)

    @classmethod
    def done(cls) -> "DayStatus":
        return cls(DayState.DONE)

    @classmethod
    def error(cls, reason: str) -> "DayStatus":
        return cls(DayState.ERROR, reason)

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {"state": self.state.value}
        if self.reason is not None:
            out["reason"] = self.reason
        return out

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "DayStatus":
        return cls(DayState(data["state"]), data.get("reason"))


PENDING = DayStatus.pending()


def rollup(statuses: Iterable[DayStatus]) -> AggregateStatus:
    """Aggregate day cells: error wins, then done-if-all, then active, else pending."""
    states = [s.state for s in statuses]
    if not states:
        return AggregateStatus.DONE
    if DayState.ERROR in states:
        return AggregateStatus.ERROR
    if all(s is DayState.DONE for s in states):
        return AggregateStatus.DONE
    if DayState.SYNCING in states or DayState.DONE in states:
        return AggregateStatus.ACTIVE
    return AggregateStatus.PENDING


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


@dataclass(frozen=True)
class MonthProgress:
    """The covered days of one calendar month.

    Attributes:
        year, month:  The calendar month.
        first_day:    First covered day (later than 1 in the first month).
        last_day:     Last covered day (today in the current month).
        day_statuses: Non-pending cells only; an absent day is pending.
    """

    year: int
    month: int
    first_day: int
    last_day: int
    day_statuses: Mapping[int, DayStatus] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    @property
    def days_in_month(self) -> int:
        return days_in_month(self.year, self.month)

    @property
    def days(self) -> range:
        return range(self.first_day, self.last_day + 1)

    def day_status(self, day: int) -> DayStatus:
        return self.day_statuses.get(day, PENDING)

    @property
    def status(self) -> AggregateStatus:
        return rollup(self.day_status(d) for d in self.days)


@dataclass(frozen=True)
class FullSyncProgress:
    """Immutable snapshot of the backfill grid.

    Every mutation returns a new snapshot; the tracker persists it before
    the mutating call returns.

    Attributes:
        start:      First covered local day (earliest record).
        end:        Last covered local day (today at discovery).
        categories: Category ids the grid was discovered for.
        days:       Non-pending day cells keyed by date.
        created_at: When the grid was discovered.
    """

    start: date
    end: date
    categories: tuple[str, ...]
    days: Mapping[date, DayStatus] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)

    # ------------------------------------------------------------------
    # Grid
    # ------------------------------------------------------------------

    def __contains__(self, day: object) -> bool:
        return isinstance(day, date) and self.start <= day <= self.end

    def day_status(self, day: date) -> DayStatus:
        if day not in self:
            raise KeyError(f"{day} is outside the backfill range {self.start}..{self.end}")
        return self.days.get(day, PENDING)

    def all_days(self) -> list[date]:
        return [self.start + timedelta(days=i) for i in range((self.end - self.start).days + 1)]

    @property
    def years(self) -> list[int]:
        return list(range(self.start.year, self.end.year + 1))

    @property
    def months(self) -> list[MonthProgress]:
        """Every covered month, oldest first."""
        out: list[MonthProgress] = []
        year, month = self.start.year, self.start.month
        while (year, month) <= (self.end.year, self.end.month):
            first = self.start.day if (year, month) == (self.start.year, self.start.month) else 1
            last = (
                self.end.day
                if (year, month) == (self.end.year, self.end.month)
                else days_in_month(year, month)
            )
            statuses = {
                d.day: s for d, s in self.days.items() if d.year == year and d.month == month
            }
            out.append(MonthProgress(year, month, first, last, statuses))
            year, month = (year + 1, 1) if month == 12 else (year, month + 1)
        return out

    def months_for(self, year: int) -> list[MonthProgress]:
        return [m for m in self.months if m.year == year]

    def month(self, year: int, month: int) -> MonthProgress | None:
        for m in self.months_for(year):
            if m.month == month:
                return m
        return None

    def month_status(self, year: int, month: int) -> AggregateStatus:
        progress = self.month(year, month)
        if progress is None:
            raise KeyError(f"{year:04d}-{month:02d} is outside the backfill range")
        return progress.status

    def year_status(self, year: int) -> AggregateStatus:
        if year not in self.years:
            raise KeyError(f"{year} is outside the backfill range")
        return rollup(
            self.days.get(d, PENDING) for d in self.all_days() if d.year == year
        )

    @property
    def status(self) -> AggregateStatus:
        return rollup(self.days.get(d, PENDING) for d in self.all_days())

    @property
    def completed_month_keys(self) -> list[str]:
        return [m.id for m in self.months if m.status is AggregateStatus.DONE]

    def counts(self) -> dict[str, int]:
        """Number of day cells in each state."""
        totals = {state.value: 0 for state in DayState}
        for day in self.all_days():
            totals[self.days.get(day, PENDING).state.value] += 1
        return totals

    def days_in(self, *states: DayState) -> list[date]:
        return [d for d in self.all_days() if self.days.get(d, PENDING).state in states]

    # ------------------------------------------------------------------
    # Mutation (returns new snapshots)
    # ------------------------------------------------------------------

    def with_day(self, day: date, status: DayStatus) -> "FullSyncProgress":
        if day not in self:
            raise KeyError(f"{day} is outside the backfill range {self.start}..{self.end}")
        days = dict(self.days)
        if status.state is DayState.PENDING:
            days.pop(day, None)
        else:
            days[day] = status
        return replace(self, days=days)

    def with_failed_reset(self) -> "FullSyncProgress":
        days = {d: s for d, s in self.days.items() if s.state is not DayState.ERROR}
        return replace(self, days=days)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_json(self) -> dict[str, Any]:
        return {
            "version": PROGRESS_FORMAT_VERSION,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "categories": list(self.categories),
            "created_at": format_timestamp(self.created_at),
            "days": {d.isoformat(): s.to_json() for d, s in sorted(self.days.items())},
        }

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "FullSyncProgress":
        return cls(
            start=date.fromisoformat(data["start"]),
            end=date.fromisoformat(data["end"]),
            categories=tuple(data.get("categories", ())),
            days={
                date.fromisoformat(d): DayStatus.from_json(s)
                for d, s in (data.get("days") or {}).items()
            },
            created_at=parse_timestamp(data["created_at"]) if data.get("created_at") else utc_now(),
        )


def day_window(day: date, local_tz: tzinfo) -> tuple[datetime, datetime]:
    """Return [local midnight, next local midnight) for ``day`` in UTC."""
    start = datetime.combine(day, time.min, tzinfo=local_tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=local_tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


class FullBackfillProgressTracker:
    """Owns the persisted backfill grid and runs single days through the pipeline.

    Args:
        store:    Settings store holding the grid.
        engine:   Engine used to collect one day's window.
        delivery: Batch delivery for the collected batches.
        local_tz: Zone defining day boundaries; defaults to the device zone.
        clock:    UTC clock (tests inject a fixed one).

    Attributes:
        last_report: Delivery report of the most recent advance(), if it
                     reached the upload step.
    """

    def __init__(
        self,
        store: SettingsStore,
        engine: IncrementalSyncEngine,
        delivery: BatchDelivery,
        local_tz: tzinfo | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._engine = engine
        self._delivery = delivery
        self._local_tz = local_tz
        self._clock = clock
        self._progress: FullSyncProgress | None = None
        self._loaded = False
        self._in_flight: set[date] = set()
        self.last_report: DeliveryReport | None = None
        self._discover_lock = asyncio.Lock()

    @property
    def local_tz(self) -> tzinfo:
        return self._local_tz or local_timezone()

    @property
    def in_flight(self) -> frozenset[date]:
        return frozenset(self._in_flight)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> FullSyncProgress | None:
        """Return the persisted grid, reading the store on first use.

        Raises:
            PersistenceError: If the stored grid cannot be read or parsed.
        """
        if self._loaded:
            return self._progress
        raw = self._store.get(PROGRESS_KEY)
        if raw is not None:
            try:
                self._progress = FullSyncProgress.from_json(raw)
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                raise PersistenceError(f"Corrupt backfill progress: {exc}") from exc
        self._loaded = True
        return self._progress

    def _save(self, progress: FullSyncProgress) -> FullSyncProgress:
        self._store.set(PROGRESS_KEY, progress.to_json())
        self._progress = progress
        self._loaded = True
        return progress

    @property
    def progress(self) -> FullSyncProgress | None:
        return self.load()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def discover(self, enabled_category_ids: Iterable[str]) -> FullSyncProgress | None:
        """Build the grid from the earliest record through today.

        Returns the existing grid unchanged when one is already stored, and
        None when the source has no data for the enabled categories.

        Raises:
            SourceUnavailableError:   The data source cannot be used.
            NoEnabledCategoriesError: No category is enabled.
            PersistenceError:         The grid cannot be read or written.
        """
        async with self._discover_lock:
            existing = self.load()
            if existing is not None:
                return existing

            enabled = self._engine.check_preconditions(enabled_category_ids)
            type_ids = self._engine.config.source_types(enabled)
            earliest = await self._engine.source.discover_earliest_record_date(type_ids)
            if earliest is None:
                logger.info("Backfill discovery found no data for %s", sorted(enabled))
                return None

            zone = self.local_tz
            today = self._clock().astimezone(zone).date()
            start = min(earliest.astimezone(zone).date(), today)
            progress = FullSyncProgress(
                start=start,
                end=today,
                categories=tuple(sorted(enabled)),
                created_at=self._clock(),
            )
            logger.info(
                "Backfill discovered %s..%s (%d days, %d months)",
                start, today, len(progress.all_days()), len(progress.months),
            )
            return self._save(progress)

    def eligible_days(self) -> list[date]:
        """Days to run next, oldest first: pending, plus syncing days not in flight."""
        progress = self.load()
        if progress is None:
            return []
        return [
            d for d in progress.days_in(DayState.PENDING, DayState.SYNCING)
            if d not in self._in_flight
        ]

    async def advance(self, day: date) -> DayStatus:
        """Run one day through query → normalize → bucket → upload.

        The day is persisted as syncing before any work starts and as done
        or error afterwards.  Advancing a done day is a no-op.  A cancelled
        advance leaves the day syncing.

        Raises:
            SyncError:              No grid has been discovered.
            KeyError:               ``day`` is outside the grid.
            InvalidTransitionError: The day is in error (use retry_failed()).
            SyncInProgressError:    The day is already being advanced.
            PersistenceError:       The grid cannot be written.
        """
        progress = self.load()
        if progress is None:
            raise SyncError("No backfill progress; run discover() first")

        current = progress.day_status(day)
        if current.state is DayState.DONE:
            logger.debug("Backfill day %s already done", day)
            return current
        if current.state is DayState.ERROR:
            raise InvalidTransitionError(
                f"Backfill day {day} is in error ({current.reason}); retry failed days first"
            )
        if day in self._in_flight:
            raise SyncInProgressError(f"Backfill day {day} is already syncing")

        self._in_flight.add(day)
        try:
            self._save(progress.with_day(day, DayStatus.syncing()))
            outcome = await self._run_day(day, progress.categories)
            self._save(self.load().with_day(day, outcome))
        finally:
            self._in_flight.discard(day)

        if outcome.state is DayState.ERROR:
            logger.warning("Backfill day %s failed: %s", day, outcome.reason)
        else:
            logger.info("Backfill day %s done", day)
        return outcome

    async def _run_day(self, day: date, categories: Iterable[str]) -> DayStatus:
        self.last_report = None
        window_start, window_end = day_window(day, self.local_tz)
        try:
            result = await self._engine.collect_window(categories, window_start, window_end)
            report = await self._delivery.deliver(result.batches)
            self.last_report = report
        except PersistenceError:
            raise
        except SyncError as exc:
            return DayStatus.error(str(exc))

        if report.failed:
            return DayStatus.error(
                f"{len(report.failed)} upload(s) failed: {report.failed[0][1]}"
            )
        if result.failed_types:
            return DayStatus.error("Query failed for " + ", ".join(sorted(result.failed_types)))
        return DayStatus.done()

    def retry_failed(self) -> int:
        """Reset every error day to pending.  Returns the number reset.

        Raises:
            PersistenceError: If the grid cannot be written.
        """
        progress = self.load()
        if progress is None:
            return 0
        failed = len(progress.days_in(DayState.ERROR))
        if failed:
            self._save(progress.with_failed_reset())
            logger.info("Reset %d failed backfill days to pending", failed)
        return failed

    def reset(self) -> None:
        """Discard the grid; the next discover() rebuilds it from scratch.

        Raises:
            SyncInProgressError: A day is being advanced.
            PersistenceError:    The grid cannot be removed.
        """
        if self._in_flight:
            raise SyncInProgressError("Cannot reset backfill while days are syncing")
        self._store.delete(PROGRESS_KEY)
        self._progress = None
        self._loaded = True
        logger.info("Backfill progress reset")
