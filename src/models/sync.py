"""Pydantic models for the sync API: outcomes, categories, backfill progress."""

from __future__ import annotations

from datetime import date, datetime

from pydantic import Field

from src.healthsync.sync.backfill import FullSyncProgress, MonthProgress
from src.healthsync.sync.scheduler import SyncOutcome
from src.models.base import HealthSyncBase


# ---------- Sync outcomes ----------

class SyncDetailRead(HealthSyncBase):
    samples_collected: int = 0
    types_queried: int = 0
    types_with_data: int = 0
    files_uploaded: int = 0
    files_skipped: int = 0
    files_failed: int = 0
    streams_run: int = 0


class SyncOutcomeRead(HealthSyncBase):
    status: str
    kind: str
    started_at: datetime
    finished_at: datetime
    summary: str | None = None
    failures: dict[str, str] = Field(default_factory=dict)
    detail: SyncDetailRead

    @classmethod
    def from_outcome(cls, outcome: SyncOutcome) -> "SyncOutcomeRead":
        return cls(
            status=outcome.status.value,
            kind=outcome.kind,
            started_at=outcome.started_at,
            finished_at=outcome.finished_at,
            summary=outcome.summary,
            failures=outcome.failures,
            detail=SyncDetailRead.model_validate(outcome.detail),
        )


class SyncRunResponse(HealthSyncBase):
    throttled: bool = False
    outcome: SyncOutcomeRead | None = None


class SyncStatusRead(HealthSyncBase):
    last_sync_date: datetime | None = None
    last_outcome: SyncOutcomeRead | None = None
    checkpoints: dict[str, datetime | None] = Field(default_factory=dict)
    backfill_running: bool = False


# ---------- Categories ----------

class CategoryRead(HealthSyncBase):
    id: str
    enabled: bool
    source_types: list[str] = Field(default_factory=list)


class CategoryUpdate(HealthSyncBase):
    enabled: bool


# ---------- Backfill ----------

class MonthProgressRead(HealthSyncBase):
    id: str
    year: int
    month: int
    status: str
    days_in_month: int
    first_day: int
    last_day: int
    days: dict[int, str] = Field(default_factory=dict)
    errors: dict[int, str] = Field(default_factory=dict)

    @classmethod
    def from_month(cls, month: MonthProgress) -> "MonthProgressRead":
        statuses = {d: month.day_status(d) for d in month.days}
        return cls(
            id=month.id,
            year=month.year,
            month=month.month,
            status=month.status.value,
            days_in_month=month.days_in_month,
            first_day=month.first_day,
            last_day=month.last_day,
            days={d: s.state.value for d, s in statuses.items()},
            errors={d: s.reason for d, s in statuses.items() if s.reason},
        )


class YearProgressRead(HealthSyncBase):
    year: int
    status: str
    months: list[MonthProgressRead]


class BackfillProgressRead(HealthSyncBase):
    start: date
    end: date
    status: str
    categories: list[str]
    counts: dict[str, int]
    completed_months: list[str]
    years: list[YearProgressRead]
    running: bool = False

    @classmethod
    def from_progress(cls, progress: FullSyncProgress, running: bool = False) -> "BackfillProgressRead":
        return cls(
            start=progress.start,
            end=progress.end,
            status=progress.status.value,
            categories=list(progress.categories),
            counts=progress.counts(),
            completed_months=progress.completed_month_keys,
            years=[
                YearProgressRead(
                    year=year,
                    status=progress.year_status(year).value,
                    months=[MonthProgressRead.from_month(m) for m in progress.months_for(year)],
                )
                for year in progress.years
            ],
            running=running,
        )


class RetryFailedResponse(HealthSyncBase):
    reset: int
