"""Base classes and canonical data models for the health-data sync engine.

Every data source must subclass HealthDataSource and return the raw record
types defined here; every upload backend must subclass Uploader.  The
normalizer turns raw records into NormalizedSample, the single uniform shape
that is serialized into upload batches.
"""

from __future__ import annotations

import logging
import platform
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Union

logger = logging.getLogger("healthsync")

#: Metadata key carrying the IANA zone the sample was recorded in.
TIMEZONE_METADATA_KEY = "HKTimeZone"

#: Type identifier shared by every workout session.
WORKOUT_TYPE_ID = "HKWorkoutTypeIdentifier"

JSONValue = Union[str, int, float, bool, None, list["JSONValue"], dict[str, "JSONValue"]]


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def format_timestamp(value: datetime) -> str:
    """Format a datetime as an ISO-8601 UTC instant with milliseconds.

    Naive datetimes are assumed to already be UTC.

    >>> format_timestamp(datetime(2026, 2, 9, 12, 0, tzinfo=timezone.utc))
    '2026-02-09T12:00:00.000Z'
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S") + f".{value.microsecond // 1000:03d}Z"


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 string produced by format_timestamp() back to UTC."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Raw records (what a data source returns)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MetadataQuantity:
    """A physical quantity stored as a metadata value (e.g. elevation ascended)."""

    value: float
    unit: str


@dataclass(frozen=True, kw_only=True)
class RawRecord:
    """Fields common to every record a data source produces.

    Attributes:
        type_id:  Opaque source type identifier (e.g. HKQuantityTypeIdentifierStepCount).
        start:    Timezone-aware start instant.
        end:      Timezone-aware end instant.
        source:   Originating app bundle / source name.
        device:   Recording device model, when known.
        metadata: Unfiltered metadata as returned by the source.
    """

    type_id: str
    start: datetime
    end: datetime
    source: str
    device: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, kw_only=True)
class QuantityRecord(RawRecord):
    """A continuous measurement in whatever unit the source reported."""

    value: float
    unit: str


@dataclass(frozen=True, kw_only=True)
class CategoryRecord(RawRecord):
    """A discrete categorical event carrying an integer code.

    Sources that spell values out may report one no code table knows; such a
    record carries the readable ``label`` instead and leaves ``value`` unset.
    """

    value: int | None = None
    label: str | None = None


@dataclass(frozen=True)
class WorkoutStatistic:
    """One aggregated statistic attached to a workout (e.g. total energy)."""

    type_id: str
    value: float
    unit: str


@dataclass(frozen=True, kw_only=True)
class WorkoutRecord(RawRecord):
    """A workout session.  Its payload is encoded into its own file."""

    uuid: str
    activity_type: int
    duration_s: float
    statistics: tuple[WorkoutStatistic, ...] = ()


@dataclass(frozen=True)
class RoutePoint:
    """A raw GPS fix from a workout route.  Stored as-is, never downsampled.

    ``speed`` and ``course`` are negative when the fix has no valid reading.
    """

    timestamp: datetime
    lat: float
    lon: float
    alt: float
    h_acc: float
    v_acc: float
    speed: float
    speed_acc: float
    course: float
    course_acc: float

    def to_json(self) -> dict[str, JSONValue]:
        return {
            "t": format_timestamp(self.timestamp),
            "lat": self.lat,
            "lon": self.lon,
            "alt": self.alt,
            "h_acc": self.h_acc,
            "v_acc": self.v_acc,
            "speed": self.speed,
            "speed_acc": self.speed_acc,
            "course": self.course,
            "course_acc": self.course_acc,
        }


# ---------------------------------------------------------------------------
# Canonical / normalized models
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NormalizedSample:
    """One atomic observation in the uniform upload schema.

    Attributes:
        type:     Stable kebab-case type name (e.g. "step-count").
        start:    UTC start instant.
        end:      UTC end instant; equal to start for instantaneous readings.
        value:    Number for measurements, label for categorical samples,
                  None for container-only records.
        unit:     Unit string for numeric values, otherwise None.
        source:   Originating app/device identifier.
        device:   Recording device, when known.
        metadata: JSON-safe extra attributes, or None when there are none.
    """

    type: str
    start: datetime
    end: datetime
    value: float | str | None
    unit: str | None
    source: str
    device: str | None = None
    metadata: dict[str, JSONValue] | None = None

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError(
                f"Sample {self.type} starts after it ends ({self.start} > {self.end})"
            )

    @property
    def watermark(self) -> datetime:
        return self.end or self.start

    def to_json(self) -> dict[str, JSONValue]:
        """Return the JSON object for this sample, omitting absent fields."""
        out: dict[str, JSONValue] = {
            "type": self.type,
            "start": format_timestamp(self.start),
            "end": format_timestamp(self.end),
            "source": self.source,
        }
        if self.value is not None:
            out["value"] = self.value
        if self.unit is not None:
            out["unit"] = self.unit
        if self.device is not None:
            out["device"] = self.device
        if self.metadata:
            out["metadata"] = self.metadata
        return out

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "NormalizedSample":
        return cls(
            type=data["type"],
            start=parse_timestamp(data["start"]),
            end=parse_timestamp(data["end"]),
            value=data.get("value"),
            unit=data.get("unit"),
            source=data["source"],
            device=data.get("device"),
            metadata=data.get("metadata"),
        )


@dataclass(frozen=True)
class StatValue:
    """A workout statistic with its unit (e.g. energy: 435 kcal)."""

    value: float
    unit: str

    def to_json(self) -> dict[str, JSONValue]:
        return {"value": self.value, "unit": self.unit}


@dataclass(frozen=True)
class NormalizedWorkout:
    """A workout session ready to be written as its own file.

    Attributes:
        uuid:          Session identifier; also names the file.
        activity_type: Readable activity label (``unknown_<code>`` when unmapped).
        start:         UTC start instant.
        end:           UTC end instant.
        duration_s:    Active duration in seconds.
        source:        Originating app/device identifier.
        device:        Recording device, when known.
        stats:         Aggregated statistics keyed by kebab-case type name.
        metadata:      JSON-safe extra attributes, or None.
        route:         Ordered GPS fixes, or None for workouts without a route.
    """

    uuid: str
    activity_type: str
    start: datetime
    end: datetime
    duration_s: float
    source: str
    device: str | None = None
    stats: dict[str, StatValue] = field(default_factory=dict)
    metadata: dict[str, JSONValue] | None = None
    route: tuple[RoutePoint, ...] | None = None


@dataclass(frozen=True)
class DeviceInfo:
    """Descriptor of the device performing the sync, embedded in every file."""

    name: str
    model: str
    system_version: str

    @classmethod
    def current(cls) -> "DeviceInfo":
        """Describe the host this process runs on."""
        return cls(
            name=platform.node() or "Unknown",
            model=platform.machine() or "Unknown",
            system_version=platform.release() or "Unknown",
        )

    def to_json(self) -> dict[str, JSONValue]:
        return {
            "name": self.name,
            "model": self.model,
            "system_version": self.system_version,
        }


@dataclass(frozen=True)
class UploadBatch:
    """One file ready for upload.

    Attributes:
        date:                The bucket day, in the resolved timezone.
        stream_key:          Stream the batch belongs to.
        upload_path:         Deterministic destination path.
        payload:             Serialized JSON bytes.
        watermark_candidate: Latest end instant among the batch's samples;
                             becomes the stream checkpoint once delivered.
        earliest_start:      Earliest start instant among the batch's samples.
        fingerprint:         SHA-256 of the payload body without ``synced_at``.
        sample_count:        Number of samples (1 for a workout file).
        kind:                "samples" for day batches, "workout" for session files.
    """

    date: date
    stream_key: str
    upload_path: str
    payload: bytes
    watermark_candidate: datetime
    earliest_start: datetime
    fingerprint: str
    sample_count: int
    kind: str = "samples"


@dataclass(frozen=True)
class CollectionStats:
    """Statistics from one collection pass.

    Attributes:
        types_queried:     Number of distinct source types queried.
        types_with_data:   Types that returned at least one usable record.
        samples_collected: Total normalized samples (or sessions) collected.
    """

    types_queried: int = 0
    types_with_data: int = 0
    samples_collected: int = 0

    def __add__(self, other: "CollectionStats") -> "CollectionStats":
        return CollectionStats(
            types_queried=self.types_queried + other.types_queried,
            types_with_data=self.types_with_data + other.types_with_data,
            samples_collected=self.samples_collected + other.samples_collected,
        )


# ---------------------------------------------------------------------------
# Consumed capabilities
# ---------------------------------------------------------------------------


class HealthDataSource(ABC):
    """Abstract device data source.

    Subclasses must implement:
        - query_records()
        - discover_earliest_record_date()

    Optional overrides:
        - is_available()  (defaults to True)
        - query_route()   (defaults to no route)
    """

    #: Unique slug for logging and registry lookups.
    SOURCE_ID: str = "unknown"

    #: Human-readable name for logging and UI.
    DISPLAY_NAME: str = "Unknown Source"

    def is_available(self) -> bool:
        """Return False when the data source cannot be used at all."""
        return True

    @abstractmethod
    async def query_records(
        self, type_id: str, window_start: datetime, window_end: datetime
    ) -> list[RawRecord]:
        """Fetch records of one type whose start lies in [window_start, window_end).

        Args:
            type_id:      Source type identifier.
            window_start: Inclusive lower bound on record start.
            window_end:   Exclusive upper bound on record start.

        Returns:
            Raw records, any order.

        Raises:
            QueryError: If this type cannot be queried.
        """

    @abstractmethod
    async def discover_earliest_record_date(self, type_ids: set[str]) -> datetime | None:
        """Return the earliest record start across ``type_ids``, or None if no data."""

    async def query_route(self, workout: WorkoutRecord) -> list[RoutePoint] | None:
        """Return the GPS route recorded with a workout, or None (indoor workout)."""
        return None


class Uploader(ABC):
    """Abstract upload capability: put bytes at a path, confirm or raise."""

    @abstractmethod
    async def upload_file(self, path: str, data: bytes) -> None:
        """Durably store ``data`` at ``path``.

        Returning normally is the delivery confirmation.

        Raises:
            UploadError: If the file was not confirmed as stored.
        """
