"""Apple Health export adapter.

Reads the ``export.xml`` produced by the Health app's "Export All Health
Data" action, plus the GPX files it references for workout routes::

    apple_health_export/
        export.xml
        workout-routes/route_2026-02-20_7.12am.gpx

The export is parsed once, on first query, and indexed by type identifier.
Records are returned as the raw record types the normalizer consumes:

- ``<Record>`` with a numeric value  → QuantityRecord
- ``<Record>`` with a category value → CategoryRecord
- ``<Workout>``                      → WorkoutRecord (+ WorkoutStatistics)

Exports carry no workout UUIDs; a stable one is derived from the session's
activity, interval and source so that re-imports address the same file.
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from xml.etree import ElementTree as ET

from src.healthsync import codes
from src.healthsync.base import (
    WORKOUT_TYPE_ID,
    CategoryRecord,
    HealthDataSource,
    MetadataQuantity,
    QuantityRecord,
    RawRecord,
    RoutePoint,
    WorkoutRecord,
    WorkoutStatistic,
)
from src.healthsync.errors import QueryError

logger = logging.getLogger("healthsync.adapters.apple_health")

EXPORT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S %z"

_QUANTITY_PREFIX = "HKQuantityTypeIdentifier"
_CATEGORY_PREFIX = "HKCategoryTypeIdentifier"
_OTHER_ACTIVITY = 3000

_GPX_NS = {"gpx": "http://www.topografix.com/GPX/1/1"}
_NUMBER_RE = re.compile(r"^-?\d+(\.\d+)?([eE][-+]?\d+)?$")
_QUANTITY_RE = re.compile(r"^(-?\d+(?:\.\d+)?)\s+(\S+)$")
_DEVICE_NAME_RE = re.compile(r"\bname:([^,>]+)")

_WORKOUT_NAMESPACE = uuid.UUID("6b1f5c8e-3d1a-4f0e-9a57-2c4e8d0b7a31")


def parse_export_date(value: str) -> datetime:
    """Parse an export timestamp (``2026-02-20 07:12:03 -0800``) to UTC."""
    return datetime.strptime(value.strip(), EXPORT_DATE_FORMAT).astimezone(timezone.utc)


def parse_device(value: str | None) -> str | None:
    """Pull the device name out of an export ``device`` attribute.

    The attribute looks like ``<<HKDevice: 0x...>, name:Apple Watch, model:Watch, ...>``.
    """
    if not value:
        return None
    match = _DEVICE_NAME_RE.search(value)
    return match.group(1).strip() if match else value.strip()


def coerce_metadata_value(value: str) -> Any:
    """Turn a MetadataEntry string back into a typed value.

    Integers and decimals become numbers, ``"12.5 m"`` becomes a
    MetadataQuantity, export timestamps become datetimes; anything else
    stays a string.
    """
    text = value.strip()
    if _NUMBER_RE.match(text):
        return int(text) if text.lstrip("-").isdigit() else float(text)
    quantity = _QUANTITY_RE.match(text)
    if quantity:
        return MetadataQuantity(value=float(quantity.group(1)), unit=quantity.group(2))
    try:
        return parse_export_date(text)
    except ValueError:
        return value


def _metadata(element: ET.Element) -> dict[str, Any]:
    return {
        entry.get("key", ""): coerce_metadata_value(entry.get("value", ""))
        for entry in element.findall("MetadataEntry")
        if entry.get("key")
    }


def _float(value: str | None, default: float = -1.0) -> float:
    try:
        return float(value) if value is not None else default
    except ValueError:
        return default


def workout_uuid(activity: int, start: datetime, end: datetime, source: str) -> str:
    """Derive a stable session id for an export workout."""
    key = f"{activity}|{start.isoformat()}|{end.isoformat()}|{source}"
    return str(uuid.uuid5(_WORKOUT_NAMESPACE, key)).upper()


class AppleHealthExportSource(HealthDataSource):
    """HealthDataSource backed by an Apple Health ``export.xml``."""

    SOURCE_ID = "apple_health_export"
    DISPLAY_NAME = "Apple Health Export"

    def __init__(self, export_path: str | Path) -> None:
        self._export_path = Path(export_path)
        self._index: dict[str, list[RawRecord]] | None = None
        self._routes: dict[str, Path] = {}
        self._load_lock = asyncio.Lock()

    @property
    def export_path(self) -> Path:
        return self._export_path

    def is_available(self) -> bool:
        return self._export_path.is_file()

    # ------------------------------------------------------------------
    # HealthDataSource
    # ------------------------------------------------------------------

    async def query_records(
        self, type_id: str, window_start: datetime, window_end: datetime
    ) -> list[RawRecord]:
        index = await self._ensure_loaded(type_id)
        return [
            record for record in index.get(type_id, [])
            if window_start <= record.start < window_end
        ]

    async def discover_earliest_record_date(self, type_ids: set[str]) -> datetime | None:
        index = await self._ensure_loaded(WORKOUT_TYPE_ID)
        starts = [
            record.start
            for type_id in type_ids
            for record in index.get(type_id, [])
        ]
        return min(starts) if starts else None

    async def query_route(self, workout: WorkoutRecord) -> list[RoutePoint] | None:
        await self._ensure_loaded(WORKOUT_TYPE_ID)
        route_file = self._routes.get(workout.uuid)
        if route_file is None:
            return None
        return await asyncio.to_thread(self.parse_gpx, route_file)

    # ------------------------------------------------------------------
    # Export parsing
    # ------------------------------------------------------------------

    async def _ensure_loaded(self, type_id: str) -> dict[str, list[RawRecord]]:
        async with self._load_lock:
            if self._index is None:
                try:
                    self._index = await asyncio.to_thread(self._parse_export)
                except (OSError, ET.ParseError) as exc:
                    raise QueryError(type_id, f"cannot read {self._export_path.name}: {exc}") from exc
        return self._index

    def _parse_export(self) -> dict[str, list[RawRecord]]:
        index: dict[str, list[RawRecord]] = defaultdict(list)
        skipped = 0

        for _, element in ET.iterparse(self._export_path, events=("end",)):
            if element.tag == "Record":
                record = self._parse_record(element)
            elif element.tag == "Workout":
                record = self._parse_workout(element)
            else:
                continue
            if record is None:
                skipped += 1
            else:
                index[record.type_id].append(record)
            element.clear()

        for records in index.values():
            records.sort(key=lambda r: r.start)
        logger.info(
            "Loaded %d records across %d types from %s (%d skipped)",
            sum(len(r) for r in index.values()), len(index), self._export_path, skipped,
        )
        return dict(index)

    def _parse_record(self, element: ET.Element) -> RawRecord | None:
        type_id = element.get("type", "")
        try:
            common = {
                "type_id": type_id,
                "start": parse_export_date(element.get("startDate", "")),
                "end": parse_export_date(element.get("endDate", "")),
                "source": element.get("sourceName", "Unknown"),
                "device": parse_device(element.get("device")),
                "metadata": _metadata(element),
            }
        except ValueError as exc:
            logger.debug("Skipping %s record with bad dates: %s", type_id, exc)
            return None

        raw_value = element.get("value", "")
        if type_id.startswith(_QUANTITY_PREFIX):
            try:
                return QuantityRecord(value=float(raw_value), unit=element.get("unit", "count"), **common)
            except ValueError:
                logger.debug("Skipping %s with non-numeric value %r", type_id, raw_value)
                return None

        if type_id.startswith(_CATEGORY_PREFIX):
            if not raw_value:
                logger.debug("Skipping %s with no value", type_id)
                return None
            code = codes.code_for_name(codes.category_table(type_id), raw_value)
            if code is None:
                label = codes.unknown_value_name(type_id, raw_value)
                logger.debug("Unmapped %s value %r kept as %s", type_id, raw_value, label)
                return CategoryRecord(label=label, **common)
            return CategoryRecord(value=code, **common)

        return None

    def _parse_workout(self, element: ET.Element) -> WorkoutRecord | None:
        raw_activity = element.get("workoutActivityType", "")
        activity = codes.code_for_name(codes.WORKOUT_ACTIVITY_TYPES, raw_activity)
        if activity is None:
            logger.debug("Unmapped workout activity %r; recording as other", raw_activity)
            activity = _OTHER_ACTIVITY
        try:
            start = parse_export_date(element.get("startDate", ""))
            end = parse_export_date(element.get("endDate", ""))
        except ValueError as exc:
            logger.debug("Skipping workout with bad dates: %s", exc)
            return None

        source = element.get("sourceName", "Unknown")
        duration = _float(element.get("duration"), default=(end - start).total_seconds())
        if element.get("duration") is not None and element.get("durationUnit", "min") == "min":
            duration *= 60.0

        statistics = []
        for stat in element.findall("WorkoutStatistics"):
            value = stat.get("sum") or stat.get("average")
            if value is None or stat.get("type") is None:
                continue
            statistics.append(
                WorkoutStatistic(
                    type_id=stat.get("type"),
                    value=_float(value),
                    unit=stat.get("unit", "count"),
                )
            )

        session_id = workout_uuid(activity, start, end, source)
        reference = element.find("WorkoutRoute/FileReference")
        if reference is not None and reference.get("path"):
            self._routes[session_id] = self._export_path.parent / reference.get("path").lstrip("/")

        return WorkoutRecord(
            type_id=WORKOUT_TYPE_ID,
            start=start,
            end=end,
            source=source,
            device=parse_device(element.get("device")),
            metadata=_metadata(element),
            uuid=session_id,
            activity_type=activity,
            duration_s=duration,
            statistics=tuple(statistics),
        )

    @staticmethod
    def parse_gpx(path: Path) -> list[RoutePoint] | None:
        """Read every track point of a GPX route file, in file order.

        Accuracy, speed and course fields missing from the file are -1.
        Returns None when the file is missing or unreadable.
        """
        try:
            root = ET.parse(path).getroot()
        except (OSError, ET.ParseError) as exc:
            logger.warning("Cannot read route %s: %s", path, exc)
            return None

        points: list[RoutePoint] = []
        for trkpt in root.iterfind(".//gpx:trkpt", _GPX_NS):
            ext = trkpt.find("gpx:extensions", _GPX_NS)

            def extension(name: str) -> float:
                node = ext.find(f"gpx:{name}", _GPX_NS) if ext is not None else None
                return _float(node.text if node is not None else None)

            time_node = trkpt.find("gpx:time", _GPX_NS)
            if time_node is None or not time_node.text:
                continue
            points.append(
                RoutePoint(
                    timestamp=datetime.fromisoformat(time_node.text.replace("Z", "+00:00")),
                    lat=float(trkpt.get("lat", "0")),
                    lon=float(trkpt.get("lon", "0")),
                    alt=_float(getattr(trkpt.find("gpx:ele", _GPX_NS), "text", None), 0.0),
                    h_acc=extension("hAcc"),
                    v_acc=extension("vAcc"),
                    speed=extension("speed"),
                    speed_acc=extension("speedAccuracy"),
                    course=extension("course"),
                    course_acc=extension("courseAccuracy"),
                )
            )
        return points or None
