"""Upload file encoding and path construction.

Two file kinds are produced:

Day batch — every sample of one stream for one local day::

    <prefix>/YYYY/MM/DD/sample-<syncTimestamp>.json
    {"device_info": {...}, "samples": [...], "synced_at": "..."}

Workout session — one file per session::

    <prefix>/YYYY/MM/DD/workout-<uuid>.json
    {"activity_type": ..., "device_info": {...}, "duration_s": ..., "route": [...], ...}

All JSON is compact with sorted keys so that identical content always yields
identical bytes.  ``syncTimestamp`` is the pass's ISO-8601 instant with every
``:`` replaced by ``-``.
"""

from __future__ import annotations

import json
from datetime import date, datetime, tzinfo
from typing import Any, Mapping, Sequence

from src.healthsync.base import (
    DeviceInfo,
    JSONValue,
    NormalizedSample,
    NormalizedWorkout,
    UploadBatch,
    format_timestamp,
    parse_timestamp,
)
from src.healthsync.buckets import day_key
from src.healthsync.config_loader import StreamConfig
from src.healthsync.sync.dedup import payload_content_hash


def dumps(document: Mapping[str, Any]) -> bytes:
    """Serialize a document to compact, key-sorted UTF-8 JSON."""
    return json.dumps(
        document, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


def path_timestamp(synced_at: datetime) -> str:
    """Return a filesystem-safe form of the pass timestamp.

    >>> from datetime import timezone
    >>> path_timestamp(datetime(2026, 2, 21, 7, 30, tzinfo=timezone.utc))
    '2026-02-21T07-30-00.000Z'
    """
    return format_timestamp(synced_at).replace(":", "-")


def _day(value: date | str) -> date:
    return date.fromisoformat(value) if isinstance(value, str) else value


def day_directory(prefix: str, day: date | str) -> str:
    d = _day(day)
    return f"{prefix.rstrip('/')}/{d.year:04d}/{d.month:02d}/{d.day:02d}"


def day_batch_path(prefix: str, day: date | str, synced_at: datetime) -> str:
    return f"{day_directory(prefix, day)}/sample-{path_timestamp(synced_at)}.json"


def workout_path(prefix: str, day: date | str, uuid: str) -> str:
    return f"{day_directory(prefix, day)}/workout-{uuid}.json"


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


def day_batch_document(
    samples: Sequence[NormalizedSample], synced_at: datetime, device_info: DeviceInfo
) -> dict[str, JSONValue]:
    return {
        "synced_at": format_timestamp(synced_at),
        "device_info": device_info.to_json(),
        "samples": [sample.to_json() for sample in samples],
    }


def workout_document(
    workout: NormalizedWorkout, synced_at: datetime, device_info: DeviceInfo
) -> dict[str, JSONValue]:
    """Build the session document.  ``route``, ``device`` and ``metadata``
    are left out entirely when absent."""
    doc: dict[str, JSONValue] = {
        "uuid": workout.uuid,
        "activity_type": workout.activity_type,
        "start": format_timestamp(workout.start),
        "end": format_timestamp(workout.end),
        "duration_s": workout.duration_s,
        "source": workout.source,
        "synced_at": format_timestamp(synced_at),
        "device_info": device_info.to_json(),
        "stats": {name: stat.to_json() for name, stat in workout.stats.items()},
    }
    if workout.device is not None:
        doc["device"] = workout.device
    if workout.metadata:
        doc["metadata"] = workout.metadata
    if workout.route is not None:
        doc["route"] = [point.to_json() for point in workout.route]
    return doc


def encode_day_batch(
    samples: Sequence[NormalizedSample], synced_at: datetime, device_info: DeviceInfo
) -> bytes:
    return dumps(day_batch_document(samples, synced_at, device_info))


def encode_workout_file(
    workout: NormalizedWorkout, synced_at: datetime, device_info: DeviceInfo
) -> bytes:
    return dumps(workout_document(workout, synced_at, device_info))


def parse_day_batch(data: bytes) -> tuple[datetime, dict[str, Any], list[NormalizedSample]]:
    """Parse a day-batch file back into (synced_at, device_info, samples).

    Raises:
        ValueError: If the bytes are not a day-batch document.
    """
    try:
        doc = json.loads(data)
        return (
            parse_timestamp(doc["synced_at"]),
            dict(doc["device_info"]),
            [NormalizedSample.from_json(item) for item in doc["samples"]],
        )
    except (KeyError, TypeError) as exc:
        raise ValueError(f"Not a day-batch document: {exc}") from exc


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------


def build_day_batches(
    buckets: Mapping[str, Sequence[NormalizedSample]],
    stream: StreamConfig,
    synced_at: datetime,
    device_info: DeviceInfo,
) -> list[UploadBatch]:
    """Build one UploadBatch per non-empty day bucket, oldest day first."""
    batches: list[UploadBatch] = []
    for key in sorted(buckets):
        samples = buckets[key]
        if not samples:
            continue
        doc = day_batch_document(samples, synced_at, device_info)
        batches.append(
            UploadBatch(
                date=_day(key),
                stream_key=stream.key,
                upload_path=day_batch_path(stream.prefix, key, synced_at),
                payload=dumps(doc),
                watermark_candidate=max(sample.watermark for sample in samples),
                earliest_start=min(sample.start for sample in samples),
                fingerprint=payload_content_hash(doc),
                sample_count=len(samples),
            )
        )
    return batches


def build_workout_batch(
    workout: NormalizedWorkout,
    stream: StreamConfig,
    synced_at: datetime,
    device_info: DeviceInfo,
    local_tz: tzinfo,
) -> UploadBatch:
    """Build the UploadBatch for one session file, dated by its local start day."""
    key = day_key(workout.start, workout.metadata, local_tz)
    doc = workout_document(workout, synced_at, device_info)
    return UploadBatch(
        date=_day(key),
        stream_key=stream.key,
        upload_path=workout_path(stream.prefix, key, workout.uuid),
        payload=dumps(doc),
        watermark_candidate=workout.end,
        earliest_start=workout.start,
        fingerprint=payload_content_hash(doc),
        sample_count=1,
        kind="workout",
    )
