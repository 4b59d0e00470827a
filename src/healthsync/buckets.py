"""DayBucketer: group normalized samples by the subject's local calendar day.

Each sample's day is the calendar date of its ``start`` in the IANA zone
named by its ``HKTimeZone`` metadata, or in the device-local zone when that
key is absent or invalid.  Two samples at the same instant may therefore land
in different buckets.
"""

from __future__ import annotations

import logging
from datetime import datetime, tzinfo
from typing import Any, Iterable, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from src.healthsync.base import TIMEZONE_METADATA_KEY, NormalizedSample

logger = logging.getLogger("healthsync.buckets")


def local_timezone() -> tzinfo:
    """Return the device's current local zone."""
    return datetime.now().astimezone().tzinfo


def resolve_timezone(metadata: Mapping[str, Any] | None, local_tz: tzinfo) -> tzinfo:
    """Return the zone named in ``metadata``, or ``local_tz``."""
    name = (metadata or {}).get(TIMEZONE_METADATA_KEY)
    if not isinstance(name, str) or not name:
        return local_tz
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.debug("Unknown timezone %r in sample metadata; using local zone", name)
        return local_tz


def day_key(start: datetime, metadata: Mapping[str, Any] | None, local_tz: tzinfo) -> str:
    """Return the ``YYYY-MM-DD`` bucket key for an instant."""
    zone = resolve_timezone(metadata, local_tz)
    return start.astimezone(zone).strftime("%Y-%m-%d")


def sort_key(sample: NormalizedSample) -> tuple[datetime, datetime, str]:
    return (sample.start, sample.end, sample.source)


def sort_samples(samples: Iterable[NormalizedSample]) -> list[NormalizedSample]:
    """Order samples by start, then end, then source."""
    return sorted(samples, key=sort_key)


def bucket(
    samples: Iterable[NormalizedSample], local_tz: tzinfo | None = None
) -> dict[str, list[NormalizedSample]]:
    """Group samples into day buckets.

    Args:
        samples:  Normalized samples in any order.
        local_tz: Device-local zone; defaults to the host's current zone.

    Returns:
        Mapping of ``YYYY-MM-DD`` → samples in deterministic order.  Keys are
        inserted in ascending date order.
    """
    zone = local_tz or local_timezone()
    grouped: dict[str, list[NormalizedSample]] = {}
    for sample in samples:
        grouped.setdefault(day_key(sample.start, sample.metadata, zone), []).append(sample)
    return {key: sort_samples(grouped[key]) for key in sorted(grouped)}
