"""SyncCheckpointStore: the per-stream watermark.

A watermark is the latest instant already durably delivered for a stream.
It is read at the start of each incremental pass and only ever moves forward,
and only after a confirmed upload.  The regular sample stream and the workout
stream are checkpointed independently.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from src.healthsync.base import format_timestamp, parse_timestamp
from src.healthsync.errors import PersistenceError
from src.healthsync.sync.store import SettingsStore

logger = logging.getLogger("healthsync.sync.checkpoint")

ANCHOR_PREFIX = "sync.anchor."

# Watermarks are stored with millisecond precision.
CHECKPOINT_RESOLUTION = timedelta(milliseconds=1)


def anchor_key(stream_key: str) -> str:
    return f"{ANCHOR_PREFIX}{stream_key}"


class SyncCheckpointStore:
    """Monotonic watermark persistence keyed by stream."""

    def __init__(self, store: SettingsStore) -> None:
        self._store = store

    def get(self, stream_key: str) -> datetime | None:
        """Return the stream's watermark, or None if it never synced.

        Raises:
            PersistenceError: If the stored value cannot be read or parsed.
        """
        raw = self._store.get(anchor_key(stream_key))
        if raw is None:
            return None
        try:
            return parse_timestamp(raw)
        except (AttributeError, TypeError, ValueError) as exc:
            raise PersistenceError(
                f"Corrupt checkpoint for stream {stream_key}: {raw!r}"
            ) from exc

    def advance(self, stream_key: str, watermark: datetime) -> datetime:
        """Move the stream's watermark forward to ``watermark``.

        A value at or before the current watermark leaves it unchanged.

        Returns:
            The watermark in effect after the call.

        Raises:
            PersistenceError: If the store cannot be read or written.
        """
        current = self.get(stream_key)
        if current is not None and watermark <= current:
            logger.debug(
                "Checkpoint %s unchanged (%s <= %s)", stream_key, watermark, current
            )
            return current
        self._store.set(anchor_key(stream_key), format_timestamp(watermark))
        logger.info("Checkpoint %s advanced to %s", stream_key, format_timestamp(watermark))
        return parse_timestamp(format_timestamp(watermark))

    def clear(self, stream_key: str) -> None:
        """Forget a stream's watermark so the next pass uses the default lookback."""
        self._store.delete(anchor_key(stream_key))
        logger.info("Checkpoint %s cleared", stream_key)

    def snapshot(self, stream_keys: list[str]) -> dict[str, datetime | None]:
        """Return the current watermark of every listed stream."""
        return {key: self.get(key) for key in stream_keys}

