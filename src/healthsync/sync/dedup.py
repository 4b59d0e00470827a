"""Upload deduplication for the health-data collector.

Day-batch paths are unique per pass, so a re-run never overwrites an earlier
file and the ledger keeps no entry for them.  Workout files, however, are
addressed by session id and are rebuilt whenever a session falls inside a
pass's window again.  The ledger remembers the content fingerprint last
confirmed at each workout path so an unchanged file is not uploaded twice.

Ledger keys:
    sync.watermark.<upload_path>  →  SHA-256 hex digest
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Iterable, Mapping

from src.healthsync.base import UploadBatch
from src.healthsync.sync.store import SettingsStore

logger = logging.getLogger("healthsync.sync.dedup")

LEDGER_PREFIX = "sync.watermark."

# Fields that change on every pass without changing the content.
VOLATILE_FIELDS: frozenset[str] = frozenset({"synced_at"})

# Batch kinds whose upload path is stable across passes.
LEDGERED_KINDS: frozenset[str] = frozenset({"workout"})


def payload_content_hash(payload: Mapping, exclude: Iterable[str] = VOLATILE_FIELDS) -> str:
    """Compute a content hash for detecting identical payloads.

    Args:
        payload: The document about to be uploaded.
        exclude: Top-level keys left out of the hash.

    Returns:
        SHA-256 hex digest of the canonicalized JSON.
    """
    skipped = set(exclude)
    body = {k: v for k, v in payload.items() if k not in skipped}
    canonical = json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def ledger_key(upload_path: str) -> str:
    return f"{LEDGER_PREFIX}{upload_path}"


def is_ledgered(batch: UploadBatch) -> bool:
    return batch.kind in LEDGERED_KINDS


class UploadLedger:
    """Persisted map of upload path → last confirmed content fingerprint.

    Usage::

        ledger = UploadLedger(store)
        if ledger.has_changed(batch.upload_path, batch.fingerprint):
            await uploader.upload_file(batch.upload_path, batch.payload)
            ledger.record_upload(batch.upload_path, batch.fingerprint)
    """

    def __init__(self, store: SettingsStore) -> None:
        self._store = store

    def has_changed(self, upload_path: str, fingerprint: str) -> bool:
        """Return True unless ``fingerprint`` was already confirmed at ``upload_path``.

        Raises:
            PersistenceError: If the store cannot be read.
        """
        return self._store.get(ledger_key(upload_path)) != fingerprint

    def record_upload(self, upload_path: str, fingerprint: str) -> None:
        """Remember a confirmed upload.

        Raises:
            PersistenceError: If the store cannot be written.
        """
        self._store.set(ledger_key(upload_path), fingerprint)

    def clear(self) -> int:
        """Forget every recorded upload.  Returns the number of entries removed."""
        removed = self._store.delete_prefix(LEDGER_PREFIX)
        logger.info("Cleared %d upload ledger entries", removed)
        return removed
