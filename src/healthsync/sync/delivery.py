"""Batch delivery: upload with capped exponential backoff, then record.

A batch counts as confirmed once the uploader returns normally, or, for a
workout file, when the upload ledger shows the identical content already
stored at its path.  Only confirmed batches may feed a checkpoint.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Sequence

from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from src.healthsync.base import UploadBatch, Uploader
from src.healthsync.config_loader import UploadConfig
from src.healthsync.errors import UploadError
from src.healthsync.sync.dedup import UploadLedger, is_ledgered
from src.healthsync.sync.engine import safe_watermark

logger = logging.getLogger("healthsync.sync.delivery")


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, UploadError) and exc.retryable


@dataclass
class DeliveryReport:
    """Outcome of delivering a list of batches.

    Attributes:
        uploaded: Batches the uploader confirmed.
        skipped:  Batches whose identical content was already stored.
        failed:   (batch, reason) for batches that exhausted their retries.
    """

    uploaded: list[UploadBatch] = field(default_factory=list)
    skipped: list[UploadBatch] = field(default_factory=list)
    failed: list[tuple[UploadBatch, str]] = field(default_factory=list)

    @property
    def confirmed(self) -> list[UploadBatch]:
        return self.uploaded + self.skipped

    @property
    def failed_batches(self) -> list[UploadBatch]:
        return [batch for batch, _ in self.failed]

    def watermark(self) -> datetime | None:
        """The watermark these results allow a stream to commit."""
        return safe_watermark(self.confirmed, self.failed_batches)


class BatchDelivery:
    """Deliver upload batches in order through an Uploader.

    Args:
        uploader: The upload capability.
        ledger:   Upload ledger used to skip unchanged files.
        policy:   Retry policy (attempts, backoff base and cap).
        wait:     Override for the tenacity wait strategy (tests use wait_none()).
    """

    def __init__(
        self,
        uploader: Uploader,
        ledger: UploadLedger,
        policy: UploadConfig,
        wait: wait_base | None = None,
    ) -> None:
        self._uploader = uploader
        self._ledger = ledger
        self._policy = policy
        self._wait = wait or wait_exponential(
            multiplier=policy.backoff_base_seconds,
            min=policy.backoff_base_seconds,
            max=policy.backoff_cap_seconds,
        )

    @property
    def ledger(self) -> UploadLedger:
        return self._ledger

    @property
    def uploader(self) -> Uploader:
        return self._uploader

    async def upload(self, batch: UploadBatch) -> None:
        """Upload one batch, retrying transient failures.

        Raises:
            UploadError: After the last attempt fails, or at once for a
                         non-retryable rejection.
        """
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._policy.max_attempts),
            wait=self._wait,
            retry=retry_if_exception(_is_retryable),
            reraise=True,
            before_sleep=lambda state: logger.warning(
                "Upload of %s failed (attempt %d/%d); retrying",
                batch.upload_path, state.attempt_number, self._policy.max_attempts,
            ),
        ):
            with attempt:
                await self._uploader.upload_file(batch.upload_path, batch.payload)

    async def deliver(self, batches: Sequence[UploadBatch]) -> DeliveryReport:
        """Deliver every batch; one failure never stops the rest.

        Raises:
            PersistenceError: If the upload ledger cannot be read or written.
        """
        report = DeliveryReport()
        for batch in batches:
            ledgered = is_ledgered(batch)
            if ledgered and not self._ledger.has_changed(batch.upload_path, batch.fingerprint):
                logger.debug("Skipping unchanged %s", batch.upload_path)
                report.skipped.append(batch)
                continue
            try:
                await self.upload(batch)
            except UploadError as exc:
                logger.error("Giving up on %s: %s", batch.upload_path, exc.reason)
                report.failed.append((batch, exc.reason))
                continue
            if ledgered:
                await asyncio.to_thread(
                    self._ledger.record_upload, batch.upload_path, batch.fingerprint
                )
            report.uploaded.append(batch)

        logger.info(
            "Delivered %d batches (%d uploaded, %d unchanged, %d failed)",
            len(batches), len(report.uploaded), len(report.skipped), len(report.failed),
        )
        return report
