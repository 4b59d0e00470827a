"""Exception taxonomy for the health-data sync engine.

Failures below the pass level (one record, one source type, one backfill day)
are absorbed and aggregated by the engine.  The exceptions here are the ones
that escape a component and must be handled by its caller.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for every error raised by the sync engine."""


class SourceUnavailableError(SyncError):
    """The device data source cannot be accessed at all on this host."""


class NoEnabledCategoriesError(SyncError):
    """No data category is enabled, so there is nothing to query."""

    def __init__(self, message: str = "No data sources enabled") -> None:
        super().__init__(message)


class PersistenceError(SyncError):
    """Reading or writing persisted sync state failed.

    Fatal to the current pass: without the true watermark the engine cannot
    safely decide what to query or commit.
    """


class QueryError(SyncError):
    """A single source-type query failed."""

    def __init__(self, type_id: str, reason: str) -> None:
        self.type_id = type_id
        self.reason = reason
        super().__init__(f"Failed to query {type_id}: {reason}")


class UploadError(SyncError):
    """The upload capability did not confirm delivery of a file."""

    def __init__(self, path: str, reason: str, status_code: int | None = None) -> None:
        self.path = path
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"Upload of {path} failed: {reason}")

    @property
    def retryable(self) -> bool:
        """Transport failures, server errors, timeouts and throttling are retried."""
        if self.status_code is None:
            return True
        return self.status_code >= 500 or self.status_code in (408, 429)


class InvalidTransitionError(SyncError, ValueError):
    """A backfill day cell was asked to make a transition it does not allow."""


class SyncInProgressError(SyncError):
    """A sync of the same kind is already running."""


class ConfigValidationError(ValueError):
    """Raised when collector_config.yaml fails validation."""
