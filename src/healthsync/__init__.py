"""HealthSync data collector.

This package reads health records from a device data source, normalizes
them into a flat sample shape, groups them by local calendar day, and
uploads one JSON file per day and stream.  Progress is tracked with
per-stream checkpoints and a resumable day-by-day backfill grid.

Subpackages:
    adapters/ — Device data sources (Apple Health export)
    sync/     — Settings store, checkpoints, upload ledger, sync engine, backfill, scheduler

Core modules:
    base          — HealthDataSource / Uploader ABCs and canonical data models
    type_names    — Platform type identifiers → kebab-case names
    codes         — Integer value/activity codes → readable names
    normalizer    — Raw records → NormalizedSample
    buckets       — Local-day bucketing of samples
    payloads      — Upload file bodies, paths and fingerprints
    config_loader — Load/validate/reload collector_config.yaml
"""

from src.healthsync.base import (
    HealthDataSource,
    NormalizedSample,
    NormalizedWorkout,
    UploadBatch,
    Uploader,
)
from src.healthsync.config_loader import CollectorConfig, get_collector_config

__all__ = [
    "HealthDataSource",
    "Uploader",
    "NormalizedSample",
    "NormalizedWorkout",
    "UploadBatch",
    "CollectorConfig",
    "get_collector_config",
]
