"""Wire settings into a ready-to-run SyncManager.

    settings → store, data source, uploader, engine, tracker → SyncManager
"""

from __future__ import annotations

import logging
from datetime import tzinfo
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from src.config import Settings, get_settings
from src.healthsync.adapters import AppleHealthExportSource
from src.healthsync.base import DeviceInfo, HealthDataSource, Uploader
from src.healthsync.config_loader import CollectorConfig, get_collector_config, load_collector_config
from src.healthsync.errors import ConfigValidationError
from src.healthsync.sync.backfill import FullBackfillProgressTracker
from src.healthsync.sync.checkpoint import SyncCheckpointStore
from src.healthsync.sync.dedup import UploadLedger
from src.healthsync.sync.delivery import BatchDelivery
from src.healthsync.sync.engine import IncrementalSyncEngine
from src.healthsync.sync.scheduler import SyncManager
from src.healthsync.sync.store import JsonFileSettingsStore, SettingsStore
from src.services.api_upload import ApiUploader
from src.services.r2 import R2Uploader

logger = logging.getLogger("healthsync.services.runtime")


def resolve_local_timezone(name: str) -> tzinfo | None:
    """Return the configured zone, or None to follow the host zone.

    Raises:
        ConfigValidationError: If ``name`` is not a known IANA zone.
    """
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigValidationError(f"Unknown LOCAL_TIMEZONE {name!r}") from exc


def device_info_from_settings(s: Settings) -> DeviceInfo:
    host = DeviceInfo.current()
    return DeviceInfo(
        name=s.device_name or host.name,
        model=s.device_model or host.model,
        system_version=s.device_system_version or host.system_version,
    )


def build_uploader(s: Settings) -> Uploader:
    """Return the upload capability selected by ``UPLOAD_BACKEND``."""
    if s.upload_backend == "api":
        return ApiUploader.from_settings(s)
    if s.upload_backend == "r2":
        return R2Uploader.from_settings(s)
    raise ConfigValidationError(
        f"UPLOAD_BACKEND must be 'api' or 'r2', got {s.upload_backend!r}"
    )


def build_sync_manager(
    settings: Settings | None = None,
    *,
    store: SettingsStore | None = None,
    source: HealthDataSource | None = None,
    uploader: Uploader | None = None,
    config: CollectorConfig | None = None,
) -> SyncManager:
    """Assemble the full sync stack.  Any component may be injected."""
    s = settings or get_settings()
    if config is None:
        config = (
            load_collector_config(Path(s.collector_config_path))
            if s.collector_config_path
            else get_collector_config()
        )
    store = store or JsonFileSettingsStore(s.state_file)
    source = source or AppleHealthExportSource(s.apple_health_export_path)
    uploader = uploader or build_uploader(s)
    local_tz = resolve_local_timezone(s.local_timezone)

    engine = IncrementalSyncEngine(
        source,
        SyncCheckpointStore(store),
        config=config,
        device_info=device_info_from_settings(s),
        local_tz=local_tz,
    )
    delivery = BatchDelivery(uploader, UploadLedger(store), config.upload)
    tracker = FullBackfillProgressTracker(store, engine, delivery, local_tz=local_tz)

    logger.info(
        "Sync runtime ready: source=%s uploader=%s state=%s",
        source.SOURCE_ID, type(uploader).__name__, s.state_file,
    )
    return SyncManager(store, engine, delivery, tracker)
