"""Load, validate, and hot-reload the collector configuration.

The config lives in ``collector_config.yaml`` alongside this module.  At
startup it is loaded once and cached.  Call ``reload_collector_config()`` to
re-read from disk after an edit — no restart required.

Usage::

    from src.healthsync.config_loader import get_collector_config

    config = get_collector_config()
    types = config.source_types({"heart_rate", "steps"})
    unit = config.preferred_unit("HKQuantityTypeIdentifierHeartRate")  # "count/min"
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

import yaml

from src.healthsync.base import WORKOUT_TYPE_ID
from src.healthsync.errors import ConfigValidationError

logger = logging.getLogger("healthsync.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "collector_config.yaml"

DEFAULT_UNIT = "count"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class StreamConfig:
    """One independently checkpointed sync lane."""

    key: str
    prefix: str


@dataclass
class UploadConfig:
    """Retry policy for the upload capability: capped exponential backoff."""

    max_attempts: int
    backoff_base_seconds: float
    backoff_cap_seconds: float


@dataclass
class BackfillConfig:
    """Full-history backfill settings."""

    rate_limit_ms: int


@dataclass
class CollectorConfig:
    """Complete, validated collector configuration.

    Attributes:
        version:               Config schema version string.
        collector_id:          Slug of the collector (used in failure keys).
        display_name:          Human-readable collector name.
        initial_lookback_days: Lookback window when a stream has no checkpoint.
        throttle_seconds:      Minimum spacing between non-forced syncs.
        samples_stream:        The per-type-per-day sample stream.
        workouts_stream:       The per-session workout stream.
        upload:                Upload retry policy.
        backfill:              Backfill settings.
        categories:            Category id → source type identifiers.
        preferred_units:       Quantity type identifier → unit string.
    """

    version: str
    collector_id: str
    display_name: str
    initial_lookback_days: int
    throttle_seconds: int
    samples_stream: StreamConfig
    workouts_stream: StreamConfig
    upload: UploadConfig
    backfill: BackfillConfig
    categories: dict[str, list[str]]
    preferred_units: dict[str, str]
    _raw: dict = field(default_factory=dict, repr=False)

    # ------------------------------------------------------------------
    # Convenience accessors
    # ------------------------------------------------------------------

    @property
    def category_ids(self) -> list[str]:
        return list(self.categories)

    def source_types(self, category_ids: Iterable[str]) -> set[str]:
        """Return the de-duplicated source types covered by ``category_ids``.

        Unknown category ids contribute nothing.
        """
        types: set[str] = set()
        for category_id in category_ids:
            types.update(self.categories.get(category_id, []))
        return types

    def sample_types(self, category_ids: Iterable[str]) -> set[str]:
        """Source types for the day-bucketed sample stream (no workouts)."""
        return self.source_types(category_ids) - {WORKOUT_TYPE_ID}

    def includes_workouts(self, category_ids: Iterable[str]) -> bool:
        return WORKOUT_TYPE_ID in self.source_types(category_ids)

    def preferred_unit(self, type_id: str) -> str:
        """Return the normalization unit for a quantity type.

        Falls back to the dimensionless ``count`` for unlisted types.
        """
        return self.preferred_units.get(type_id, DEFAULT_UNIT)

    def has_preferred_unit(self, type_id: str) -> bool:
        return type_id in self.preferred_units


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Collector config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> CollectorConfig:
    """Validate the raw YAML dict and construct a CollectorConfig.

    Raises:
        ConfigValidationError: If required fields are missing or invalid.
    """
    errors: list[str] = []

    def _positive_int(section: dict, key: str, default: int, where: str) -> int:
        value = section.get(key, default)
        try:
            number = int(value)
        except (TypeError, ValueError):
            errors.append(f"{where}.{key} must be an integer, got {value!r}")
            return default
        if number < 0:
            errors.append(f"{where}.{key} must not be negative, got {number}")
        return number

    def _float(section: dict, key: str, default: float, where: str) -> float:
        value = section.get(key, default)
        try:
            return float(value)
        except (TypeError, ValueError):
            errors.append(f"{where}.{key} must be a number, got {value!r}")
            return default

    version = str(raw.get("version", "1.0"))

    # ── Collector ──
    col_raw = raw.get("collector") or {}
    collector_id = str(col_raw.get("id", "healthkit"))
    display_name = str(col_raw.get("display_name", "Apple Health"))
    lookback = _positive_int(col_raw, "initial_lookback_days", 7, "collector")
    throttle = _positive_int(col_raw, "throttle_seconds", 300, "collector")

    # ── Streams ──
    streams_raw = raw.get("streams") or {}
    streams: dict[str, StreamConfig] = {}
    for name in ("samples", "workouts"):
        st_raw = streams_raw.get(name)
        if not isinstance(st_raw, dict):
            errors.append(f"streams.{name} is missing or not a mapping")
            streams[name] = StreamConfig(key=name, prefix=name)
            continue
        key = st_raw.get("key")
        prefix = st_raw.get("prefix")
        if not key:
            errors.append(f"Missing required key 'key' in section 'streams.{name}'")
        if not prefix:
            errors.append(f"Missing required key 'prefix' in section 'streams.{name}'")
        streams[name] = StreamConfig(key=str(key or name), prefix=str(prefix or name).strip("/"))
    if streams["samples"].key == streams["workouts"].key:
        errors.append("streams.samples.key and streams.workouts.key must differ")

    # ── Upload ──
    up_raw = raw.get("upload") or {}
    upload = UploadConfig(
        max_attempts=_positive_int(up_raw, "max_attempts", 4, "upload"),
        backoff_base_seconds=_float(up_raw, "backoff_base_seconds", 1.0, "upload"),
        backoff_cap_seconds=_float(up_raw, "backoff_cap_seconds", 30.0, "upload"),
    )
    if upload.max_attempts < 1:
        errors.append("upload.max_attempts must be at least 1")

    # ── Backfill ──
    bf_raw = raw.get("backfill") or {}
    backfill = BackfillConfig(
        rate_limit_ms=_positive_int(bf_raw, "rate_limit_ms", 0, "backfill"),
    )

    # ── Categories ──
    cat_raw = raw.get("categories")
    if not cat_raw:
        errors.append("'categories' section is missing or empty")
    categories: dict[str, list[str]] = {}
    for category_id, types in (cat_raw or {}).items():
        if types is None:
            types = []
        if not isinstance(types, list) or not all(isinstance(t, str) for t in types):
            errors.append(f"categories.{category_id} must be a list of type identifiers")
            continue
        categories[str(category_id)] = list(types)

    # ── Preferred units ──
    units_raw = raw.get("preferred_units") or {}
    preferred_units: dict[str, str] = {}
    for type_id, unit in units_raw.items():
        if not isinstance(unit, str) or not unit:
            errors.append(f"preferred_units.{type_id} must be a unit string, got {unit!r}")
            continue
        preferred_units[str(type_id)] = unit

    if errors:
        raise ConfigValidationError(
            f"collector_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return CollectorConfig(
        version=version,
        collector_id=collector_id,
        display_name=display_name,
        initial_lookback_days=lookback,
        throttle_seconds=throttle,
        samples_stream=streams["samples"],
        workouts_stream=streams["workouts"],
        upload=upload,
        backfill=backfill,
        categories=categories,
        preferred_units=preferred_units,
        _raw=raw,
    )


def load_collector_config(path: Path | None = None) -> CollectorConfig:
    """Load and validate the collector config from disk.

    Args:
        path: Override path to YAML. Uses the bundled collector_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded collector config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: CollectorConfig | None = None
_config_lock = threading.Lock()


def get_collector_config() -> CollectorConfig:
    """Return the global CollectorConfig singleton, loading it on first call.

    Thread-safe.  Use ``reload_collector_config()`` to refresh after YAML changes.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_collector_config()
    return _config


def reload_collector_config(path: Path | None = None) -> CollectorConfig:
    """Reload the collector config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_collector_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded collector config: %s → %s", old_version, new_config.version)
    return new_config


def config_from_mapping(raw: dict[str, Any]) -> CollectorConfig:
    """Build a CollectorConfig from an in-memory mapping (tests, overrides)."""
    return _validate_and_build(raw)
