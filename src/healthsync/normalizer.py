"""SampleNormalizer: raw source records → NormalizedSample / NormalizedWorkout.

Three record shapes arrive from a data source:

- QuantityRecord  → numeric value converted to the type's preferred unit
- CategoryRecord  → integer code resolved to a readable label (or its carried label)
- WorkoutRecord   → not a sample; encoded by normalize_workout() into its
                    own session file

A record that cannot be normalized is logged and skipped.  One bad record
never aborts the rest of the batch.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from src.healthsync import codes
from src.healthsync.base import (
    CategoryRecord,
    JSONValue,
    MetadataQuantity,
    NormalizedSample,
    NormalizedWorkout,
    QuantityRecord,
    RawRecord,
    RoutePoint,
    StatValue,
    WorkoutRecord,
    format_timestamp,
)
from src.healthsync.config_loader import CollectorConfig, get_collector_config
from src.healthsync.type_names import resolve

logger = logging.getLogger("healthsync.normalizer")


class UnitConversionError(ValueError):
    """The reported unit cannot be expressed in the requested unit."""


# ---------------------------------------------------------------------------
# Unit conversion
# ---------------------------------------------------------------------------

# unit → (dimension, factor to the dimension's base unit)
_UNITS: dict[str, tuple[str, float]] = {
    # dimensionless
    "count": ("count", 1.0),
    # frequency (base: count/min)
    "count/min": ("frequency", 1.0),
    "count/s": ("frequency", 60.0),
    "count/hr": ("frequency", 1 / 60),
    # length (base: m)
    "m": ("length", 1.0),
    "cm": ("length", 0.01),
    "mm": ("length", 0.001),
    "km": ("length", 1000.0),
    "in": ("length", 0.0254),
    "ft": ("length", 0.3048),
    "yd": ("length", 0.9144),
    "mi": ("length", 1609.344),
    # mass (base: kg)
    "kg": ("mass", 1.0),
    "g": ("mass", 0.001),
    "mg": ("mass", 1e-6),
    "mcg": ("mass", 1e-9),
    "lb": ("mass", 0.45359237),
    "oz": ("mass", 0.028349523125),
    # energy (base: kcal)
    "kcal": ("energy", 1.0),
    "Cal": ("energy", 1.0),
    "cal": ("energy", 0.001),
    "kJ": ("energy", 1 / 4.184),
    "J": ("energy", 1 / 4184),
    # time (base: min)
    "min": ("time", 1.0),
    "s": ("time", 1 / 60),
    "ms": ("time", 1 / 60000),
    "hr": ("time", 60.0),
    "h": ("time", 60.0),
    "d": ("time", 1440.0),
    # volume (base: L)
    "L": ("volume", 1.0),
    "mL": ("volume", 0.001),
    "ml": ("volume", 0.001),
    "fl_oz_us": ("volume", 0.0295735295625),
    "cup_us": ("volume", 0.2365882365),
    # ratio
    "%": ("percent", 1.0),
    # oxygen uptake
    "ml/kg*min": ("vo2", 1.0),
    "mL/min·kg": ("vo2", 1.0),
    "mL/kg·min": ("vo2", 1.0),
}

_TEMPERATURE_UNITS = frozenset({"degC", "degF"})

# Metadata quantities are reduced to a bare number in one of these units.
_METADATA_QUANTITY_UNITS: tuple[str, ...] = ("count", "m", "kcal", "min")


def convert_value(value: float, from_unit: str, to_unit: str) -> float:
    """Convert ``value`` between two units of the same dimension.

    Raises:
        UnitConversionError: If either unit is unknown or the dimensions differ.
    """
    if from_unit == to_unit:
        return float(value)

    if from_unit in _TEMPERATURE_UNITS or to_unit in _TEMPERATURE_UNITS:
        if from_unit == "degF" and to_unit == "degC":
            return (value - 32.0) * 5.0 / 9.0
        if from_unit == "degC" and to_unit == "degF":
            return value * 9.0 / 5.0 + 32.0
        raise UnitConversionError(f"Cannot convert {from_unit!r} to {to_unit!r}")

    try:
        from_dim, from_factor = _UNITS[from_unit]
        to_dim, to_factor = _UNITS[to_unit]
    except KeyError as exc:
        raise UnitConversionError(f"Unknown unit {exc.args[0]!r}") from exc
    if from_dim != to_dim:
        raise UnitConversionError(
            f"Cannot convert {from_unit!r} ({from_dim}) to {to_unit!r} ({to_dim})"
        )
    return value * from_factor / to_factor


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _finite(value: float, what: str) -> float:
    number = float(value)
    if not math.isfinite(number):
        raise ValueError(f"{what} is not a finite number: {value!r}")
    return number


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------


class SampleNormalizer:
    """Convert raw records into the uniform upload schema.

    Stateless per call; the collector config only supplies preferred units.
    """

    def __init__(self, config: CollectorConfig | None = None) -> None:
        self._config = config or get_collector_config()

    def normalize(self, raw: RawRecord) -> NormalizedSample | None:
        """Normalize one record, or return None when it yields no sample.

        Workouts, unrecognized record shapes and records that fail
        normalization all return None.
        """
        try:
            if isinstance(raw, WorkoutRecord):
                return None
            if isinstance(raw, QuantityRecord):
                return self._normalize_quantity(raw)
            if isinstance(raw, CategoryRecord):
                return self._normalize_category(raw)
        except (ValueError, TypeError, ArithmeticError) as exc:
            logger.warning("Dropping %s record from %s: %s", raw.type_id, raw.source, exc)
            return None

        logger.debug("Skipping unrecognized record shape %s", type(raw).__name__)
        return None

    def normalize_all(self, records: Iterable[RawRecord]) -> list[NormalizedSample]:
        """Normalize many records, discarding the ones that yield nothing."""
        samples: list[NormalizedSample] = []
        for raw in records:
            sample = self.normalize(raw)
            if sample is not None:
                samples.append(sample)
        return samples

    def _normalize_quantity(self, raw: QuantityRecord) -> NormalizedSample:
        value = _finite(raw.value, "value")
        unit = self._config.preferred_unit(raw.type_id)
        try:
            value = convert_value(value, raw.unit, unit)
        except UnitConversionError:
            # Only types without a configured unit may keep the reported one.
            if self._config.has_preferred_unit(raw.type_id):
                raise
            unit = raw.unit

        return NormalizedSample(
            type=resolve(raw.type_id),
            start=_as_utc(raw.start),
            end=_as_utc(raw.end),
            value=value,
            unit=unit,
            source=raw.source,
            device=raw.device,
            metadata=self.normalize_metadata(raw.metadata),
        )

    def _normalize_category(self, raw: CategoryRecord) -> NormalizedSample:
        if raw.value is not None:
            value = codes.category_name(raw.type_id, int(raw.value))
        elif raw.label:
            value = raw.label
        else:
            raise ValueError("category record has neither a code nor a label")
        return NormalizedSample(
            type=resolve(raw.type_id),
            start=_as_utc(raw.start),
            end=_as_utc(raw.end),
            value=value,
            unit=None,
            source=raw.source,
            device=raw.device,
            metadata=self.normalize_metadata(raw.metadata),
        )

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def normalize_metadata(self, metadata: Mapping[str, Any] | None) -> dict[str, JSONValue] | None:
        """Reduce source metadata to JSON-safe primitives.

        - bool, str: copied verbatim
        - int (or integral float) with an enum table: readable name
        - other finite numbers: copied verbatim
        - datetime: ISO-8601 UTC string
        - MetadataQuantity: number in the first compatible of count/m/kcal/min
        - anything else: dropped

        Returns None when nothing survives.
        """
        if not metadata:
            return None

        out: dict[str, JSONValue] = {}
        for key, value in metadata.items():
            converted = self._metadata_value(key, value)
            if converted is not None:
                out[key] = converted
        return out or None

    def _metadata_value(self, key: str, value: Any) -> JSONValue:
        table = codes.METADATA_VALUE_TABLES.get(key)

        if isinstance(value, bool):
            return value
        if isinstance(value, int):
            return codes.lookup(table, value) if table else value
        if isinstance(value, float):
            if not math.isfinite(value):
                return None
            if table and value.is_integer():
                return codes.lookup(table, int(value))
            return value
        if isinstance(value, str):
            return value
        if isinstance(value, datetime):
            return format_timestamp(value)
        if isinstance(value, MetadataQuantity):
            for unit in _METADATA_QUANTITY_UNITS:
                try:
                    return convert_value(value.value, value.unit, unit)
                except UnitConversionError:
                    continue
            logger.debug("Dropping metadata %s: unsupported unit %s", key, value.unit)
            return None

        logger.debug("Dropping metadata %s of type %s", key, type(value).__name__)
        return None

    # ------------------------------------------------------------------
    # Workout sessions
    # ------------------------------------------------------------------

    def normalize_workout(
        self, workout: WorkoutRecord, route: Iterable[RoutePoint] | None = None
    ) -> NormalizedWorkout:
        """Encode a workout session for its standalone file.

        Statistics are keyed by kebab-case type name and converted to the
        type's preferred unit where possible.  An empty route is treated as
        no route.

        Raises:
            ValueError: If the session's interval or duration is invalid.
        """
        start = _as_utc(workout.start)
        end = _as_utc(workout.end)
        if start > end:
            raise ValueError(f"Workout {workout.uuid} starts after it ends")

        stats: dict[str, StatValue] = {}
        for stat in workout.statistics:
            try:
                value = _finite(stat.value, stat.type_id)
            except ValueError:
                logger.debug("Workout %s: dropping non-finite %s", workout.uuid, stat.type_id)
                continue
            unit = self._config.preferred_unit(stat.type_id)
            try:
                value = convert_value(value, stat.unit, unit)
            except UnitConversionError:
                unit = stat.unit
            stats[resolve(stat.type_id)] = StatValue(value=value, unit=unit)

        points = tuple(route) if route is not None else ()
        return NormalizedWorkout(
            uuid=workout.uuid,
            activity_type=codes.activity_name(int(workout.activity_type)),
            start=start,
            end=end,
            duration_s=_finite(workout.duration_s, "duration"),
            source=workout.source,
            device=workout.device,
            stats=stats,
            metadata=self.normalize_metadata(workout.metadata),
            route=points or None,
        )
