"""Device data sources for the health-data collector.

Each source implements the HealthDataSource ABC and handles:
- Reporting whether the data is reachable at all (is_available)
- Querying raw records of one type by start-time window
- Discovering the earliest available record for backfill
- Fetching workout routes, where the platform records them

Available sources:
    AppleHealthExportSource — Apple Health export.xml (+ GPX workout routes)
"""

from src.healthsync.adapters.apple_health import AppleHealthExportSource

__all__ = [
    "AppleHealthExportSource",
]

# Registry: source_id → source class
SOURCE_REGISTRY: dict[str, type] = {
    "apple_health_export": AppleHealthExportSource,
}


def get_source(source_id: str) -> "type":
    """Return the source class for a given slug.

    Raises:
        KeyError: If the source_id is not registered.
    """
    if source_id not in SOURCE_REGISTRY:
        raise KeyError(
            f"No data source registered for '{source_id}'. "
            f"Available: {list(SOURCE_REGISTRY)}"
        )
    return SOURCE_REGISTRY[source_id]
