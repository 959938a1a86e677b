"""
Data lifecycle management for the Theia flow store.

This package keeps ClickHouse from running out of disk and keeps the
on-disk schema in step with the running release:
- Retention: one cutoff per round, applied to the base table and its views
- Monitor: the threshold-triggered eviction loop
- Versioning: version resolution and forward/backward migration
"""

from theia_datastore.storage.monitor import (
    DiskUsage,
    MonitorState,
    RoundResult,
    StorageMonitor,
    eviction_warranted,
)
from theia_datastore.storage.retention import (
    Cutoff,
    EvictionResult,
    TableDeletion,
    delete_offset,
    evict,
    resolve_cutoff,
)
from theia_datastore.storage.versioning import (
    Direction,
    MigrationExecutor,
    MigrationReport,
    MigrationStep,
    SchemaVersionEntry,
    SchemaVersionResolver,
    VersionOrder,
    normalize_version,
)

__all__ = [
    # Retention
    "Cutoff",
    # Versioning
    "Direction",
    # Monitor
    "DiskUsage",
    "EvictionResult",
    "MigrationExecutor",
    "MigrationReport",
    "MigrationStep",
    "MonitorState",
    "RoundResult",
    "SchemaVersionEntry",
    "SchemaVersionResolver",
    "StorageMonitor",
    "TableDeletion",
    "VersionOrder",
    "delete_offset",
    "evict",
    "eviction_warranted",
    "normalize_version",
    "resolve_cutoff",
]
