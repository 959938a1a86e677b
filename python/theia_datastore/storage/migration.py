"""
Data schema migration entry point.

Runs once at upgrade time: resolves the stored data version, moves it
to THEIA_VERSION through the registered migrators and records the new
version. Exits non-zero on any failure, leaving the stored version
untouched so the run can be repeated.
"""

from __future__ import annotations

import sys
import time
from typing import TYPE_CHECKING

from theia_datastore.clickhouse import ConnectionManager
from theia_datastore.config import ClickHouseSettings, LoggingSettings, MigrationSettings
from theia_datastore.exceptions import DataStoreError
from theia_datastore.logging import get_logger, setup_logging_from_settings, with_context
from theia_datastore.storage.versioning import (
    MigrationExecutor,
    MigrationReport,
    SchemaVersionEntry,
    SchemaVersionResolver,
    VersionOrder,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from theia_datastore.clickhouse import Connection

logger = get_logger(__name__)


def migrate_v010_to_v020(connection: Connection) -> None:
    """v0.2.0 introduced the version table only; the flow schema is unchanged."""
    logger.debug("migrator_noop", step="v0.1.0->v0.2.0")


def migrate_v020_to_v010(connection: Connection) -> None:
    logger.debug("migrator_noop", step="v0.2.0->v0.1.0")


VERSION_ORDER = VersionOrder(
    [
        SchemaVersionEntry("v0.1.0"),
        SchemaVersionEntry(
            "v0.2.0",
            upgrade=migrate_v010_to_v020,
            downgrade=migrate_v020_to_v010,
        ),
    ]
)


def run_migration(
    connection: Connection,
    target_version: str,
    order: VersionOrder = VERSION_ORDER,
    retry_interval: float = 1.0,
    retry_timeout: float = 10.0,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> MigrationReport | None:
    """
    Migrate the stored data to the target version.

    Both versions are validated before anything is written.

    Returns:
        The migration report, or None when no data schema exists.
    """
    resolver = SchemaVersionResolver(
        connection, order, retry_interval=retry_interval, retry_timeout=retry_timeout,
        sleep=sleep, clock=clock,
    )
    target = resolver.resolve_target_version(target_version)

    with with_context(target_version=target):
        data_version = resolver.resolve_data_version()
        if data_version is None:
            logger.info("data_schema_migration_finished", reason="no data schema exists")
            return None

        executor = MigrationExecutor(
            connection, order, retry_interval=retry_interval, retry_timeout=retry_timeout,
            sleep=sleep, clock=clock,
        )
        return executor.migrate(data_version, target)


def main() -> None:
    """Entry point for the data schema migrator."""
    setup_logging_from_settings(LoggingSettings.load())
    try:
        VERSION_ORDER.validate()
        settings = MigrationSettings.load()
        connection = ConnectionManager(ClickHouseSettings.load()).connect()
        with connection:
            run_migration(
                connection,
                settings.theia_version,
                retry_interval=settings.query_retry_interval,
                retry_timeout=settings.query_retry_timeout,
            )
    except DataStoreError as e:
        logger.error("data_schema_migration_failed", **e.to_dict())
        sys.exit(1)


if __name__ == "__main__":
    main()
