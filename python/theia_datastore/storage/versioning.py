"""
Data schema versioning and migration.

This module tracks which schema version the persisted data is at and
moves it to the version the running release expects.

- VersionOrder: the build-time ordered table of known versions, each
  entry carrying the upgrade step into it and the downgrade step out of it
- SchemaVersionResolver: reads the stored version or infers a legacy one
- MigrationExecutor: applies the planned steps, then records the new version
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

from theia_datastore.exceptions import (
    AmbiguousVersionError,
    CommunicationError,
    ConfigurationError,
    MetadataQueryError,
    MigrationError,
    MigratorCountMismatchError,
    QueryError,
    RetryTimeoutError,
    UnrecognizedVersionError,
)
from theia_datastore.logging import get_logger
from theia_datastore.retry import poll_immediate

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from theia_datastore.clickhouse import Connection

logger = get_logger(__name__)

T = TypeVar("T")

VERSION_TABLE = "migrate_version"
LEGACY_TABLE = "flows"

SELECT_VERSION = f"SELECT version FROM {VERSION_TABLE}"
SELECT_LEGACY_COUNT = f"SELECT COUNT() FROM {LEGACY_TABLE}"
CREATE_VERSION_TABLE = (
    f"CREATE TABLE IF NOT EXISTS {VERSION_TABLE} (version String) "
    "ENGINE = MergeTree ORDER BY version"
)
INSERT_VERSION = f"INSERT INTO {VERSION_TABLE} (*) VALUES"
DELETE_OTHER_VERSIONS = f"ALTER TABLE {VERSION_TABLE} DELETE WHERE version != %(version)s"

# ALTER ... DELETE is asynchronous unless the server is told to wait for it.
SYNC_MUTATION = {"mutations_sync": 1}


class Direction(str, Enum):
    """Direction of a migration step."""

    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"


def normalize_version(version: str) -> str:
    """Return the ``v``-prefixed form of a version label (``0.2.0`` -> ``v0.2.0``)."""
    stripped = version.strip()
    if stripped and not stripped.startswith("v"):
        return f"v{stripped}"
    return stripped


@dataclass(frozen=True)
class SchemaVersionEntry:
    """
    One known schema version.

    Attributes:
        version: Version label, e.g. "v0.2.0".
        upgrade: Migrator from the previous version to this one.
        downgrade: Migrator from this version back to the previous one.
    """

    version: str
    upgrade: Callable[[Connection], None] | None = None
    downgrade: Callable[[Connection], None] | None = None


@dataclass(frozen=True)
class MigrationStep:
    """A single migrator applied between two adjacent versions."""

    direction: Direction
    from_version: str
    to_version: str
    migrator: Callable[[Connection], None]

    def apply(self, connection: Connection) -> None:
        self.migrator(connection)

    def __str__(self) -> str:
        return f"{self.from_version}->{self.to_version}"


class VersionOrder:
    """
    Ordered table of known schema versions.

    Entry ``i`` holds the step from version ``i-1`` to ``i`` and back,
    so the first entry carries no migrators.
    """

    def __init__(self, entries: Sequence[SchemaVersionEntry]) -> None:
        if not entries:
            raise ConfigurationError.validation_failed("versions", [], "at least one version is required")
        self._entries = tuple(entries)
        self._index: dict[str, int] = {}
        for i, entry in enumerate(self._entries):
            if entry.version in self._index:
                raise ConfigurationError.validation_failed(
                    "versions", entry.version, "duplicate version label"
                )
            self._index[entry.version] = i

    @property
    def versions(self) -> list[str]:
        return [e.version for e in self._entries]

    @property
    def earliest(self) -> str:
        """The oldest known version; data without a version table is at this version."""
        return self._entries[0].version

    @property
    def latest(self) -> str:
        return self._entries[-1].version

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, version: object) -> bool:
        return version in self._index

    def index_of(self, version: str, kind: str = "data schema") -> int:
        """
        Position of a version in the order.

        Raises:
            UnrecognizedVersionError: If the version is unknown.
        """
        try:
            return self._index[version]
        except KeyError:
            raise UnrecognizedVersionError.for_version(kind, version, self.versions) from None

    def validate(self) -> None:
        """
        Check that every transition has an upgrade and a downgrade migrator.

        Raises:
            MigratorCountMismatchError: If a direction has missing or extra migrators.
        """
        expected = len(self._entries) - 1
        for direction in Direction:
            present = [_migrator(e, direction) is not None for e in self._entries]
            actual = sum(present)
            if actual != expected or present[0] or not all(present[1:]):
                raise MigratorCountMismatchError.for_direction(direction.value, actual, expected)

    def migrator_count(self, direction: Direction) -> int:
        """Number of migrators registered for a direction."""
        return sum(1 for e in self._entries if _migrator(e, direction) is not None)

    def plan(self, from_version: str, to_version: str) -> list[MigrationStep]:
        """
        Steps that move data from one version to another.

        Upgrades walk forward through entries ``from+1 .. to``; downgrades
        walk the same transitions backwards, ``from .. to+1``.
        """
        start = self.index_of(from_version, "data schema")
        end = self.index_of(to_version, "target")

        steps: list[MigrationStep] = []
        if start < end:
            for i in range(start + 1, end + 1):
                entry = self._entries[i]
                steps.append(
                    MigrationStep(
                        direction=Direction.UPGRADE,
                        from_version=self._entries[i - 1].version,
                        to_version=entry.version,
                        migrator=_require(entry.upgrade, Direction.UPGRADE, self),
                    )
                )
        elif start > end:
            for i in range(start, end, -1):
                entry = self._entries[i]
                steps.append(
                    MigrationStep(
                        direction=Direction.DOWNGRADE,
                        from_version=entry.version,
                        to_version=self._entries[i - 1].version,
                        migrator=_require(entry.downgrade, Direction.DOWNGRADE, self),
                    )
                )
        return steps


def _migrator(
    entry: SchemaVersionEntry, direction: Direction
) -> Callable[[Connection], None] | None:
    return entry.upgrade if direction == Direction.UPGRADE else entry.downgrade


def _require(
    migrator: Callable[[Connection], None] | None, direction: Direction, order: VersionOrder
) -> Callable[[Connection], None]:
    if migrator is None:
        raise MigratorCountMismatchError.for_direction(
            direction.value, order.migrator_count(direction), len(order) - 1
        )
    return migrator


class _MetadataClient:
    """Shared bounded retry for version table reads and writes."""

    def __init__(
        self,
        connection: Connection,
        retry_interval: float,
        retry_timeout: float,
        sleep: Callable[[float], None],
        clock: Callable[[], float],
    ) -> None:
        self._connection = connection
        self._retry_interval = retry_interval
        self._retry_timeout = retry_timeout
        self._sleep = sleep
        self._clock = clock

    def _retry(self, operation: Callable[[], T], description: str) -> T:
        try:
            return poll_immediate(
                operation,
                interval=self._retry_interval,
                timeout=self._retry_timeout,
                description=description,
                retry_on=(CommunicationError,),
                sleep=self._sleep,
                clock=self._clock,
            )
        except RetryTimeoutError as e:
            raise MetadataQueryError.exhausted(description, e) from e


class SchemaVersionResolver(_MetadataClient):
    """Determines the data schema version and validates the target version."""

    def __init__(
        self,
        connection: Connection,
        order: VersionOrder,
        retry_interval: float = 1.0,
        retry_timeout: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(connection, retry_interval, retry_timeout, sleep, clock)
        self._order = order

    def read_stored_version(self) -> str | None:
        """
        Read the version row.

        Returns:
            The stored label, or None if the version table is missing or empty.
            Repeated rows with the same label count as one.

        Raises:
            AmbiguousVersionError: If the table holds several different labels.
            MetadataQueryError: If the read keeps failing.
        """

        def _read() -> list[tuple[Any, ...]] | None:
            try:
                return self._connection.query(SELECT_VERSION)
            except QueryError as e:
                if e.is_unknown_table:
                    return None
                raise

        rows = self._retry(_read, "read_data_version")
        if not rows:
            return None
        versions = list(dict.fromkeys(str(row[0]) for row in rows))
        if len(versions) > 1:
            raise AmbiguousVersionError.for_versions(versions)
        return versions[0]

    def legacy_schema_exists(self) -> bool:
        """Whether the base flow table exists without a version table."""

        def _check() -> bool:
            try:
                self._connection.query(SELECT_LEGACY_COUNT)
            except QueryError as e:
                if e.is_unknown_table:
                    return False
                raise
            return True

        return self._retry(_check, "check_legacy_schema")

    def resolve_data_version(self) -> str | None:
        """
        Determine the version of the persisted data.

        Returns:
            The data version, or None when no schema exists at all.

        Raises:
            AmbiguousVersionError: If several different labels are stored.
            UnrecognizedVersionError: If the stored label is unknown.
            MetadataQueryError: If metadata queries keep failing.
        """
        stored = self.read_stored_version()
        if stored is None:
            if self.legacy_schema_exists():
                logger.info("legacy_data_schema_detected", version=self._order.earliest)
                return self._order.earliest
            logger.info("no_data_schema_found")
            return None

        version = normalize_version(stored)
        self._order.index_of(version, "data schema")
        return version

    def resolve_target_version(self, version: str) -> str:
        """
        Normalize and validate the running release's version.

        Raises:
            UnrecognizedVersionError: If the version is unknown.
        """
        normalized = normalize_version(version)
        self._order.index_of(normalized, "target")
        return normalized


@dataclass
class MigrationReport:
    """Summary of a migration run."""

    from_version: str
    to_version: str
    steps: list[str] = field(default_factory=list)
    direction: Direction | None = None
    version_written: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "from_version": self.from_version,
            "to_version": self.to_version,
            "direction": self.direction.value if self.direction else None,
            "steps": self.steps,
            "version_written": self.version_written,
        }


class MigrationExecutor(_MetadataClient):
    """Applies migration steps and records the resulting version."""

    def __init__(
        self,
        connection: Connection,
        order: VersionOrder,
        retry_interval: float = 1.0,
        retry_timeout: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(connection, retry_interval, retry_timeout, sleep, clock)
        self._order = order

    def migrate(self, from_version: str, to_version: str) -> MigrationReport:
        """
        Move the data from one version to another.

        The version table is written only after every step succeeded, and
        not at all when the versions already match.

        Raises:
            UnrecognizedVersionError: If either version is unknown.
            MigrationError: If a migrator fails.
            MetadataQueryError: If recording the new version keeps failing.
        """
        steps = self._order.plan(from_version, to_version)
        report = MigrationReport(from_version=from_version, to_version=to_version)

        if not steps:
            logger.info("data_schema_version_unchanged", version=to_version)
            return report

        report.direction = steps[0].direction
        for step in steps:
            logger.info("migration_step_started", direction=step.direction.value, step=str(step))
            try:
                step.apply(self._connection)
            except Exception as e:
                raise MigrationError.step_failed(step.from_version, step.to_version, e) from e
            report.steps.append(str(step))

        self.write_data_version(to_version)
        report.version_written = True
        logger.info("data_schema_migration_finished", **report.to_dict())
        return report

    def write_data_version(self, version: str) -> None:
        """
        Record the data version, creating the table on first use.

        The new row is inserted before the old ones are deleted, so the
        table never goes through an empty state. If the delete keeps
        failing the table is left holding both labels and the next run
        stops on AmbiguousVersionError.
        """
        self._retry(lambda: self._connection.execute(CREATE_VERSION_TABLE), "create_version_table")
        self._retry(
            lambda: self._connection.execute(INSERT_VERSION, [(version,)]), "write_data_version"
        )
        self._retry(
            lambda: self._connection.execute(
                DELETE_OTHER_VERSIONS, {"version": version}, settings=SYNC_MUTATION
            ),
            "delete_previous_data_versions",
        )
        logger.info("data_schema_version_set", version=version)
