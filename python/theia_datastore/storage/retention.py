"""
Retention cutoff resolution and per-table eviction.

One cutoff is computed from the base table per round and applied to the
base table and every derived view, so all of them prune to the same
moment in time even though their row counts differ.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from theia_datastore.exceptions import CommunicationError, TableDeleteError
from theia_datastore.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Sequence

    from theia_datastore.clickhouse import Connection

logger = get_logger(__name__)

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass(frozen=True)
class Cutoff:
    """
    Timestamp boundary for one eviction round.

    Rows strictly older than ``timestamp`` are evicted; the boundary row
    and everything newer are kept.
    """

    timestamp: datetime
    offset: int
    row_count: int

    def literal(self) -> str:
        """Render the timestamp the way toDateTime() expects it."""
        return self.timestamp.strftime(TIME_FORMAT)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "cutoff": self.literal(),
            "offset": self.offset,
            "row_count": self.row_count,
        }


@dataclass
class TableDeletion:
    """Outcome of the bulk delete issued against one table."""

    table: str
    error: TableDeleteError | None = None

    @property
    def succeeded(self) -> bool:
        """Whether the delete statement was accepted."""
        return self.error is None


@dataclass
class EvictionResult:
    """Outcome of deleting one cutoff from every table."""

    cutoff: Cutoff
    deletions: list[TableDeletion] = field(default_factory=list)

    @property
    def failed_tables(self) -> list[str]:
        return [d.table for d in self.deletions if not d.succeeded]

    @property
    def success(self) -> bool:
        return not self.failed_tables

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            **self.cutoff.to_dict(),
            "tables": [d.table for d in self.deletions],
            "failed_tables": self.failed_tables,
            "success": self.success,
        }


def delete_offset(row_count: int, delete_percentage: float) -> int:
    """Number of oldest rows a round evicts."""
    return math.floor(row_count * delete_percentage)


def count_rows(connection: Connection, table_name: str) -> int:
    """Read ``COUNT()`` of a table."""
    rows = connection.query(f"SELECT COUNT() FROM {table_name}")
    if not rows:
        return 0
    return int(rows[0][0])


def resolve_cutoff(
    connection: Connection,
    table_name: str,
    delete_percentage: float,
    time_column: str = "timeInserted",
) -> Cutoff | None:
    """
    Find the insertion time separating rows to evict from rows to keep.

    Args:
        connection: Live store connection.
        table_name: Base table the cutoff is computed from.
        delete_percentage: Share of rows to evict, in (0, 1].
        time_column: Insertion time column.

    Returns:
        The cutoff, or None when the round would evict less than one row.

    Raises:
        CommunicationError: If either query fails or returns an unusable value.
    """
    row_count = count_rows(connection, table_name)
    offset = delete_offset(row_count, delete_percentage)
    if offset == 0:
        logger.info(
            "retention_nothing_to_delete",
            table=table_name,
            row_count=row_count,
            delete_percentage=delete_percentage,
        )
        return None

    rows = connection.query(f"SELECT {time_column} FROM {table_name} LIMIT 1 OFFSET {offset}")
    if not rows:
        # The table shrank between the two queries.
        logger.warning("retention_boundary_row_missing", table=table_name, offset=offset)
        return None

    cutoff = Cutoff(timestamp=_as_datetime(rows[0][0]), offset=offset, row_count=row_count)
    logger.debug("retention_cutoff_resolved", table=table_name, **cutoff.to_dict())
    return cutoff


def delete_older_than(
    connection: Connection, table_name: str, cutoff: Cutoff, time_column: str = "timeInserted"
) -> None:
    """Issue the bulk delete of every row older than the cutoff."""
    connection.execute(
        f"ALTER TABLE {table_name} DELETE WHERE {time_column} < toDateTime('{cutoff.literal()}')"
    )


def evict(
    connection: Connection,
    tables: Sequence[str],
    cutoff: Cutoff,
    time_column: str = "timeInserted",
) -> EvictionResult:
    """
    Delete rows older than the cutoff from each table in order.

    A failure on one table is logged and recorded; the remaining tables
    are still attempted.
    """
    result = EvictionResult(cutoff=cutoff)
    for table in tables:
        try:
            delete_older_than(connection, table, cutoff, time_column)
        except CommunicationError as e:
            error = TableDeleteError.for_table(table, cutoff.literal(), e)
            logger.error("table_delete_failed", **error.to_dict())
            result.deletions.append(TableDeletion(table=table, error=error))
            continue

        logger.info("table_rows_deleted", table=table, cutoff=cutoff.literal())
        result.deletions.append(TableDeletion(table=table))

    return result


def _as_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    try:
        return datetime.strptime(str(value), TIME_FORMAT)
    except ValueError as e:
        raise CommunicationError(
            message=f"Unexpected insertion time value {value!r}",
            context={"value": str(value)},
            is_retryable=False,
            cause=e,
        ) from e
