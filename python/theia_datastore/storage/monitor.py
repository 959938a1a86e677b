"""
Storage capacity monitor.

Periodically samples ClickHouse disk usage and, when free space drops
below the configured share of the allocated space, prunes the oldest
rows from the base table and every derived view using one shared cutoff.
After an eviction round the monitor idles for a number of rounds, since
the MergeTree engine releases disk space asynchronously.
"""

from __future__ import annotations

import signal
import sys
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from theia_datastore.clickhouse import ConnectionManager
from theia_datastore.config import ClickHouseSettings, LoggingSettings, MonitorSettings
from theia_datastore.exceptions import CommunicationError, DataStoreError
from theia_datastore.logging import get_logger, setup_logging_from_settings, with_context
from theia_datastore.storage.retention import Cutoff, TableDeletion, evict, resolve_cutoff
from theia_datastore.units import format_bytes

if TYPE_CHECKING:
    from theia_datastore.clickhouse import Connection
    from theia_datastore.config import RetentionConfig

logger = get_logger(__name__)

DISK_USAGE_QUERY = "SELECT free_space, total_space FROM system.disks"
PARTS_SIZE_QUERY = "SELECT SUM(bytes) FROM system.parts"


class MonitorState(str, Enum):
    """States of the monitor's round state machine."""

    IDLE = "idle"
    SAMPLING = "sampling"
    NO_ACTION = "no_action"
    EVICTING = "evicting"


@dataclass(frozen=True)
class DiskUsage:
    """Disk usage sampled at the start of a round."""

    free_bytes: int
    total_bytes: int
    parts_bytes: int | None = None

    @property
    def used_percentage(self) -> float:
        if self.total_bytes <= 0:
            return 0.0
        return round((self.total_bytes - self.free_bytes) / self.total_bytes * 100, 2)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "free_bytes": self.free_bytes,
            "total_bytes": self.total_bytes,
            "free": format_bytes(self.free_bytes),
            "total": format_bytes(self.total_bytes),
            "used_percentage": self.used_percentage,
            "parts_bytes": self.parts_bytes,
        }


def eviction_warranted(free_bytes: int, allocated_space_bytes: int, threshold: float) -> bool:
    """Eviction is due when free space is strictly below threshold * allocated space."""
    return free_bytes < threshold * allocated_space_bytes


@dataclass
class RoundResult:
    """What one monitor tick did."""

    round_number: int
    state: MonitorState
    disk_usage: DiskUsage | None = None
    cutoff: Cutoff | None = None
    deletions: list[TableDeletion] = field(default_factory=list)
    error: str | None = None

    @property
    def deleted_tables(self) -> list[str]:
        return [d.table for d in self.deletions if d.succeeded]

    @property
    def failed_tables(self) -> list[str]:
        return [d.table for d in self.deletions if not d.succeeded]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "round": self.round_number,
            "state": self.state.value,
            "disk_usage": self.disk_usage.to_dict() if self.disk_usage else None,
            "cutoff": self.cutoff.literal() if self.cutoff else None,
            "deleted_tables": self.deleted_tables,
            "failed_tables": self.failed_tables,
            "error": self.error,
        }


class StorageMonitor:
    """
    Threshold-triggered eviction loop.

    Each call to :meth:`run_round` is one tick of the state machine:
    ``Idle`` ticks only count down; otherwise the monitor samples disk
    usage and either takes no action or evicts.
    """

    def __init__(self, connection: Connection, config: RetentionConfig) -> None:
        self._connection = connection
        self._config = config
        self._round = 0
        self._skip_remaining = 0
        self._state = MonitorState.SAMPLING

    @property
    def state(self) -> MonitorState:
        """State the next round starts in."""
        return self._state

    @property
    def skip_remaining(self) -> int:
        """Idle rounds left before sampling resumes."""
        return self._skip_remaining

    @property
    def config(self) -> RetentionConfig:
        return self._config

    def sample_disk_usage(self) -> DiskUsage:
        """
        Read free and total space, plus the size of active data parts.

        Raises:
            CommunicationError: If the disk query fails or returns no rows.
        """
        rows = self._connection.query(DISK_USAGE_QUERY)
        if not rows:
            raise CommunicationError(
                message="system.disks returned no rows",
                context={"statement": DISK_USAGE_QUERY},
            )
        free_bytes, total_bytes = (int(v) for v in rows[0][:2])

        parts_bytes: int | None = None
        try:
            parts_rows = self._connection.query(PARTS_SIZE_QUERY)
            if parts_rows and parts_rows[0][0] is not None:
                parts_bytes = int(parts_rows[0][0])
        except CommunicationError as e:
            logger.warning("parts_size_query_failed", error=str(e))

        return DiskUsage(free_bytes=free_bytes, total_bytes=total_bytes, parts_bytes=parts_bytes)

    def run_round(self) -> RoundResult:
        """Run one tick of the monitor."""
        self._round += 1
        with with_context(round=self._round):
            result = self._tick()
        self._state = MonitorState.IDLE if self._skip_remaining > 0 else MonitorState.SAMPLING
        return result

    def run_forever(self, stop_event: threading.Event) -> None:
        """Run rounds every poll interval until the stop event is set."""
        interval = self._config.poll_interval.total_seconds()
        logger.info("storage_monitor_started", config=self._config.to_dict())
        while not stop_event.is_set():
            try:
                self.run_round()
            except Exception as e:
                logger.exception("storage_monitor_round_error", error=str(e))
            stop_event.wait(interval)
        logger.info("storage_monitor_stopped", rounds=self._round)

    def _tick(self) -> RoundResult:
        if self._skip_remaining > 0:
            self._skip_remaining -= 1
            logger.info("monitor_round_skipped", remaining_rounds=self._skip_remaining)
            return RoundResult(round_number=self._round, state=MonitorState.IDLE)

        try:
            usage = self.sample_disk_usage()
        except CommunicationError as e:
            logger.error("disk_usage_query_failed", **e.to_dict())
            return RoundResult(round_number=self._round, state=MonitorState.NO_ACTION, error=str(e))

        logger.info(
            "disk_usage_sampled",
            allocated_bytes=self._config.allocated_space_bytes,
            threshold=self._config.threshold,
            **usage.to_dict(),
        )

        if not eviction_warranted(
            usage.free_bytes, self._config.allocated_space_bytes, self._config.threshold
        ):
            return RoundResult(round_number=self._round, state=MonitorState.NO_ACTION, disk_usage=usage)

        return self._evict(usage)

    def _evict(self, usage: DiskUsage) -> RoundResult:
        config = self._config
        try:
            cutoff = resolve_cutoff(
                self._connection, config.table_name, config.delete_percentage, config.time_column
            )
        except CommunicationError as e:
            logger.error("retention_cutoff_failed", table=config.table_name, **e.to_dict())
            self._skip_remaining = config.idle_rounds_to_skip
            return RoundResult(
                round_number=self._round,
                state=MonitorState.EVICTING,
                disk_usage=usage,
                error=str(e),
            )

        if cutoff is None:
            return RoundResult(round_number=self._round, state=MonitorState.NO_ACTION, disk_usage=usage)

        eviction = evict(self._connection, config.tables, cutoff, config.time_column)
        self._skip_remaining = config.idle_rounds_to_skip
        logger.info("eviction_round_completed", **eviction.to_dict())
        return RoundResult(
            round_number=self._round,
            state=MonitorState.EVICTING,
            disk_usage=usage,
            cutoff=cutoff,
            deletions=eviction.deletions,
        )


def main() -> None:
    """Entry point for the storage capacity monitor."""
    setup_logging_from_settings(LoggingSettings.load())
    try:
        config = MonitorSettings.load().to_retention_config()
        connection = ConnectionManager(ClickHouseSettings.load()).connect()
    except DataStoreError as e:
        logger.error("storage_monitor_startup_failed", **e.to_dict())
        sys.exit(1)

    stop_event = threading.Event()

    def signal_handler(signum: int, _frame: object) -> None:
        logger.info("shutdown_signal_received", signal=signum)
        stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        StorageMonitor(connection, config).run_forever(stop_event)
    finally:
        connection.close()


if __name__ == "__main__":
    main()
