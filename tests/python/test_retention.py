"""Tests for retention cutoff resolution and per-table eviction."""

from datetime import datetime

import pytest
from fakes import FakeConnection, transport_error

from theia_datastore.exceptions import CommunicationError, ErrorCode, QueryError
from theia_datastore.storage.retention import (
    Cutoff,
    delete_offset,
    evict,
    resolve_cutoff,
)

COUNT_FLOWS = "SELECT COUNT() FROM flows"
TABLES = ("flows", "flows_pod_view", "flows_node_view", "flows_policy_view")


def boundary_query(offset: int, table: str = "flows", column: str = "timeInserted") -> str:
    return f"SELECT {column} FROM {table} LIMIT 1 OFFSET {offset}"


def delete_statement(table: str, literal: str) -> str:
    return f"ALTER TABLE {table} DELETE WHERE timeInserted < toDateTime('{literal}')"


class TestDeleteOffset:
    """Tests for delete_offset."""

    @pytest.mark.parametrize(
        ("row_count", "percentage", "expected"),
        [(10, 0.5, 5), (7, 0.5, 3), (1, 0.5, 0), (0, 0.5, 0), (3, 1.0, 3), (999, 0.1, 99)],
    )
    def test_floor_of_share(self, row_count: int, percentage: float, expected: int) -> None:
        assert delete_offset(row_count, percentage) == expected


class TestResolveCutoff:
    """Tests for resolve_cutoff."""

    def test_boundary_row_at_offset(self, fake_connection: FakeConnection) -> None:
        """Ten rows at 50% put the boundary at OFFSET 5."""
        boundary = datetime(2024, 3, 1, 12, 30, 0)
        fake_connection.expect(COUNT_FLOWS, rows=[(10,)])
        fake_connection.expect(boundary_query(5), rows=[(boundary,)])

        cutoff = resolve_cutoff(fake_connection, "flows", 0.5)

        assert cutoff == Cutoff(timestamp=boundary, offset=5, row_count=10)
        assert cutoff.literal() == "2024-03-01 12:30:00"
        assert fake_connection.queries == [COUNT_FLOWS, boundary_query(5)]

    def test_nothing_to_delete(self, fake_connection: FakeConnection) -> None:
        """A table too small to lose a whole row yields no cutoff and no second query."""
        fake_connection.expect(COUNT_FLOWS, rows=[(1,)])

        assert resolve_cutoff(fake_connection, "flows", 0.5) is None
        assert fake_connection.queries == [COUNT_FLOWS]

    def test_empty_table(self, fake_connection: FakeConnection) -> None:
        fake_connection.expect(COUNT_FLOWS, rows=[(0,)])
        assert resolve_cutoff(fake_connection, "flows", 0.5) is None

    def test_boundary_row_vanished(self, fake_connection: FakeConnection) -> None:
        fake_connection.expect(COUNT_FLOWS, rows=[(10,)])
        fake_connection.expect(boundary_query(5), rows=[])

        assert resolve_cutoff(fake_connection, "flows", 0.5) is None

    def test_custom_time_column(self, fake_connection: FakeConnection) -> None:
        fake_connection.expect(COUNT_FLOWS, rows=[(4,)])
        fake_connection.expect(
            boundary_query(2, column="flowEndSeconds"), rows=[(datetime(2024, 1, 1),)]
        )

        cutoff = resolve_cutoff(fake_connection, "flows", 0.5, time_column="flowEndSeconds")

        assert cutoff is not None
        assert cutoff.offset == 2

    def test_string_timestamp(self, fake_connection: FakeConnection) -> None:
        fake_connection.expect(COUNT_FLOWS, rows=[(10,)])
        fake_connection.expect(boundary_query(5), rows=[("2024-03-01 12:30:00",)])

        cutoff = resolve_cutoff(fake_connection, "flows", 0.5)

        assert cutoff is not None
        assert cutoff.timestamp == datetime(2024, 3, 1, 12, 30)

    def test_unparseable_timestamp(self, fake_connection: FakeConnection) -> None:
        fake_connection.expect(COUNT_FLOWS, rows=[(10,)])
        fake_connection.expect(boundary_query(5), rows=[("yesterday",)])

        with pytest.raises(CommunicationError) as exc_info:
            resolve_cutoff(fake_connection, "flows", 0.5)
        assert exc_info.value.is_retryable is False

    def test_count_failure_propagates(self, fake_connection: FakeConnection) -> None:
        error = transport_error(COUNT_FLOWS)
        fake_connection.expect(COUNT_FLOWS, error=error)

        with pytest.raises(QueryError) as exc_info:
            resolve_cutoff(fake_connection, "flows", 0.5)
        assert exc_info.value is error


class TestEvict:
    """Tests for evict."""

    @pytest.fixture
    def cutoff(self) -> Cutoff:
        return Cutoff(timestamp=datetime(2024, 3, 1, 12, 30), offset=5, row_count=10)

    def test_same_cutoff_for_every_table(
        self, fake_connection: FakeConnection, cutoff: Cutoff
    ) -> None:
        result = evict(fake_connection, TABLES, cutoff)

        assert fake_connection.executed == [
            delete_statement(table, "2024-03-01 12:30:00") for table in TABLES
        ]
        assert result.success is True
        assert [d.table for d in result.deletions] == list(TABLES)

    def test_failure_does_not_stop_remaining_tables(
        self, fake_connection: FakeConnection, cutoff: Cutoff
    ) -> None:
        failing = delete_statement("flows_pod_view", cutoff.literal())
        fake_connection.expect(
            failing, error=QueryError.server_exception(failing, 341, "mutation failed")
        )

        result = evict(fake_connection, TABLES, cutoff)

        assert len(fake_connection.executed) == 4
        assert result.failed_tables == ["flows_pod_view"]
        assert result.success is False
        failed = result.deletions[1]
        assert failed.error is not None
        assert failed.error.error_code == ErrorCode.EVICT_DELETE_FAILED
        assert failed.error.context["table"] == "flows_pod_view"

    def test_to_dict(self, fake_connection: FakeConnection, cutoff: Cutoff) -> None:
        result = evict(fake_connection, ("flows",), cutoff)
        assert result.to_dict() == {
            "cutoff": "2024-03-01 12:30:00",
            "offset": 5,
            "row_count": 10,
            "tables": ["flows"],
            "failed_tables": [],
            "success": True,
        }
