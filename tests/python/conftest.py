"""Pytest configuration for Python tests."""

from __future__ import annotations

import logging
from datetime import timedelta

import pytest
from fakes import FakeClock, FakeConnection

from theia_datastore.config import CONFIG_FILE_ENV, RetentionConfig

# Variables read by the settings classes; cleared so the host environment
# never leaks into a test.
SETTINGS_ENV_VARS = [
    CONFIG_FILE_ENV,
    "CLICKHOUSE_USERNAME",
    "CLICKHOUSE_PASSWORD",
    "DB_URL",
    "CONNECT_RETRY_INTERVAL",
    "CONNECT_TIMEOUT",
    "QUERY_TIMEOUT",
    "TABLE_NAME",
    "MV_NAMES",
    "STORAGE_SIZE",
    "THRESHOLD",
    "DELETE_PERCENTAGE",
    "EXEC_INTERVAL",
    "SKIP_ROUNDS_NUM",
    "TIME_COLUMN",
    "THEIA_VERSION",
    "QUERY_RETRY_INTERVAL",
    "QUERY_RETRY_TIMEOUT",
    "LOG_LEVEL",
    "LOG_FORMAT",
    "LOG_FILE",
]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "integration: marks tests as integration tests")


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove settings variables inherited from the host."""
    for name in SETTINGS_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def reset_root_handlers() -> None:
    """Drop handlers installed by setup_logging so closed streams are not reused."""
    yield
    logging.getLogger().handlers = []


@pytest.fixture
def fake_connection() -> FakeConnection:
    """A scripted ClickHouse connection."""
    return FakeConnection()


@pytest.fixture
def fake_clock() -> FakeClock:
    """A clock that only advances when slept on."""
    return FakeClock()


@pytest.fixture
def retention_config() -> RetentionConfig:
    """The flows table with its three views, mirroring the default deployment."""
    return RetentionConfig(
        table_name="flows",
        view_names=("flows_pod_view", "flows_node_view", "flows_policy_view"),
        allocated_space_bytes=10,
        threshold=0.5,
        delete_percentage=0.5,
        poll_interval=timedelta(minutes=1),
        idle_rounds_to_skip=3,
    )
