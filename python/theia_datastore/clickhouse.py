"""
ClickHouse connection management.

Opens a native-protocol connection with bounded retry and exposes the
``query``/``execute`` primitives the monitor and the migrator build on.
Server-reported exceptions and transport failures are both raised as
QueryError, kept apart by their error code.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol
from urllib.parse import urlsplit

from clickhouse_driver import Client, errors

from theia_datastore.exceptions import (
    ConfigurationError,
    ConnectionTimeoutError,
    ErrorCode,
    QueryError,
    RetryTimeoutError,
)
from theia_datastore.logging import get_logger
from theia_datastore.retry import poll_immediate

if TYPE_CHECKING:
    from collections.abc import Callable

    from theia_datastore.config import ClickHouseSettings

logger = get_logger(__name__)

DEFAULT_PORT = 9000
DEFAULT_SECURE_PORT = 9440
_PLAIN_SCHEMES = {"tcp", "clickhouse"}
_SECURE_SCHEMES = {"tls", "clickhouses"}


class Connection(Protocol):
    """The statement surface the lifecycle components need from a store."""

    def query(self, statement: str, params: Any = None) -> list[tuple[Any, ...]]:
        """Run a SELECT and return its rows."""
        ...

    def execute(
        self, statement: str, params: Any = None, settings: dict[str, Any] | None = None
    ) -> Any:
        """Run a statement that mutates state, with optional per-query server settings."""
        ...


@dataclass(frozen=True)
class ClickHouseAddress:
    """Host, port and database parsed from DB_URL."""

    host: str
    port: int
    database: str = "default"
    secure: bool = False

    @classmethod
    def from_url(cls, url: str) -> ClickHouseAddress:
        """
        Parse a ``tcp://host:port[/database]`` URL.

        Raises:
            ConfigurationError: If the scheme or host is missing or unsupported.
        """
        parts = urlsplit(url)
        scheme = parts.scheme.lower()
        if scheme not in _PLAIN_SCHEMES | _SECURE_SCHEMES:
            raise ConfigurationError.validation_failed(
                "DB_URL", url, "scheme must be one of tcp, clickhouse, tls, clickhouses"
            )
        if not parts.hostname:
            raise ConfigurationError.validation_failed("DB_URL", url, "missing host")

        secure = scheme in _SECURE_SCHEMES
        try:
            port = parts.port
        except ValueError as e:
            raise ConfigurationError.validation_failed("DB_URL", url, str(e)) from e

        database = parts.path.strip("/") or "default"
        return cls(
            host=parts.hostname,
            port=port or (DEFAULT_SECURE_PORT if secure else DEFAULT_PORT),
            database=database,
            secure=secure,
        )

    def __str__(self) -> str:
        return f"{self.host}:{self.port}/{self.database}"


class ClickHouseConnection:
    """A live connection wrapping a clickhouse_driver Client."""

    def __init__(self, client: Client, address: ClickHouseAddress) -> None:
        self._client = client
        self.address = address

    def query(self, statement: str, params: Any = None) -> list[tuple[Any, ...]]:
        """Run a SELECT and return its rows."""
        return list(self._run(statement, params))

    def execute(
        self, statement: str, params: Any = None, settings: dict[str, Any] | None = None
    ) -> Any:
        """Run a statement that mutates state (ALTER, INSERT, CREATE)."""
        return self._run(statement, params, settings)

    def ping(self) -> None:
        """Round-trip a trivial query to prove the connection works."""
        self._run("SELECT 1", None)

    def close(self) -> None:
        """Disconnect from the server."""
        self._client.disconnect()

    def __enter__(self) -> ClickHouseConnection:
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()

    def _run(self, statement: str, params: Any, settings: dict[str, Any] | None = None) -> Any:
        try:
            return self._client.execute(statement, params, settings=settings)
        except errors.ServerException as e:
            raise QueryError.server_exception(statement, e.code, e.message, e) from e
        except (errors.Error, OSError, EOFError) as e:
            raise QueryError.transport_failure(statement, e) from e


class ConnectionManager:
    """
    Opens ClickHouse connections with bounded retry.

    Each attempt builds a client and pings the server; attempts repeat
    every ``connect_retry_interval`` seconds until ``connect_timeout``.
    """

    def __init__(
        self,
        settings: ClickHouseSettings,
        client_factory: Callable[..., Client] = Client,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._address = ClickHouseAddress.from_url(settings.db_url)
        self._client_factory = client_factory
        self._sleep = sleep
        self._clock = clock

    @property
    def address(self) -> ClickHouseAddress:
        """Parsed server address."""
        return self._address

    def connect(self) -> ClickHouseConnection:
        """
        Connect to ClickHouse, retrying until the timeout elapses.

        Raises:
            ConnectionTimeoutError: If no attempt succeeded in time.
        """
        logger.info(
            "clickhouse_connecting",
            address=str(self._address),
            timeout_seconds=self._settings.connect_timeout,
        )
        try:
            connection = poll_immediate(
                self._open_once,
                interval=self._settings.connect_retry_interval,
                timeout=self._settings.connect_timeout,
                description="connect_clickhouse",
                retry_on=(QueryError,),
                sleep=self._sleep,
                clock=self._clock,
            )
        except RetryTimeoutError as e:
            raise ConnectionTimeoutError.after(
                str(self._address), self._settings.connect_timeout, e.cause
            ) from e

        logger.info("clickhouse_connected", address=str(self._address))
        return connection

    def _open_once(self) -> ClickHouseConnection:
        client = self._client_factory(
            host=self._address.host,
            port=self._address.port,
            database=self._address.database,
            user=self._settings.clickhouse_username,
            password=self._settings.clickhouse_password,
            secure=self._address.secure,
            send_receive_timeout=self._settings.query_timeout,
        )
        connection = ClickHouseConnection(client, self._address)
        try:
            connection.ping()
        except QueryError as e:
            if e.error_code == ErrorCode.COMM_SERVER_EXCEPTION:
                logger.error("clickhouse_ping_failed", message=e.message, server_code=e.server_code)
            else:
                logger.error("clickhouse_ping_failed", error=str(e.cause))
            connection.close()
            raise
        return connection
