"""
Errors raised by the data store lifecycle tools.

Every error derives from DataStoreError and carries an ErrorCode, a
context dict of structured fields for the log line, and whether retrying
the failed operation can help. Families:
- ConfigurationError: bad or missing settings, fatal at startup
- CommunicationError: connection, statement and retry-bound failures
- EvictionError: a bulk delete that failed for one table in one round
- MigrationError: unknown versions, incomplete migrator chains, failed steps
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# ClickHouse server error code for "Table ... doesn't exist".
UNKNOWN_TABLE_CODE = 60


class ErrorCode(str, Enum):
    """Stable identifiers emitted as ``error_code`` in logs."""

    # Configuration (1xxx)
    CONFIG_INVALID = "THEIA_1001"
    CONFIG_MISSING = "THEIA_1002"
    CONFIG_VALIDATION = "THEIA_1003"
    CONFIG_INVALID_SIZE = "THEIA_1004"
    CONFIG_INVALID_DURATION = "THEIA_1005"
    CONFIG_INVALID_IDENTIFIER = "THEIA_1006"

    # Store communication (2xxx)
    COMM_CONNECTION_TIMEOUT = "THEIA_2001"
    COMM_SERVER_EXCEPTION = "THEIA_2002"
    COMM_TRANSPORT_FAILURE = "THEIA_2003"
    COMM_RETRY_EXHAUSTED = "THEIA_2004"
    COMM_METADATA_QUERY_FAILED = "THEIA_2005"

    # Eviction (3xxx)
    EVICT_DELETE_FAILED = "THEIA_3001"

    # Migration (4xxx)
    MIGRATE_UNRECOGNIZED_VERSION = "THEIA_4001"
    MIGRATE_COUNT_MISMATCH = "THEIA_4002"
    MIGRATE_STEP_FAILED = "THEIA_4003"
    MIGRATE_AMBIGUOUS_VERSION = "THEIA_4004"

    UNKNOWN = "THEIA_9999"


@dataclass
class DataStoreError(Exception):
    """
    Root of the error hierarchy.

    Attributes:
        message: What went wrong, for humans.
        error_code: Stable identifier for dashboards and alerts.
        context: Structured fields (table, version, statement, ...).
        is_retryable: Whether repeating the operation may succeed.
        cause: Underlying driver or library exception, if any.
    """

    message: str
    error_code: ErrorCode = ErrorCode.UNKNOWN
    context: dict[str, Any] = field(default_factory=dict)
    is_retryable: bool = False
    cause: BaseException | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def __str__(self) -> str:
        text = f"[{self.error_code.value}] {self.message}"
        if not self.context:
            return text
        fields = ", ".join(f"{key}={value}" for key, value in self.context.items())
        return f"{text} ({fields})"

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}({self.message!r}, code={self.error_code.value}, "
            f"context={self.context!r}, retryable={self.is_retryable})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Fields to splat into a structlog call."""
        return {
            "error_type": type(self).__name__,
            "error_code": self.error_code.value,
            "message": self.message,
            "context": self.context,
            "is_retryable": self.is_retryable,
            "cause": None if self.cause is None else str(self.cause),
        }


@dataclass
class ConfigurationError(DataStoreError):
    """A setting is missing, malformed or out of range."""

    error_code: ErrorCode = ErrorCode.CONFIG_INVALID

    @classmethod
    def missing_env(cls, names: list[str]) -> ConfigurationError:
        """Required environment variables are unset."""
        joined = ", ".join(names)
        return cls(
            message=f"Unable to load environment variables, {joined} must be defined",
            error_code=ErrorCode.CONFIG_MISSING,
            context={"variables": names},
        )

    @classmethod
    def validation_failed(cls, field: str, value: Any, reason: str) -> ConfigurationError:
        """A setting was present but rejected."""
        return cls(
            message=f"Invalid value for {field}: {reason}",
            error_code=ErrorCode.CONFIG_VALIDATION,
            context={"field": field, "value": str(value), "reason": reason},
        )

    @classmethod
    def invalid_identifier(cls, field: str, value: str) -> ConfigurationError:
        """A table or column name is not a plain SQL identifier."""
        return cls(
            message=f"Invalid table name for '{field}': {value!r}",
            error_code=ErrorCode.CONFIG_INVALID_IDENTIFIER,
            context={"field": field, "value": value},
        )


@dataclass
class InvalidSizeFormatError(ConfigurationError):
    """Raised when a capacity string such as ``500Mi`` cannot be parsed."""

    error_code: ErrorCode = ErrorCode.CONFIG_INVALID_SIZE

    @classmethod
    def for_text(cls, text: str, reason: str) -> InvalidSizeFormatError:
        """Create error for an unparseable size string."""
        return cls(
            message=f"Invalid size format {text!r}: {reason}",
            context={"text": text, "reason": reason},
        )


@dataclass
class InvalidDurationFormatError(ConfigurationError):
    """Raised when a duration string such as ``1m30s`` cannot be parsed."""

    error_code: ErrorCode = ErrorCode.CONFIG_INVALID_DURATION

    @classmethod
    def for_text(cls, text: str, reason: str) -> InvalidDurationFormatError:
        """Create error for an unparseable duration string."""
        return cls(
            message=f"Invalid duration format {text!r}: {reason}",
            context={"text": text, "reason": reason},
        )


@dataclass
class CommunicationError(DataStoreError):
    """Raised when talking to the store fails."""

    error_code: ErrorCode = ErrorCode.COMM_TRANSPORT_FAILURE
    is_retryable: bool = True


@dataclass
class RetryTimeoutError(CommunicationError):
    """Raised by the retry combinator when its wall-clock bound is exhausted."""

    error_code: ErrorCode = ErrorCode.COMM_RETRY_EXHAUSTED
    is_retryable: bool = False

    @classmethod
    def exhausted(
        cls,
        operation: str,
        timeout_seconds: float,
        attempts: int,
        last_error: BaseException | None,
    ) -> RetryTimeoutError:
        """Create error for a retry loop that ran out of time."""
        return cls(
            message=f"Operation '{operation}' did not succeed within {timeout_seconds}s",
            context={
                "operation": operation,
                "timeout_seconds": timeout_seconds,
                "attempts": attempts,
                "last_error": str(last_error) if last_error else None,
            },
            cause=last_error,
        )


@dataclass
class ConnectionTimeoutError(CommunicationError):
    """Raised when no connection to the store could be opened in time."""

    error_code: ErrorCode = ErrorCode.COMM_CONNECTION_TIMEOUT
    is_retryable: bool = False

    @classmethod
    def after(
        cls, address: str, timeout_seconds: float, last_error: BaseException | None
    ) -> ConnectionTimeoutError:
        """Create error for a connection loop that gave up."""
        return cls(
            message=f"Failed to connect to ClickHouse after {timeout_seconds}s",
            context={
                "address": address,
                "timeout_seconds": timeout_seconds,
                "last_error": str(last_error) if last_error else None,
            },
            cause=last_error,
        )


@dataclass
class QueryError(CommunicationError):
    """
    Raised when a statement fails.

    Store-reported exceptions keep the server error code and message;
    transport failures keep the raw error text.
    """

    server_code: int | None = None

    @classmethod
    def server_exception(
        cls, statement: str, code: int | None, message: str, cause: BaseException | None = None
    ) -> QueryError:
        """Create error for an exception reported by the ClickHouse server."""
        return cls(
            message=f"ClickHouse exception: {message}",
            error_code=ErrorCode.COMM_SERVER_EXCEPTION,
            context={"statement": statement, "server_code": code},
            cause=cause,
            server_code=code,
        )

    @classmethod
    def transport_failure(cls, statement: str, cause: BaseException) -> QueryError:
        """Create error for a network or driver level failure."""
        return cls(
            message=f"Failed to execute statement: {cause}",
            error_code=ErrorCode.COMM_TRANSPORT_FAILURE,
            context={"statement": statement},
            cause=cause,
        )

    @property
    def is_unknown_table(self) -> bool:
        """Whether the server rejected the statement because a table is missing."""
        if self.server_code is not None:
            return self.server_code == UNKNOWN_TABLE_CODE
        return self.error_code == ErrorCode.COMM_SERVER_EXCEPTION and "doesn't exist" in self.message


@dataclass
class MetadataQueryError(CommunicationError):
    """Raised when a schema metadata read or write keeps failing past its bound."""

    error_code: ErrorCode = ErrorCode.COMM_METADATA_QUERY_FAILED
    is_retryable: bool = False

    @classmethod
    def exhausted(cls, operation: str, cause: RetryTimeoutError) -> MetadataQueryError:
        """Create error from an exhausted metadata retry loop."""
        return cls(
            message=f"Metadata operation '{operation}' failed: {cause.message}",
            context={"operation": operation, **cause.context},
            cause=cause.cause or cause,
        )


@dataclass
class EvictionError(DataStoreError):
    """Raised when pruning a table fails."""

    error_code: ErrorCode = ErrorCode.EVICT_DELETE_FAILED
    is_retryable: bool = True


@dataclass
class TableDeleteError(EvictionError):
    """A bulk delete failed for one table in one round."""

    @classmethod
    def for_table(cls, table: str, cutoff: str, cause: BaseException) -> TableDeleteError:
        """Create error for a failed per-table delete."""
        return cls(
            message=f"Failed to delete rows older than {cutoff} from {table}: {cause}",
            context={"table": table, "cutoff": cutoff},
            cause=cause,
        )


@dataclass
class MigrationError(DataStoreError):
    """Raised when schema migration cannot proceed."""

    error_code: ErrorCode = ErrorCode.MIGRATE_STEP_FAILED

    @classmethod
    def step_failed(
        cls, from_version: str, to_version: str, cause: BaseException
    ) -> MigrationError:
        """Create error for a migrator that raised."""
        return cls(
            message=f"Migration from {from_version} to {to_version} failed: {cause}",
            context={"from_version": from_version, "to_version": to_version},
            cause=cause,
        )


@dataclass
class UnrecognizedVersionError(MigrationError):
    """Raised when a version string is not in the known version order."""

    error_code: ErrorCode = ErrorCode.MIGRATE_UNRECOGNIZED_VERSION

    @classmethod
    def for_version(
        cls, kind: str, version: str, known: list[str]
    ) -> UnrecognizedVersionError:
        """Create error for an unknown data or target version."""
        return cls(
            message=f"Cannot recognize the {kind} version {version!r}",
            context={"kind": kind, "version": version, "known_versions": known},
        )


@dataclass
class MigratorCountMismatchError(MigrationError):
    """Raised when the migrator chain does not cover every version transition."""

    error_code: ErrorCode = ErrorCode.MIGRATE_COUNT_MISMATCH

    @classmethod
    def for_direction(
        cls, direction: str, actual: int, expected: int
    ) -> MigratorCountMismatchError:
        """Create error for a chain with missing or extra migrators."""
        return cls(
            message=f"Not enough migrators to {direction} the data schema version",
            context={
                "direction": direction,
                "actual_num_migrators": actual,
                "expected_num_migrators": expected,
            },
        )


@dataclass
class AmbiguousVersionError(MigrationError):
    """Raised when the version table holds more than one distinct version."""

    error_code: ErrorCode = ErrorCode.MIGRATE_AMBIGUOUS_VERSION

    @classmethod
    def for_versions(cls, versions: list[str]) -> AmbiguousVersionError:
        """Create error for a version table left with several labels."""
        return cls(
            message=f"The version table holds {len(versions)} different versions",
            context={"stored_versions": versions},
        )
