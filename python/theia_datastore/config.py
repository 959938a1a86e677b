"""
Configuration management for the data store lifecycle tools.

Every process reads its settings from environment variables, optionally
layered over a YAML file named by ``THEIA_DATASTORE_CONFIG``.
Precedence: environment variables > YAML file > defaults.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, TypeVar

from pydantic import Field, ValidationError
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

from theia_datastore.exceptions import ConfigurationError
from theia_datastore.units import parse_duration, parse_size

CONFIG_FILE_ENV = "THEIA_DATASTORE_CONFIG"

# Plain identifier, optionally qualified by a database name.
_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")

SettingsT = TypeVar("SettingsT", bound="EnvSettings")


class EnvSettings(BaseSettings):
    """Base class wiring environment variables over an optional YAML file."""

    model_config = SettingsConfigDict(extra="ignore")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        yaml_settings = YamlConfigSettingsSource(
            settings_cls, yaml_file=os.environ.get(CONFIG_FILE_ENV)
        )
        return init_settings, env_settings, yaml_settings, file_secret_settings

    @classmethod
    def load(cls: type[SettingsT], **overrides: Any) -> SettingsT:
        """
        Load settings, translating pydantic failures into ConfigurationError.

        Raises:
            ConfigurationError: If a required variable is missing or a value is invalid.
        """
        try:
            return cls(**overrides)
        except ValidationError as e:
            raise _to_configuration_error(e) from e


def _to_configuration_error(error: ValidationError) -> ConfigurationError:
    details = error.errors()
    missing = [
        str(d["loc"][0]).upper()
        for d in details
        if d["type"] == "missing" and d["loc"]
    ]
    if missing:
        return ConfigurationError.missing_env(missing)
    first = details[0]
    field_name = str(first["loc"][0]).upper() if first["loc"] else "<root>"
    return ConfigurationError.validation_failed(field_name, first.get("input"), first["msg"])


class ClickHouseSettings(EnvSettings):
    """Credentials and timing for the ClickHouse connection."""

    clickhouse_username: str = Field(min_length=1, description="ClickHouse user")
    clickhouse_password: str = Field(min_length=1, repr=False, description="ClickHouse password")
    db_url: str = Field(min_length=1, description="Native protocol URL, e.g. tcp://host:9000")
    connect_retry_interval: float = Field(default=10.0, gt=0, description="Seconds between connection attempts")
    connect_timeout: float = Field(default=60.0, gt=0, description="Give up connecting after this many seconds")
    query_timeout: float = Field(default=10.0, gt=0, description="Socket timeout for a single statement")


class MonitorSettings(EnvSettings):
    """Raw settings of the storage capacity monitor."""

    table_name: str = Field(default="flows", description="Base table to prune")
    mv_names: str = Field(
        default="flows_pod_view flows_node_view flows_policy_view",
        description="Space-separated derived view tables",
    )
    storage_size: str = Field(default="8Gi", description="Space allocated to the store")
    threshold: float = Field(default=0.5, gt=0, le=1, description="Free-space ratio that triggers eviction")
    delete_percentage: float = Field(default=0.5, gt=0, le=1, description="Fraction of rows to evict")
    exec_interval: str = Field(default="1m", description="Interval between monitor rounds")
    skip_rounds_num: int = Field(default=3, ge=0, description="Rounds to idle after an eviction")
    time_column: str = Field(default="timeInserted", description="Insertion time column")

    def to_retention_config(self) -> RetentionConfig:
        """
        Build the immutable retention configuration.

        Raises:
            InvalidSizeFormatError: If STORAGE_SIZE cannot be parsed.
            InvalidDurationFormatError: If EXEC_INTERVAL cannot be parsed.
            ConfigurationError: If a table name is invalid or views repeat.
        """
        view_names = tuple(self.mv_names.split())
        if len(set(view_names)) != len(view_names):
            raise ConfigurationError.validation_failed(
                "MV_NAMES", self.mv_names, "view names must be unique"
            )
        for field_name, value in [
            ("TABLE_NAME", self.table_name),
            ("TIME_COLUMN", self.time_column),
            *(("MV_NAMES", name) for name in view_names),
        ]:
            _validate_identifier(field_name, value)

        poll_interval = parse_duration(self.exec_interval)
        if poll_interval <= timedelta(0):
            raise ConfigurationError.validation_failed(
                "EXEC_INTERVAL", self.exec_interval, "interval must be positive"
            )

        return RetentionConfig(
            table_name=self.table_name,
            view_names=view_names,
            allocated_space_bytes=parse_size(self.storage_size),
            threshold=self.threshold,
            delete_percentage=self.delete_percentage,
            poll_interval=poll_interval,
            idle_rounds_to_skip=self.skip_rounds_num,
            time_column=self.time_column,
        )


class MigrationSettings(EnvSettings):
    """Settings of the schema version migrator."""

    theia_version: str = Field(min_length=1, description="Version of the running release")
    query_retry_interval: float = Field(default=1.0, gt=0, description="Seconds between metadata retries")
    query_retry_timeout: float = Field(default=10.0, gt=0, description="Give up on metadata after this many seconds")


class LoggingSettings(EnvSettings):
    """Configuration for logging."""

    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(default="json", description="Log format (json, plain)")
    log_file: str | None = Field(default=None, description="Rotating JSONL file (None for stdout only)")


@dataclass(frozen=True)
class RetentionConfig:
    """
    Immutable retention configuration for one monitor process.

    Attributes:
        table_name: Base table pruned first in every eviction round.
        view_names: Derived view tables, pruned in this order after the base table.
        allocated_space_bytes: Space allocated to the store.
        threshold: Eviction triggers when free space drops below this share of the allocation.
        delete_percentage: Share of base table rows evicted per round.
        poll_interval: Time between rounds.
        idle_rounds_to_skip: Rounds to idle after an eviction round.
        time_column: Insertion time column shared by the base table and its views.
    """

    table_name: str
    view_names: tuple[str, ...]
    allocated_space_bytes: int
    threshold: float
    delete_percentage: float
    poll_interval: timedelta
    idle_rounds_to_skip: int
    time_column: str = "timeInserted"

    @property
    def tables(self) -> tuple[str, ...]:
        """Base table followed by every derived view."""
        return (self.table_name, *self.view_names)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "table_name": self.table_name,
            "view_names": list(self.view_names),
            "allocated_space_bytes": self.allocated_space_bytes,
            "threshold": self.threshold,
            "delete_percentage": self.delete_percentage,
            "poll_interval_seconds": self.poll_interval.total_seconds(),
            "idle_rounds_to_skip": self.idle_rounds_to_skip,
            "time_column": self.time_column,
        }


def _validate_identifier(field_name: str, value: str) -> None:
    if not _IDENTIFIER_RE.match(value):
        raise ConfigurationError.invalid_identifier(field_name, value)
