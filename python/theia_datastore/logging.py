"""
Structured logging for the data store lifecycle tools.

Both tools log through structlog on top of the stdlib logging tree:
- JSON lines (default) or key=value text on stdout
- Optional rotating JSONL file next to the console output
- Tracebacks rendered as structured data in JSON output
- Context binding so every line of a monitor round or a migration run
  carries the round number or target version
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Iterator, MutableMapping
from contextlib import contextmanager
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from structlog.types import Processor

    from theia_datastore.config import LoggingSettings

SERVICE_NAME = "theia-datastore"
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5

# Chatty third-party loggers capped at WARNING.
_QUIET_LOGGERS = ("clickhouse_driver", "urllib3")


class LogFormat(str, Enum):
    """Console renderers."""

    JSON = "json"
    PLAIN = "plain"

    @classmethod
    def parse(cls, value: str) -> LogFormat:
        try:
            return cls(value.lower())
        except ValueError:
            return cls.JSON


def _add_process_info(
    _logger: logging.Logger, _method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Tag each entry with the service, the pod hostname and the pid."""
    event_dict.setdefault("service", SERVICE_NAME)
    event_dict["hostname"] = os.environ.get("HOSTNAME", "unknown")
    event_dict["pid"] = os.getpid()
    return event_dict


def _pre_chain() -> list[Processor]:
    """Processors applied to structlog and foreign stdlib records alike."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
        _add_process_info,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def _renderer_chain(log_format: LogFormat) -> list[Processor]:
    if log_format is LogFormat.PLAIN:
        return [
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.dev.ConsoleRenderer(
                colors=False, exception_formatter=structlog.dev.plain_traceback
            ),
        ]
    return [
        structlog.stdlib.ProcessorFormatter.remove_processors_meta,
        structlog.processors.dict_tracebacks,
        structlog.processors.JSONRenderer(),
    ]


def _formatter(log_format: LogFormat) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_pre_chain(),
        processors=_renderer_chain(log_format),
    )


def _file_handler(path: str | Path, level: int) -> logging.Handler:
    log_path = Path(path)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUPS,
        encoding="utf-8",
    )
    handler.setFormatter(_formatter(LogFormat.JSON))
    handler.setLevel(level)
    return handler


def setup_logging(
    level: str = "INFO",
    format: str = "json",
    log_file: str | None = None,
    enable_console: bool = True,
) -> None:
    """
    Route structlog through the stdlib root logger.

    Args:
        level: Minimum level name (DEBUG, INFO, WARNING, ERROR).
        format: Console renderer, "json" or "plain". Unknown values fall back to json.
        log_file: Rotating JSONL file to write in addition to the console.
        enable_console: Whether to write to stdout.
    """
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    structlog.configure(
        processors=[
            *_pre_chain(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handlers: list[logging.Handler] = []
    if enable_console:
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(_formatter(LogFormat.parse(format)))
        console.setLevel(log_level)
        handlers.append(console)
    if log_file:
        handlers.append(_file_handler(log_file, log_level))

    root = logging.getLogger()
    root.handlers = handlers
    root.setLevel(log_level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))


def setup_logging_from_settings(settings: LoggingSettings) -> None:
    """Configure logging from LOG_LEVEL, LOG_FORMAT and LOG_FILE."""
    setup_logging(
        level=settings.log_level,
        format=settings.log_format,
        log_file=settings.log_file,
    )


def get_logger(name: str | None = None) -> Any:
    """Return a structlog logger; events are snake_case names with keyword fields."""
    return structlog.get_logger(name)


def clear_context() -> None:
    """Drop every context variable bound in this thread."""
    structlog.contextvars.clear_contextvars()


@contextmanager
def with_context(**kwargs: Any) -> Iterator[None]:
    """
    Bind fields to every log line emitted inside the block.

    Example:
        with with_context(round=3):
            logger.info("disk_usage_sampled")
    """
    with structlog.contextvars.bound_contextvars(**kwargs):
        yield
