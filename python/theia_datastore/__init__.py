"""
Theia data store lifecycle tools.

This package keeps the ClickHouse flow store healthy:
- Storage capacity monitoring with threshold-triggered eviction
- Data schema version detection and migration across releases
- Bounded-retry ClickHouse connections
- Structured JSON logging via structlog
"""

__version__ = "0.2.0"
__all__ = [
    "clickhouse",
    "config",
    "exceptions",
    "logging",
    "retry",
    "storage",
    "units",
]
