"""
System adapters and the per-system connection pool.
"""

from mapflow.adapters.base import (
    FILTER_OPERATORS,
    AdapterCapabilities,
    AdapterInfo,
    BaseAdapter,
    ReadOptions,
    ReadResult,
    SupportedOperations,
    WriteMode,
    WriteResult,
    matches_filters,
)
from mapflow.adapters.memory import MemoryAdapter
from mapflow.adapters.pool import Connection, ConnectionPool, PoolConfig
from mapflow.adapters.registry import AdapterRegistry

__all__ = [
    "FILTER_OPERATORS",
    "AdapterCapabilities",
    "AdapterInfo",
    "BaseAdapter",
    "ReadOptions",
    "ReadResult",
    "SupportedOperations",
    "WriteMode",
    "WriteResult",
    "matches_filters",
    "MemoryAdapter",
    "Connection",
    "ConnectionPool",
    "PoolConfig",
    "AdapterRegistry",
]
