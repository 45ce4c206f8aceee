"""
Data storage domain.

Append-only sinks for crawled job records (JSON Lines files or SQL tables).
"""

from jobtrawl.contexts.storage.config import DatabaseConfig
from jobtrawl.contexts.storage.sinks import (
    JsonLinesSink,
    Sink,
    SQLSink,
)
from jobtrawl.contexts.storage.getter import get_sink

__all__ = [
    # Factory function (primary interface)
    "get_sink",
    # Sinks
    "Sink",
    "JsonLinesSink",
    "SQLSink",
    # Configuration
    "DatabaseConfig",
]
