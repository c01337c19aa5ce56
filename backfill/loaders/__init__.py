"""Destination loaders."""

from .base import BaseLoader
from .chunked import ChunkedWriter
from .clickhouse_loader import ClickHouseLoader

__all__ = [
    "BaseLoader",
    "ChunkedWriter",
    "ClickHouseLoader",
]
