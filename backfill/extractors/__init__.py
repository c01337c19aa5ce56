"""Page extractors for relational sources."""

from .base import BaseExtractor
from .mysql_extractor import MySQLExtractor, MySQLSource

__all__ = [
    "BaseExtractor",
    "MySQLExtractor",
    "MySQLSource",
]
