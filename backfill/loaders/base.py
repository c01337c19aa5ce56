"""Base loader interface for destination sinks."""

from abc import ABC, abstractmethod
from typing import Any, Dict, List
import logging

from ..models.record import DestinationRecord
from ..models.schema import DestinationSchema

logger = logging.getLogger(__name__)


class BaseLoader(ABC):
    """
    Base class for destination sinks.

    A sink accepts bulk inserts into a named collection. Inserting a record
    whose key already exists must replace it (or be tolerated as a duplicate),
    because a page may be re-sent after a crash before its checkpoint commit.

    Implementations raise ``WriteError`` when a request is rejected and
    ``ConnectivityError`` when the destination cannot be reached.
    """

    def __init__(self, dry_run: bool = False):
        """
        Initialize the loader.

        Args:
            dry_run: If True, log writes instead of performing them
        """
        self.dry_run = dry_run

    @abstractmethod
    def insert_rows(self, collection: str, rows: List[Dict[str, Any]]) -> None:
        """
        Insert rows into a collection as one bulk operation.

        Args:
            collection: Destination table name
            rows: Row payloads
        """
        pass

    def write(self, collection: str, records: List[DestinationRecord]) -> None:
        """Insert transformed records as one bulk operation."""
        if not records:
            return
        self.insert_rows(collection, [r.to_dict() for r in records])

    def ensure_collection(self, schema: DestinationSchema) -> None:
        """Create the destination collection if it does not exist."""
        pass

    def drop_collection(self, collection: str) -> None:
        """Remove a destination collection and its data."""
        pass

    def validate_connection(self) -> bool:
        """Validate the connection to the destination."""
        return True

    def close(self) -> None:
        """Release resources held by the loader."""
        pass
