"""Exception hierarchy for the backfill engine.

Errors are grouped by the scope they affect:

- run scope: ConnectivityError, CheckpointError (the job stops, nothing more is committed)
- page scope: ExtractionError, DimensionLookupError (the page is abandoned, no commit)
- chunk scope: ChunkWriteError (the chunk is retried row by row)
- row scope: TransformError, RowWriteError (recorded, the row is skipped)
"""

from typing import Any, Dict, Optional


class BackfillError(Exception):
    """Base exception for all backfill errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigError(BackfillError):
    """Raised when a job or settings object is invalid."""
    pass


class ConnectivityError(BackfillError):
    """Raised when the source or destination cannot be reached."""
    pass


class CheckpointError(BackfillError):
    """Raised when the checkpoint store cannot be read or written."""

    def __init__(self, job_key: str, message: str):
        self.job_key = job_key
        super().__init__(f"Checkpoint error for {job_key}: {message}", {"job_key": job_key})


class ExtractionError(BackfillError):
    """Raised when a page cannot be fetched or violates the page contract."""
    pass


class DimensionLookupError(BackfillError):
    """Raised when a dimension bulk lookup fails after all attempts."""

    def __init__(self, dimension: str, message: str, key_count: int = 0):
        self.dimension = dimension
        self.key_count = key_count
        super().__init__(
            f"Lookup of dimension '{dimension}' failed ({key_count} keys): {message}",
            {"dimension": dimension, "key_count": key_count},
        )


class TransformError(BackfillError):
    """Raised when one fact row cannot be turned into a destination record."""

    def __init__(self, record_id: Any, message: str, field: Optional[str] = None):
        self.record_id = record_id
        self.field = field
        prefix = f"field '{field}': " if field else ""
        super().__init__(f"{prefix}{message}", {"record_id": record_id, "field": field})


class WriteError(BackfillError):
    """Raised by a sink when a write request is rejected."""
    pass


class ChunkWriteError(WriteError):
    """A bulk write of one chunk failed."""

    def __init__(self, collection: str, chunk_index: int, size: int, message: str):
        self.collection = collection
        self.chunk_index = chunk_index
        self.size = size
        super().__init__(
            f"Chunk {chunk_index} ({size} rows) into {collection} failed: {message}",
            {"collection": collection, "chunk_index": chunk_index, "size": size},
        )


class RowWriteError(WriteError):
    """A single record still failed after the row-level retry."""

    def __init__(self, collection: str, record_id: Any, message: str):
        self.collection = collection
        self.record_id = record_id
        super().__init__(
            f"Record {record_id} into {collection} failed: {message}",
            {"collection": collection, "record_id": record_id},
        )
