"""Chunked writer with row-level fallback."""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List

from .base import BaseLoader
from ..errors import ChunkWriteError, ConnectivityError, RowWriteError, WriteError
from ..models.record import DestinationRecord, ErrorDetail, WriteOutcome

logger = logging.getLogger(__name__)


class ChunkedWriter:
    """
    Writes a page of records to a sink in fixed-size chunks.

    Each chunk is sent as one bulk insert. If the sink rejects the chunk, its
    records are re-sent one at a time so that only the records that still fail
    are reported. Connectivity errors are not retried here; they end the run.

    With ``max_workers > 1`` chunks are written concurrently. ``write`` only
    returns once every chunk has a final result.
    """

    def __init__(self, sink: BaseLoader, chunk_size: int = 500, max_workers: int = 1):
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        self.sink = sink
        self.chunk_size = chunk_size
        self.max_workers = max(1, max_workers)

    def split(self, records: List[DestinationRecord]) -> List[List[DestinationRecord]]:
        """Split records into chunks of at most ``chunk_size``."""
        return [
            records[i:i + self.chunk_size]
            for i in range(0, len(records), self.chunk_size)
        ]

    def write(self, collection: str, records: List[DestinationRecord]) -> WriteOutcome:
        """
        Write records and report per-row failures.

        Args:
            collection: Destination collection name
            records: Transformed records of one page

        Returns:
            WriteOutcome aggregated over all chunks
        """
        outcome = WriteOutcome(collection=collection)
        chunks = self.split(records)
        if not chunks:
            return outcome

        if self.max_workers == 1 or len(chunks) == 1:
            results = [self._write_chunk(collection, i, chunk) for i, chunk in enumerate(chunks)]
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                futures = [
                    pool.submit(self._write_chunk, collection, i, chunk)
                    for i, chunk in enumerate(chunks)
                ]
                results = [f.result() for f in futures]

        for chunk_outcome in results:
            outcome.attempted += chunk_outcome.attempted
            outcome.succeeded += chunk_outcome.succeeded
            outcome.failed += chunk_outcome.failed
            outcome.chunks += chunk_outcome.chunks
            outcome.fallback_chunks += chunk_outcome.fallback_chunks
            outcome.errors.extend(chunk_outcome.errors)

        return outcome

    def _write_chunk(
        self,
        collection: str,
        index: int,
        chunk: List[DestinationRecord]
    ) -> WriteOutcome:
        outcome = WriteOutcome(collection=collection, attempted=len(chunk), chunks=1)

        try:
            self.sink.write(collection, chunk)
            outcome.succeeded = len(chunk)
            return outcome
        except ConnectivityError:
            raise
        except WriteError as e:
            chunk_error = ChunkWriteError(collection, index, len(chunk), e.message)
            logger.warning(f"{chunk_error.message}; retrying rows individually")

        outcome.fallback_chunks = 1
        for record in chunk:
            try:
                self.sink.write(collection, [record])
                outcome.succeeded += 1
            except ConnectivityError:
                raise
            except WriteError as e:
                row_error = RowWriteError(collection, record.id, e.message)
                logger.warning(row_error.message)
                outcome.failed += 1
                outcome.errors.append(ErrorDetail(
                    context=f"write:{collection}",
                    message=row_error.message,
                    record_id=record.id,
                    error_type="row_write",
                ))

        return outcome
