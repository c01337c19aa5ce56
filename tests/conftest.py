"""Shared fakes and fixtures for the backfill tests."""

import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

import pytest

from backfill.errors import ConnectivityError, ExtractionError, WriteError
from backfill.extractors.base import BaseExtractor
from backfill.loaders.base import BaseLoader
from backfill.models.migration import Checkpoint, JobDescriptor
from backfill.models.schema import DimensionSpec, FieldSpec, FieldType, NullPolicy
from backfill.services.checkpoint_store import CheckpointBackend, CheckpointStore
from backfill.services.transformer import RowTransformer, from_dimension


class InMemoryExtractor(BaseExtractor):
    """Keyset-paginated extractor over a list of row dicts."""

    def __init__(self, rows: List[Dict[str, Any]], fail_after: Optional[int] = None):
        super().__init__(key_field="id")
        self.rows = sorted(rows, key=lambda r: r["id"])
        self.fail_after = fail_after
        self.calls: List[int] = []

    def _fetch_rows(self, watermark: int, limit: int) -> List[Dict[str, Any]]:
        if self.fail_after is not None and len(self.calls) >= self.fail_after:
            raise ExtractionError(f"source unavailable above {watermark}")
        self.calls.append(watermark)
        return [dict(r) for r in self.rows if r["id"] > watermark][:limit]

    def count_remaining(self, watermark: int) -> Optional[int]:
        return sum(1 for r in self.rows if r["id"] > watermark)


class FakeSink(BaseLoader):
    """Upserting in-memory sink with injectable failures."""

    def __init__(self, key_field: str = "id", dry_run: bool = False):
        super().__init__(dry_run=dry_run)
        self.key_field = key_field
        self.tables: Dict[str, Dict[Any, Dict[str, Any]]] = {}
        self.schemas: Dict[str, Any] = {}
        self.dropped: List[str] = []
        self.batches: List[int] = []
        self.bad_ids = set()
        self.reject_bulk = False
        self.offline = False
        self._lock = threading.Lock()

    def insert_rows(self, collection: str, rows: List[Dict[str, Any]]) -> None:
        if self.offline:
            raise ConnectivityError("sink is offline")
        if self.dry_run:
            return
        with self._lock:
            self.batches.append(len(rows))
        if self.reject_bulk and len(rows) > 1:
            raise WriteError("bulk insert rejected")
        if any(row[self.key_field] in self.bad_ids for row in rows):
            raise WriteError("row rejected by destination")
        with self._lock:
            table = self.tables.setdefault(collection, {})
            for row in rows:
                table[row[self.key_field]] = dict(row)

    def ensure_collection(self, schema) -> None:
        self.schemas[schema.name] = schema

    def drop_collection(self, collection: str) -> None:
        self.dropped.append(collection)
        self.tables.pop(collection, None)

    def rows(self, collection: str) -> List[Dict[str, Any]]:
        return [self.tables.get(collection, {})[k] for k in sorted(self.tables.get(collection, {}))]


class MemoryCheckpointBackend(CheckpointBackend):
    """Checkpoints in a dict; ``fail_writes`` makes every put fail."""

    def __init__(self):
        self.data: Dict[str, Checkpoint] = {}
        self.puts: List[int] = []
        self.fail_writes = False

    def get(self, job_key: str) -> Optional[Checkpoint]:
        return self.data.get(job_key)

    def put(self, job_key: str, last_migrated_id: int, updated_at: datetime) -> None:
        if self.fail_writes:
            raise WriteError("checkpoint table unavailable")
        self.puts.append(last_migrated_id)
        self.data[job_key] = Checkpoint(job_key, last_migrated_id, updated_at)

    def delete(self, job_key: str) -> None:
        self.data.pop(job_key, None)


class CountingLookup:
    """Dimension lookup over a dict table that records every call."""

    def __init__(self, table: Dict[Any, Dict[str, Any]], failures: int = 0, error: Exception = None):
        self.table = table
        self.calls: List[List[Any]] = []
        self.failures = failures
        self.error = error or RuntimeError("lookup failed")

    def __call__(self, keys: List[Any]) -> List[Dict[str, Any]]:
        self.calls.append(list(keys))
        if self.failures > 0:
            self.failures -= 1
            raise self.error
        return [dict(self.table[k], id=k) for k in keys if k in self.table]


CUSTOMERS = {
    1: {"name": "Ada Lovelace"},
    2: {"name": "Alan Turing"},
}

FIELDS = (
    FieldSpec("id", type=FieldType.INT, null_policy=NullPolicy.REQUIRED),
    FieldSpec("customer_id", "customerId", FieldType.INT),
    FieldSpec("customer_name", from_dimension("customer", "name"), default="N/A"),
    FieldSpec("amount", type=FieldType.FLOAT),
)


def make_rows(count: int, start: int = 1, step: int = 1) -> List[Dict[str, Any]]:
    return [
        {"id": start + i * step, "customerId": (i % 3) + 1, "amount": f"{i}.50"}
        for i in range(count)
    ]


@pytest.fixture
def sink():
    return FakeSink()


@pytest.fixture
def checkpoint_backend():
    return MemoryCheckpointBackend()


@pytest.fixture
def checkpoint_store(checkpoint_backend):
    return CheckpointStore(checkpoint_backend)


@pytest.fixture
def customer_lookup():
    return CountingLookup(CUSTOMERS)


@pytest.fixture
def make_descriptor(sink, customer_lookup):
    """Factory for a descriptor over in-memory rows."""

    def _make(rows, page_size=10, chunk_size=5, job_key="invoices_1", extractor=None, **kwargs):
        return JobDescriptor(
            job_key=job_key,
            extractor=extractor or InMemoryExtractor(rows),
            transformer=RowTransformer(FIELDS),
            sink=sink,
            dimensions=(DimensionSpec("customer", "customerId", customer_lookup),),
            page_size=page_size,
            chunk_size=chunk_size,
            **kwargs,
        )

    return _make


class FakeMySQLSource:
    """
    Stand-in for MySQLSource that serves page and count queries from a list.

    Lookup queries return no rows, so every dimension resolves to NOT_FOUND.
    ``gate`` (if set) blocks page queries until it is released.
    """

    def __init__(self, rows: List[Dict[str, Any]], providers=(1,), gate: Optional[threading.Event] = None):
        self.rows = sorted(rows, key=lambda r: r["id"])
        self.providers = list(providers)
        self.gate = gate
        self.closed = False
        self.lookups: List[str] = []

    def fetch_all(self, sql: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        params = params or {}
        if "FROM serviceProvider WHERE status" in sql:
            return [{"id": p} for p in self.providers]
        remaining = [r for r in self.rows if r["id"] > params.get("watermark", 0)]
        if "COUNT(*)" in sql:
            return [{"total": len(remaining)}]
        if self.gate is not None:
            self.gate.wait(timeout=5)
        return [dict(r) for r in remaining[:params["limit"]]]

    def lookup(self, sql: str, **params):
        self.lookups.append(sql)
        return lambda keys: []

    def close(self) -> None:
        self.closed = True
