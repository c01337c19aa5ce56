"""Checkpoint store: durable per-job watermarks."""

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Optional

from dateutil import parser as date_parser

from ..errors import BackfillError, CheckpointError
from ..models.migration import Checkpoint

logger = logging.getLogger(__name__)


class CheckpointBackend(ABC):
    """Key-value persistence for checkpoints, keyed by job."""

    @abstractmethod
    def get(self, job_key: str) -> Optional[Checkpoint]:
        """Latest checkpoint of a job, or None if it has never committed."""
        pass

    @abstractmethod
    def put(self, job_key: str, last_migrated_id: int, updated_at: datetime) -> None:
        """Persist a new checkpoint."""
        pass

    @abstractmethod
    def delete(self, job_key: str) -> None:
        """Forget a job's checkpoint."""
        pass


class JsonFileCheckpointBackend(CheckpointBackend):
    """Checkpoints kept in a local JSON file, one entry per job."""

    def __init__(self, file_path: str):
        self.file_path = file_path
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, Any]:
        if not os.path.exists(self.file_path):
            return {}
        with open(self.file_path) as f:
            return json.load(f)

    def _save(self, data: Dict[str, Any]) -> None:
        directory = os.path.dirname(os.path.abspath(self.file_path))
        os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.file_path}.tmp"
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2, sort_keys=True)
        os.replace(tmp_path, self.file_path)

    def get(self, job_key: str) -> Optional[Checkpoint]:
        with self._lock:
            entry = self._load().get(job_key)
        if entry is None:
            return None
        return Checkpoint(
            job_key=job_key,
            last_migrated_id=int(entry["last_migrated_id"]),
            updated_at=date_parser.parse(entry["updated_at"]),
        )

    def put(self, job_key: str, last_migrated_id: int, updated_at: datetime) -> None:
        with self._lock:
            data = self._load()
            data[job_key] = {
                "last_migrated_id": last_migrated_id,
                "updated_at": updated_at.isoformat(),
            }
            self._save(data)

    def delete(self, job_key: str) -> None:
        with self._lock:
            data = self._load()
            if data.pop(job_key, None) is not None:
                self._save(data)


class ClickHouseCheckpointBackend(CheckpointBackend):
    """
    Checkpoints kept in a ClickHouse table.

    Rows are only ever appended; the latest ``updated_at`` per ``table_name``
    wins, with the larger id breaking ties within the same second.
    """

    def __init__(self, client, table: str = "migration_progress"):
        """
        Args:
            client: A ClickHouseLoader (anything with ``query``, ``execute``
                and ``insert_rows``)
            table: Checkpoint table name
        """
        self.client = client
        self.table = table

    def ensure_table(self) -> None:
        """Create the checkpoint table if it does not exist."""
        self.client.execute(
            f"CREATE TABLE IF NOT EXISTS {self.client.table(self.table)}\n"
            "(\n"
            "    table_name String,\n"
            "    last_migrated_id Int64,\n"
            "    updated_at DateTime\n"
            ")\n"
            "ENGINE = MergeTree\n"
            "ORDER BY (table_name, updated_at)"
        )

    def get(self, job_key: str) -> Optional[Checkpoint]:
        rows = self.client.query(
            f"SELECT last_migrated_id, updated_at FROM {self.client.table(self.table)} "
            "WHERE table_name = {job_key:String} "
            "ORDER BY updated_at DESC, last_migrated_id DESC LIMIT 1",
            {"job_key": job_key},
        )
        if not rows:
            return None
        row = rows[0]
        # Int64 values come back quoted in JSON output
        return Checkpoint(
            job_key=job_key,
            last_migrated_id=int(row["last_migrated_id"]),
            updated_at=date_parser.parse(str(row["updated_at"])),
        )

    def put(self, job_key: str, last_migrated_id: int, updated_at: datetime) -> None:
        self.client.insert_rows(self.table, [{
            "table_name": job_key,
            "last_migrated_id": last_migrated_id,
            "updated_at": updated_at.strftime("%Y-%m-%d %H:%M:%S"),
        }])

    def delete(self, job_key: str) -> None:
        self.client.execute(
            f"ALTER TABLE {self.client.table(self.table)} "
            "DELETE WHERE table_name = {job_key:String}",
            {"job_key": job_key},
        )


class CheckpointStore:
    """
    Reads and advances job watermarks.

    The watermark of a job never moves backwards through ``commit_watermark``;
    only ``reset`` removes it. Any backend failure surfaces as CheckpointError
    so the caller can stop instead of guessing a starting point.
    """

    def __init__(self, backend: CheckpointBackend):
        self.backend = backend

    def get_checkpoint(self, job_key: str) -> Optional[Checkpoint]:
        """Stored checkpoint of a job, or None."""
        try:
            return self.backend.get(job_key)
        except (BackfillError, OSError, ValueError, KeyError) as e:
            raise CheckpointError(job_key, f"read failed: {e}")

    def get_watermark(self, job_key: str) -> int:
        """Last committed row id of a job, 0 if it has never committed."""
        checkpoint = self.get_checkpoint(job_key)
        return checkpoint.last_migrated_id if checkpoint else 0

    def commit_watermark(self, job_key: str, last_id: int, rows_moved: int) -> bool:
        """
        Persist a new watermark after a fully successful page.

        Args:
            job_key: Job identifier
            last_id: Highest row id of the committed page
            rows_moved: Rows written by the page; nothing is stored when zero

        Returns:
            True if a checkpoint was written
        """
        if rows_moved <= 0:
            logger.debug(f"{job_key}: no rows moved, checkpoint left unchanged")
            return False

        current = self.get_watermark(job_key)
        if last_id < current:
            logger.warning(
                f"{job_key}: refusing to move watermark back from {current} to {last_id}"
            )
            return False

        try:
            self.backend.put(job_key, last_id, datetime.utcnow())
        except (BackfillError, OSError) as e:
            raise CheckpointError(job_key, f"write failed: {e}")

        logger.info(f"{job_key}: watermark committed at {last_id}")
        return True

    def reset(self, job_key: str) -> None:
        """Delete a job's checkpoint so the next run starts from the beginning."""
        try:
            self.backend.delete(job_key)
        except (BackfillError, OSError) as e:
            raise CheckpointError(job_key, f"reset failed: {e}")
        logger.info(f"{job_key}: checkpoint reset")
