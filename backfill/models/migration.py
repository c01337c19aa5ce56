"""Migration execution models."""

import json
import os
import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Tuple
from enum import Enum
from datetime import datetime

from ..errors import ConfigError
from .record import ErrorDetail
from .schema import DimensionSpec, DestinationSchema


class MigrationStatus(str, Enum):
    """States of the page loop."""
    IDLE = "idle"
    EXTRACTING = "extracting"
    RESOLVING = "resolving"
    TRANSFORMING = "transforming"
    WRITING = "writing"
    COMMITTING = "committing"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (MigrationStatus.DONE, MigrationStatus.FAILED, MigrationStatus.CANCELLED)

_JOB_KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class Checkpoint:
    """Persisted watermark of one job."""
    job_key: str
    last_migrated_id: int
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "job_key": self.job_key,
            "last_migrated_id": self.last_migrated_id,
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class JobDescriptor:
    """
    Everything needed to run one migration unit.

    ``job_key`` is both the checkpoint namespace and the destination table name.
    The descriptor is built once per invocation and never changes during the run.
    """
    job_key: str
    extractor: Any
    transformer: Any
    sink: Any
    dimensions: Tuple[DimensionSpec, ...] = ()
    page_size: int = 2000
    chunk_size: int = 500
    schema: Optional[DestinationSchema] = None

    def __post_init__(self):
        if not self.job_key or not _JOB_KEY_PATTERN.match(self.job_key):
            raise ConfigError(f"Invalid job key: {self.job_key!r}")
        if self.page_size <= 0:
            raise ConfigError(f"page_size must be positive, got {self.page_size}")
        if self.chunk_size <= 0:
            raise ConfigError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.chunk_size > self.page_size:
            raise ConfigError(
                f"chunk_size ({self.chunk_size}) must not exceed page_size ({self.page_size})"
            )
        names = [d.name for d in self.dimensions]
        if len(names) != len(set(names)):
            raise ConfigError(f"Duplicate dimension names in {self.job_key}: {names}")
        # tuple() so callers may pass a list
        object.__setattr__(self, "dimensions", tuple(self.dimensions))

    @property
    def collection(self) -> str:
        return self.job_key


@dataclass
class PageResult:
    """Outcome of one page iteration."""
    page_number: int
    fetched_count: int = 0
    migrated_count: int = 0
    error_count: int = 0
    error_details: List[ErrorDetail] = field(default_factory=list)
    highest_seen_id: Optional[int] = None
    committed: bool = False
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None

    def add_error(self, context: str, message: str, record_id: Any = None, error_type: str = "error") -> None:
        """Record one failure against this page."""
        self.error_details.append(ErrorDetail(
            context=context,
            message=message,
            record_id=record_id,
            error_type=error_type,
        ))
        self.error_count += 1

    @property
    def can_commit(self) -> bool:
        return self.error_count == 0 and self.migrated_count > 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "page_number": self.page_number,
            "fetched_count": self.fetched_count,
            "migrated_count": self.migrated_count,
            "error_count": self.error_count,
            "error_details": [e.to_dict() for e in self.error_details],
            "highest_seen_id": self.highest_seen_id,
            "committed": self.committed,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass
class JobRun:
    """Summary of one job invocation."""
    job_key: str
    status: MigrationStatus = MigrationStatus.IDLE
    dry_run: bool = False
    start_watermark: int = 0
    final_watermark: int = 0
    total_records: Optional[int] = None
    migrated: int = 0
    errors: int = 0
    pages: List[PageResult] = field(default_factory=list)
    error_details: List[ErrorDetail] = field(default_factory=list)
    fatal_error: Optional[str] = None
    max_error_details: int = 20
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def add_page(self, page: PageResult) -> None:
        """Fold a finished page into the run totals."""
        self.pages.append(page)
        self.migrated += page.migrated_count
        self.errors += page.error_count
        room = self.max_error_details - len(self.error_details)
        if room > 0:
            self.error_details.extend(page.error_details[:room])

    @property
    def success(self) -> bool:
        return (
            self.status in (MigrationStatus.DONE, MigrationStatus.IDLE)
            and self.errors == 0
            and self.fatal_error is None
        )

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "job_key": self.job_key,
            "status": self.status.value,
            "success": self.success,
            "dry_run": self.dry_run,
            "start_watermark": self.start_watermark,
            "final_watermark": self.final_watermark,
            "total_records": self.total_records,
            "migrated": self.migrated,
            "errors": self.errors,
            "pages": len(self.pages),
            "error_details": [e.to_dict() for e in self.error_details],
            "fatal_error": self.fatal_error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
        }


@dataclass
class SourceSettings:
    """Connection settings for the relational source."""
    host: str = "localhost"
    port: int = 3306
    user: str = "root"
    password: str = ""
    database: str = ""
    connect_timeout: int = 10
    read_timeout: int = 60
    charset: str = "utf8mb4"

    ENV_PREFIX = "MYSQL_"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceSettings":
        """Create from dictionary representation."""
        return cls(
            host=data.get("host", "localhost"),
            port=int(data.get("port", 3306)),
            user=data.get("user", "root"),
            password=data.get("password", ""),
            database=data.get("database", ""),
            connect_timeout=int(data.get("connect_timeout", 10)),
            read_timeout=int(data.get("read_timeout", 60)),
            charset=data.get("charset", "utf8mb4"),
        )

    def with_env(self, env: Optional[Mapping[str, str]] = None) -> "SourceSettings":
        """Return a copy with MYSQL_* environment variables applied."""
        env = os.environ if env is None else env
        overrides: Dict[str, Any] = {}
        for name in ("host", "user", "password", "database"):
            value = env.get(f"{self.ENV_PREFIX}{name.upper()}")
            if value is not None:
                overrides[name] = value
        if env.get(f"{self.ENV_PREFIX}PORT"):
            overrides["port"] = int(env[f"{self.ENV_PREFIX}PORT"])
        return replace(self, **overrides)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation (without the password)."""
        return {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "database": self.database,
            "connect_timeout": self.connect_timeout,
            "read_timeout": self.read_timeout,
            "charset": self.charset,
        }


@dataclass
class DestinationSettings:
    """Connection settings for the ClickHouse HTTP interface."""
    url: str = "http://localhost:8123"
    user: str = "default"
    password: str = ""
    database: str = "default"
    timeout: float = 30.0
    connect_timeout: float = 10.0
    max_retries: int = 3
    backoff_factor: float = 2.0
    checkpoint_table: str = "migration_progress"

    ENV_PREFIX = "CLICKHOUSE_"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DestinationSettings":
        """Create from dictionary representation."""
        return cls(
            url=data.get("url", "http://localhost:8123"),
            user=data.get("user", "default"),
            password=data.get("password", ""),
            database=data.get("database", "default"),
            timeout=float(data.get("timeout", 30.0)),
            connect_timeout=float(data.get("connect_timeout", 10.0)),
            max_retries=int(data.get("max_retries", 3)),
            backoff_factor=float(data.get("backoff_factor", 2.0)),
            checkpoint_table=data.get("checkpoint_table", "migration_progress"),
        )

    def with_env(self, env: Optional[Mapping[str, str]] = None) -> "DestinationSettings":
        """Return a copy with CLICKHOUSE_* environment variables applied."""
        env = os.environ if env is None else env
        overrides: Dict[str, Any] = {}
        for name in ("url", "user", "password", "database"):
            value = env.get(f"{self.ENV_PREFIX}{name.upper()}")
            if value is not None:
                overrides[name] = value
        return replace(self, **overrides)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation (without the password)."""
        return {
            "url": self.url,
            "user": self.user,
            "database": self.database,
            "timeout": self.timeout,
            "connect_timeout": self.connect_timeout,
            "max_retries": self.max_retries,
            "backoff_factor": self.backoff_factor,
            "checkpoint_table": self.checkpoint_table,
        }


@dataclass
class MigrationConfig:
    """Configuration shared by every job of one invocation."""
    source: SourceSettings = field(default_factory=SourceSettings)
    destination: DestinationSettings = field(default_factory=DestinationSettings)

    # Paging
    page_size: int = 2000
    chunk_size: int = 500

    # Execution options
    dry_run: bool = False
    max_pages: Optional[int] = None
    lookup_workers: int = 1
    lookup_attempts: int = 2
    write_workers: int = 1
    job_workers: int = 1
    max_error_details: int = 20

    # Output
    checkpoint_file: Optional[str] = None  # JSON checkpoints instead of the ClickHouse table
    report_dir: Optional[str] = None

    def __post_init__(self):
        if self.page_size <= 0 or self.chunk_size <= 0:
            raise ConfigError("page_size and chunk_size must be positive")
        if self.chunk_size > self.page_size:
            raise ConfigError(
                f"chunk_size ({self.chunk_size}) must not exceed page_size ({self.page_size})"
            )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "source": self.source.to_dict(),
            "destination": self.destination.to_dict(),
            "page_size": self.page_size,
            "chunk_size": self.chunk_size,
            "dry_run": self.dry_run,
            "max_pages": self.max_pages,
            "lookup_workers": self.lookup_workers,
            "lookup_attempts": self.lookup_attempts,
            "write_workers": self.write_workers,
            "job_workers": self.job_workers,
            "max_error_details": self.max_error_details,
            "checkpoint_file": self.checkpoint_file,
            "report_dir": self.report_dir,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationConfig":
        """Create from dictionary representation."""
        return cls(
            source=SourceSettings.from_dict(data.get("source", {})),
            destination=DestinationSettings.from_dict(data.get("destination", {})),
            page_size=int(data.get("page_size", 2000)),
            chunk_size=int(data.get("chunk_size", 500)),
            dry_run=bool(data.get("dry_run", False)),
            max_pages=data.get("max_pages"),
            lookup_workers=int(data.get("lookup_workers", 1)),
            lookup_attempts=int(data.get("lookup_attempts", 2)),
            write_workers=int(data.get("write_workers", 1)),
            job_workers=int(data.get("job_workers", 1)),
            max_error_details=int(data.get("max_error_details", 20)),
            checkpoint_file=data.get("checkpoint_file"),
            report_dir=data.get("report_dir"),
        )

    @classmethod
    def from_json_file(cls, file_path: str) -> "MigrationConfig":
        """Load configuration from a JSON file."""
        try:
            with open(file_path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Cannot read config file {file_path}: {e}")
        return cls.from_dict(data)

    def with_env(self, env: Optional[Mapping[str, str]] = None) -> "MigrationConfig":
        """Return a copy with connection and checkpoint settings taken from the environment."""
        env = os.environ if env is None else env
        return replace(
            self,
            source=self.source.with_env(env),
            destination=self.destination.with_env(env),
            checkpoint_file=env.get("BACKFILL_CHECKPOINT_FILE", self.checkpoint_file),
        )
