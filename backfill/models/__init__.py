"""Data models for the backfill engine."""

from .schema import (
    NOT_FOUND,
    FieldType,
    NullPolicy,
    FieldSpec,
    DimensionSpec,
    DestinationSchema,
)
from .migration import (
    Checkpoint,
    JobDescriptor,
    PageResult,
    JobRun,
    MigrationStatus,
    MigrationConfig,
    SourceSettings,
    DestinationSettings,
)
from .record import (
    FactRow,
    DestinationRecord,
    ErrorDetail,
    WriteOutcome,
)

__all__ = [
    "NOT_FOUND",
    "FieldType",
    "NullPolicy",
    "FieldSpec",
    "DimensionSpec",
    "DestinationSchema",
    "Checkpoint",
    "JobDescriptor",
    "PageResult",
    "JobRun",
    "MigrationStatus",
    "MigrationConfig",
    "SourceSettings",
    "DestinationSettings",
    "FactRow",
    "DestinationRecord",
    "ErrorDetail",
    "WriteOutcome",
]
