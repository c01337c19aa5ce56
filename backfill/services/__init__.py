"""Service layer for the backfill engine."""

from .checkpoint_store import (
    CheckpointBackend,
    CheckpointStore,
    ClickHouseCheckpointBackend,
    JsonFileCheckpointBackend,
)
from .dimension_resolver import DimensionResolver, ResolvedDimensions
from .transformer import RowTransformer, enum_map, from_dimension, latest_by

__all__ = [
    "CheckpointBackend",
    "CheckpointStore",
    "ClickHouseCheckpointBackend",
    "JsonFileCheckpointBackend",
    "DimensionResolver",
    "ResolvedDimensions",
    "RowTransformer",
    "enum_map",
    "from_dimension",
    "latest_by",
]
