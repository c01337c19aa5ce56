"""Shared pieces of the job catalogue: definitions, label maps and field helpers."""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from ..errors import ConfigError
from ..extractors.mysql_extractor import MySQLExtractor, MySQLSource
from ..loaders.base import BaseLoader
from ..models.migration import JobDescriptor
from ..models.record import FactRow
from ..models.schema import NOT_FOUND, DimensionSpec, FieldSpec
from ..services.dimension_resolver import ResolvedDimensions
from ..services.transformer import RowTransformer, latest_by, lookup_label, parse_timestamp

logger = logging.getLogger(__name__)

DimensionFactory = Callable[[MySQLSource, Any], List[DimensionSpec]]

# Label maps carried over from the reporting tables

BOOKING_TYPES = {
    0: "online",
    1: "online",
    2: "phone_in",
    3: "walk_in",
    4: "mobile_app",
}

INVOICE_STATUSES = {
    1: "active",
}

CUSTOMER_STATUSES = {
    1: "active",
    2: "inactive",
    3: "prospect",
    4: "suspend",
}

ACQUISITION_CHANNELS = {
    1: "DataLoad",
    2: "Walk-In",
    3: "Phone-In",
    4: "Online",
}

ENROLLMENT_STATUSES = {
    1: "Active",
    2: "Cancelled",
    3: "Expired",
}

SUBSCRIPTION_TYPES = {
    0: "Monthly",
    1: "Quarterly",
    2: "Yearly",
    3: "Contract",
}

# Foreign keys stored as 0 reference nothing
NO_REFERENCE = (0, "0", "")


@dataclass(frozen=True)
class JobDefinition:
    """
    A catalogue entry: how to extract, enrich and shape one entity.

    ``query`` and ``count_query`` receive ``provider_id`` and ``watermark``
    (the page query also ``limit``). ``dimensions`` builds the job's
    dimension specs for a source and provider.
    """
    name: str
    table_prefix: str
    query: str
    count_query: Optional[str]
    dimensions: DimensionFactory
    fields: Tuple[FieldSpec, ...]
    description: str = ""
    order_by: Tuple[str, ...] = ("id",)
    key_field: str = "id"

    def job_key(self, provider_id: Any) -> str:
        """Checkpoint namespace and destination table of one provider."""
        return f"{self.table_prefix}_{provider_id}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "name": self.name,
            "table_prefix": self.table_prefix,
            "description": self.description,
            "fields": [f.name for f in self.fields],
            "order_by": list(self.order_by),
        }


def build_descriptor(
    definition: JobDefinition,
    provider_id: Any,
    source: MySQLSource,
    sink: BaseLoader,
    page_size: int = 2000,
    chunk_size: int = 500
) -> JobDescriptor:
    """
    Build the descriptor of one (job, provider) pair.

    Args:
        definition: Catalogue entry
        provider_id: Service provider whose rows are migrated
        source: MySQL source used for the page query and lookups
        sink: Destination loader
        page_size: Rows per page
        chunk_size: Rows per bulk write

    Returns:
        Validated JobDescriptor
    """
    try:
        provider_id = int(provider_id)
    except (TypeError, ValueError):
        raise ConfigError(f"Provider id must be an integer, got {provider_id!r}")

    job_key = definition.job_key(provider_id)
    transformer = RowTransformer(definition.fields)
    extractor = MySQLExtractor(
        source,
        definition.query,
        count_query=definition.count_query,
        params={"provider_id": provider_id},
        key_field=definition.key_field,
    )
    return JobDescriptor(
        job_key=job_key,
        extractor=extractor,
        transformer=transformer,
        sink=sink,
        dimensions=tuple(definition.dimensions(source, provider_id)),
        page_size=page_size,
        chunk_size=chunk_size,
        schema=transformer.schema(job_key, definition.order_by),
    )


def list_active_providers(source: MySQLSource) -> List[int]:
    """Ids of active service providers."""
    rows = source.fetch_all("SELECT id FROM serviceProvider WHERE status = 1 ORDER BY id")
    return [int(row["id"]) for row in rows]


# Aggregates for dimensions returning several rows per key

def sum_of(column: str) -> Callable[[List[Dict[str, Any]]], float]:
    """Aggregate summing a numeric column, NULLs counted as zero."""

    def _sum(rows: List[Dict[str, Any]]) -> float:
        return float(sum(float(row.get(column) or 0) for row in rows))

    return _sum


def join_values(column: str, separator: str = ",") -> Callable[[List[Dict[str, Any]]], str]:
    """Aggregate joining the non-empty values of a column."""

    def _join(rows: List[Dict[str, Any]]) -> str:
        return separator.join(str(row[column]) for row in rows if row.get(column))

    return _join


def latest(timestamp_field: str, id_field: str = "id") -> Callable[[List[Dict[str, Any]]], Any]:
    """Aggregate keeping the latest row (see ``latest_by`` for tie-breaking)."""

    def _latest(rows: List[Dict[str, Any]]) -> Any:
        return latest_by(rows, timestamp_field, id_field)

    return _latest


# Field sources

FieldSource = Callable[[FactRow, ResolvedDimensions], Any]


def full_name(*columns: str) -> FieldSource:
    """Join the non-blank name parts of a row with single spaces."""

    def _source(row: FactRow, dimensions: ResolvedDimensions) -> str:
        parts = [str(row.get(c, "")).strip() for c in columns]
        return " ".join(" ".join(p for p in parts if p).split())

    return _source


def yes_no(condition: Callable[[FactRow, ResolvedDimensions], bool], yes: str = "yes", no: str = "no") -> FieldSource:
    """Label a boolean condition."""

    def _source(row: FactRow, dimensions: ResolvedDimensions) -> str:
        return yes if condition(row, dimensions) else no

    return _source


def nullable_id(column: str) -> FieldSource:
    """A foreign key column where 0 means no reference."""

    def _source(row: FactRow, dimensions: ResolvedDimensions) -> Any:
        value = row.get(column)
        return None if value in NO_REFERENCE else value

    return _source


def or_as_of(column: str) -> FieldSource:
    """A timestamp column that falls back to the run's reference time."""

    def _source(row: FactRow, dimensions: ResolvedDimensions) -> Any:
        value = row.get(column)
        try:
            parsed = parse_timestamp(value)
        except ValueError:
            parsed = None
        return parsed or dimensions.as_of

    return _source


def dimension_or(
    dimension: str,
    column: str,
    not_found: Any,
    unreferenced: Any
) -> FieldSource:
    """
    Dimension column with distinct values for "no reference" and "not found".

    ``unreferenced`` is used when the row's key is null, ``not_found`` when the
    key points at a missing dimension row.
    """

    def _source(row: FactRow, dimensions: ResolvedDimensions) -> Any:
        key = dimensions.key_for(dimension, row)
        if key is None:
            return unreferenced
        value = dimensions.get(dimension, key)
        if value is NOT_FOUND:
            return not_found
        return value.get(column)

    return _source


def mysql_dimension(
    source: MySQLSource,
    name: str,
    key_field: Any,
    sql: str,
    key_column: Any = "id",
    aggregate: Optional[Callable[[List[Dict[str, Any]]], Any]] = None,
    **params
) -> DimensionSpec:
    """DimensionSpec backed by a bulk MySQL lookup query."""
    return DimensionSpec(
        name=name,
        key_field=key_field,
        lookup=source.lookup(sql, **params),
        key_column=key_column,
        aggregate=aggregate,
        null_values=NO_REFERENCE,
    )


def as_float(value: Any) -> float:
    """Numeric value of a possibly NULL or Decimal column."""
    if value is None or value is NOT_FOUND or value == "":
        return 0.0
    return float(value)


def label(value: Any, labels: Mapping[Any, str], default: str) -> str:
    """Label of a code; string codes match integer keys."""
    return lookup_label(value, labels, default)
