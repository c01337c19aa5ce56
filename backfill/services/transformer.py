"""Row transformer: fact row plus resolved dimensions to destination record."""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from dateutil import parser as date_parser

from ..errors import TransformError
from ..models.record import DestinationRecord, ErrorDetail, FactRow
from ..models.schema import NOT_FOUND, DestinationSchema, FieldSpec, FieldType, NullPolicy
from .dimension_resolver import ResolvedDimensions

logger = logging.getLogger(__name__)

DATE_FORMAT = "%Y-%m-%d"
DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"

_TRUE_STRINGS = {"1", "true", "yes", "y", "t"}
_FALSE_STRINGS = {"0", "false", "no", "n", "f"}

# MySQL zero dates mean "no date"
_ZERO_DATES = {"0000-00-00", "0000-00-00 00:00:00"}


class _Missing(Exception):
    """Raised by a coercion when the value counts as missing."""


def _to_int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            raise _Missing()
        return int(Decimal(text))
    return int(Decimal(str(value)))


def _to_float(value: Any) -> float:
    if isinstance(value, str):
        text = value.strip()
        if not text:
            raise _Missing()
        return float(text)
    return float(value)


def _to_string(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    if isinstance(value, datetime):
        return value.strftime(DATETIME_FORMAT)
    if isinstance(value, date):
        return value.strftime(DATE_FORMAT)
    return str(value)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a date or datetime value as a naive UTC datetime.

    Returns None for empty strings and MySQL zero dates. Raises ValueError for
    text that is not a date.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    else:
        text = str(value).strip()
        if not text or text in _ZERO_DATES:
            return None
        try:
            parsed = date_parser.parse(text)
        except (OverflowError, ValueError) as e:
            raise ValueError(f"Unparseable date {text!r}: {e}")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _to_date(value: Any) -> str:
    parsed = parse_timestamp(value)
    if parsed is None:
        raise _Missing()
    return parsed.strftime(DATE_FORMAT)


def _to_datetime(value: Any) -> str:
    parsed = parse_timestamp(value)
    if parsed is None:
        raise _Missing()
    return parsed.strftime(DATETIME_FORMAT)


def _to_flag(value: Any) -> int:
    if isinstance(value, (bool, int, float, Decimal)):
        return 1 if value else 0
    if isinstance(value, bytes):
        # BIT(1) columns arrive as bytes
        return 1 if any(value) else 0
    text = str(value).strip().lower()
    if not text:
        raise _Missing()
    if text in _TRUE_STRINGS:
        return 1
    if text in _FALSE_STRINGS:
        return 0
    raise ValueError(f"Not a boolean flag: {value!r}")


COERCIONS: Dict[FieldType, Callable[[Any], Any]] = {
    FieldType.INT: _to_int,
    FieldType.FLOAT: _to_float,
    FieldType.STRING: _to_string,
    FieldType.DATE: _to_date,
    FieldType.DATETIME: _to_datetime,
    FieldType.BOOL_FLAG: _to_flag,
}


class RowTransformer:
    """
    Turns fact rows into destination records according to declared fields.

    For each FieldSpec the value is read from the source column (or computed by
    the field's callable from the row and the page's resolved dimensions),
    coerced to the field type, and replaced according to the field's null
    policy when it is missing. A dimension key that was not found counts as
    missing. No I/O happens here.
    """

    def __init__(self, fields: Sequence[FieldSpec]):
        names = [f.name for f in fields]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate destination fields: {duplicates}")
        self.fields = tuple(fields)

    def schema(self, name: str, order_by: Sequence[str] = ("id",)) -> DestinationSchema:
        """Destination schema for these fields."""
        return DestinationSchema.from_fields(name, self.fields, order_by)

    def transform(self, row: FactRow, dimensions: ResolvedDimensions) -> DestinationRecord:
        """
        Transform one row.

        Raises:
            TransformError: if a field cannot be produced
        """
        data: Dict[str, Any] = {}
        for spec in self.fields:
            data[spec.name] = self._field_value(spec, row, dimensions)
        return DestinationRecord(id=row.id, data=data)

    def transform_page(
        self,
        rows: Iterable[FactRow],
        dimensions: ResolvedDimensions
    ) -> Tuple[List[DestinationRecord], List[ErrorDetail]]:
        """Transform a page; failing rows are reported and skipped."""
        records: List[DestinationRecord] = []
        errors: List[ErrorDetail] = []
        for row in rows:
            try:
                records.append(self.transform(row, dimensions))
            except TransformError as e:
                logger.warning(f"Row {row.id} skipped: {e.message}")
                errors.append(ErrorDetail(
                    context="transform",
                    message=e.message,
                    record_id=row.id,
                    error_type="transform",
                ))
        return records, errors

    def _field_value(self, spec: FieldSpec, row: FactRow, dimensions: ResolvedDimensions) -> Any:
        if callable(spec.source):
            try:
                raw = spec.source(row, dimensions)
            except TransformError:
                raise
            except Exception as e:
                raise TransformError(row.id, f"computation failed: {e}", spec.name)
        else:
            raw = row.get(spec.source or spec.name)

        if raw is None or raw is NOT_FOUND:
            return self._missing(spec, row)

        try:
            return COERCIONS[spec.type](raw)
        except _Missing:
            return self._missing(spec, row)
        except (TypeError, ValueError, ArithmeticError) as e:
            if spec.strict:
                raise TransformError(
                    row.id, f"cannot convert {raw!r} to {spec.type.value}: {e}", spec.name
                )
            logger.debug(f"Row {row.id}: {spec.name} value {raw!r} replaced by null policy")
            return self._missing(spec, row)

    @staticmethod
    def _missing(spec: FieldSpec, row: FactRow) -> Any:
        if spec.null_policy == NullPolicy.REQUIRED:
            raise TransformError(row.id, "required value is missing", spec.name)
        if spec.null_policy == NullPolicy.NULL:
            return None
        return spec.fallback


# Field source helpers

def from_dimension(dimension: str, column: Optional[str] = None) -> Callable[[FactRow, ResolvedDimensions], Any]:
    """Field source reading ``column`` of the dimension row a fact row references."""

    def _source(row: FactRow, dimensions: ResolvedDimensions) -> Any:
        value = dimensions.for_row(dimension, row)
        if value is NOT_FOUND or column is None:
            return value
        return value.get(column)

    return _source


def lookup_label(value: Any, labels: Mapping[Any, str], default: str) -> str:
    """Label for a code; numeric strings match integer codes."""
    if value is None or value is NOT_FOUND:
        return default
    if value in labels:
        return labels[value]
    try:
        return labels.get(int(value), default)
    except (TypeError, ValueError):
        return default


def enum_map(column: str, labels: Mapping[Any, str], default: str) -> Callable[[FactRow, ResolvedDimensions], str]:
    """Field source turning a numeric code column into a label."""

    def _source(row: FactRow, dimensions: ResolvedDimensions) -> str:
        return lookup_label(row.get(column), labels, default)

    return _source


def _latest_sort_key(timestamp_field: str, id_field: str) -> Callable[[Mapping[str, Any]], Tuple]:
    def _key(item: Mapping[str, Any]) -> Tuple:
        try:
            ts = parse_timestamp(item.get(timestamp_field))
        except ValueError:
            ts = None
        row_id = item.get(id_field)
        return (
            ts is not None,
            ts or datetime.min,
            row_id is not None,
            row_id if row_id is not None else 0,
        )
    return _key


def latest_by(
    items: Iterable[Mapping[str, Any]],
    timestamp_field: str,
    id_field: str = "id"
) -> Optional[Mapping[str, Any]]:
    """
    Pick the latest of several related rows.

    The row with the greatest ``(timestamp, id)`` wins. Rows without a
    timestamp rank below every dated row, so among undated rows the largest id
    wins. Returns None for no rows.
    """
    items = list(items)
    if not items:
        return None
    return max(items, key=_latest_sort_key(timestamp_field, id_field))
