"""Schema models: destination field declarations and dimension specs."""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union
from enum import Enum

from .record import FactRow


class _NotFound:
    """Sentinel for a dimension key that was looked up and is absent."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NOT_FOUND"

    def __bool__(self) -> bool:
        return False


NOT_FOUND = _NotFound()


class FieldType(str, Enum):
    """Supported destination field types."""
    INT = "int"
    FLOAT = "float"
    STRING = "string"
    DATE = "date"
    DATETIME = "datetime"
    BOOL_FLAG = "bool_flag"


# ClickHouse column type and the value substituted for a missing field
FIELD_TYPE_INFO: Dict[FieldType, Tuple[str, Any]] = {
    FieldType.INT: ("Int64", 0),
    FieldType.FLOAT: ("Float64", 0.0),
    FieldType.STRING: ("String", ""),
    FieldType.DATE: ("Date", "1970-01-01"),
    FieldType.DATETIME: ("DateTime", "1970-01-01 00:00:00"),
    FieldType.BOOL_FLAG: ("UInt8", 0),
}


class NullPolicy(str, Enum):
    """What a field becomes when its source value is missing."""
    DEFAULT = "default"  # substitute the declared default (or the type's sentinel)
    NULL = "null"  # emit an explicit null; the column is Nullable
    REQUIRED = "required"  # the row fails to transform


FieldSource = Union[str, Callable[[FactRow, Any], Any], None]


@dataclass(frozen=True)
class FieldSpec:
    """
    Declaration of one destination field.

    ``source`` is either a source column name (defaults to the field name) or a
    callable ``(row, context) -> value`` for dimension-backed and computed fields.
    """
    name: str
    source: FieldSource = None
    type: FieldType = FieldType.STRING
    null_policy: NullPolicy = NullPolicy.DEFAULT
    default: Any = None
    strict: bool = True

    @property
    def fallback(self) -> Any:
        """Value used under the DEFAULT null policy."""
        if self.default is not None:
            return self.default
        return FIELD_TYPE_INFO[self.type][1]

    @property
    def column_type(self) -> str:
        """ClickHouse column type for this field."""
        base = FIELD_TYPE_INFO[self.type][0]
        if self.null_policy == NullPolicy.NULL:
            return f"Nullable({base})"
        return base

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "name": self.name,
            "source": self.source if isinstance(self.source, str) or self.source is None else "<computed>",
            "type": self.type.value,
            "null_policy": self.null_policy.value,
            "default": self.default,
            "strict": self.strict,
        }


DimensionKey = Union[Any, Tuple[Any, ...]]
LookupFunc = Callable[[List[DimensionKey]], Iterable[Dict[str, Any]]]


@dataclass(frozen=True)
class DimensionSpec:
    """
    A dimension joined onto fact rows by a bulk lookup.

    ``lookup`` receives the distinct keys of one page and returns the matching
    dimension rows. ``key_column`` names the column(s) of those rows that hold
    the key. When ``aggregate`` is set, all rows sharing a key are reduced to one
    value; otherwise the key maps to its (single) row.
    """
    name: str
    key_field: Union[str, Tuple[str, ...]]
    lookup: LookupFunc
    key_column: Union[str, Tuple[str, ...]] = "id"
    aggregate: Optional[Callable[[List[Dict[str, Any]]], Any]] = None
    null_values: Tuple[Any, ...] = ()

    @property
    def is_composite(self) -> bool:
        return isinstance(self.key_field, tuple)

    def key_of(self, row: FactRow) -> Optional[DimensionKey]:
        """Key referenced by a fact row, or None when the row references nothing."""
        if self.is_composite:
            parts = tuple(row.get(f) for f in self.key_field)
            if any(self._is_null(p) for p in parts):
                return None
            return parts
        value = row.get(self.key_field)
        return None if self._is_null(value) else value

    def key_of_result(self, result: Dict[str, Any]) -> DimensionKey:
        """Key carried by one row returned from the lookup."""
        if isinstance(self.key_column, tuple):
            return tuple(result.get(c) for c in self.key_column)
        return result.get(self.key_column)

    def _is_null(self, value: Any) -> bool:
        return value is None or value in self.null_values


@dataclass(frozen=True)
class DestinationSchema:
    """Destination table layout derived from a job's field specs."""
    name: str
    columns: Tuple[Tuple[str, str], ...]
    order_by: Tuple[str, ...] = ("id",)

    @classmethod
    def from_fields(
        cls,
        name: str,
        fields: Sequence[FieldSpec],
        order_by: Sequence[str] = ("id",)
    ) -> "DestinationSchema":
        """Build the schema for a table named ``name``."""
        columns = tuple((f.name, f.column_type) for f in fields)
        known = {c[0] for c in columns}
        missing = [c for c in order_by if c not in known]
        if missing:
            raise ValueError(f"Order-by columns not declared as fields: {missing}")
        return cls(name=name, columns=columns, order_by=tuple(order_by))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "name": self.name,
            "columns": [{"name": n, "type": t} for n, t in self.columns],
            "order_by": list(self.order_by),
        }
