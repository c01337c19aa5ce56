"""Tests for field coercion, null policies and the latest-row tie-break."""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from backfill.errors import TransformError
from backfill.models.record import FactRow
from backfill.models.schema import NOT_FOUND, DimensionSpec, FieldSpec, FieldType, NullPolicy
from backfill.services.dimension_resolver import ResolvedDimensions
from backfill.services.transformer import (
    RowTransformer,
    enum_map,
    from_dimension,
    latest_by,
    lookup_label,
    parse_timestamp,
)

AS_OF = datetime(2024, 6, 1, 12, 0, 0)


def dims(maps=None, specs=()):
    return ResolvedDimensions(specs, maps or {}, AS_OF)


def one(spec, **data):
    data.setdefault("id", 1)
    return RowTransformer([spec]).transform(FactRow(data["id"], data), dims()).data[spec.name]


class TestCoercion:
    @pytest.mark.parametrize("value,expected", [
        (7, 7),
        ("42", 42),
        (" 3.9 ", 3),
        (Decimal("12.00"), 12),
        (True, 1),
    ])
    def test_int(self, value, expected):
        assert one(FieldSpec("n", type=FieldType.INT), n=value) == expected

    def test_float_from_decimal_and_string(self):
        assert one(FieldSpec("n", type=FieldType.FLOAT), n=Decimal("10.25")) == 10.25
        assert one(FieldSpec("n", type=FieldType.FLOAT), n="1e3") == 1000.0

    def test_string_from_bytes_and_dates(self):
        assert one(FieldSpec("s"), s=b"caf\xc3\xa9") == "café"
        assert one(FieldSpec("s"), s=date(2024, 2, 29)) == "2024-02-29"
        assert one(FieldSpec("s"), s=12) == "12"

    def test_date_formats(self):
        assert one(FieldSpec("d", type=FieldType.DATE), d="2024-03-05 17:30:00") == "2024-03-05"
        assert one(FieldSpec("d", type=FieldType.DATE), d=datetime(2024, 3, 5, 1, 2)) == "2024-03-05"

    def test_datetime_formats(self):
        assert one(FieldSpec("d", type=FieldType.DATETIME), d="2024-03-05T17:30:00") == "2024-03-05 17:30:00"
        assert one(FieldSpec("d", type=FieldType.DATETIME), d=date(2024, 3, 5)) == "2024-03-05 00:00:00"

    def test_timezone_aware_values_become_utc(self):
        aware = datetime(2024, 3, 5, 10, 0, tzinfo=timezone(timedelta(hours=2)))
        assert one(FieldSpec("d", type=FieldType.DATETIME), d=aware) == "2024-03-05 08:00:00"

    @pytest.mark.parametrize("value,expected", [
        (1, 1), (0, 0), ("yes", 1), ("N", 0), (b"\x01", 1), (b"\x00", 0), (Decimal("1"), 1),
    ])
    def test_bool_flag(self, value, expected):
        assert one(FieldSpec("f", type=FieldType.BOOL_FLAG), f=value) == expected


class TestNullPolicies:
    def test_default_uses_type_sentinel(self):
        assert one(FieldSpec("n", type=FieldType.INT)) == 0
        assert one(FieldSpec("s")) == ""
        assert one(FieldSpec("d", type=FieldType.DATE)) == "1970-01-01"
        assert one(FieldSpec("t", type=FieldType.DATETIME)) == "1970-01-01 00:00:00"

    def test_declared_default_wins(self):
        assert one(FieldSpec("s", default="Unknown")) == "Unknown"

    def test_null_policy_emits_none(self):
        assert one(FieldSpec("d", type=FieldType.DATE, null_policy=NullPolicy.NULL)) is None

    def test_required_raises(self):
        with pytest.raises(TransformError) as exc:
            one(FieldSpec("n", type=FieldType.INT, null_policy=NullPolicy.REQUIRED))
        assert exc.value.field == "n"

    def test_blank_and_zero_dates_count_as_missing(self):
        spec = FieldSpec("d", type=FieldType.DATE, null_policy=NullPolicy.NULL)
        assert one(spec, d="") is None
        assert one(spec, d="0000-00-00") is None
        assert one(FieldSpec("n", type=FieldType.INT, default=-1), n="  ") == -1

    def test_strict_field_rejects_bad_value(self):
        with pytest.raises(TransformError) as exc:
            one(FieldSpec("n", type=FieldType.INT), n="abc")
        assert "cannot convert" in exc.value.message

    def test_lenient_field_falls_back(self):
        spec = FieldSpec("d", type=FieldType.DATE, strict=False)
        assert one(spec, d="not a date") == "1970-01-01"

    def test_failing_computed_field_is_a_transform_error(self):
        def broken(row, dimensions):
            return row["missing_column"]

        with pytest.raises(TransformError) as exc:
            one(FieldSpec("x", broken))
        assert "computation failed" in exc.value.message


class TestDimensionFields:
    spec = DimensionSpec("customer", "customerId", lambda keys: [])

    def test_found_and_not_found(self):
        resolved = dims({"customer": {1: {"name": "Ada"}, 2: NOT_FOUND}}, [self.spec])
        transformer = RowTransformer([FieldSpec("name", from_dimension("customer", "name"), default="N/A")])

        found = transformer.transform(FactRow(1, {"id": 1, "customerId": 1}), resolved)
        missing = transformer.transform(FactRow(2, {"id": 2, "customerId": 2}), resolved)
        unreferenced = transformer.transform(FactRow(3, {"id": 3}), resolved)

        assert found.data["name"] == "Ada"
        assert missing.data["name"] == "N/A"
        assert unreferenced.data["name"] == "N/A"

    def test_unknown_dimension_is_a_transform_error(self):
        transformer = RowTransformer([FieldSpec("name", from_dimension("nope", "name"))])
        with pytest.raises(TransformError):
            transformer.transform(FactRow(1, {"id": 1}), dims())


class TestTransformPage:
    def test_bad_rows_are_reported_and_skipped(self):
        transformer = RowTransformer([
            FieldSpec("id", type=FieldType.INT, null_policy=NullPolicy.REQUIRED),
            FieldSpec("amount", type=FieldType.FLOAT),
        ])
        rows = [
            FactRow(1, {"id": 1, "amount": "1.5"}),
            FactRow(2, {"id": 2, "amount": "oops"}),
            FactRow(3, {"id": 3, "amount": None}),
        ]

        records, errors = transformer.transform_page(rows, dims())

        assert [r.id for r in records] == [1, 3]
        assert records[1].data["amount"] == 0.0
        assert len(errors) == 1
        assert errors[0].record_id == 2
        assert errors[0].context == "transform"

    def test_duplicate_fields_rejected(self):
        with pytest.raises(ValueError):
            RowTransformer([FieldSpec("a"), FieldSpec("a")])

    def test_schema_uses_column_types(self):
        transformer = RowTransformer([
            FieldSpec("id", type=FieldType.INT),
            FieldSpec("deleted_at", type=FieldType.DATETIME, null_policy=NullPolicy.NULL),
        ])
        schema = transformer.schema("t")
        assert schema.columns == (("id", "Int64"), ("deleted_at", "Nullable(DateTime)"))


class TestLabels:
    def test_enum_map_matches_string_codes(self):
        source = enum_map("status", {1: "active", 2: "inactive"}, "unknown")
        assert source(FactRow(1, {"status": "2"}), dims()) == "inactive"
        assert source(FactRow(1, {"status": 9}), dims()) == "unknown"
        assert source(FactRow(1, {}), dims()) == "unknown"

    def test_lookup_label_ignores_non_numeric(self):
        assert lookup_label("abc", {1: "one"}, "-") == "-"


class TestLatestBy:
    def test_greatest_timestamp_wins(self):
        items = [
            {"id": 1, "ts": "2024-01-02"},
            {"id": 2, "ts": "2024-01-01"},
        ]
        assert latest_by(items, "ts")["id"] == 1

    def test_tie_broken_by_larger_id(self):
        items = [
            {"id": 7, "ts": "2024-01-01 10:00:00"},
            {"id": 9, "ts": "2024-01-01 10:00:00"},
            {"id": 8, "ts": "2024-01-01 10:00:00"},
        ]
        assert latest_by(items, "ts")["id"] == 9

    def test_undated_rows_rank_lowest(self):
        items = [
            {"id": 50, "ts": None},
            {"id": 1, "ts": "2020-01-01"},
        ]
        assert latest_by(items, "ts")["id"] == 1
        assert latest_by([{"id": 3, "ts": None}, {"id": 4, "ts": ""}], "ts")["id"] == 4

    def test_empty(self):
        assert latest_by([], "ts") is None


def test_parse_timestamp():
    assert parse_timestamp(None) is None
    assert parse_timestamp("0000-00-00 00:00:00") is None
    assert parse_timestamp("2024-01-01T00:00:00Z") == datetime(2024, 1, 1)
    with pytest.raises(ValueError):
        parse_timestamp("yesterday-ish")
