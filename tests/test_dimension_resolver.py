"""Tests for bulk dimension resolution."""

import pytest

from conftest import CountingLookup
from backfill.errors import ConnectivityError, DimensionLookupError
from backfill.jobs.common import join_values, sum_of
from backfill.models.record import FactRow
from backfill.models.schema import NOT_FOUND, DimensionSpec
from backfill.services.dimension_resolver import DimensionResolver

ROWS = [
    FactRow(1, {"id": 1, "customerId": 10, "locationId": 0}),
    FactRow(2, {"id": 2, "customerId": 11, "locationId": 5}),
    FactRow(3, {"id": 3, "customerId": 10, "locationId": None}),
    FactRow(4, {"id": 4, "customerId": 12, "locationId": 5}),
]


@pytest.fixture
def resolver():
    return DimensionResolver(retry_delay=0)


def test_one_lookup_per_dimension_with_distinct_keys(resolver):
    customers = CountingLookup({10: {"name": "A"}, 11: {"name": "B"}})
    spec = DimensionSpec("customer", "customerId", customers)

    resolved = resolver.resolve(ROWS, [spec])

    assert customers.calls == [[10, 11, 12]]
    assert resolved.get("customer", 10)["name"] == "A"
    assert resolved.get("customer", 12) is NOT_FOUND
    assert resolved.maps["customer"][12] is NOT_FOUND


def test_null_values_are_not_looked_up(resolver):
    locations = CountingLookup({5: {"name": "Downtown"}})
    spec = DimensionSpec("location", "locationId", locations, null_values=(0,))

    resolved = resolver.resolve(ROWS, [spec])

    assert locations.calls == [[5]]
    assert resolved.for_row("location", ROWS[0]) is NOT_FOUND
    assert resolved.for_row("location", ROWS[2]) is NOT_FOUND
    assert resolved.for_row("location", ROWS[1])["name"] == "Downtown"


def test_dimension_without_keys_skips_lookup(resolver):
    lookup = CountingLookup({})
    spec = DimensionSpec("member", "memberId", lookup)

    resolved = resolver.resolve(ROWS, [spec])

    assert lookup.calls == []
    assert resolved.maps["member"] == {}


def test_composite_keys():
    calls = []

    def lookup(keys):
        calls.append(keys)
        return [{"providerId": 1, "customerId": 10, "company": "Acme"}]

    spec = DimensionSpec(
        "company", ("providerId", "customerId"), lookup, key_column=("providerId", "customerId")
    )
    rows = [
        FactRow(1, {"providerId": 1, "customerId": 10}),
        FactRow(2, {"providerId": 1, "customerId": 11}),
        FactRow(3, {"providerId": None, "customerId": 10}),
    ]

    resolved = DimensionResolver().resolve(rows, [spec])

    assert calls == [[(1, 10), (1, 11)]]
    assert resolved.for_row("company", rows[0])["company"] == "Acme"
    assert resolved.for_row("company", rows[1]) is NOT_FOUND
    assert resolved.for_row("company", rows[2]) is NOT_FOUND


def test_aggregated_dimension(resolver):
    def lookup(keys):
        return [
            {"customerId": 10, "points": 5, "tag": "vip"},
            {"customerId": 10, "points": 2.5, "tag": "new"},
            {"customerId": 11, "points": None, "tag": ""},
        ]

    points = DimensionSpec("points", "customerId", lookup, key_column="customerId", aggregate=sum_of("points"))
    tags = DimensionSpec("tags", "customerId", lookup, key_column="customerId", aggregate=join_values("tag"))

    resolved = resolver.resolve(ROWS, [points, tags])

    assert resolved.get("points", 10) == 7.5
    assert resolved.get("points", 11) == 0.0
    assert resolved.get("points", 12) is NOT_FOUND
    assert resolved.get("tags", 10) == "vip,new"


def test_retries_then_succeeds(resolver):
    lookup = CountingLookup({10: {"name": "A"}}, failures=1)
    spec = DimensionSpec("customer", "customerId", lookup)

    resolved = resolver.resolve(ROWS, [spec])

    assert len(lookup.calls) == 2
    assert resolved.get("customer", 10)["name"] == "A"


def test_exhausted_retries_raise_lookup_error():
    lookup = CountingLookup({}, failures=5)
    spec = DimensionSpec("customer", "customerId", lookup)

    with pytest.raises(DimensionLookupError) as exc:
        DimensionResolver(max_attempts=3, retry_delay=0).resolve(ROWS, [spec])

    assert len(lookup.calls) == 3
    assert exc.value.dimension == "customer"
    assert exc.value.key_count == 3


def test_connectivity_error_is_not_retried():
    lookup = CountingLookup({}, failures=5, error=ConnectivityError("down"))
    spec = DimensionSpec("customer", "customerId", lookup)

    with pytest.raises(ConnectivityError):
        DimensionResolver(max_attempts=3, retry_delay=0).resolve(ROWS, [spec])

    assert len(lookup.calls) == 1


def test_concurrent_fan_out_matches_sequential():
    specs = [
        DimensionSpec(f"dim{i}", "customerId", CountingLookup({10: {"v": i}, 11: {"v": i * 2}}))
        for i in range(5)
    ]

    sequential = DimensionResolver(max_workers=1).resolve(ROWS, specs)
    concurrent = DimensionResolver(max_workers=4).resolve(ROWS, specs)

    assert sequential.maps == concurrent.maps


def test_unknown_dimension_key_for_raises(resolver):
    resolved = resolver.resolve(ROWS, [])
    with pytest.raises(KeyError):
        resolved.key_for("customer", ROWS[0])
