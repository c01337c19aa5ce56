"""Tests for descriptors, settings and schema models."""

import json

import pytest

from conftest import FakeSink, InMemoryExtractor
from backfill.errors import ConfigError
from backfill.models.migration import JobDescriptor, JobRun, MigrationConfig, MigrationStatus, PageResult
from backfill.models.record import FactRow
from backfill.models.schema import NOT_FOUND, DestinationSchema, DimensionSpec, FieldSpec, FieldType
from backfill.services.transformer import RowTransformer


def descriptor(**kwargs):
    kwargs.setdefault("job_key", "invoice_details_1")
    return JobDescriptor(
        extractor=InMemoryExtractor([]),
        transformer=RowTransformer([FieldSpec("id", type=FieldType.INT)]),
        sink=FakeSink(),
        **kwargs,
    )


class TestJobDescriptor:
    def test_defaults(self):
        d = descriptor()
        assert d.collection == "invoice_details_1"
        assert (d.page_size, d.chunk_size) == (2000, 500)

    @pytest.mark.parametrize("kwargs", [
        {"job_key": ""},
        {"job_key": "invoice details"},
        {"job_key": "1_invoices"},
        {"page_size": 0},
        {"chunk_size": -1},
        {"page_size": 100, "chunk_size": 101},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ConfigError):
            descriptor(**kwargs)

    def test_duplicate_dimension_names(self):
        spec = DimensionSpec("customer", "customerId", lambda keys: [])
        with pytest.raises(ConfigError):
            descriptor(dimensions=[spec, spec])

    def test_dimensions_stored_as_tuple(self):
        spec = DimensionSpec("customer", "customerId", lambda keys: [])
        assert descriptor(dimensions=[spec]).dimensions == (spec,)


class TestMigrationConfig:
    def test_from_dict(self):
        config = MigrationConfig.from_dict({
            "source": {"host": "db", "port": "3307"},
            "destination": {"url": "http://ch:8123", "checkpoint_table": "progress"},
            "page_size": 1000,
            "chunk_size": 100,
            "max_pages": 3,
        })
        assert config.source.port == 3307
        assert config.destination.checkpoint_table == "progress"
        assert config.max_pages == 3

    def test_chunk_larger_than_page(self):
        with pytest.raises(ConfigError):
            MigrationConfig(page_size=10, chunk_size=20)

    def test_env_overrides(self):
        env = {
            "MYSQL_HOST": "replica",
            "MYSQL_PORT": "3310",
            "CLICKHOUSE_PASSWORD": "s3cret",
            "BACKFILL_CHECKPOINT_FILE": "/var/lib/backfill/checkpoints.json",
        }
        config = MigrationConfig().with_env(env)

        assert config.source.host == "replica"
        assert config.source.port == 3310
        assert config.destination.password == "s3cret"
        assert config.checkpoint_file == "/var/lib/backfill/checkpoints.json"

    def test_passwords_not_serialized(self):
        config = MigrationConfig().with_env({"MYSQL_PASSWORD": "a", "CLICKHOUSE_PASSWORD": "b"})
        data = config.to_dict()
        assert "password" not in data["source"]
        assert "password" not in data["destination"]

    def test_unreadable_file(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{")
        with pytest.raises(ConfigError):
            MigrationConfig.from_json_file(str(path))

    def test_file_round_trip(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps(MigrationConfig(page_size=300, chunk_size=30).to_dict()))
        assert MigrationConfig.from_json_file(str(path)).page_size == 300


class TestRunModels:
    def test_page_commit_rule(self):
        page = PageResult(page_number=1, migrated_count=5)
        assert page.can_commit
        page.add_error("write:t", "rejected", record_id=3)
        assert not page.can_commit
        assert not PageResult(page_number=2).can_commit

    def test_run_keeps_bounded_error_details(self):
        run = JobRun(job_key="t_1", max_error_details=3)
        for number in range(1, 3):
            page = PageResult(page_number=number, migrated_count=1)
            for i in range(2):
                page.add_error("transform", "bad", record_id=i)
            run.add_page(page)

        assert run.errors == 4
        assert len(run.error_details) == 3
        assert run.migrated == 2

    def test_success(self):
        assert JobRun(job_key="t_1", status=MigrationStatus.DONE).success
        assert not JobRun(job_key="t_1", status=MigrationStatus.CANCELLED).success
        assert not JobRun(job_key="t_1", status=MigrationStatus.DONE, fatal_error="boom").success


class TestSchema:
    def test_order_by_must_be_a_field(self):
        with pytest.raises(ValueError):
            DestinationSchema.from_fields("t", [FieldSpec("id")], order_by=("enrollment_id",))

    def test_nullable_column_type(self):
        spec = FieldSpec("d", type=FieldType.DATE, null_policy="null")
        assert spec.column_type == "Nullable(Date)"

    def test_dimension_key_of(self):
        spec = DimensionSpec("location", "locationId", lambda keys: [], null_values=(0,))
        assert spec.key_of(FactRow(1, {"locationId": 5})) == 5
        assert spec.key_of(FactRow(1, {"locationId": 0})) is None
        assert spec.key_of(FactRow(1, {})) is None

    def test_composite_key_of_result(self):
        spec = DimensionSpec("company", ("a", "b"), lambda keys: [], key_column=("a", "b"))
        assert spec.key_of(FactRow(1, {"a": 1, "b": 2})) == (1, 2)
        assert spec.key_of_result({"a": 1, "b": 2, "company": "x"}) == (1, 2)

    def test_not_found_is_falsy_singleton(self):
        assert not NOT_FOUND
        assert type(NOT_FOUND)() is NOT_FOUND
