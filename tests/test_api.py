"""Tests for the HTTP API."""

import threading
import time

import pytest
from fastapi.testclient import TestClient

from conftest import FakeMySQLSource
from backfill.api.main import app
from backfill.api.models import RunCreate
from backfill.api.storage import RunStorage, run_storage
from backfill.errors import ConfigError
from backfill.models.migration import MigrationConfig
from backfill.runner import JobRunner


@pytest.fixture
def gate():
    event = threading.Event()
    event.set()
    return event


@pytest.fixture
def client(sink, checkpoint_store, gate):
    source = FakeMySQLSource([{"id": i} for i in range(1, 26)], gate=gate)
    run_storage.configure(
        runner_factory=lambda config: JobRunner(
            config, source=source, sink=sink, checkpoint_store=checkpoint_store
        ),
        config=MigrationConfig(page_size=10, chunk_size=5),
    )
    yield TestClient(app)
    gate.set()
    for record in run_storage.list_all():
        record.thread.join(timeout=5)
    run_storage.clear()


def wait(run_id):
    run_storage.get(run_id).thread.join(timeout=5)


def start(client, **body):
    body.setdefault("job", "invoices")
    body.setdefault("provider_id", 1)
    return client.post("/api/runs", json=body)


def test_health(client):
    assert client.get("/api/health").json() == {"status": "healthy"}


def test_list_jobs(client):
    data = client.get("/api/jobs").json()

    assert data["total"] == 6
    memberships = next(j for j in data["jobs"] if j["name"] == "memberships")
    assert memberships["order_by"] == ["enrollment_id"]
    expiration = next(f for f in memberships["fields"] if f["name"] == "expiration_date")
    assert expiration["column_type"] == "Nullable(Date)"


class TestRuns:
    def test_run_to_completion(self, client, sink):
        response = start(client)
        assert response.status_code == 200
        run_id = response.json()["id"]
        assert response.json()["job_key"] == "invoice_details_1"

        wait(run_id)
        data = client.get(f"/api/runs/{run_id}").json()

        assert data["status"] == "done"
        assert data["success"]
        assert data["migrated"] == 25
        assert data["final_watermark"] == 25
        assert data["pages"] == 4
        assert len(sink.rows("invoice_details_1")) == 25

    def test_checkpoint_after_run(self, client):
        wait(start(client).json()["id"])

        data = client.get("/api/checkpoints/invoice_details_1").json()
        assert data["last_migrated_id"] == 25

    def test_missing_checkpoint(self, client):
        assert client.get("/api/checkpoints/invoice_details_9").status_code == 404

    def test_page_limit_and_overrides(self, client):
        run_id = start(client, max_pages=1, page_size=7).json()["id"]
        wait(run_id)

        data = client.get(f"/api/runs/{run_id}").json()
        assert data["migrated"] == 7
        assert data["status"] == "idle"
        assert run_storage.get(run_id).runner.config.chunk_size == 5

    def test_dry_run_keeps_checkpoint(self, client):
        run_id = start(client, dry_run=True).json()["id"]
        wait(run_id)

        assert client.get(f"/api/runs/{run_id}").json()["dry_run"]
        assert client.get("/api/checkpoints/invoice_details_1").status_code == 404

    def test_row_errors_reported(self, client, sink):
        sink.bad_ids = {4}
        run_id = start(client).json()["id"]
        wait(run_id)

        data = client.get(f"/api/runs/{run_id}").json()
        assert data["status"] == "failed"
        assert not data["success"]
        assert data["errors"] == 1
        assert data["error_details"][0]["record_id"] == 4

    def test_list_runs(self, client):
        first = start(client, provider_id=1).json()["id"]
        second = start(client, provider_id=2).json()["id"]

        data = client.get("/api/runs").json()
        assert data["total"] == 2
        assert {r["id"] for r in data["runs"]} == {first, second}

    def test_unknown_run(self, client):
        assert client.get("/api/runs/nope").status_code == 404
        assert client.post("/api/runs/nope/cancel").status_code == 404


class TestValidation:
    def test_unknown_job(self, client):
        response = start(client, job="refunds")
        assert response.status_code == 400
        assert "Unknown job" in response.json()["detail"]

    def test_chunk_larger_than_page(self, client):
        assert start(client, page_size=10, chunk_size=50).status_code == 400

    def test_non_positive_page_size(self, client):
        assert start(client, page_size=0).status_code == 422


class TestCancel:
    def test_cancel_running(self, client, gate, sink):
        gate.clear()
        run_id = start(client).json()["id"]

        response = client.post(f"/api/runs/{run_id}/cancel")
        gate.set()
        wait(run_id)

        assert response.status_code == 200
        assert response.json()["status"] == "cancelling"
        data = client.get(f"/api/runs/{run_id}").json()
        assert data["status"] == "cancelled"
        assert data["migrated"] < 25

    def test_second_run_of_same_job_rejected(self, client, gate):
        gate.clear()
        run_id = start(client).json()["id"]

        response = start(client)
        gate.set()
        wait(run_id)

        assert response.status_code == 400
        assert "already has an active run" in response.json()["detail"]

    def test_cancel_finished(self, client):
        run_id = start(client).json()["id"]
        wait(run_id)

        response = client.post(f"/api/runs/{run_id}/cancel")
        assert response.status_code == 400
        assert "done" in response.json()["detail"]


class TestConcurrentStarts:
    @pytest.fixture
    def storage(self, sink, checkpoint_store):
        source = FakeMySQLSource([{"id": i} for i in range(1, 6)])

        def slow_factory(config):
            time.sleep(0.2)
            return JobRunner(config, source=source, sink=sink, checkpoint_store=checkpoint_store)

        storage = RunStorage(runner_factory=slow_factory)
        storage.configure(config=MigrationConfig(page_size=10, chunk_size=5))
        yield storage
        for record in storage.list_all():
            record.thread.join(timeout=5)

    def test_only_one_of_two_simultaneous_starts_runs(self, storage):
        barrier = threading.Barrier(2)
        started, rejected = [], []

        def start_run():
            barrier.wait()
            try:
                started.append(storage.start(RunCreate(job="invoices", provider_id=1)))
            except ConfigError as e:
                rejected.append(e)

        threads = [threading.Thread(target=start_run) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        assert len(started) == 1
        assert len(rejected) == 1
        assert "already has an active run" in rejected[0].message

    def test_job_can_start_again_after_run_finishes(self, storage):
        first = storage.start(RunCreate(job="invoices", provider_id=1))
        first.thread.join(timeout=5)

        second = storage.start(RunCreate(job="invoices", provider_id=1))
        assert second.id != first.id

    def test_failed_build_releases_job(self, storage, sink, checkpoint_store):
        def broken_factory(config):
            raise ConfigError("no source")

        storage.configure(runner_factory=broken_factory)
        with pytest.raises(ConfigError):
            storage.start(RunCreate(job="invoices", provider_id=1))

        storage.configure(runner_factory=lambda config: JobRunner(
            config, source=FakeMySQLSource([]), sink=sink, checkpoint_store=checkpoint_store
        ))
        assert storage.start(RunCreate(job="invoices", provider_id=1)).job == "invoices"
