"""In-memory registry of runs started through the API."""

import logging
import os
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Dict, List, Optional

from ..errors import ConfigError
from ..jobs import get_job
from ..models.migration import Checkpoint, MigrationConfig
from ..orchestrator import MigrationOrchestrator
from ..runner import JobRunner
from .models import ErrorDetailResponse, RunCreate, RunResponse, RunStatusEnum

logger = logging.getLogger(__name__)

RunnerFactory = Callable[[MigrationConfig], JobRunner]


@dataclass
class RunRecord:
    """A run started through the API and the thread executing it."""
    id: str
    job: str
    provider_id: int
    orchestrator: MigrationOrchestrator
    runner: JobRunner
    created_at: datetime = field(default_factory=datetime.utcnow)
    thread: Optional[threading.Thread] = None

    @property
    def finished(self) -> bool:
        return self.thread is not None and not self.thread.is_alive()

    def to_response(self) -> RunResponse:
        run = self.orchestrator.job_run
        return RunResponse(
            id=self.id,
            job=self.job,
            provider_id=self.provider_id,
            job_key=run.job_key,
            status=RunStatusEnum(run.status.value),
            dry_run=run.dry_run,
            created_at=self.created_at,
            started_at=run.started_at,
            completed_at=run.completed_at,
            start_watermark=run.start_watermark,
            final_watermark=run.final_watermark,
            total_records=run.total_records,
            pages=len(run.pages),
            migrated=run.migrated,
            errors=run.errors,
            error_details=[ErrorDetailResponse(**e.to_dict()) for e in run.error_details],
            fatal_error=run.fatal_error,
            success=run.success,
        )


class RunStorage:
    """
    Starts runs on background threads and keeps them for inspection.

    Settings come from the JSON file named by ``BACKFILL_CONFIG`` (if set),
    overlaid with the environment.
    """

    def __init__(self, runner_factory: Optional[RunnerFactory] = None):
        self._runner_factory = runner_factory or JobRunner
        self._config: Optional[MigrationConfig] = None
        self._runs: Dict[str, RunRecord] = {}
        self._active: Dict[str, Optional[str]] = {}
        self._lock = threading.Lock()

    def configure(
        self,
        runner_factory: Optional[RunnerFactory] = None,
        config: Optional[MigrationConfig] = None
    ) -> None:
        """Replace the runner factory or base config."""
        if runner_factory is not None:
            self._runner_factory = runner_factory
        if config is not None:
            self._config = config

    def config(self) -> MigrationConfig:
        if self._config is None:
            path = os.environ.get("BACKFILL_CONFIG")
            base = MigrationConfig.from_json_file(path) if path else MigrationConfig()
            self._config = base.with_env()
        return self._config

    def start(self, request: RunCreate) -> RunRecord:
        """Validate a request and start its run on a new thread."""
        job = get_job(request.job)
        job_key = job.job_key(request.provider_id)
        with self._lock:
            if job_key in self._active:
                holder = self._active[job_key] or "starting"
                raise ConfigError(f"{job_key} already has an active run: {holder}")
            self._active[job_key] = None

        try:
            base = self.config()
            page_size = request.page_size or base.page_size
            config = replace(
                base,
                dry_run=request.dry_run,
                page_size=page_size,
                chunk_size=request.chunk_size or min(base.chunk_size, page_size),
                max_pages=request.max_pages if request.max_pages is not None else base.max_pages,
                job_workers=1,
            )

            runner = self._runner_factory(config)
            orchestrator = runner.build_orchestrator(job, request.provider_id)
        except Exception:
            self._release(job_key)
            raise

        record = RunRecord(
            id=str(uuid.uuid4()),
            job=job.name,
            provider_id=request.provider_id,
            orchestrator=orchestrator,
            runner=runner,
        )
        record.thread = threading.Thread(
            target=self._execute, args=(record, job_key), name=f"run-{job_key}", daemon=True
        )
        with self._lock:
            self._runs[record.id] = record
            self._active[job_key] = record.id
        record.thread.start()
        logger.info(f"Started run {record.id} for {job_key}")
        return record

    def _release(self, job_key: str) -> None:
        with self._lock:
            self._active.pop(job_key, None)

    def _execute(self, record: RunRecord, job_key: str) -> None:
        try:
            record.orchestrator.run()
        finally:
            try:
                record.runner.close()
            finally:
                self._release(job_key)

    def get(self, run_id: str) -> Optional[RunRecord]:
        return self._runs.get(run_id)

    def list_all(self) -> List[RunRecord]:
        return sorted(self._runs.values(), key=lambda r: r.created_at, reverse=True)

    def cancel(self, run_id: str) -> Optional[RunRecord]:
        """Request a between-pages stop of a run."""
        record = self.get(run_id)
        if record is None:
            return None
        record.orchestrator.cancel()
        return record

    def get_checkpoint(self, job_key: str) -> Optional[Checkpoint]:
        runner = self._runner_factory(self.config())
        try:
            return runner.checkpoint_store.get_checkpoint(job_key)
        finally:
            runner.close()

    def clear(self) -> None:
        with self._lock:
            self._runs.clear()
            self._active.clear()


run_storage = RunStorage()
