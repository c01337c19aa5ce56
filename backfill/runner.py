"""Job runner - wires settings, catalogue and orchestrators together."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import ConfigError
from .extractors.mysql_extractor import MySQLSource
from .jobs import JobDefinition, build_descriptor, get_job, list_active_providers
from .loaders.base import BaseLoader
from .loaders.chunked import ChunkedWriter
from .loaders.clickhouse_loader import ClickHouseLoader
from .models.migration import Checkpoint, JobRun, MigrationConfig
from .orchestrator import MigrationOrchestrator
from .services.checkpoint_store import (
    CheckpointStore,
    ClickHouseCheckpointBackend,
    JsonFileCheckpointBackend,
)
from .services.dimension_resolver import DimensionResolver

logger = logging.getLogger(__name__)


class JobRunner:
    """
    Runs catalogue jobs for one or more providers.

    Each (job, provider) pair is an independent job with its own checkpoint
    and destination table. Pairs run sequentially, or on a thread pool when
    ``job_workers > 1``.
    """

    def __init__(
        self,
        config: MigrationConfig,
        source: Optional[MySQLSource] = None,
        sink: Optional[BaseLoader] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
        cancel_event: Optional[threading.Event] = None
    ):
        """
        Initialize the runner.

        Args:
            config: Connection and execution settings
            source: MySQL source (built from ``config.source`` if omitted)
            sink: Destination loader (a ClickHouseLoader if omitted)
            checkpoint_store: Watermark store (JSON file or ClickHouse table if omitted)
            cancel_event: Event shared with every orchestrator of this runner
        """
        self.config = config
        self.source = source or MySQLSource(config.source)
        self.sink = sink or ClickHouseLoader(config.destination, dry_run=config.dry_run)
        self.checkpoint_store = checkpoint_store or self._create_checkpoint_store()
        self.cancel_event = cancel_event or threading.Event()
        self.orchestrators: Dict[str, MigrationOrchestrator] = {}

    def _create_checkpoint_store(self) -> CheckpointStore:
        if self.config.checkpoint_file:
            logger.info(f"Using checkpoint file {self.config.checkpoint_file}")
            return CheckpointStore(JsonFileCheckpointBackend(self.config.checkpoint_file))

        backend = ClickHouseCheckpointBackend(self.sink, self.config.destination.checkpoint_table)
        if not self.config.dry_run:
            backend.ensure_table()
        return CheckpointStore(backend)

    def resolve_providers(
        self,
        provider_ids: Optional[Iterable[int]] = None,
        all_providers: bool = False
    ) -> List[int]:
        """Explicit provider ids, or every active provider of the source."""
        if all_providers:
            providers = list_active_providers(self.source)
            logger.info(f"Found {len(providers)} active providers")
            return providers
        providers = [int(p) for p in provider_ids or []]
        if not providers:
            raise ConfigError("No providers given")
        return providers

    def build_orchestrator(self, job: JobDefinition, provider_id: int) -> MigrationOrchestrator:
        """Orchestrator of one (job, provider) pair."""
        descriptor = build_descriptor(
            job,
            provider_id,
            self.source,
            self.sink,
            page_size=self.config.page_size,
            chunk_size=self.config.chunk_size,
        )
        orchestrator = MigrationOrchestrator(
            descriptor,
            self.checkpoint_store,
            resolver=DimensionResolver(
                max_workers=self.config.lookup_workers,
                max_attempts=self.config.lookup_attempts,
            ),
            writer=ChunkedWriter(
                self.sink,
                chunk_size=descriptor.chunk_size,
                max_workers=self.config.write_workers,
            ),
            dry_run=self.config.dry_run,
            max_pages=self.config.max_pages,
            max_error_details=self.config.max_error_details,
            report_dir=self.config.report_dir,
            cancel_event=self.cancel_event,
        )
        self.orchestrators[descriptor.job_key] = orchestrator
        return orchestrator

    def run(self, job_names: Sequence[str], provider_ids: Sequence[int]) -> List[JobRun]:
        """
        Run every requested job for every provider.

        Args:
            job_names: Catalogue names
            provider_ids: Providers to migrate

        Returns:
            One JobRun per (job, provider) pair, in request order
        """
        pairs: List[Tuple[JobDefinition, int]] = [
            (get_job(name), int(provider_id))
            for name in job_names
            for provider_id in provider_ids
        ]
        orchestrators = [self.build_orchestrator(job, provider_id) for job, provider_id in pairs]
        logger.info(f"Running {len(orchestrators)} jobs with {self.config.job_workers} workers")

        if self.config.job_workers <= 1 or len(orchestrators) == 1:
            return [orchestrator.run() for orchestrator in orchestrators]

        with ThreadPoolExecutor(max_workers=min(self.config.job_workers, len(orchestrators))) as pool:
            futures = [pool.submit(orchestrator.run) for orchestrator in orchestrators]
            return [future.result() for future in futures]

    def cancel(self) -> None:
        """Stop every running job after its current page."""
        self.cancel_event.set()

    def status(self, job_name: str, provider_id: int) -> Optional[Checkpoint]:
        """Stored checkpoint of a (job, provider) pair."""
        return self.checkpoint_store.get_checkpoint(get_job(job_name).job_key(provider_id))

    def reset(self, job_name: str, provider_id: int, drop_table: bool = True) -> str:
        """
        Forget a job's progress so the next run starts from the first row.

        Returns:
            The job key that was reset
        """
        job_key = get_job(job_name).job_key(provider_id)
        if drop_table:
            self.sink.drop_collection(job_key)
        self.checkpoint_store.reset(job_key)
        return job_key

    def cleanup(self, job_name: str) -> List[str]:
        """Drop every destination table of a job and reset their checkpoints."""
        job = get_job(job_name)
        prefix = f"{job.table_prefix}_"
        if not isinstance(self.sink, ClickHouseLoader):
            raise ConfigError("Cleanup requires a ClickHouse destination")

        tables = [t for t in self.sink.list_collections(prefix) if t[len(prefix):].isdigit()]
        for table in tables:
            self.sink.drop_collection(table)
            self.checkpoint_store.reset(table)
        logger.info(f"Cleaned up {len(tables)} tables of {job_name}")
        return tables

    def close(self) -> None:
        self.source.close()
        self.sink.close()
