"""Migration orchestrator - drives the page loop of one job."""

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

from .errors import BackfillError, DimensionLookupError, ExtractionError
from .loaders.chunked import ChunkedWriter
from .models.migration import JobDescriptor, JobRun, MigrationStatus, PageResult
from .services.checkpoint_store import CheckpointStore
from .services.dimension_resolver import DimensionResolver

logger = logging.getLogger(__name__)


class MigrationOrchestrator:
    """
    Runs one job page by page until the source is exhausted.

    Each page goes through extract, resolve, transform, write and commit.
    The checkpoint only advances when a page wrote rows without any error,
    so an interrupted run resumes at the first page that was not fully
    committed.

    Handles:
    - Resuming from the stored watermark
    - Cancellation between pages
    - Page limits (``max_pages``) and dry runs
    - Run summaries and optional JSON reports
    """

    def __init__(
        self,
        descriptor: JobDescriptor,
        checkpoint_store: CheckpointStore,
        resolver: Optional[DimensionResolver] = None,
        writer: Optional[ChunkedWriter] = None,
        dry_run: bool = False,
        max_pages: Optional[int] = None,
        max_error_details: int = 20,
        report_dir: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None
    ):
        """
        Initialize the orchestrator.

        Args:
            descriptor: The job to run
            checkpoint_store: Store holding the job's watermark
            resolver: Dimension resolver (defaults to sequential lookups)
            writer: Chunked writer (defaults to one over the descriptor's sink)
            dry_run: Extract, resolve and transform, but never commit
            max_pages: Stop after this many pages
            max_error_details: Error details kept on the run summary
            report_dir: Directory for the JSON run report
            cancel_event: Event that requests a stop before the next page
        """
        self.descriptor = descriptor
        self.checkpoint_store = checkpoint_store
        self.resolver = resolver or DimensionResolver()
        self.writer = writer or ChunkedWriter(descriptor.sink, descriptor.chunk_size)
        self.dry_run = dry_run
        self.max_pages = max_pages
        self.report_dir = report_dir
        self.cancel_event = cancel_event or threading.Event()

        self.job_run = JobRun(
            job_key=descriptor.job_key,
            dry_run=dry_run,
            max_error_details=max_error_details,
        )

    @property
    def status(self) -> MigrationStatus:
        return self.job_run.status

    def _set_status(self, status: MigrationStatus) -> None:
        if status != self.job_run.status:
            logger.debug(f"{self.descriptor.job_key}: {self.job_run.status.value} -> {status.value}")
        self.job_run.status = status

    def cancel(self) -> None:
        """Request a stop; the current page finishes first."""
        logger.info(f"{self.descriptor.job_key}: cancellation requested")
        self.cancel_event.set()

    def run(self) -> JobRun:
        """
        Run the job.

        Returns:
            JobRun summary; FAILED runs carry ``fatal_error`` or page errors
        """
        job_key = self.descriptor.job_key
        run = self.job_run
        run.started_at = datetime.utcnow()
        as_of = run.started_at
        page: Optional[PageResult] = None

        try:
            watermark = self.checkpoint_store.get_watermark(job_key)
            run.start_watermark = watermark
            run.final_watermark = watermark
            run.total_records = self.descriptor.extractor.count_remaining(watermark)
            logger.info(
                f"{job_key}: starting at watermark {watermark}"
                + (f", {run.total_records} rows remaining" if run.total_records is not None else "")
                + (" (dry run)" if self.dry_run else "")
            )

            if self.descriptor.schema is not None:
                self.descriptor.sink.ensure_collection(self.descriptor.schema)

            page_number = 0
            while True:
                if self.cancel_event.is_set():
                    self._set_status(MigrationStatus.CANCELLED)
                    logger.info(f"{job_key}: cancelled at watermark {watermark}")
                    break
                if self.max_pages is not None and page_number >= self.max_pages:
                    self._set_status(MigrationStatus.IDLE)
                    logger.info(f"{job_key}: page limit {self.max_pages} reached")
                    break

                page_number += 1
                page = PageResult(page_number=page_number)
                self._run_page(page, watermark, as_of)
                run.add_page(page)

                if page.error_count > 0:
                    self._set_status(MigrationStatus.FAILED)
                    logger.error(
                        f"{job_key}: page {page_number} had {page.error_count} errors; "
                        f"watermark stays at {run.final_watermark}"
                    )
                    break

                if page.fetched_count == 0:
                    self._set_status(MigrationStatus.DONE)
                    break

                if page.can_commit and not self.dry_run:
                    self._set_status(MigrationStatus.COMMITTING)
                    page.committed = self.checkpoint_store.commit_watermark(
                        job_key, page.highest_seen_id, page.migrated_count
                    )
                    if page.committed:
                        run.final_watermark = page.highest_seen_id

                watermark = page.highest_seen_id
                self._set_status(MigrationStatus.IDLE)

        except BackfillError as e:
            self._fail(e.message)
        except Exception as e:
            logger.exception(f"{job_key}: unexpected error")
            self._fail(f"Unexpected error: {e}")

        finally:
            if page is not None and (not run.pages or run.pages[-1] is not page):
                page.completed_at = page.completed_at or datetime.utcnow()
                run.add_page(page)
            run.completed_at = datetime.utcnow()
            self._log_summary()
            if self.report_dir:
                self._save_report()

        return run

    def _run_page(self, page: PageResult, watermark: int, as_of: datetime) -> None:
        """Extract, resolve, transform and write one page."""
        descriptor = self.descriptor
        job_key = descriptor.job_key

        try:
            self._set_status(MigrationStatus.EXTRACTING)
            rows = descriptor.extractor.fetch_page(job_key, watermark, descriptor.page_size)
            page.fetched_count = len(rows)
            if not rows:
                logger.info(f"{job_key}: no rows above {watermark}, done")
                return
            page.highest_seen_id = rows[-1].id

            self._set_status(MigrationStatus.RESOLVING)
            dimensions = self.resolver.resolve(rows, descriptor.dimensions, as_of)
        except (ExtractionError, DimensionLookupError) as e:
            page.add_error("extract" if isinstance(e, ExtractionError) else "resolve", e.message)
            logger.error(f"{job_key}: page {page.page_number} abandoned: {e.message}")
            return
        finally:
            page.completed_at = datetime.utcnow()

        self._set_status(MigrationStatus.TRANSFORMING)
        records, transform_errors = descriptor.transformer.transform_page(rows, dimensions)
        for error in transform_errors:
            page.error_details.append(error)
            page.error_count += 1

        self._set_status(MigrationStatus.WRITING)
        outcome = self.writer.write(descriptor.collection, records)
        page.migrated_count = outcome.succeeded
        page.error_details.extend(outcome.errors)
        page.error_count += outcome.failed
        page.completed_at = datetime.utcnow()

        logger.info(
            f"{job_key}: page {page.page_number} ids {rows[0].id}-{page.highest_seen_id}: "
            f"{page.migrated_count}/{page.fetched_count} written, {page.error_count} errors"
            + (f", {outcome.fallback_chunks} chunks retried by row" if outcome.fallback_chunks else "")
        )

    def _fail(self, message: str) -> None:
        self.job_run.fatal_error = message
        self._set_status(MigrationStatus.FAILED)
        logger.error(f"{self.descriptor.job_key}: run failed: {message}")

    def _log_summary(self) -> None:
        run = self.job_run
        logger.info(
            f"{run.job_key}: {run.status.value}, migrated {run.migrated}, errors {run.errors}, "
            f"watermark {run.start_watermark} -> {run.final_watermark}"
        )

    def _save_report(self) -> None:
        """Save the run report as JSON."""
        directory = Path(self.report_dir)
        filepath = directory / f"{self.job_run.job_key}_{datetime.utcnow().strftime('%Y%m%d_%H%M%S')}.json"
        report = self.job_run.to_dict()
        report["pages"] = [p.to_dict() for p in self.job_run.pages]
        try:
            directory.mkdir(parents=True, exist_ok=True)
            with open(filepath, "w") as f:
                json.dump(report, f, indent=2, default=str)
        except OSError as e:
            logger.error(f"Could not save run report to {filepath}: {e}")
            return
        logger.info(f"Saved run report to {filepath}")
