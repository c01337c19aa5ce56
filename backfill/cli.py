"""Command-line interface for running backfill jobs."""

import argparse
import json
import logging
import signal
import sys
from dataclasses import replace
from typing import List, Optional

from .errors import BackfillError
from .jobs import get_job, list_jobs
from .models.migration import JobRun, MigrationConfig
from .runner import JobRunner

logger = logging.getLogger(__name__)


def load_config(args) -> MigrationConfig:
    """Config file (if any) overlaid with environment and command-line options."""
    config = MigrationConfig.from_json_file(args.config) if args.config else MigrationConfig()
    config = config.with_env()

    overrides = {
        "page_size": getattr(args, "page_size", None),
        "chunk_size": getattr(args, "chunk_size", None),
        "job_workers": getattr(args, "workers", None),
        "max_pages": getattr(args, "max_pages", None),
        "checkpoint_file": getattr(args, "checkpoint_file", None),
        "report_dir": getattr(args, "report_dir", None),
    }
    changes = {k: v for k, v in overrides.items() if v is not None}
    if "page_size" in changes and "chunk_size" not in changes:
        changes["chunk_size"] = min(config.chunk_size, changes["page_size"])
    if getattr(args, "dry_run", False):
        changes["dry_run"] = True
    return replace(config, **changes)


def print_run(run: JobRun) -> None:
    print(f"\n{run.job_key}")
    print(f"  Status: {run.status.value}")
    print(f"  Watermark: {run.start_watermark} -> {run.final_watermark}")
    print(f"  Pages: {len(run.pages)}")
    print(f"  Migrated: {run.migrated}")
    print(f"  Errors: {run.errors}")
    if run.duration_seconds is not None:
        print(f"  Duration: {run.duration_seconds:.2f} seconds")
    if run.fatal_error:
        print(f"  Fatal: {run.fatal_error}")
    for detail in run.error_details[:5]:
        print(f"  - [{detail.context}] {detail.record_id or ''} {detail.message}")


def run_jobs(args) -> int:
    """Run jobs for the requested providers."""
    for name in args.jobs:
        get_job(name)
    config = load_config(args)
    runner = JobRunner(config)

    def _handle_signal(signum, frame):
        logger.warning("Interrupted, stopping after the current page")
        runner.cancel()

    previous = {
        sig: signal.signal(sig, _handle_signal) for sig in (signal.SIGINT, signal.SIGTERM)
    }
    try:
        providers = runner.resolve_providers(args.provider, args.all_providers)
        runs = runner.run(args.jobs, providers)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
        runner.close()

    print("\n" + "=" * 60)
    print("BACKFILL COMPLETE" + (" (DRY RUN)" if config.dry_run else ""))
    print("=" * 60)
    for run in runs:
        print_run(run)

    failed = [run for run in runs if not run.success]
    print(f"\n{len(runs) - len(failed)}/{len(runs)} jobs succeeded")
    return 0 if not failed else 1


def show_status(args) -> int:
    runner = JobRunner(load_config(args))
    try:
        checkpoint = runner.status(args.job, args.provider)
    finally:
        runner.close()

    job_key = get_job(args.job).job_key(args.provider)
    if checkpoint is None:
        print(f"{job_key}: no checkpoint, the next run starts from the beginning")
    else:
        print(json.dumps(checkpoint.to_dict(), indent=2))
    return 0


def reset_job(args) -> int:
    job_key = get_job(args.job).job_key(args.provider)
    if not args.yes:
        print(f"This drops table {job_key} and its checkpoint. Re-run with --yes to confirm.")
        return 1

    runner = JobRunner(load_config(args))
    try:
        runner.reset(args.job, args.provider, drop_table=not args.keep_table)
    finally:
        runner.close()
    print(f"{job_key}: reset")
    return 0


def cleanup_job(args) -> int:
    if not args.yes:
        print(f"This drops every {args.job} table. Re-run with --yes to confirm.")
        return 1

    runner = JobRunner(load_config(args))
    try:
        tables = runner.cleanup(args.job)
    finally:
        runner.close()
    print(f"Dropped {len(tables)} tables")
    for table in tables:
        print(f"  {table}")
    return 0


def show_jobs(args) -> int:
    for job in list_jobs():
        print(f"{job.name:<14} {job.table_prefix}_<provider>  {job.description}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Backfill MySQL reporting entities into ClickHouse"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    def _connection_args(sub):
        sub.add_argument("--config", help="Path to a JSON config file")
        sub.add_argument("--checkpoint-file", help="Keep checkpoints in this JSON file")

    # Run jobs
    run_parser = subparsers.add_parser("run", help="Run one or more jobs")
    run_parser.add_argument("jobs", nargs="+", help="Job names (see 'jobs')")
    providers = run_parser.add_mutually_exclusive_group(required=True)
    providers.add_argument("--provider", type=int, action="append", help="Provider id (repeatable)")
    providers.add_argument("--all-providers", action="store_true", help="Every active provider")
    _connection_args(run_parser)
    run_parser.add_argument("--page-size", type=int, help="Rows per page")
    run_parser.add_argument("--chunk-size", type=int, help="Rows per bulk write")
    run_parser.add_argument("--workers", type=int, help="Jobs run in parallel")
    run_parser.add_argument("--max-pages", type=int, help="Stop each job after this many pages")
    run_parser.add_argument("--report-dir", help="Write a JSON report per job here")
    run_parser.add_argument("--dry-run", action="store_true", help="Simulate without writing or committing")

    # Checkpoint status
    status_parser = subparsers.add_parser("status", help="Show a job's checkpoint")
    status_parser.add_argument("job", help="Job name")
    status_parser.add_argument("--provider", type=int, required=True, help="Provider id")
    _connection_args(status_parser)

    # Reset
    reset_parser = subparsers.add_parser("reset", help="Drop a job's table and checkpoint")
    reset_parser.add_argument("job", help="Job name")
    reset_parser.add_argument("--provider", type=int, required=True, help="Provider id")
    reset_parser.add_argument("--keep-table", action="store_true", help="Only delete the checkpoint")
    reset_parser.add_argument("--yes", action="store_true", help="Confirm")
    _connection_args(reset_parser)

    # Cleanup
    cleanup_parser = subparsers.add_parser("cleanup", help="Drop every table of a job")
    cleanup_parser.add_argument("job", help="Job name")
    cleanup_parser.add_argument("--yes", action="store_true", help="Confirm")
    _connection_args(cleanup_parser)

    subparsers.add_parser("jobs", help="List available jobs")

    return parser


COMMANDS = {
    "run": run_jobs,
    "status": show_status,
    "reset": reset_job,
    "cleanup": cleanup_job,
    "jobs": show_jobs,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Set up logging
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    command = COMMANDS.get(args.command)
    if command is None:
        parser.print_help()
        return 2

    try:
        return command(args)
    except BackfillError as e:
        logger.error(e.message)
        return 1


if __name__ == "__main__":
    sys.exit(main())
