#!/usr/bin/env python3
"""
Run or follow an ingestion run for a project.

This script provides a command-line interface to:
1. Submit a project's files as a new ingestion run
2. Process the run in-process, without Celery workers (--inline)
3. Show the progress of a run
4. Reset batches stuck in a processing state
5. Remove deleted files, or a whole project, from the graph

Usage:
    # Queue all active files of a project on the Celery workers
    python scripts/process_project.py 0190f1c2-...

    # Process two files in this process (no worker needed)
    python scripts/process_project.py 0190f1c2-... --files <file-id> <file-id> --inline

    # Show progress of a run
    python scripts/process_project.py --progress <correlation-id>

    # Reset stale batches
    python scripts/process_project.py --reset-stale

    # Remove two files from the graph
    python scripts/process_project.py 0190f1c2-... --files <file-id> <file-id> --delete

Requirements:
    - Database must be running and migrated (alembic upgrade head)
    - Redis must be running unless --inline is used
"""

import argparse
import asyncio
import sys
import uuid
from datetime import datetime
from pathlib import Path

# Add project root to path for imports
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from src.core.exceptions import LockBusyError, NotFoundError, TransientError  # noqa: E402
from src.core.logging import get_logger, setup_logging  # noqa: E402
from src.db import dispose_engine  # noqa: E402
from src.services.ai_client import get_ai_client  # noqa: E402
from src.services.orchestrator import BatchOrchestrator, CorrelationProgress  # noqa: E402

logger = get_logger(__name__)


def print_progress(progress: CorrelationProgress) -> None:
    """Print the batch counts and durations of a run."""
    print(f"\n{'='*60}")
    print(f"Run {progress.correlation_id}")
    print(f"{'='*60}")
    print(f"Project:          {progress.project_id}")
    print(f"Current step:     {progress.current_step}")
    print(f"Completed:        {progress.percentage:.1f}%")
    for status, count in progress.counts.items():
        if count:
            print(f"  {status:<16}{count}")
    print(f"Estimated:        {progress.estimated_duration_ms / 1000:.1f}s")
    print(f"Remaining:        {progress.remaining_duration_ms / 1000:.1f}s")
    for error in progress.errors:
        print(f"  Error: {error}")
    print(f"{'='*60}\n")


async def run(args: argparse.Namespace) -> int:
    start_time = datetime.now()

    async with get_ai_client() as ai:
        dispatcher = None
        if not args.inline:
            from src.workers.tasks import CeleryDispatcher

            dispatcher = CeleryDispatcher()
        orchestrator = BatchOrchestrator(ai, dispatcher=dispatcher)
        try:
            return await run_command(orchestrator, args, start_time)
        finally:
            await orchestrator.aclose()


async def run_command(orchestrator: BatchOrchestrator, args: argparse.Namespace, start_time: datetime) -> int:
    if args.reset_stale:
        resets = await orchestrator.reset_stale_batches()
        print(f"Reset {len(resets)} stale batches")
        for reset in resets:
            print(f"  {reset.correlation_id}/{reset.batch_id} -> {reset.status.value}")
        return 0

    if args.progress:
        print_progress(await orchestrator.correlation_progress(args.progress))
        return 0

    project_id = uuid.UUID(args.project_id)
    file_ids = [uuid.UUID(f) for f in args.files] if args.files else None

    if args.delete_project:
        await orchestrator.delete_project(project_id)
        print(f"Deleted project {project_id}")
        return 0

    if args.delete:
        removal = await orchestrator.delete_files(project_id, file_ids)
        print(
            f"Removed {removal.files} files: {removal.entities_deleted} entities, "
            f"{removal.relationships_deleted} relationships deleted, "
            f"{removal.descriptions_updated} descriptions updated"
        )
        return 0

    submission = await orchestrator.submit_files(project_id, file_ids)
    print(
        f"Submitted run {submission.correlation_id}: "
        f"{submission.file_count} files in {submission.batch_count} batches"
    )

    if args.inline:
        for batch_id in range(submission.batch_count):
            print(f"\rProcessing batch {batch_id + 1}/{submission.batch_count}", end="", flush=True)
            await orchestrator.preprocess_batch(submission.correlation_id, batch_id)
            await orchestrator.index_batch(submission.correlation_id, batch_id)
        print()  # New line after progress

    print_progress(await orchestrator.correlation_progress(submission.correlation_id))

    elapsed = (datetime.now() - start_time).total_seconds()
    print(f"Time elapsed: {elapsed:.1f}s")
    return 0


async def main_async(args: argparse.Namespace) -> int:
    try:
        return await run(args)
    except NotFoundError as e:
        print(f"Error: {e}")
        return 1
    except LockBusyError:
        print("Error: the project is being indexed, try again later")
        return 1
    except TransientError as e:
        print(f"Error: {e}")
        return 1
    finally:
        await dispose_engine()


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Run or follow an ingestion run",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Queue all files of a project
    python scripts/process_project.py <project-id>

    # Process in this process, without workers
    python scripts/process_project.py <project-id> --inline

    # Show progress of a run
    python scripts/process_project.py --progress <correlation-id>
        """,
    )

    parser.add_argument("project_id", nargs="?", help="Project to process")

    parser.add_argument(
        "--files", "-f",
        nargs="+",
        help="Only process these file ids (default: all active files)",
    )

    parser.add_argument(
        "--inline",
        action="store_true",
        help="Run preprocessing and indexing here instead of on Celery workers",
    )

    parser.add_argument(
        "--progress", "-p",
        metavar="CORRELATION_ID",
        help="Show progress of a run and exit",
    )

    parser.add_argument(
        "--delete",
        action="store_true",
        help="Soft-delete --files (if given) and remove every deleted file from the graph",
    )

    parser.add_argument(
        "--delete-project",
        action="store_true",
        help="Delete the project with its files, graph and batches",
    )

    parser.add_argument(
        "--reset-stale",
        action="store_true",
        help="Reset batches stuck in a processing state and exit",
    )

    args = parser.parse_args()

    if not (args.project_id or args.progress or args.reset_stale):
        parser.error("a project id, --progress or --reset-stale is required")

    setup_logging()
    sys.exit(asyncio.run(main_async(args)))


if __name__ == "__main__":
    main()
