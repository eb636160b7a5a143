"""Entry point for the tenant migration worker.

This module parses the command line, sets up the async runtime and starts
the worker. One process can consume every queue, or a deployment can run
one process per queue:

    tenant-migration-worker --queues mail,backup --health-port 8081
"""

import argparse
import asyncio
import sys
from typing import List, Optional

from .config import QUEUE_NAMES, Settings, WorkerConfig, settings
from .worker import TenantMigrationWorker


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="tenant-migration-worker",
        description="Run migration and backup jobs from the Kafka work queues",
    )
    parser.add_argument(
        "--queues",
        "-q",
        help=f"Comma-separated queues to consume (any of: {', '.join(QUEUE_NAMES)})",
    )
    parser.add_argument("--health-port", type=int, help="Port of the health server")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        help="Log level (overrides LOG_LEVEL)",
    )
    return parser.parse_args(argv)


def apply_args(base: Settings, args: argparse.Namespace) -> Settings:
    """Return settings with command-line overrides applied."""
    worker_updates = {}
    if args.queues:
        worker_updates["queues"] = args.queues
    if args.health_port is not None:
        worker_updates["health_port"] = args.health_port

    updates = {}
    if worker_updates:
        updates["worker"] = WorkerConfig(**{**base.worker.model_dump(), **worker_updates})
    if args.log_level:
        updates["logging"] = base.logging.model_copy(update={"level": args.log_level})
    return base.model_copy(update=updates) if updates else base


async def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the worker.

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    worker: Optional[TenantMigrationWorker] = None

    try:
        worker = TenantMigrationWorker(apply_args(settings, parse_args(argv)))
        await worker.start()
        return 0

    except KeyboardInterrupt:
        print("\nReceived keyboard interrupt, shutting down...")
        return 0

    except Exception as e:
        print(f"Worker failed: {e}", file=sys.stderr)
        return 1

    finally:
        if worker:
            await worker.stop()


def run() -> None:
    """Run the worker with proper async context."""
    if sys.version_info >= (3, 11):
        with asyncio.Runner() as runner:
            sys.exit(runner.run(main()))
    else:
        sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
