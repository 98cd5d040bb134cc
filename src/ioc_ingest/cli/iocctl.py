#!/usr/bin/env python3
"""
iocctl - IOC Ingest operational CLI

Day-2 operations for the ingestion pipeline:
- Scheduler loop (iocctl run)
- One tier cycle or a full ingestion run (iocctl cycle / iocctl ingest)
- Manual single-source fetch (iocctl fetch)
- Manual normalization and tracking reset (iocctl normalize / normalize-reset)
- Status and statistics (iocctl status / iocctl stats)
"""

import argparse
import json
import logging
import sys
from typing import Any, Optional

from ioc_ingest import __version__
from ioc_ingest.core.config import AppConfig, get_config
from ioc_ingest.core.errors import IngestError
from ioc_ingest.core.models import FetchStatus, ScheduleTier
from ioc_ingest.normalize.runner import TASK_NAMES
from ioc_ingest.pipeline.service import IngestionService

logger = logging.getLogger(__name__)


class Colors:
    """ANSI color codes for terminal output."""

    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    RESET = "\033[0m"
    BOLD = "\033[1m"


def colorize(text: str, color: str) -> str:
    """Colorize text if stdout is a TTY."""
    if sys.stdout.isatty():
        return f"{color}{text}{Colors.RESET}"
    return text


def setup_logging(log_level: str):
    """
    Setup logging configuration.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )


def build_service(config: Optional[AppConfig] = None) -> IngestionService:
    """Build the ingestion service from configuration."""
    return IngestionService.from_config(config)


def print_json(data: Any):
    print(json.dumps(data, indent=2, default=str))


def cmd_run(service: IngestionService, args) -> int:
    """
    Run an initial full ingestion, then the tier scheduler loop.

    Returns:
        Exit code (only returns when interrupted or nothing is scheduled)
    """
    logger.info("Running initial ingestion on startup...")
    try:
        service.trigger_ingestion()
    except IngestError as e:
        logger.error(f"Initial ingestion failed: {e}")

    service.tier_scheduler().run_forever()
    return 0


def cmd_cycle(service: IngestionService, args) -> int:
    result = service.run_tier(ScheduleTier(args.tier))
    print_json(result)
    return 0


def cmd_ingest(service: IngestionService, args) -> int:
    result = service.trigger_ingestion()
    print_json(result)
    return 0


def cmd_fetch(service: IngestionService, args) -> int:
    """
    Fetch one source immediately, ignoring its TTL.

    Returns:
        Exit code (0 on success, 1 on unknown/disabled source or failure)
    """
    try:
        result = service.manual_fetch(args.key)
    except IngestError as e:
        print(colorize(f"✗ {e}", Colors.RED), file=sys.stderr)
        return 1

    print_json(result.model_dump(mode="json"))
    if result.status == FetchStatus.FAILED:
        print(colorize(f"✗ Fetch failed: {result.error}", Colors.RED), file=sys.stderr)
        return 1

    print(colorize(f"✓ {args.key}: {result.status.value} ({result.count} entries)", Colors.GREEN))
    return 0


def cmd_normalize(service: IngestionService, args) -> int:
    try:
        result = service.manual_normalize(args.task)
    except IngestError as e:
        print(colorize(f"✗ {e}", Colors.RED), file=sys.stderr)
        return 1
    print_json(result)
    return 0


def cmd_normalize_reset(service: IngestionService, args) -> int:
    result = service.normalizer.reset_tracking()
    print(colorize(f"✓ {result['message']}", Colors.GREEN))
    return 0


def cmd_status(service: IngestionService, args) -> int:
    print_json(service.get_fetch_status())
    return 0


def cmd_stats(service: IngestionService, args) -> int:
    print_json({
        "indicators": service.get_stats(),
        "normalized": service.normalizer.stats(),
    })
    return 0


def cmd_version(service: Optional[IngestionService], args) -> int:
    print(f"iocctl version {__version__}")
    return 0


COMMANDS = {
    "run": cmd_run,
    "cycle": cmd_cycle,
    "ingest": cmd_ingest,
    "fetch": cmd_fetch,
    "normalize": cmd_normalize,
    "normalize-reset": cmd_normalize_reset,
    "status": cmd_status,
    "stats": cmd_stats,
}


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for iocctl."""
    parser = argparse.ArgumentParser(
        description="IOC Ingest operational CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  iocctl run                         # Initial ingestion, then cron loop
  iocctl cycle daily                 # Run the daily tier once
  iocctl fetch urlhaus               # Fetch URLhaus now, ignoring TTL
  iocctl normalize all               # Run every normalizer
  iocctl stats                       # Indicator and artifact statistics

Environment variables:
  IOC_SOURCES_ENABLED                # Global ingestion flag
  IOC_SOURCE_<KEY> / IOC_URL_<KEY>   # Per-source enable flag and URL
  RUN_JOBS                           # Global normalization flag
        """
    )

    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Log level (default: from config)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("run", help="Run initial ingestion, then the tier scheduler")

    cycle_parser = subparsers.add_parser("cycle", help="Run one schedule tier now")
    cycle_parser.add_argument(
        "tier",
        choices=[tier.value for tier in ScheduleTier],
        help="Schedule tier"
    )

    subparsers.add_parser("ingest", help="Run a full ingestion cycle over every source")

    fetch_parser = subparsers.add_parser("fetch", help="Fetch one source now (bypasses TTL)")
    fetch_parser.add_argument("key", help="Source key (e.g. urlhaus)")

    normalize_parser = subparsers.add_parser("normalize", help="Run a normalizer task")
    normalize_parser.add_argument("task", choices=TASK_NAMES, help="Normalizer task")

    subparsers.add_parser("normalize-reset", help="Delete the normalize tracking file")
    subparsers.add_parser("status", help="Show per-source fetch status")
    subparsers.add_parser("stats", help="Show indicator store and artifact statistics")
    subparsers.add_parser("version", help="Show version information")

    return parser


def main(argv=None) -> int:
    """Main entry point for iocctl CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    if args.command == "version":
        return cmd_version(None, args)

    config = get_config()
    setup_logging(args.log_level or config.log_level)

    try:
        service = build_service(config)
        return COMMANDS[args.command](service, args)
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
        return 1
    except IngestError as e:
        print(colorize(f"✗ {e}", Colors.RED), file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
