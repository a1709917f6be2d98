#!/usr/bin/env python3
"""
Example: Airtable article covers to Imgur, Discord, Instagram and Facebook

Publishes each article's cover image to every platform, skipping anything the
ledger already recorded as published. Safe to interrupt and re-run.

Usage:
    # Run (or resume) the sync from the bundled config
    python run_sync.py

    # Use a different config file
    python run_sync.py --config my_migration.json

    # Print progress of the last run and exit
    python run_sync.py --status
"""

import argparse
import logging
import os
import sys
from pathlib import Path

from syndication.credentials import EnvCredentialProvider
from syndication.models.migration import MigrationConfig, RunStatus
from syndication.orchestrator import build_orchestrator
from syndication.services.control import MigrationControl
from syndication.services.ledger import MigrationLedger

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

DEFAULT_CONFIG = Path(__file__).parent / "migration.json"


def required_env(config: MigrationConfig) -> list:
    """Environment variables the configured source and targets need."""
    platforms = {t.platform for t in config.targets}
    if config.source.type == "airtable":
        platforms.add("airtable")

    names = []
    for platform in sorted(platforms):
        token_var, account_var = EnvCredentialProvider.ENV_VARS[platform]
        names.append(token_var)
        if account_var:
            names.append(account_var)
    return names


def show_status(config: MigrationConfig):
    """Print a short progress report."""
    summary = MigrationControl(MigrationLedger(config.database_url, config.name)).status()

    logger.info("=" * 60)
    logger.info(f"STATUS: {summary.run_name}")
    logger.info("=" * 60)
    logger.info(f"Status: {summary.status}{' (paused)' if summary.paused else ''}")
    logger.info(f"Pages completed: {summary.pages_completed}")
    for platform, counts in sorted(summary.counts.items()):
        logger.info(f"  {platform}: {counts.get('done', 0)} done, {counts.get('failed', 0)} failed")

    for error in summary.recent_errors:
        logger.warning(f"  - {error.key}: {error.message}")


def run_sync(config: MigrationConfig):
    """Run one pass."""
    logger.info("=" * 60)
    logger.info("STARTING SYNC")
    logger.info("=" * 60)
    logger.info(f"Name: {config.name}")
    logger.info(f"Targets: {', '.join(t.platform for t in config.targets)}")

    result = build_orchestrator(config).run_migration()

    logger.info("=" * 60)
    logger.info(f"SYNC {result.status.value.upper()}")
    logger.info("=" * 60)
    logger.info(f"Succeeded: {result.totals.succeeded}")
    logger.info(f"Resumed: {result.totals.resumed}")
    logger.info(f"Skipped: {result.totals.skipped}")
    logger.info(f"Deferred: {result.totals.deferred}")
    logger.info(f"Failed: {result.totals.failed}")

    if result.duration_seconds:
        logger.info(f"Duration: {result.duration_seconds:.2f} seconds")

    if result.totals.failed:
        logger.warning("Inspect failures with --status, then requeue them with `syndication requeue`")

    return result


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Airtable covers to Imgur, Discord, Instagram and Facebook"
    )
    parser.add_argument(
        "--config",
        default=str(DEFAULT_CONFIG),
        help="Path to JSON migration config"
    )
    parser.add_argument(
        "--status",
        action="store_true",
        help="Show progress of the last run and exit"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Verbose output"
    )

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    config = MigrationConfig.from_json_file(args.config)

    if args.status:
        show_status(config)
        return

    missing = [var for var in required_env(config) if not os.environ.get(var)]
    if missing:
        logger.error(f"Missing required environment variables: {', '.join(missing)}")
        sys.exit(1)

    result = run_sync(config)
    if result.status not in (RunStatus.COMPLETED, RunStatus.PAUSED, RunStatus.STOPPED):
        sys.exit(1)


if __name__ == "__main__":
    main()
