"""Command line interface for running and controlling migrations."""

import argparse
import json
import logging
import sys
from typing import List, Optional

from .credentials import MissingCredentials
from .errors import FatalSyncError, RunNotFound, SyndicationError
from .models.migration import JobState, MigrationConfig, RunStatus
from .orchestrator import build_orchestrator
from .services.control import MigrationControl
from .services.ledger import MigrationLedger
from .services.reporter import StatusSummary

logger = logging.getLogger(__name__)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="Syndication - publish record media to Airtable, Discord, Instagram, Facebook and Imgur"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    def add_command(name: str, help_text: str) -> argparse.ArgumentParser:
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--config", required=True, help="Path to migration config file")
        return sub

    # Run a pass
    run_parser = add_command("run", "Run (or resume) a migration pass")
    run_parser.add_argument(
        "--no-wait",
        action="store_true",
        help="Return immediately if the run is paused instead of waiting for resume",
    )

    # Status
    status_parser = add_command("status", "Show migration progress")
    status_parser.add_argument("--json", action="store_true", help="Print the summary as JSON")

    # Control
    add_command("pause", "Pause the run before its next job")
    add_command("resume", "Resume a paused run")
    add_command("stop", "Stop the active pass after in-flight jobs")

    requeue_parser = add_command("requeue", "Make failed keys eligible again")
    requeue_parser.add_argument(
        "--state",
        default=JobState.FAILED.value,
        choices=[s.value for s in JobState if s != JobState.DONE],
        help=(
            "Requeue entries in this state (default: failed). Uploading and "
            "awaiting_publish entries keep their container and resume instead of re-uploading"
        ),
    )
    requeue_parser.add_argument("--platform", help="Only requeue this platform")
    requeue_parser.add_argument("--record", help="Only requeue this record id")

    add_command("reset-cursor", "Restart paging from the first page")

    args = parser.parse_args(argv)

    # Set up logging
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    if not args.command:
        parser.print_help()
        return 1

    handlers = {
        "run": run_migration,
        "status": show_status,
        "pause": pause_run,
        "resume": resume_run,
        "stop": stop_run,
        "requeue": requeue_entries,
        "reset-cursor": reset_cursor,
    }

    try:
        config = MigrationConfig.from_json_file(args.config)
        return handlers[args.command](config, args)
    except (OSError, ValueError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2
    except RunNotFound as e:
        print(str(e), file=sys.stderr)
        return 3
    except MissingCredentials as e:
        print(f"Missing credentials: {e}", file=sys.stderr)
        return 2
    except FatalSyncError as e:
        print(f"Migration halted: {e}", file=sys.stderr)
        return 4
    except SyndicationError as e:
        print(f"Migration failed: {e}", file=sys.stderr)
        return 1


def _control(config: MigrationConfig) -> MigrationControl:
    return MigrationControl(MigrationLedger(config.database_url, config.name))


def run_migration(config: MigrationConfig, args) -> int:
    """Run a migration pass from config file."""
    orchestrator = build_orchestrator(config)
    result = orchestrator.run_migration(wait_when_paused=not args.no_wait)

    print("\n" + "=" * 60)
    print(f"MIGRATION {result.status.value.upper()}")
    print("=" * 60)
    print(f"Pages: {result.pages_completed}")
    print(f"Processed: {result.totals.processed}")
    print(f"Succeeded: {result.totals.succeeded}")
    print(f"Resumed: {result.totals.resumed}")
    print(f"Skipped: {result.totals.skipped}")
    print(f"Deferred: {result.totals.deferred}")
    print(f"Failed: {result.totals.failed}")
    if result.duration_seconds:
        print(f"Duration: {result.duration_seconds:.2f} seconds")

    return 0 if result.status in (RunStatus.COMPLETED, RunStatus.PAUSED, RunStatus.STOPPED) else 1


def show_status(config: MigrationConfig, args) -> int:
    """Print a status summary."""
    summary = _control(config).status()
    if args.json:
        print(json.dumps(summary.to_dict(), indent=2))
    else:
        print_summary(summary)
    return 0


def print_summary(summary: StatusSummary) -> None:
    print("\n" + "=" * 60)
    print(f"  {summary.run_name}")
    print("=" * 60)
    print(f"Status: {summary.status}{' (paused)' if summary.paused else ''}")
    print(f"Pages completed: {summary.pages_completed}")
    if summary.last_error:
        print(f"Last error: {summary.last_error}")

    print(f"\nKeys by state ({summary.total_keys} total):")
    states = [s.value for s in JobState]
    for platform, counts in sorted(summary.counts.items()):
        cells = ", ".join(f"{state}={counts.get(state, 0)}" for state in states)
        print(f"  {platform:<10} {cells}")

    if summary.recent_errors:
        print("\nRecent errors:")
        for error in summary.recent_errors:
            print(f"  {error.key} [{error.kind}] {error.message}")


def pause_run(config: MigrationConfig, args) -> int:
    _control(config).pause()
    print(f"Paused {config.name}")
    return 0


def resume_run(config: MigrationConfig, args) -> int:
    _control(config).resume()
    print(f"Resumed {config.name}")
    return 0


def stop_run(config: MigrationConfig, args) -> int:
    _control(config).stop()
    print(f"Stop requested for {config.name}")
    return 0


def requeue_entries(config: MigrationConfig, args) -> int:
    count = _control(config).requeue(
        state=JobState(args.state),
        platform=args.platform,
        record_id=args.record,
    )
    print(f"Requeued {count} {args.state} entries")
    return 0


def reset_cursor(config: MigrationConfig, args) -> int:
    _control(config).reset_cursor()
    print(f"Cursor reset for {config.name}; the next run starts from the first page")
    return 0


if __name__ == "__main__":
    sys.exit(main())
