#!/usr/bin/env python3
"""
Scheduled synchronization script for delta-sync.

This script performs one delta pass against the configured collection:
- Full snapshot on the first run (or with --full-sync)
- Incremental changes since the stored cursor afterwards
- Optionally waits for the next change with --watch

Designed to be run on a schedule (e.g., via cron or Airflow) with a file
cursor store so the cursor survives between runs.

Usage:
    python scripts/scheduled_sync.py [--config CONFIG_PATH] [--full-sync] [--watch] [--timeout SECONDS]
"""

import argparse
import signal
import sys
import threading

from delta_sync.exceptions import DeltaSyncError
from delta_sync.providers import get_orchestrator
from delta_sync.sync.change_applier import CompositeApplier, PrintingApplier, ProjectionApplier
from delta_sync.sync.models import SyncReport
from delta_sync.utils.config_loader import ConfigLoader, ConfigurationError
from delta_sync.utils.logging_config import (
    bind_sync_context,
    clear_sync_context,
    configure_logging,
    get_logger,
)

log = get_logger(__name__)


def perform_sync(
    config_path: str | None = None,
    full_sync: bool = False,
    watch: bool = False,
    timeout: float | None = None,
    print_changes: bool = True,
) -> dict:
    """
    Perform a delta pass, optionally followed by a poll for the next change.

    Args:
        config_path: Optional path to configuration file
        full_sync: If True, discard the stored cursor first
        watch: If True, poll until a change is observed or the timeout passes
        timeout: Poll deadline in seconds (defaults to polling.timeout_seconds)
        print_changes: If True, print each change to stdout

    Returns:
        Dictionary with sync statistics
    """
    try:
        config = ConfigLoader().load_config(config_path)
    except ConfigurationError as e:
        log.error("configuration_failed", error=str(e))
        return {"success": False, "error": str(e)}

    configure_logging(config.logging)
    bind_sync_context(config.graph.resource)

    projection = ProjectionApplier()
    appliers = [projection, PrintingApplier()] if print_changes else [projection]
    orchestrator = get_orchestrator(config, CompositeApplier(appliers))

    cancel_event = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: cancel_event.set())

    try:
        if full_sync:
            orchestrator.discard_cursor()

        reports = [orchestrator.sync()]
        if watch:
            reports.append(orchestrator.poll_for_changes(cancel_event=cancel_event, timeout=timeout))

        stats = _summarize(reports)
        stats["entities_seen"] = len(projection)
        log.info("synchronization_completed", **stats)
        return stats

    except DeltaSyncError as e:
        log.error("synchronization_failed", error=str(e), error_type=type(e).__name__)
        return {"success": False, "error": str(e), "error_type": type(e).__name__}
    finally:
        clear_sync_context()


def _summarize(reports: list[SyncReport]) -> dict:
    first, last = reports[0], reports[-1]
    return {
        "success": True,
        "resource": first.resource,
        "sync_type": first.mode.value,
        "pages_fetched": sum(r.pages_fetched for r in reports),
        "records_upserted": sum(r.records_upserted for r in reports),
        "records_removed": sum(r.records_removed for r in reports),
        "forced_resync": any(r.forced_resync for r in reports),
        "poll_attempts": sum(r.poll_attempts for r in reports),
        "changes_observed": last.changes_observed,
        "cancelled": last.cancelled,
        "start_time": first.start_time.isoformat(),
        "end_time": last.end_time.isoformat(),
        "duration_seconds": (last.end_time - first.start_time).total_seconds(),
    }


def main():
    """Main entry point for scheduled sync script."""
    parser = argparse.ArgumentParser(description="Delta query synchronization")
    parser.add_argument("--config", type=str, default=None, help="Path to configuration file")
    parser.add_argument(
        "--full-sync",
        action="store_true",
        help="Discard the stored cursor and take a full snapshot",
    )
    parser.add_argument(
        "--watch",
        action="store_true",
        help="After the pass, poll until the next change is observed",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds to wait for a change with --watch",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Do not print individual changes",
    )

    args = parser.parse_args()

    stats = perform_sync(
        config_path=args.config,
        full_sync=args.full_sync,
        watch=args.watch,
        timeout=args.timeout,
        print_changes=not args.quiet,
    )

    print("\n" + "=" * 60)
    print("SYNCHRONIZATION SUMMARY")
    print("=" * 60)

    if stats.get("success"):
        print("Status: SUCCESS")
        print(f"Resource: {stats['resource']}")
        print(f"Sync Type: {stats['sync_type']}")
        print(f"Pages Fetched: {stats['pages_fetched']}")
        print(f"Records Upserted: {stats['records_upserted']}")
        print(f"Records Removed: {stats['records_removed']}")
        if stats["forced_resync"]:
            print("Cursor expired: full resync performed")
        if args.watch:
            print(f"Changes Observed: {stats['changes_observed']}")
            print(f"Poll Attempts: {stats['poll_attempts']}")
        print(f"Duration: {stats['duration_seconds']:.2f} seconds")
    else:
        print("Status: FAILED")
        print(f"Error: {stats.get('error', 'Unknown error')}")

    print("=" * 60)

    sys.exit(0 if stats.get("success") else 1)


if __name__ == "__main__":
    main()
