#!/usr/bin/env python3
"""
Device Roster Sync - Google Sheets to device store

CLI Commands:
    sync               - Run one sync pass (manual, or scheduled with --scheduled)
    audit              - Report sheet rows missing a serial number
    status             - Show the sync lock and the latest run
    columns            - List column definitions for the sheet
    reset-lock         - Force-release a stuck sync lock

Usage:
    python main.py sync --requested-by ops@nyu.edu
    python main.py sync --scheduled
    python main.py audit --no-persist
    python main.py status --json
    python main.py columns --all
    python main.py reset-lock --yes
"""

import argparse
import json
import os
import sys

# Ensure project root is in path
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)


def _build_orchestrator(require_sheets: bool = True):
    """Load config, configure logging and build the orchestrator."""
    from core.config import load_config_from_env
    from core.logging_config import setup_logging
    from services.orchestrator import SyncOrchestrator

    config = load_config_from_env()
    setup_logging(level=config.log_level, format_type=config.log_format)
    config.validate(require_sheets=require_sheets)
    return SyncOrchestrator(config)


def cmd_sync(args):
    """Run a single sync pass."""
    from core.config import ConfigurationError
    from models.device import SyncRunStatus, TriggerContext, TriggerType

    try:
        orchestrator = _build_orchestrator()
    except ConfigurationError as e:
        print(f"Configuration error: {e}")
        return 1

    if args.scheduled:
        result = orchestrator.run_scheduled()
    else:
        trigger = TriggerContext(type=TriggerType.MANUAL, requested_by=args.requested_by)
        result = orchestrator.run(trigger=trigger)

    if args.json:
        print(json.dumps(result.to_metadata(), indent=2, default=str))
        return 0 if result.status != SyncRunStatus.FAILED else 1

    print(f"Sync {result.status.value}" + (f" ({result.reason})" if result.reason else ""))
    if result.status == SyncRunStatus.SKIPPED:
        return 0

    print(f"  Rows:       {result.row_count} (skipped {result.skipped})")
    print(f"  Added:      {result.added}")
    print(f"  Updated:    {result.updated}")
    print(f"  Unchanged:  {result.unchanged}")
    print(f"  Conflicts:  {result.serial_conflicts}")
    print(f"  Columns:    {result.column_total} (+{result.columns_added} -{result.columns_removed})")
    print(f"  Duration:   {result.duration_ms} ms")
    if result.anomalies:
        print(f"\nAnomalies ({len(result.anomalies)}):")
        for anomaly in result.anomalies[:args.max_anomalies]:
            print(f"  - {anomaly}")
        if len(result.anomalies) > args.max_anomalies:
            print(f"  ... and {len(result.anomalies) - args.max_anomalies} more")

    if result.status == SyncRunStatus.FAILED:
        print(f"\nError: {result.error_code}: {result.error_message}")
        print(f"Reference: {result.reference_id}")
        return 1
    return 0


def cmd_audit(args):
    """Run the serial audit."""
    from core.config import ConfigurationError
    from core.errors import AppError

    try:
        orchestrator = _build_orchestrator()
        result = orchestrator.run_audit(persist=not args.no_persist)
    except ConfigurationError as e:
        print(f"Configuration error: {e}")
        return 1
    except AppError as e:
        print(f"Audit failed: {e.code.value}: {e.message}")
        print(f"  {e.recommendation}")
        return 1

    if args.json:
        print(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        print(f"Serial audit {result.status}: {result.missing_serial_count} of "
              f"{result.rows_audited} rows missing '{result.identifier_column}'")
        for row in result.missing_serial_rows:
            print(f"  - sheet row {row.row_number}")
    return 0 if not result.blocked else 2


def cmd_status(args):
    """Show lock state and latest run."""
    orchestrator = _build_orchestrator(require_sheets=False)
    status = orchestrator.get_status()

    if args.json:
        print(json.dumps(status, indent=2, default=str))
        return 0

    lock = status["lock"]
    print(f"Sheet:    {status['sheetId'] or '<unset>'}")
    print(f"Enabled:  {status['enabled']} (every {status['intervalMinutes']} min)")
    print(f"Devices:  {status['deviceCount']}")
    if lock and lock["locked"]:
        print(f"Lock:     held by {lock['lockId']} until {lock['releaseAt']}")
    else:
        print("Lock:     free")

    latest = status["latestRun"]
    if latest:
        meta = latest["metadata"]
        print(f"Last run: {meta.get('status')} at {latest['createdAt']} "
              f"(+{meta.get('added', 0)} ~{meta.get('updated', 0)} ={meta.get('unchanged', 0)})")
    else:
        print("Last run: never")
    return 0


def cmd_columns(args):
    """List column definitions."""
    orchestrator = _build_orchestrator(require_sheets=False)
    sheet_id = orchestrator.sheet_id
    if args.all:
        columns = orchestrator.columns.list_all(sheet_id)
    else:
        columns = orchestrator.columns.list_active(sheet_id)

    if args.json:
        print(json.dumps([column.to_dict() for column in columns], indent=2, default=str))
        return 0

    if not columns:
        print("No column definitions recorded yet")
        return 0
    for column in columns:
        removed = f"  (removed {column.removed_at.isoformat()})" if column.removed_at else ""
        nullable = "?" if column.nullable else ""
        print(f"  {column.display_order:>3}  {column.column_key:<32} {column.data_type.value}{nullable}{removed}")
    return 0


def cmd_reset_lock(args):
    """Force-release the sync lock."""
    orchestrator = _build_orchestrator(require_sheets=False)
    current = orchestrator.lock.get_current()
    if not current or not current.locked:
        print("Sync lock is not held")
        return 0

    if not args.yes:
        print(f"Lock held by {current.lock_id} until {current.release_at.isoformat()}")
        print("Re-run with --yes to force release")
        return 1

    orchestrator.lock.force_release()
    print(f"Released sync lock held by {current.lock_id}")
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Device Roster Sync - Google Sheets to device store",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python main.py sync
    python main.py sync --scheduled --json
    python main.py audit
    python main.py status
    python main.py columns --all
    python main.py reset-lock --yes
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # sync command
    sync_parser = subparsers.add_parser("sync", help="Run one sync pass")
    sync_parser.add_argument(
        "--scheduled", action="store_true", help="Apply scheduler gates (enabled flag, cadence window)"
    )
    sync_parser.add_argument("--requested-by", help="Actor recorded on the run")
    sync_parser.add_argument("--json", action="store_true", help="Output run telemetry as JSON")
    sync_parser.add_argument(
        "--max-anomalies", type=int, default=20, help="Anomalies to print (default: 20)"
    )

    # audit command
    audit_parser = subparsers.add_parser("audit", help="Report rows missing a serial")
    audit_parser.add_argument("--no-persist", action="store_true", help="Don't record the audit event")
    audit_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # status command
    status_parser = subparsers.add_parser("status", help="Show lock and latest run")
    status_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # columns command
    columns_parser = subparsers.add_parser("columns", help="List column definitions")
    columns_parser.add_argument("--all", action="store_true", help="Include removed columns")
    columns_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # reset-lock command
    reset_parser = subparsers.add_parser("reset-lock", help="Force-release the sync lock")
    reset_parser.add_argument("--yes", action="store_true", help="Confirm the release")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "sync": cmd_sync,
        "audit": cmd_audit,
        "status": cmd_status,
        "columns": cmd_columns,
        "reset-lock": cmd_reset_lock,
    }

    return commands[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
