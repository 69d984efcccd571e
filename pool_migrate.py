#!/usr/bin/env python3
"""
Command line tool for live storage-pool drive replacement.

Examples:
    pool_migrate.py validate --sources ata-OLD1 ata-OLD2 --targets ata-NEW1 ata-NEW2
    pool_migrate.py run --sources ata-OLD1 --targets ata-NEW1 --maintenance
    pool_migrate.py expansion-size ata-NEW1 ata-NEW2 ata-NEW3
"""

import argparse
import json
import logging
import os
import signal
import sys

from dotenv import load_dotenv

from migration.config_manager import ConfigManager, MigrationConfig
from migration.context import MigrationKind
from migration.errors import MigrationError
from migration.records import MigrationRecordStore
from migration.service import MigrationLock, MigrationService
from storage.disk_inventory import DiskInventory
from storage.maintenance import MaintenanceWindow
from storage.system_executor import SystemCommandExecutor
from storage.zpool_manager import ZpoolManager

logger = logging.getLogger(__name__)


def build_service(config: MigrationConfig) -> MigrationService:
    """Wire the service and its collaborators from configuration."""
    executor = SystemCommandExecutor(dry_run=config.dry_run, timeout=config.max_command_timeout)
    zpool = ZpoolManager(
        executor,
        replace_attempts=config.replace_attempts,
        replace_retry_wait_seconds=config.replace_retry_wait_seconds,
        dry_run=config.dry_run,
    )
    return MigrationService(
        pool_name=config.pool_name,
        inventory=zpool,
        mutator=zpool,
        disks=DiskInventory(executor),
        maintenance=MaintenanceWindow(config.maintenance_file),
        store=MigrationRecordStore(config.state_dir),
        lock=MigrationLock(os.path.join(config.state_dir, "migration.lock")),
        poll_interval_seconds=config.poll_interval_seconds,
        maintenance_window_seconds=config.maintenance_window_seconds,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Replace the drives of a live storage pool")
    parser.add_argument("--config", help="Path to a .json, .yaml or env-style config file")
    parser.add_argument("--dry-run", action="store_true", help="Log pool mutations instead of running them")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (("validate", "Check that a migration could start now"),
                            ("run", "Run a migration to completion")):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--sources", nargs="+", required=True, help="Drive ids to move off")
        sub.add_argument("--targets", nargs="+", required=True, help="Drive ids to move onto")
        sub.add_argument("--kind", default=MigrationKind.POOL_REPLACE.value,
                         choices=[kind.value for kind in MigrationKind])
        if name == "run":
            sub.add_argument("--maintenance", action="store_true",
                             help="Keep the maintenance window open while work remains")

    subparsers.add_parser("status", help="Show the latest migration")
    subparsers.add_parser("history", help="Show every recorded migration")

    dismiss = subparsers.add_parser("dismiss", help="Dismiss finished migrations")
    dismiss.add_argument("--started-at", help="Only dismiss the migration started at this time")

    expansion = subparsers.add_parser("expansion-size", help="Usable size of a pool built from drives")
    expansion.add_argument("drive_ids", nargs="+")
    expansion.add_argument("--layout", choices=["mirror", "raidz", "raidz2"],
                           help="Only compute this layout")

    subparsers.add_parser("disks", help="List attached physical disks")
    return parser


def _print_json(data) -> None:
    print(json.dumps(data, indent=2))


def main(argv=None) -> int:
    """Main entry point."""
    load_dotenv()
    args = build_parser().parse_args(argv)

    try:
        config = ConfigManager(args.config).load_config()
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    if args.dry_run:
        config.dry_run = True

    log_level = "DEBUG" if args.debug else config.log_level.upper()
    logging.basicConfig(level=getattr(logging, log_level, logging.INFO),
                        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    service = build_service(config)

    try:
        if args.command == "validate":
            service.validate(args.sources, args.targets, MigrationKind(args.kind))
            print("Migration is valid")

        elif args.command == "run":
            def _cancel(signum, frame):
                logger.warning(f"Received signal {signum}, cancelling migration")
                service.cancel()

            previous = {sig: signal.signal(sig, _cancel) for sig in (signal.SIGINT, signal.SIGTERM)}
            try:
                result = service.run(args.sources, args.targets, MigrationKind(args.kind),
                                     maintenance=args.maintenance)
            finally:
                for sig, handler in previous.items():
                    signal.signal(sig, handler)
            print(f"Migration finished: {', '.join(result.committed_stage_names)}")

        elif args.command == "status":
            record = service.get_status()
            if record is None:
                print("No migration to report")
            else:
                _print_json(record.to_dict())

        elif args.command == "history":
            _print_json([record.to_dict() for record in service.get_history()])

        elif args.command == "dismiss":
            count = service.dismiss(args.started_at)
            print(f"Dismissed {count} migration(s)")

        elif args.command == "expansion-size":
            if args.layout:
                sizes = {args.layout: service.calculate_expansion_size(args.drive_ids, args.layout)}
            else:
                sizes = service.calculate_all_expansion_sizes(args.drive_ids)
            _print_json(sizes)

        elif args.command == "disks":
            disks = service.disks.list_physical_disks()
            _print_json([
                {
                    "id": disk.id,
                    "capacity_bytes": disk.capacity_bytes,
                    "device_path": disk.device_path,
                    "model": disk.model,
                    "serial": disk.serial,
                }
                for disk in disks
            ])

    except MigrationError as e:
        print(f"Migration error ({e.kind.value}): {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
