#!/usr/bin/env python3
"""
Assign tenant identity to legacy rows, with backup and rollback.

Usage:
  python -m scripts.migrate order
  python -m scripts.migrate run --table escolas --tenant <uuid> [--dry-run]
  python -m scripts.migrate run-all --tenant <uuid> [--dry-run]
  python -m scripts.migrate rollback --table escolas [--backup 20260102030405] [--yes]
  python -m scripts.migrate list-backups [--table escolas]
  python -m scripts.migrate cleanup --backup backup_escolas_20260102030405 [--yes]

Exit status is 0 on success and 1 on any failure.
"""

import argparse
import asyncio
import sys
from typing import Optional

import structlog

from merenda.database import AsyncSessionLocal, close_db
from merenda.exceptions import TenantEngineError
from merenda.logging_config import setup_logging
from merenda.models.migration_record import MigrationStatus
from merenda.services.migration_service import (
    cleanup_backup,
    list_backups,
    rollback_table,
    run_migration,
    run_migration_plan,
)
from merenda.tenant_scope import SCOPED_TABLES, dependencies_of, migration_order

logger = structlog.get_logger()


def _confirm(prompt: str, assume_yes: bool) -> bool:
    if assume_yes:
        return True
    answer = input(f"{prompt} Type 'yes' to continue: ")
    return answer.strip().lower() == "yes"


def _print_record(record) -> None:
    mode = " (dry run)" if record.dry_run else ""
    print(f"  {record.table_name}: {record.status}{mode}, {record.records_updated or 0} row(s)")
    if record.backup_table_name:
        print(f"    backup: {record.backup_table_name}")
    if record.error:
        print(f"    error: {record.error}")


async def cmd_order(args) -> int:
    print("Migration order (dependencies first):")
    for i, name in enumerate(migration_order(), start=1):
        deps = ", ".join(dependencies_of(name)) or "-"
        print(f"  {i}. {name}  (after: {deps})")
    return 0


async def cmd_run(args) -> int:
    async with AsyncSessionLocal() as db:
        record = await run_migration(db, args.table, args.tenant, dry_run=args.dry_run)
    print("Migration result")
    _print_record(record)
    return 1 if record.status == MigrationStatus.FAILED.value else 0


async def cmd_run_all(args) -> int:
    tables = args.tables.split(",") if args.tables else None
    async with AsyncSessionLocal() as db:
        plan = await run_migration_plan(db, args.tenant, tables=tables, dry_run=args.dry_run)
    print(f"Migration plan for tenant {plan.tenant_id}: {' -> '.join(plan.order)}")
    for record in plan.records:
        _print_record(record)
    for table, error in plan.errors.items():
        print(f"  {table}: ERROR {error}")
    print(f"Total rows {'to update' if args.dry_run else 'updated'}: {plan.total_updated}")
    return 0 if plan.succeeded else 1


async def cmd_rollback(args) -> int:
    target = f"table '{args.table}'" + (f" backup {args.backup}" if args.backup else " (latest backup)")
    if not _confirm(f"Rollback replaces every row of {target}.", args.yes):
        print("Rollback aborted.")
        return 1
    async with AsyncSessionLocal() as db:
        record = await rollback_table(db, args.table, backup_timestamp=args.backup, confirmed=True)
    print(f"Rolled back {record.table_name} from {record.backup_table_name}")
    return 0


async def cmd_list_backups(args) -> int:
    async with AsyncSessionLocal() as db:
        backups = await list_backups(db, table_name=args.table)
    if not backups:
        print("No backup tables found.")
        return 0
    print(f"{'backup':<55} {'table':<28} {'rows':>8}  status")
    for b in backups:
        print(f"{b.name:<55} {b.table_name:<28} {b.row_count or 0:>8}  {b.migration_status or 'unregistered'}")
    return 0


async def cmd_cleanup(args) -> int:
    if not _confirm(f"Drop backup table {args.backup}?", args.yes):
        print("Cleanup aborted.")
        return 1
    async with AsyncSessionLocal() as db:
        await cleanup_backup(db, args.backup, confirmed=True)
    print(f"Dropped {args.backup}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="merenda-migrate", description=__doc__.split("\n\n")[0].strip())
    parser.add_argument("--verbose", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("order", help="print the table dependency order").set_defaults(func=cmd_order)

    p = sub.add_parser("run", help="migrate one table")
    p.add_argument("--table", required=True, choices=sorted(SCOPED_TABLES))
    p.add_argument("--tenant", required=True, help="target tenant UUID")
    p.add_argument("--dry-run", action="store_true", help="count rows, change nothing")
    p.set_defaults(func=cmd_run)

    p = sub.add_parser("run-all", help="migrate every scoped table in dependency order")
    p.add_argument("--tenant", required=True, help="target tenant UUID")
    p.add_argument("--tables", help="comma-separated subset (default: all)")
    p.add_argument("--dry-run", action="store_true")
    p.set_defaults(func=cmd_run_all)

    p = sub.add_parser("rollback", help="restore a table from its migration backup")
    p.add_argument("--table", required=True, choices=sorted(SCOPED_TABLES))
    p.add_argument("--backup", help="backup timestamp (YYYYmmddHHMMSS) or backup table name")
    p.add_argument("--yes", action="store_true", help="do not prompt for confirmation")
    p.set_defaults(func=cmd_rollback)

    p = sub.add_parser("list-backups", help="list migration backup tables")
    p.add_argument("--table", choices=sorted(SCOPED_TABLES))
    p.set_defaults(func=cmd_list_backups)

    p = sub.add_parser("cleanup", help="drop one migration backup table")
    p.add_argument("--backup", required=True)
    p.add_argument("--yes", action="store_true")
    p.set_defaults(func=cmd_cleanup)

    return parser


async def _run(args) -> int:
    try:
        return await args.func(args)
    except TenantEngineError as e:
        logger.error("migrate_command_failed", command=args.command, code=e.code, error=str(e))
        print(f"ERROR [{e.code}] {e}", file=sys.stderr)
        return 1
    finally:
        await close_db()


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(level="DEBUG" if args.verbose else None)
    return asyncio.run(_run(args))


if __name__ == "__main__":
    sys.exit(main())
