#!/usr/bin/env python3
"""
Audit tenant isolation and stock consistency across every scoped table.

Usage:
  python -m scripts.audit run
  python -m scripts.audit run --fix-minor               # backfill unambiguous tenant ids
  python -m scripts.audit run --export report.json
  python -m scripts.audit run --tables escolas,estoque_lotes

Exit status is 0 when no check failed, 1 otherwise.
"""

import argparse
import asyncio
import sys
from typing import Optional

import structlog

from merenda.database import AsyncSessionLocal, close_db
from merenda.exceptions import TenantEngineError
from merenda.logging_config import setup_logging
from merenda.services.integrity_service import (
    FAIL,
    PASS,
    SEVERITY_CRITICAL,
    IntegrityReport,
    export_report,
    run_full_validation,
)

logger = structlog.get_logger()

_MARKS = {PASS: "✅", FAIL: "❌"}


def print_report(report: IntegrityReport, verbose: bool = False) -> None:
    print("Tenant integrity audit")
    print("=" * 60)
    for result in report.results:
        if result.status == PASS and not verbose:
            continue
        mark = _MARKS.get(result.status, "⚠️ ")
        critical = " [CRITICAL]" if result.severity == SEVERITY_CRITICAL and result.status == FAIL else ""
        print(f"{mark} {result.table:<28} {result.check:<26} {result.message}{critical}")

    if report.distribution:
        print("\nTenant distribution")
        for table, counts in report.distribution.items():
            shares = ", ".join(f"{t[:8]}={n}" for t, n in counts.items()) or "-"
            print(f"  {table:<28} {shares}")

    if report.fixed:
        print("\nBackfilled")
        for table, rows in report.fixed.items():
            print(f"  {table}: {rows} row(s)")

    s = report.summary
    print("\n" + "=" * 60)
    print(
        f"Checks: {s['total']}  passed: {s['passed']}  failed: {s['failed']} "
        f"(critical: {s['critical']})  warnings: {s['warnings']}"
    )
    if report.cancelled:
        print("Audit was cancelled before all tables were checked.")


async def cmd_run(args) -> int:
    tables = args.tables.split(",") if args.tables else None
    async with AsyncSessionLocal() as db:
        report = await run_full_validation(db, fix_minor=args.fix_minor, tables=tables)
    print_report(report, verbose=args.verbose)
    if args.export:
        path = export_report(report, args.export)
        print(f"Report written to {path}")
    return 0 if report.passed and not report.cancelled else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="merenda-audit", description=__doc__.split("\n\n")[0].strip())
    parser.add_argument("--verbose", action="store_true", help="show passing checks and debug logs")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("run", help="run the full integrity audit")
    p.add_argument("--fix-minor", action="store_true", help="backfill tenant ids derivable from parents")
    p.add_argument("--export", metavar="PATH", help="write the JSON report to PATH")
    p.add_argument("--tables", help="comma-separated subset of scoped tables")
    p.set_defaults(func=cmd_run)
    return parser


async def _run(args) -> int:
    try:
        return await args.func(args)
    except (TenantEngineError, KeyError) as e:
        logger.error("audit_command_failed", error=str(e))
        print(f"ERROR {e}", file=sys.stderr)
        return 1
    finally:
        await close_db()


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(level="DEBUG" if args.verbose else None)
    return asyncio.run(_run(args))


if __name__ == "__main__":
    sys.exit(main())
