"""
Referential integrity auditor: batch scan of every tenant-scoped table.

Checks per table:
    TENANT_ID_COMPLETENESS    tenant_id IS NULL rows
    TENANT_EXISTENCE          tenant_id with no tenants row            (critical)
    TENANT_INACTIVE           rows owned by suspended/deleted tenants  (warning)
    CROSS_TENANT              child and parent disagree on tenant      (critical)
    ORPHANED_REFERENCE        foreign key pointing at a missing row
    TENANT_DISTRIBUTION_SKEW  one tenant holds almost every row        (warning)
plus QUANTITY_DRIFT over the inventory tables, delegated to the reconciler.

The scan is read-only. With ``fix_minor`` it backfills a NULL tenant_id when
every parent row the record references agrees on one tenant, and commits
each backfill on its own. Cross-tenant rows are only ever reported.
"""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from merenda.config import settings
from merenda.database import quote_ident, transaction
from merenda.exceptions import TransactionFailure
from merenda.models.tenant import Tenant
from merenda.services.inventory_service import detect_drift
from merenda.services.migration_service import table_columns
from merenda.tenant_scope import (
    SCOPED_TABLES,
    TENANTS_TABLE,
    ScopedTable,
    TenantForeignKey,
    get_scoped_table,
)

logger = structlog.get_logger()

PASS = "PASS"
FAIL = "FAIL"
WARNING = "WARNING"

SEVERITY_CRITICAL = "critical"
SEVERITY_NORMAL = "normal"

CHECK_TENANT_COLUMN = "TENANT_COLUMN"
CHECK_COMPLETENESS = "TENANT_ID_COMPLETENESS"
CHECK_TENANT_EXISTENCE = "TENANT_EXISTENCE"
CHECK_TENANT_INACTIVE = "TENANT_INACTIVE"
CHECK_CROSS_TENANT = "CROSS_TENANT"
CHECK_ORPHANS = "ORPHANED_REFERENCE"
CHECK_DRIFT = "QUANTITY_DRIFT"
CHECK_SKEW = "TENANT_DISTRIBUTION_SKEW"

DRIFT_TABLES = ("estoque_escolas", "estoque_lotes")
MAX_DETAILS = 50


@dataclass
class IntegrityIssue:
    table: str
    check: str
    status: str
    message: str
    affected_rows: int = 0
    severity: str = SEVERITY_NORMAL
    details: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if not self.details:
            data.pop("details")
        return data


@dataclass
class IntegrityReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    results: list[IntegrityIssue] = field(default_factory=list)
    distribution: dict[str, dict[str, int]] = field(default_factory=dict)
    fixed: dict[str, int] = field(default_factory=dict)
    cancelled: bool = False

    def add(self, issue: IntegrityIssue) -> IntegrityIssue:
        self.results.append(issue)
        if issue.status != PASS:
            log = logger.error if issue.status == FAIL else logger.warning
            log(
                "integrity_issue",
                table=issue.table,
                check=issue.check,
                status=issue.status,
                severity=issue.severity,
                affected_rows=issue.affected_rows,
            )
        return issue

    @property
    def issues(self) -> list[IntegrityIssue]:
        return [r for r in self.results if r.status != PASS]

    @property
    def summary(self) -> dict[str, int]:
        return {
            "total": len(self.results),
            "passed": sum(1 for r in self.results if r.status == PASS),
            "failed": sum(1 for r in self.results if r.status == FAIL),
            "warnings": sum(1 for r in self.results if r.status == WARNING),
            "critical": sum(
                1 for r in self.results
                if r.status == FAIL and r.severity == SEVERITY_CRITICAL
            ),
        }

    @property
    def passed(self) -> bool:
        return self.summary["failed"] == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "passed": self.passed,
            "cancelled": self.cancelled,
            "summary": self.summary,
            "issues": [i.to_dict() for i in self.issues],
            "checks": [r.to_dict() for r in self.results],
            "tenant_distribution": self.distribution,
            "fixed": self.fixed,
        }


def export_report(report: IntegrityReport, path: str) -> Path:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(json.dumps(report.to_dict(), indent=2, default=str), encoding="utf-8")
    logger.info("integrity_report_exported", path=str(out))
    return out


def skew_issue(table: str, counts: dict[str, int], threshold: Optional[float] = None) -> IntegrityIssue:
    """WARNING when one tenant holds more than ``threshold`` of a multi-tenant table."""
    threshold = settings.TENANT_SKEW_THRESHOLD if threshold is None else threshold
    total = sum(counts.values())
    if len(counts) < 2 or total == 0:
        return IntegrityIssue(table, CHECK_SKEW, PASS, f"{len(counts)} tenant(s), no skew check needed")
    top_tenant, top_rows = max(counts.items(), key=lambda kv: kv[1])
    share = top_rows / total
    if share > threshold:
        return IntegrityIssue(
            table,
            CHECK_SKEW,
            WARNING,
            f"Tenant {top_tenant} holds {share:.1%} of {total} rows; migration may be incomplete",
            affected_rows=total - top_rows,
        )
    return IntegrityIssue(table, CHECK_SKEW, PASS, f"Largest tenant share {share:.1%}")


# ---------------------------------------------------------------------------
# SQL for each check
# ---------------------------------------------------------------------------


async def _count(session: AsyncSession, sql: str) -> int:
    result = await session.execute(text(sql))
    return int(result.scalar() or 0)


def _ident(name: str) -> str:
    return quote_ident(name)


async def _count_null_tenant(session: AsyncSession, table: ScopedTable) -> int:
    return await _count(
        session,
        f"SELECT count(*) FROM {_ident(table.name)} WHERE {_ident(table.tenant_column)} IS NULL",
    )


async def _count_unknown_tenant(session: AsyncSession, table: ScopedTable) -> int:
    col = _ident(table.tenant_column)
    return await _count(
        session,
        f"SELECT count(*) FROM {_ident(table.name)} c "
        f"WHERE c.{col} IS NOT NULL "
        f"AND NOT EXISTS (SELECT 1 FROM {_ident(TENANTS_TABLE)} t WHERE t.id = c.{col})",
    )


async def _count_inactive_tenant(session: AsyncSession, table: ScopedTable) -> int:
    col = _ident(table.tenant_column)
    return await _count(
        session,
        f"SELECT count(*) FROM {_ident(table.name)} c "
        f"JOIN {_ident(TENANTS_TABLE)} t ON t.id = c.{col} "
        f"WHERE t.status <> 'active'",
    )


async def _count_cross_tenant(session: AsyncSession, table: ScopedTable, fk: TenantForeignKey) -> int:
    parent = get_scoped_table(fk.ref_table)
    ccol = _ident(table.tenant_column)
    pcol = _ident(parent.tenant_column)
    return await _count(
        session,
        f"SELECT count(*) FROM {_ident(table.name)} c "
        f"JOIN {_ident(parent.name)} p ON p.{_ident(fk.ref_column)} = c.{_ident(fk.column)} "
        f"WHERE c.{ccol} IS NOT NULL AND p.{pcol} IS NOT NULL AND c.{ccol} <> p.{pcol}",
    )


async def _count_orphans(session: AsyncSession, table: ScopedTable, fk: TenantForeignKey) -> int:
    return await _count(
        session,
        f"SELECT count(*) FROM {_ident(table.name)} c "
        f"WHERE c.{_ident(fk.column)} IS NOT NULL "
        f"AND NOT EXISTS (SELECT 1 FROM {_ident(fk.ref_table)} p "
        f"WHERE p.{_ident(fk.ref_column)} = c.{_ident(fk.column)})",
    )


async def tenant_distribution(session: AsyncSession, table: ScopedTable) -> dict[str, int]:
    col = _ident(table.tenant_column)
    result = await session.execute(
        text(
            f"SELECT {col}, count(*) FROM {_ident(table.name)} "
            f"WHERE {col} IS NOT NULL GROUP BY {col} ORDER BY 2 DESC"
        )
    )
    return {str(tenant_id): int(count) for tenant_id, count in result.all()}


def backfill_sql(table: ScopedTable) -> Optional[str]:
    """UPDATE deriving tenant_id from the mandatory parent, when all parents agree.

    None for tables without a tenant-scoped parent (nothing to derive from).
    """
    fks = [fk for fk in table.foreign_keys if fk.ref_table in SCOPED_TABLES]
    if not fks:
        return None
    col = _ident(table.tenant_column)
    first, others = fks[0], fks[1:]
    first_parent = get_scoped_table(first.ref_table)
    sql = (
        f"UPDATE {_ident(table.name)} AS c SET {col} = p0.{_ident(first_parent.tenant_column)} "
        f"FROM {_ident(first_parent.name)} p0 "
        f"WHERE c.{col} IS NULL "
        f"AND p0.{_ident(first.ref_column)} = c.{_ident(first.column)} "
        f"AND p0.{_ident(first_parent.tenant_column)} IS NOT NULL"
    )
    for i, fk in enumerate(others, start=1):
        parent = get_scoped_table(fk.ref_table)
        alias = f"p{i}"
        pcol = _ident(parent.tenant_column)
        sql += (
            f" AND NOT EXISTS (SELECT 1 FROM {_ident(parent.name)} {alias} "
            f"WHERE {alias}.{_ident(fk.ref_column)} = c.{_ident(fk.column)} "
            f"AND ({alias}.{pcol} IS NULL "
            f"OR {alias}.{pcol} <> p0.{_ident(first_parent.tenant_column)}))"
        )
    return sql


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


async def _guarded(
    session: AsyncSession,
    report: IntegrityReport,
    table: str,
    check: str,
    fn: Callable,
) -> None:
    """Run one check; a database or backfill failure becomes a FAIL entry instead of aborting the audit."""
    try:
        await fn()
    except (SQLAlchemyError, TransactionFailure) as e:
        await session.rollback()
        report.add(
            IntegrityIssue(table, check, FAIL, f"Check could not run: {e}", severity=SEVERITY_NORMAL)
        )


async def _backfill(session: AsyncSession, report: IntegrityReport, table: ScopedTable) -> int:
    sql = backfill_sql(table)
    if sql is None:
        return 0
    async with transaction(session, operation=f"backfill_{table.name}"):
        result = await session.execute(text(sql))
        fixed = result.rowcount or 0
    await session.commit()
    if fixed:
        report.fixed[table.name] = fixed
        logger.info("tenant_id_backfilled", table=table.name, rows=fixed)
    return fixed


async def audit_table(
    session: AsyncSession,
    report: IntegrityReport,
    table: ScopedTable,
    fix_minor: bool = False,
) -> None:
    try:
        columns = await table_columns(session, table.name)
    except SQLAlchemyError as e:
        await session.rollback()
        report.add(
            IntegrityIssue(table.name, CHECK_TENANT_COLUMN, FAIL, f"Check could not run: {e}")
        )
        return
    if table.tenant_column not in columns:
        report.add(
            IntegrityIssue(
                table.name,
                CHECK_TENANT_COLUMN,
                FAIL,
                f"Table '{table.name}' is missing or has no '{table.tenant_column}' column",
                severity=SEVERITY_CRITICAL,
            )
        )
        return

    async def completeness():
        fixed = await _backfill(session, report, table) if fix_minor else 0
        missing = await _count_null_tenant(session, table)
        if missing:
            report.add(
                IntegrityIssue(
                    table.name, CHECK_COMPLETENESS, FAIL,
                    f"{missing} row(s) without tenant_id"
                    + (f" ({fixed} backfilled)" if fixed else ""),
                    affected_rows=missing,
                )
            )
        else:
            report.add(
                IntegrityIssue(
                    table.name, CHECK_COMPLETENESS, PASS,
                    "All rows carry a tenant_id" + (f" ({fixed} backfilled)" if fixed else ""),
                )
            )

    async def existence():
        unknown = await _count_unknown_tenant(session, table)
        if unknown:
            report.add(
                IntegrityIssue(
                    table.name, CHECK_TENANT_EXISTENCE, FAIL,
                    f"{unknown} row(s) reference a tenant that does not exist",
                    affected_rows=unknown, severity=SEVERITY_CRITICAL,
                )
            )
        else:
            report.add(IntegrityIssue(table.name, CHECK_TENANT_EXISTENCE, PASS, "All tenants exist"))

    async def inactive():
        count = await _count_inactive_tenant(session, table)
        if count:
            report.add(
                IntegrityIssue(
                    table.name, CHECK_TENANT_INACTIVE, WARNING,
                    f"{count} row(s) belong to suspended or deleted tenants",
                    affected_rows=count,
                )
            )
        else:
            report.add(IntegrityIssue(table.name, CHECK_TENANT_INACTIVE, PASS, "All owning tenants active"))

    await _guarded(session, report, table.name, CHECK_COMPLETENESS, completeness)
    await _guarded(session, report, table.name, CHECK_TENANT_EXISTENCE, existence)
    await _guarded(session, report, table.name, CHECK_TENANT_INACTIVE, inactive)

    for fk in table.foreign_keys:
        if fk.ref_table not in SCOPED_TABLES:
            continue
        label = f"{table.name}.{fk.column} -> {fk.ref_table}.{fk.ref_column}"

        async def cross(fk=fk, label=label):
            count = await _count_cross_tenant(session, table, fk)
            if count:
                report.add(
                    IntegrityIssue(
                        table.name, CHECK_CROSS_TENANT, FAIL,
                        f"{count} row(s) cross tenants via {label}",
                        affected_rows=count, severity=SEVERITY_CRITICAL,
                    )
                )
            else:
                report.add(IntegrityIssue(table.name, CHECK_CROSS_TENANT, PASS, f"{label} agrees on tenant"))

        async def orphans(fk=fk, label=label):
            count = await _count_orphans(session, table, fk)
            if count:
                report.add(
                    IntegrityIssue(
                        table.name, CHECK_ORPHANS, FAIL,
                        f"{count} row(s) with dangling {label}",
                        affected_rows=count,
                    )
                )
            else:
                report.add(IntegrityIssue(table.name, CHECK_ORPHANS, PASS, f"No dangling {label}"))

        await _guarded(session, report, table.name, CHECK_CROSS_TENANT, cross)
        await _guarded(session, report, table.name, CHECK_ORPHANS, orphans)

    async def skew():
        counts = await tenant_distribution(session, table)
        report.distribution[table.name] = counts
        report.add(skew_issue(table.name, counts))

    await _guarded(session, report, table.name, CHECK_SKEW, skew)


async def audit_drift(session: AsyncSession, report: IntegrityReport) -> None:
    async def drift():
        result = await session.execute(select(Tenant.id).order_by(Tenant.id))
        reports = []
        for tenant_id in result.scalars().all():
            reports.extend(await detect_drift(session, tenant_id))
        if reports:
            report.add(
                IntegrityIssue(
                    "estoque_escolas", CHECK_DRIFT, FAIL,
                    f"{len(reports)} school/product pair(s) where lots and aggregate disagree",
                    affected_rows=len(reports),
                    details=[
                        {
                            "tenant_id": r.tenant_id,
                            "escola_id": r.escola_id,
                            "produto_id": r.produto_id,
                            "aggregate": str(r.aggregate),
                            "lots": str(r.lots),
                            "delta": str(r.delta),
                        }
                        for r in reports[:MAX_DETAILS]
                    ],
                )
            )
        else:
            report.add(IntegrityIssue("estoque_escolas", CHECK_DRIFT, PASS, "Lots and aggregates agree"))

    await _guarded(session, report, "estoque_escolas", CHECK_DRIFT, drift)


async def run_full_validation(
    session: AsyncSession,
    fix_minor: bool = False,
    tables: Optional[Iterable[str]] = None,
    should_cancel: Optional[Callable[[], bool]] = None,
) -> IntegrityReport:
    """Audit ``tables`` (default: every scoped table) and return the report.

    Per-table failures end up in the report; only cancellation stops early.
    """
    names = list(SCOPED_TABLES) if tables is None else [get_scoped_table(t).name for t in tables]
    report = IntegrityReport(started_at=datetime.utcnow())
    logger.info("integrity_audit_started", tables=names, fix_minor=fix_minor)

    for name in names:
        if should_cancel is not None and should_cancel():
            report.cancelled = True
            logger.warning("integrity_audit_cancelled", next_table=name)
            break
        await audit_table(session, report, get_scoped_table(name), fix_minor=fix_minor)

    if not report.cancelled and any(t in names for t in DRIFT_TABLES):
        await audit_drift(session, report)

    report.finished_at = datetime.utcnow()
    logger.info("integrity_audit_finished", **report.summary, fixed=sum(report.fixed.values()))
    return report
