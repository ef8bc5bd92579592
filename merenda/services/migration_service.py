"""
Migration engine: retrofits tenant identity onto legacy un-scoped rows.

Per table the run is a small state machine recorded in ``tenant_migrations``:

    pending -> running -> completed | failed
    completed -> rolled_back          (operator action)

A run takes a full sibling-table backup before it mutates anything, then
updates ``tenant_id IS NULL`` (and legacy sentinel tenants) to the target
tenant inside one transaction guarded by an advisory lock on the table name.
Re-running converges to zero updated rows. Backups are only dropped by an
explicit cleanup_backup() call.

The engine owns its session's transactions: it commits the ``running`` marker
before touching the table so a crashed run is still visible in the log.
Pass a session that has no open transaction.
"""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import bindparam, desc, select, text
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from merenda.config import settings
from merenda.database import advisory_xact_lock, quote_ident, transaction
from merenda.exceptions import (
    BackupIntegrityError,
    InvalidMigrationTransitionError,
    NotFoundError,
    PrerequisiteError,
    TenantContextMissingError,
    TenantEngineError,
)
from merenda.models.migration_record import (
    ALLOWED_TRANSITIONS,
    MigrationRecord,
    MigrationStatus,
)
from merenda.models.tenant import TENANT_ACTIVE
from merenda.services.ownership_service import get_tenant, to_tenant_uuid
from merenda.tenant_scope import ScopedTable, get_scoped_table, migration_order

logger = structlog.get_logger()

BACKUP_TIMESTAMP_FORMAT = "%Y%m%d%H%M%S%f"
# Backups taken before microsecond stamps carry 14 digits
LEGACY_BACKUP_TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"
_BACKUP_RE = re.compile(
    r"^" + re.escape(settings.BACKUP_TABLE_PREFIX) + r"(?P<table>[a-z_]+)_(?P<ts>\d{14}(?:\d{6})?)$"
)


@dataclass
class BackupInfo:
    name: str
    table_name: str
    created_at: datetime
    row_count: Optional[int] = None
    migration_id: Optional[str] = None
    migration_status: Optional[str] = None


@dataclass
class MigrationPlanResult:
    tenant_id: str
    order: list[str]
    records: list[MigrationRecord] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return not self.errors and not self.cancelled

    @property
    def total_updated(self) -> int:
        return sum(r.records_updated or 0 for r in self.records)


# ---------------------------------------------------------------------------
# State machine / naming
# ---------------------------------------------------------------------------


def transition(record: MigrationRecord, target: MigrationStatus) -> None:
    current = MigrationStatus(record.status or MigrationStatus.PENDING.value)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidMigrationTransitionError(current.value, target.value)
    record.status = target.value


def backup_table_name(table_name: str, when: Optional[datetime] = None) -> str:
    when = when or datetime.utcnow()
    return f"{settings.BACKUP_TABLE_PREFIX}{table_name}_{when.strftime(BACKUP_TIMESTAMP_FORMAT)}"


def parse_backup_name(name: str) -> Optional[tuple[str, datetime]]:
    """(table_name, created_at) for a backup table name, None if it is not one of ours."""
    match = _BACKUP_RE.match(name or "")
    if not match:
        return None
    try:
        get_scoped_table(match.group("table"))
        ts = match.group("ts")
        fmt = BACKUP_TIMESTAMP_FORMAT if len(ts) == 20 else LEGACY_BACKUP_TIMESTAMP_FORMAT
        created_at = datetime.strptime(ts, fmt)
    except (KeyError, ValueError):
        return None
    return match.group("table"), created_at


def _scoped_or_prerequisite(table_name: str) -> ScopedTable:
    try:
        return get_scoped_table(table_name)
    except KeyError as e:
        raise PrerequisiteError(str(e.args[0])) from None


def _legacy_tenant_ids(target: uuid.UUID) -> list[uuid.UUID]:
    out = []
    for raw in settings.legacy_tenant_ids_list:
        try:
            legacy = uuid.UUID(raw)
        except ValueError:
            raise PrerequisiteError(f"LEGACY_TENANT_IDS contains an invalid id: {raw!r}") from None
        if legacy != target:
            out.append(legacy)
    return out


def _pending_filter(table: ScopedTable, legacy_ids: list[uuid.UUID]) -> str:
    col = quote_ident(table.tenant_column)
    if legacy_ids:
        return f"({col} IS NULL OR {col} IN :legacy_ids)"
    return f"{col} IS NULL"


def _statement(sql: str, legacy_ids: list[uuid.UUID]):
    stmt = text(sql)
    if legacy_ids:
        stmt = stmt.bindparams(bindparam("legacy_ids", expanding=True))
    return stmt


def _params(legacy_ids: list[uuid.UUID], **extra) -> dict:
    params = dict(extra)
    if legacy_ids:
        params["legacy_ids"] = legacy_ids
    return params


# ---------------------------------------------------------------------------
# Schema introspection
# ---------------------------------------------------------------------------


async def table_columns(session: AsyncSession, table_name: str) -> list[str]:
    """Column names of ``table_name`` in the current schema; empty if it does not exist."""
    result = await session.execute(
        text(
            "SELECT column_name FROM information_schema.columns "
            "WHERE table_schema = current_schema() AND table_name = :table "
            "ORDER BY ordinal_position"
        ),
        {"table": table_name},
    )
    return list(result.scalars().all())


async def count_pending(session: AsyncSession, table: ScopedTable, legacy_ids: list[uuid.UUID]) -> int:
    sql = f"SELECT count(*) FROM {quote_ident(table.name)} WHERE {_pending_filter(table, legacy_ids)}"
    result = await session.execute(_statement(sql, legacy_ids), _params(legacy_ids))
    return int(result.scalar() or 0)


async def check_prerequisites(session: AsyncSession, table: ScopedTable, tenant_id: uuid.UUID) -> None:
    columns = await table_columns(session, table.name)
    if not columns:
        raise PrerequisiteError(f"Table '{table.name}' does not exist")
    if table.tenant_column not in columns:
        raise PrerequisiteError(
            f"Table '{table.name}' has no '{table.tenant_column}' column; apply the schema migration first"
        )
    tenant = await get_tenant(session, tenant_id)
    if tenant is None:
        raise PrerequisiteError(f"Target tenant {tenant_id} does not exist")
    if tenant.status != TENANT_ACTIVE:
        raise PrerequisiteError(f"Target tenant {tenant_id} is {tenant.status}, not active")


# ---------------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------------


async def run_migration(
    session: AsyncSession,
    table_name: str,
    target_tenant_id: Any,
    dry_run: bool = False,
) -> MigrationRecord:
    """Assign ``target_tenant_id`` to every un-scoped row of ``table_name``.

    Prerequisite failures raise PrerequisiteError before anything is
    recorded. Failures during the update are captured on the returned
    record (status ``failed``) instead of raised. ``dry_run`` counts the
    rows that would change and returns an unsaved record.
    """
    table = _scoped_or_prerequisite(table_name)
    try:
        tid = to_tenant_uuid(target_tenant_id)
    except TenantContextMissingError as e:
        raise PrerequisiteError(str(e)) from None

    await check_prerequisites(session, table, tid)
    legacy_ids = _legacy_tenant_ids(tid)

    if dry_run:
        pending = await count_pending(session, table, legacy_ids)
        logger.info("migration_dry_run", table=table.name, tenant_id=str(tid), rows=pending)
        return MigrationRecord(
            table_name=table.name,
            tenant_id_assigned=tid,
            records_updated=pending,
            status=MigrationStatus.PENDING.value,
            dry_run=True,
        )

    record = MigrationRecord(
        id=uuid.uuid4(),
        table_name=table.name,
        tenant_id_assigned=tid,
        records_updated=0,
        status=MigrationStatus.PENDING.value,
        dry_run=False,
    )
    transition(record, MigrationStatus.RUNNING)
    record.started_at = datetime.utcnow()
    session.add(record)
    await session.commit()
    logger.info("migration_started", table=table.name, tenant_id=str(tid), migration_id=str(record.id))

    try:
        async with transaction(session, operation=f"migrate_{table.name}"):
            await advisory_xact_lock(session, f"tenant_migration:{table.name}")
            # Re-count under the lock: another run may have finished meanwhile
            pending = await count_pending(session, table, legacy_ids)
            updated = 0
            backup = None
            if pending:
                backup = backup_table_name(table.name)
                await session.execute(
                    text(f"CREATE TABLE {quote_ident(backup)} AS SELECT * FROM {quote_ident(table.name)}")
                )
                logger.info("migration_backup_created", table=table.name, backup=backup)
                sql = (
                    f"UPDATE {quote_ident(table.name)} SET {quote_ident(table.tenant_column)} = :tenant_id "
                    f"WHERE {_pending_filter(table, legacy_ids)}"
                )
                result = await session.execute(
                    _statement(sql, legacy_ids), _params(legacy_ids, tenant_id=tid)
                )
                updated = result.rowcount
            record.backup_table_name = backup
            record.records_updated = updated
            record.finished_at = datetime.utcnow()
            transition(record, MigrationStatus.COMPLETED)
            session.add(record)
    except Exception as e:
        # The table update was rolled back; persist the failure on the log row
        await session.refresh(record)
        transition(record, MigrationStatus.FAILED)
        record.error = str(e)
        record.finished_at = datetime.utcnow()
        await session.commit()
        logger.error(
            "migration_failed",
            table=table.name,
            tenant_id=str(tid),
            migration_id=str(record.id),
            error=str(e),
        )
        return record

    logger.info(
        "migration_completed",
        table=table.name,
        tenant_id=str(tid),
        migration_id=str(record.id),
        records_updated=record.records_updated,
        backup=record.backup_table_name,
    )
    return record


async def run_migration_plan(
    session: AsyncSession,
    tenant_id: Any,
    tables: Optional[Iterable[str]] = None,
    dry_run: bool = False,
    should_cancel: Optional[Callable[[], bool]] = None,
) -> MigrationPlanResult:
    """Migrate several tables in dependency order, one transaction per table.

    Errors are collected per table. A table whose dependency failed in the
    same plan is skipped. ``should_cancel`` is polled between tables.
    """
    try:
        order = migration_order(tables)
    except KeyError as e:
        raise PrerequisiteError(str(e.args[0])) from None
    plan = MigrationPlanResult(tenant_id=str(tenant_id), order=order)

    for name in order:
        if should_cancel is not None and should_cancel():
            plan.cancelled = True
            logger.warning("migration_plan_cancelled", next_table=name, done=len(plan.records))
            break

        failed_deps = [d for d in get_scoped_table(name).depends_on if d in plan.errors]
        if failed_deps:
            plan.errors[name] = f"skipped: dependency {', '.join(failed_deps)} failed"
            logger.warning("migration_skipped", table=name, failed_dependencies=failed_deps)
            continue

        try:
            record = await run_migration(session, name, tenant_id, dry_run=dry_run)
        except TenantEngineError as e:
            plan.errors[name] = str(e)
            logger.error("migration_table_error", table=name, error=str(e))
            continue

        plan.records.append(record)
        if record.status == MigrationStatus.FAILED.value:
            plan.errors[name] = record.error or "failed"

    logger.info(
        "migration_plan_finished",
        tenant_id=str(tenant_id),
        tables=len(plan.records),
        errors=len(plan.errors),
        cancelled=plan.cancelled,
        records_updated=plan.total_updated,
    )
    return plan


# ---------------------------------------------------------------------------
# Rollback
# ---------------------------------------------------------------------------


async def verify_backup(session: AsyncSession, table: ScopedTable, backup: str) -> list[str]:
    """Return the columns to restore, or raise BackupIntegrityError."""
    if parse_backup_name(backup) is None:
        raise BackupIntegrityError(backup, "name does not match the backup naming pattern")

    backup_cols = await table_columns(session, backup)
    if not backup_cols:
        raise BackupIntegrityError(backup, "backup table does not exist")
    live_cols = await table_columns(session, table.name)
    missing = [c for c in live_cols if c != table.tenant_column and c not in backup_cols]
    if missing:
        raise BackupIntegrityError(backup, f"missing columns {missing}")

    result = await session.execute(text(f"SELECT count(*) FROM {quote_ident(backup)}"))
    if not result.scalar():
        raise BackupIntegrityError(backup, "backup table is empty")
    return [c for c in live_cols if c in backup_cols]


async def rollback(session: AsyncSession, migration_id: Any, confirmed: bool = False) -> MigrationRecord:
    """Restore a migrated table from its backup and mark the run rolled_back.

    Destructive: every current row of the live table is replaced by the
    backup's rows. Foreign keys between scoped tables are DEFERRABLE, so
    they are checked once at commit, after the restore.
    """
    if not confirmed:
        raise PrerequisiteError("Rollback replaces live data and needs explicit confirmation")

    try:
        record_id = uuid.UUID(str(migration_id))
    except ValueError:
        raise NotFoundError("migration", migration_id) from None

    async with transaction(session, operation="migration_rollback"):
        record = await session.get(MigrationRecord, record_id)
        if record is None:
            raise NotFoundError("migration", migration_id)
        current = MigrationStatus(record.status)
        if MigrationStatus.ROLLED_BACK not in ALLOWED_TRANSITIONS[current]:
            raise InvalidMigrationTransitionError(current.value, MigrationStatus.ROLLED_BACK.value)

        table = _scoped_or_prerequisite(record.table_name)
        backup = record.backup_table_name
        if not backup:
            raise BackupIntegrityError(None, "the run updated no rows and took no backup")

        await advisory_xact_lock(session, f"tenant_migration:{table.name}")
        columns = await verify_backup(session, table, backup)
        col_list = ", ".join(quote_ident(c) for c in columns)

        await session.execute(text("SET CONSTRAINTS ALL DEFERRED"))
        await session.execute(text(f"DELETE FROM {quote_ident(table.name)}"))
        result = await session.execute(
            text(
                f"INSERT INTO {quote_ident(table.name)} ({col_list}) "
                f"SELECT {col_list} FROM {quote_ident(backup)}"
            )
        )

        transition(record, MigrationStatus.ROLLED_BACK)
        record.rolled_back_at = datetime.utcnow()
        restored = result.rowcount

    await session.commit()
    logger.warning(
        "migration_rolled_back",
        table=table.name,
        migration_id=str(record.id),
        backup=backup,
        rows_restored=restored,
    )
    return record


async def rollback_table(
    session: AsyncSession,
    table_name: str,
    backup_timestamp: Optional[str] = None,
    confirmed: bool = False,
) -> MigrationRecord:
    """Roll back the latest completed run for ``table_name``.

    ``backup_timestamp`` (the digits after the table name, or a full backup table name)
    selects a specific run instead.
    """
    table = _scoped_or_prerequisite(table_name)
    q = select(MigrationRecord).where(
        MigrationRecord.table_name == table.name,
        MigrationRecord.status == MigrationStatus.COMPLETED.value,
        MigrationRecord.backup_table_name.is_not(None),
    )
    if backup_timestamp:
        name = (
            backup_timestamp
            if parse_backup_name(backup_timestamp)
            else f"{settings.BACKUP_TABLE_PREFIX}{table.name}_{backup_timestamp}"
        )
        q = q.where(MigrationRecord.backup_table_name == name)
    result = await session.execute(q.order_by(desc(MigrationRecord.created_at)).limit(1))
    record = result.scalar_one_or_none()
    if record is None:
        raise BackupIntegrityError(
            None,
            f"no completed migration with a backup for table '{table.name}'"
            + (f" at {backup_timestamp}" if backup_timestamp else ""),
        )
    migration_id = record.id
    # Release the read transaction so rollback() runs in its own
    await session.commit()
    return await rollback(session, migration_id, confirmed=confirmed)


# ---------------------------------------------------------------------------
# Backups
# ---------------------------------------------------------------------------


async def list_backups(session: AsyncSession, table_name: Optional[str] = None) -> list[BackupInfo]:
    result = await session.execute(
        text(
            "SELECT table_name FROM information_schema.tables "
            "WHERE table_schema = current_schema() AND table_name LIKE :prefix "
            "ORDER BY table_name"
        ),
        {"prefix": settings.BACKUP_TABLE_PREFIX + "%"},
    )
    backups: list[BackupInfo] = []
    for name in result.scalars().all():
        parsed = parse_backup_name(name)
        if parsed is None:
            continue
        source, created_at = parsed
        if table_name and source != table_name:
            continue
        backups.append(BackupInfo(name=name, table_name=source, created_at=created_at))

    if not backups:
        return backups

    records = await session.execute(
        select(MigrationRecord).where(
            MigrationRecord.backup_table_name.in_([b.name for b in backups])
        )
    )
    by_backup = {r.backup_table_name: r for r in records.scalars().all()}
    for info in backups:
        count = await session.execute(text(f"SELECT count(*) FROM {quote_ident(info.name)}"))
        info.row_count = int(count.scalar() or 0)
        record = by_backup.get(info.name)
        if record is not None:
            info.migration_id = str(record.id)
            info.migration_status = record.status

    backups.sort(key=lambda b: b.created_at, reverse=True)
    return backups


async def cleanup_backup(session: AsyncSession, backup_name: str, confirmed: bool = False) -> None:
    """Drop one backup table created by a migration run."""
    if not confirmed:
        raise PrerequisiteError("Dropping a backup needs explicit confirmation")
    if parse_backup_name(backup_name) is None:
        raise PrerequisiteError(f"'{backup_name}' is not a migration backup table")

    async with transaction(session, operation="backup_cleanup"):
        result = await session.execute(
            select(MigrationRecord.id).where(MigrationRecord.backup_table_name == backup_name)
        )
        if result.first() is None:
            raise PrerequisiteError(f"'{backup_name}' was not created by a recorded migration run")
        if not await table_columns(session, backup_name):
            raise NotFoundError("backup", backup_name)
        await session.execute(text(f"DROP TABLE {quote_ident(backup_name)}"))

    await session.commit()
    logger.info("migration_backup_dropped", backup=backup_name)
