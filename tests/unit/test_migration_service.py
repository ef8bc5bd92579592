"""
Unit tests for merenda/services/migration_service.py

Tests: state machine, backup naming, run_migration (backup + update,
       idempotent re-run, dry run, prerequisites, failure capture),
       dependency-ordered plans, rollback guards, backup cleanup.
"""

import uuid
from datetime import datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from merenda.exceptions import (
    BackupIntegrityError,
    InvalidMigrationTransitionError,
    NotFoundError,
    PrerequisiteError,
)
from merenda.models.migration_record import MigrationRecord, MigrationStatus
from merenda.services import migration_service
from merenda.services.migration_service import (
    backup_table_name,
    cleanup_backup,
    parse_backup_name,
    rollback,
    run_migration,
    run_migration_plan,
    transition,
)

ESCOLAS_COLUMNS = ["id", "nome", "tenant_id", "created_at"]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _mock_session() -> AsyncMock:
    session = AsyncMock()
    session.add = MagicMock()
    return session


def _columns(cols):
    result = MagicMock()
    result.scalars.return_value.all.return_value = cols
    return result


def _tenant(tenant_id, status="active"):
    result = MagicMock()
    result.scalar_one_or_none.return_value = SimpleNamespace(id=tenant_id, status=status)
    return result


def _scalar(value):
    result = MagicMock()
    result.scalar.return_value = value
    return result


def _rowcount(n):
    result = MagicMock()
    result.rowcount = n
    return result


def _executed_sql(session) -> list[str]:
    return [str(c.args[0]) for c in session.execute.call_args_list]


def _record(status, backup="backup_escolas_20260102030405", table="escolas"):
    return MigrationRecord(
        id=uuid.uuid4(),
        table_name=table,
        backup_table_name=backup,
        tenant_id_assigned=uuid.uuid4(),
        records_updated=5,
        status=status,
        dry_run=False,
    )


# ---------------------------------------------------------------------------
# State machine / naming
# ---------------------------------------------------------------------------


def test_transition_follows_allowed_edges():
    record = _record(MigrationStatus.PENDING.value)
    transition(record, MigrationStatus.RUNNING)
    transition(record, MigrationStatus.COMPLETED)
    transition(record, MigrationStatus.ROLLED_BACK)
    assert record.status == "rolled_back"


@pytest.mark.parametrize(
    "current, target",
    [
        ("pending", MigrationStatus.COMPLETED),
        ("failed", MigrationStatus.ROLLED_BACK),
        ("rolled_back", MigrationStatus.RUNNING),
        ("completed", MigrationStatus.FAILED),
    ],
)
def test_transition_rejects_other_edges(current, target):
    with pytest.raises(InvalidMigrationTransitionError):
        transition(_record(current), target)


def test_backup_name_round_trips_through_parser():
    when = datetime(2026, 1, 2, 3, 4, 5, 123456)
    name = backup_table_name("estoque_lotes", when)
    assert name == "backup_estoque_lotes_20260102030405123456"
    assert parse_backup_name(name) == ("estoque_lotes", when)


def test_backups_within_the_same_second_get_distinct_names():
    first = backup_table_name("escolas", datetime(2026, 1, 2, 3, 4, 5, 1))
    second = backup_table_name("escolas", datetime(2026, 1, 2, 3, 4, 5, 2))
    assert first != second


def test_second_resolution_backup_names_still_parse():
    assert parse_backup_name("backup_escolas_20260102030405") == ("escolas", datetime(2026, 1, 2, 3, 4, 5))


@pytest.mark.parametrize(
    "name",
    [
        "escolas", "backup_users_20260102030405", "backup_escolas_2026",
        "backup_escolas_20261399000000", "backup_escolas_2026010203040512", None,
    ],
)
def test_parse_backup_name_rejects_foreign_names(name):
    assert parse_backup_name(name) is None


# ---------------------------------------------------------------------------
# run_migration
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_migration_backs_up_then_updates_unscoped_rows(tenant_a, no_db_transaction):
    """5 rows without tenant_id -> backup table, 5 rows updated, completed."""
    session = _mock_session()
    session.execute.side_effect = [
        _columns(ESCOLAS_COLUMNS),
        _tenant(tenant_a),
        MagicMock(),          # advisory lock
        _scalar(5),           # pending rows
        MagicMock(),          # CREATE TABLE backup
        _rowcount(5),         # UPDATE
    ]

    record = await run_migration(session, "escolas", str(tenant_a))

    assert record.status == "completed"
    assert record.records_updated == 5
    assert record.tenant_id_assigned == tenant_a
    assert parse_backup_name(record.backup_table_name)[0] == "escolas"
    assert record.started_at is not None and record.finished_at is not None

    sql = _executed_sql(session)
    assert sql[4].startswith("CREATE TABLE backup_escolas_")
    assert sql[5].startswith('UPDATE escolas SET tenant_id = :tenant_id WHERE tenant_id IS NULL')
    session.add.assert_called()
    session.commit.assert_awaited()
    assert no_db_transaction == ["migrate_escolas"]


@pytest.mark.asyncio
async def test_rerun_with_nothing_pending_updates_zero_rows_and_takes_no_backup(tenant_a, no_db_transaction):
    session = _mock_session()
    session.execute.side_effect = [
        _columns(ESCOLAS_COLUMNS),
        _tenant(tenant_a),
        MagicMock(),
        _scalar(0),
    ]

    record = await run_migration(session, "escolas", tenant_a)

    assert record.status == "completed"
    assert record.records_updated == 0
    assert record.backup_table_name is None
    assert session.execute.await_count == 4


@pytest.mark.asyncio
async def test_legacy_tenant_ids_are_treated_as_unscoped(tenant_a, tenant_b, monkeypatch, no_db_transaction):
    monkeypatch.setattr(migration_service.settings, "LEGACY_TENANT_IDS", f"{tenant_b},{tenant_a}")
    session = _mock_session()
    session.execute.side_effect = [
        _columns(ESCOLAS_COLUMNS),
        _tenant(tenant_a),
        MagicMock(),
        _scalar(2),
        MagicMock(),
        _rowcount(2),
    ]

    await run_migration(session, "escolas", tenant_a)

    update = session.execute.call_args_list[5]
    assert "IN" in str(update.args[0])
    # The target tenant itself is never treated as legacy
    assert update.args[1]["legacy_ids"] == [tenant_b]


@pytest.mark.asyncio
async def test_dry_run_counts_without_writing(tenant_a, no_db_transaction):
    session = _mock_session()
    session.execute.side_effect = [_columns(ESCOLAS_COLUMNS), _tenant(tenant_a), _scalar(7)]

    record = await run_migration(session, "escolas", tenant_a, dry_run=True)

    assert record.dry_run is True
    assert record.records_updated == 7
    assert record.status == "pending"
    session.add.assert_not_called()
    session.commit.assert_not_awaited()
    assert no_db_transaction == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "columns, tenant_status, message",
    [
        ([], "active", "does not exist"),
        (["id", "nome"], "active", "no 'tenant_id' column"),
        (ESCOLAS_COLUMNS, "suspended", "not active"),
    ],
)
async def test_prerequisite_failures_record_nothing(tenant_a, columns, tenant_status, message):
    session = _mock_session()
    session.execute.side_effect = [_columns(columns), _tenant(tenant_a, tenant_status)]

    with pytest.raises(PrerequisiteError) as exc:
        await run_migration(session, "escolas", tenant_a)
    assert message in str(exc.value)
    session.add.assert_not_called()


@pytest.mark.asyncio
async def test_missing_target_tenant_is_a_prerequisite_failure(tenant_a):
    session = _mock_session()
    missing = MagicMock()
    missing.scalar_one_or_none.return_value = None
    session.execute.side_effect = [_columns(ESCOLAS_COLUMNS), missing]

    with pytest.raises(PrerequisiteError):
        await run_migration(session, "escolas", tenant_a)


@pytest.mark.asyncio
@pytest.mark.parametrize("table, tenant", [("users", None), ("escolas", "not-a-uuid")])
async def test_unknown_table_or_bad_tenant_is_rejected_before_queries(table, tenant):
    session = _mock_session()
    with pytest.raises(PrerequisiteError):
        await run_migration(session, table, tenant or str(uuid.uuid4()))
    session.execute.assert_not_awaited()


@pytest.mark.asyncio
async def test_update_failure_is_recorded_as_failed(tenant_a, no_db_transaction):
    session = _mock_session()
    session.execute.side_effect = [
        _columns(ESCOLAS_COLUMNS),
        _tenant(tenant_a),
        MagicMock(),
        _scalar(5),
        MagicMock(),
        OperationalError("UPDATE escolas", {}, Exception("deadlock detected")),
    ]

    record = await run_migration(session, "escolas", tenant_a)

    assert record.status == "failed"
    assert "deadlock detected" in record.error
    session.refresh.assert_awaited_once_with(record)
    assert session.commit.await_count == 2


# ---------------------------------------------------------------------------
# run_migration_plan
# ---------------------------------------------------------------------------


def _completed(table, rows=1):
    return SimpleNamespace(table_name=table, status="completed", records_updated=rows, error=None)


@pytest.mark.asyncio
async def test_plan_skips_tables_whose_dependency_failed(tenant_a, monkeypatch):
    calls = []

    async def fake_run(session, name, tenant_id, dry_run=False):
        calls.append(name)
        if name == "escolas":
            return SimpleNamespace(table_name=name, status="failed", records_updated=0, error="boom")
        return _completed(name, 3)

    monkeypatch.setattr(migration_service, "run_migration", fake_run)

    plan = await run_migration_plan(
        _mock_session(), tenant_a, tables=["produtos", "escolas", "estoque_escolas"]
    )

    assert plan.order == ["produtos", "escolas", "estoque_escolas"]
    assert calls == ["produtos", "escolas"]
    assert plan.errors["escolas"] == "boom"
    assert plan.errors["estoque_escolas"].startswith("skipped: dependency escolas")
    assert plan.total_updated == 3
    assert not plan.succeeded


@pytest.mark.asyncio
async def test_plan_collects_prerequisite_errors_and_continues(tenant_a, monkeypatch):
    async def fake_run(session, name, tenant_id, dry_run=False):
        if name == "produtos":
            raise PrerequisiteError("Table 'produtos' does not exist")
        return _completed(name)

    monkeypatch.setattr(migration_service, "run_migration", fake_run)

    plan = await run_migration_plan(_mock_session(), tenant_a, tables=["escolas", "produtos"])

    assert [r.table_name for r in plan.records] == ["escolas"]
    assert "does not exist" in plan.errors["produtos"]


@pytest.mark.asyncio
async def test_plan_stops_when_cancelled(tenant_a, monkeypatch):
    monkeypatch.setattr(
        migration_service, "run_migration",
        AsyncMock(side_effect=lambda s, name, t, dry_run=False: _completed(name)),
    )
    polls = iter([False, True])

    plan = await run_migration_plan(
        _mock_session(), tenant_a, tables=["escolas", "produtos"], should_cancel=lambda: next(polls)
    )

    assert plan.cancelled
    assert len(plan.records) == 1
    assert not plan.succeeded


@pytest.mark.asyncio
async def test_plan_with_unknown_table_is_prerequisite_error(tenant_a):
    with pytest.raises(PrerequisiteError):
        await run_migration_plan(_mock_session(), tenant_a, tables=["fornecedores"])


# ---------------------------------------------------------------------------
# rollback
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_rollback_requires_confirmation():
    session = _mock_session()
    with pytest.raises(PrerequisiteError):
        await rollback(session, uuid.uuid4())
    session.get.assert_not_awaited()


@pytest.mark.asyncio
async def test_rollback_with_malformed_id_is_not_found(no_db_transaction):
    session = _mock_session()
    with pytest.raises(NotFoundError) as exc:
        await rollback(session, "not-a-uuid", confirmed=True)
    assert exc.value.entity_kind == "migration"
    session.get.assert_not_awaited()
    assert no_db_transaction == []


@pytest.mark.asyncio
async def test_rollback_restores_backup_rows(no_db_transaction):
    record = _record("completed")
    session = _mock_session()
    session.get.return_value = record
    session.execute.side_effect = [
        MagicMock(),                          # advisory lock
        _columns(ESCOLAS_COLUMNS),            # backup columns
        _columns(ESCOLAS_COLUMNS),            # live columns
        _scalar(5),                           # backup row count
        MagicMock(),                          # SET CONSTRAINTS
        MagicMock(),                          # DELETE
        _rowcount(5),                         # INSERT ... SELECT
    ]

    result = await rollback(session, record.id, confirmed=True)

    assert result.status == "rolled_back"
    assert result.rolled_back_at is not None
    sql = _executed_sql(session)
    assert sql[4] == "SET CONSTRAINTS ALL DEFERRED"
    assert sql[5] == "DELETE FROM escolas"
    assert sql[6] == (
        "INSERT INTO escolas (id, nome, tenant_id, created_at) "
        "SELECT id, nome, tenant_id, created_at FROM backup_escolas_20260102030405"
    )
    session.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_rollback_of_unknown_migration_is_not_found(no_db_transaction):
    session = _mock_session()
    session.get.return_value = None
    with pytest.raises(NotFoundError):
        await rollback(session, uuid.uuid4(), confirmed=True)


@pytest.mark.asyncio
async def test_rollback_of_failed_run_is_invalid_transition(no_db_transaction):
    session = _mock_session()
    session.get.return_value = _record("failed")
    with pytest.raises(InvalidMigrationTransitionError):
        await rollback(session, uuid.uuid4(), confirmed=True)
    session.execute.assert_not_awaited()


@pytest.mark.asyncio
async def test_rollback_without_backup_is_refused(no_db_transaction):
    session = _mock_session()
    session.get.return_value = _record("completed", backup=None)
    with pytest.raises(BackupIntegrityError):
        await rollback(session, uuid.uuid4(), confirmed=True)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "backup_cols, live_cols, count, reason",
    [
        ([], ESCOLAS_COLUMNS, 5, "does not exist"),
        (["id", "tenant_id"], ESCOLAS_COLUMNS, 5, "missing columns"),
        (ESCOLAS_COLUMNS, ESCOLAS_COLUMNS, 0, "empty"),
    ],
)
async def test_rollback_refuses_unusable_backup(no_db_transaction, backup_cols, live_cols, count, reason):
    record = _record("completed")
    session = _mock_session()
    session.get.return_value = record
    session.execute.side_effect = [MagicMock(), _columns(backup_cols), _columns(live_cols), _scalar(count)]

    with pytest.raises(BackupIntegrityError) as exc:
        await rollback(session, record.id, confirmed=True)

    assert reason in str(exc.value)
    assert record.status == "completed"
    assert not any(s.startswith("DELETE") for s in _executed_sql(session))


# ---------------------------------------------------------------------------
# cleanup_backup
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_cleanup_needs_confirmation_and_a_backup_name():
    session = _mock_session()
    with pytest.raises(PrerequisiteError):
        await cleanup_backup(session, "backup_escolas_20260102030405")
    with pytest.raises(PrerequisiteError):
        await cleanup_backup(session, "escolas", confirmed=True)
    session.execute.assert_not_awaited()


@pytest.mark.asyncio
async def test_cleanup_refuses_unregistered_backup(no_db_transaction):
    session = _mock_session()
    unregistered = MagicMock()
    unregistered.first.return_value = None
    session.execute.return_value = unregistered

    with pytest.raises(PrerequisiteError):
        await cleanup_backup(session, "backup_escolas_20260102030405", confirmed=True)


@pytest.mark.asyncio
async def test_cleanup_drops_registered_backup(no_db_transaction):
    session = _mock_session()
    registered = MagicMock()
    registered.first.return_value = (uuid.uuid4(),)
    session.execute.side_effect = [registered, _columns(ESCOLAS_COLUMNS), MagicMock()]

    await cleanup_backup(session, "backup_escolas_20260102030405", confirmed=True)

    assert _executed_sql(session)[-1] == "DROP TABLE backup_escolas_20260102030405"
    session.commit.assert_awaited_once()
