"""
Unit tests for merenda/services/integrity_service.py

Tests: skew rule, backfill SQL, per-table checks against a routed fake
       session, critical cross-tenant findings, guarded check failures,
       fix mode, failing backfill, drift aggregation, JSON export, cancellation.
"""

import json
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from merenda.services import integrity_service
from merenda.services.integrity_service import (
    CHECK_COMPLETENESS,
    CHECK_CROSS_TENANT,
    CHECK_DRIFT,
    CHECK_SKEW,
    CHECK_TENANT_COLUMN,
    CHECK_TENANT_EXISTENCE,
    FAIL,
    PASS,
    SEVERITY_CRITICAL,
    WARNING,
    IntegrityIssue,
    IntegrityReport,
    backfill_sql,
    export_report,
    run_full_validation,
    skew_issue,
)
from merenda.services.inventory_service import DriftReport
from merenda.tenant_scope import get_scoped_table

TENANT_A = "a0000000-0000-0000-0000-000000000001"
TENANT_B = "b0000000-0000-0000-0000-000000000002"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _result(scalar=0, rows=None, rowcount=0):
    result = MagicMock()
    result.scalar.return_value = scalar
    result.scalars.return_value.all.return_value = rows or []
    result.all.return_value = rows or []
    result.rowcount = rowcount
    return result


class RoutedSession:
    """Fake AsyncSession answering execute() by the first matching SQL fragment."""

    def __init__(self, routes):
        self.routes = routes
        self.statements: list[str] = []
        self.commit = AsyncMock()
        self.rollback = AsyncMock()

    async def execute(self, stmt, params=None):
        sql = str(stmt)
        self.statements.append(sql)
        for fragment, answer in self.routes:
            if fragment in sql:
                if isinstance(answer, Exception):
                    raise answer
                return answer
        raise AssertionError(f"unexpected SQL: {sql}")


@asynccontextmanager
async def _block():
    yield


class TransactionalSession(RoutedSession):
    """RoutedSession that also supports the real transaction() wrapper."""

    def in_transaction(self):
        return False

    def begin(self):
        return _block()


def _clean_routes(columns=("id", "tenant_id")):
    return [
        ("information_schema.columns", _result(rows=list(columns))),
        ("GROUP BY", _result(rows=[(TENANT_A, 10), (TENANT_B, 10)])),
        ("SELECT count(*)", _result(0)),
    ]


def _by_check(report, check):
    return [r for r in report.results if r.check == check]


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "counts, status",
    [
        ({TENANT_A: 10}, PASS),
        ({}, PASS),
        ({TENANT_A: 96, TENANT_B: 4}, WARNING),
        ({TENANT_A: 95, TENANT_B: 5}, PASS),
        ({TENANT_A: 50, TENANT_B: 50}, PASS),
    ],
)
def test_skew_issue(counts, status):
    assert skew_issue("escolas", counts, threshold=0.95).status == status


def test_skew_warning_counts_minority_rows():
    issue = skew_issue("escolas", {TENANT_A: 99, TENANT_B: 1}, threshold=0.95)
    assert issue.affected_rows == 1
    assert TENANT_A in issue.message


def test_backfill_sql_absent_for_root_tables():
    assert backfill_sql(get_scoped_table("escolas")) is None


def test_backfill_sql_derives_from_first_parent_and_checks_the_rest():
    sql = backfill_sql(get_scoped_table("estoque_escolas_historico"))
    assert sql.startswith("UPDATE estoque_escolas_historico AS c SET tenant_id = p0.tenant_id FROM estoque_escolas p0")
    assert sql.count("NOT EXISTS") == 2
    assert "p2.id = c.produto_id" in sql


def test_report_summary_and_passed():
    report = IntegrityReport(started_at=datetime(2026, 1, 1))
    report.add(IntegrityIssue("escolas", CHECK_COMPLETENESS, PASS, "ok"))
    report.add(IntegrityIssue("escolas", CHECK_SKEW, WARNING, "skewed"))
    assert report.passed

    report.add(IntegrityIssue("estoque_lotes", CHECK_CROSS_TENANT, FAIL, "x", 2, SEVERITY_CRITICAL))
    assert report.summary == {"total": 3, "passed": 1, "failed": 1, "warnings": 1, "critical": 1}
    assert not report.passed
    assert [i.check for i in report.issues] == [CHECK_SKEW, CHECK_CROSS_TENANT]


def test_export_report_writes_json(tmp_path):
    report = IntegrityReport(started_at=datetime(2026, 1, 1), finished_at=datetime(2026, 1, 1, 0, 5))
    report.add(IntegrityIssue("escolas", CHECK_COMPLETENESS, FAIL, "3 row(s) without tenant_id", 3))
    report.distribution["escolas"] = {TENANT_A: 7}

    path = export_report(report, str(tmp_path / "out" / "report.json"))

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["passed"] is False
    assert data["summary"]["failed"] == 1
    assert data["issues"][0]["affected_rows"] == 3
    assert "details" not in data["issues"][0]
    assert data["tenant_distribution"] == {"escolas": {TENANT_A: 7}}


# ---------------------------------------------------------------------------
# run_full_validation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_clean_root_table_passes_every_check():
    session = RoutedSession(_clean_routes())

    report = await run_full_validation(session, tables=["escolas"])

    assert report.passed
    assert [r.check for r in report.results] == [
        CHECK_COMPLETENESS, CHECK_TENANT_EXISTENCE, "TENANT_INACTIVE", CHECK_SKEW,
    ]
    assert report.distribution["escolas"] == {TENANT_A: 10, TENANT_B: 10}
    assert report.finished_at is not None
    assert not any(s.startswith("UPDATE") for s in session.statements)


@pytest.mark.asyncio
async def test_missing_tenant_column_is_critical_and_stops_table_checks():
    session = RoutedSession([("information_schema.columns", _result(rows=["id", "nome"]))])

    report = await run_full_validation(session, tables=["produtos"])

    assert len(report.results) == 1
    issue = report.results[0]
    assert (issue.check, issue.status, issue.severity) == (CHECK_TENANT_COLUMN, FAIL, SEVERITY_CRITICAL)


@pytest.mark.asyncio
async def test_cross_tenant_rows_are_critical(monkeypatch):
    monkeypatch.setattr(integrity_service, "detect_drift", AsyncMock(return_value=[]))
    session = RoutedSession(
        [("JOIN escolas p", _result(2)), ("SELECT tenants.id", _result(rows=[TENANT_A]))]
        + _clean_routes()
    )

    report = await run_full_validation(session, tables=["estoque_lotes"])

    cross = [r for r in _by_check(report, CHECK_CROSS_TENANT) if r.status == FAIL]
    assert len(cross) == 1
    assert cross[0].affected_rows == 2
    assert cross[0].severity == SEVERITY_CRITICAL
    assert "estoque_lotes.escola_id -> escolas.id" in cross[0].message
    assert report.summary["critical"] == 1
    assert not report.passed


@pytest.mark.asyncio
async def test_failing_check_is_reported_and_audit_continues():
    error = OperationalError("SELECT", {}, Exception("relation vanished"))
    session = RoutedSession([("FROM tenants t WHERE", error)] + _clean_routes())

    report = await run_full_validation(session, tables=["escolas"])

    existence = _by_check(report, CHECK_TENANT_EXISTENCE)[0]
    assert existence.status == FAIL
    assert existence.message.startswith("Check could not run")
    session.rollback.assert_awaited_once()
    assert _by_check(report, CHECK_SKEW)[0].status == PASS


@pytest.mark.asyncio
async def test_null_tenant_rows_fail_completeness():
    session = RoutedSession(
        [("WHERE tenant_id IS NULL", _result(4))] + _clean_routes()
    )

    report = await run_full_validation(session, tables=["escolas"])

    completeness = _by_check(report, CHECK_COMPLETENESS)[0]
    assert completeness.status == FAIL
    assert completeness.affected_rows == 4


@pytest.mark.asyncio
async def test_fix_minor_backfills_and_commits(monkeypatch, no_db_transaction):
    monkeypatch.setattr(integrity_service, "detect_drift", AsyncMock(return_value=[]))
    session = RoutedSession(
        [
            ("UPDATE estoque_escolas AS c", _result(rowcount=3)),
            ("SELECT tenants.id", _result(rows=[])),
        ]
        + _clean_routes()
    )

    report = await run_full_validation(session, fix_minor=True, tables=["estoque_escolas"])

    completeness = _by_check(report, CHECK_COMPLETENESS)[0]
    assert completeness.status == PASS
    assert "3 backfilled" in completeness.message
    assert report.fixed == {"estoque_escolas": 3}
    session.commit.assert_awaited_once()
    assert no_db_transaction == ["backfill_estoque_escolas"]


@pytest.mark.asyncio
async def test_failed_backfill_is_reported_and_other_tables_still_audited(monkeypatch):
    monkeypatch.setattr(integrity_service, "detect_drift", AsyncMock(return_value=[]))
    error = OperationalError("UPDATE", {}, Exception("deadlock detected"))
    session = TransactionalSession(
        [
            ("UPDATE estoque_escolas AS c", error),
            ("UPDATE estoque_lotes AS c", _result(rowcount=0)),
            ("SELECT tenants.id", _result(rows=[])),
        ]
        + _clean_routes()
    )

    report = await run_full_validation(
        session, fix_minor=True, tables=["estoque_escolas", "estoque_lotes"]
    )

    completeness = [r for r in _by_check(report, CHECK_COMPLETENESS) if r.table == "estoque_escolas"][0]
    assert completeness.status == FAIL
    assert "backfill_estoque_escolas failed" in completeness.message
    assert "estoque_escolas" not in report.fixed
    assert {r.table for r in report.results} >= {"estoque_escolas", "estoque_lotes"}
    lotes = [r for r in _by_check(report, CHECK_COMPLETENESS) if r.table == "estoque_lotes"][0]
    assert lotes.status == PASS
    session.rollback.assert_awaited()


@pytest.mark.asyncio
async def test_drift_is_reported_per_pair(monkeypatch):
    drift = [
        DriftReport(1, 2, TENANT_A, Decimal("100"), Decimal("80"), Decimal("20")),
        DriftReport(3, 2, TENANT_B, Decimal("5"), Decimal("0"), Decimal("5")),
    ]
    detect = AsyncMock(side_effect=[drift[:1], drift[1:]])
    monkeypatch.setattr(integrity_service, "detect_drift", detect)
    session = RoutedSession(
        [("SELECT tenants.id", _result(rows=[TENANT_A, TENANT_B]))] + _clean_routes()
    )

    report = await run_full_validation(session, tables=["estoque_escolas"])

    issue = _by_check(report, CHECK_DRIFT)[0]
    assert issue.status == FAIL
    assert issue.affected_rows == 2
    assert issue.details[0] == {
        "tenant_id": TENANT_A,
        "escola_id": 1,
        "produto_id": 2,
        "aggregate": "100",
        "lots": "80",
        "delta": "20",
    }
    assert detect.await_count == 2


@pytest.mark.asyncio
async def test_cancelled_audit_stops_before_next_table():
    session = RoutedSession(_clean_routes())
    polls = iter([False, True])

    report = await run_full_validation(
        session, tables=["escolas", "produtos"], should_cancel=lambda: next(polls)
    )

    assert report.cancelled
    assert {r.table for r in report.results} == {"escolas"}


@pytest.mark.asyncio
async def test_unknown_table_raises_key_error():
    with pytest.raises(KeyError):
        await run_full_validation(RoutedSession([]), tables=["fornecedores"])
