import uuid
from contextlib import asynccontextmanager

import pytest

TENANT_A = uuid.UUID("a0000000-0000-0000-0000-000000000001")
TENANT_B = uuid.UUID("b0000000-0000-0000-0000-000000000002")

SERVICE_MODULES = (
    "merenda.services.inventory_service",
    "merenda.services.migration_service",
    "merenda.services.integrity_service",
)


@pytest.fixture
def tenant_a() -> uuid.UUID:
    return TENANT_A


@pytest.fixture
def tenant_b() -> uuid.UUID:
    return TENANT_B


@pytest.fixture
def no_db_transaction(monkeypatch):
    """Replace transaction() in the service modules with a pass-through block.

    Mocked sessions have no real begin()/begin_nested(); the services still
    see a context manager around their writes.
    """
    entered = []

    @asynccontextmanager
    async def _passthrough(session, operation="transaction"):
        entered.append(operation)
        yield session

    for module in SERVICE_MODULES:
        monkeypatch.setattr(f"{module}.transaction", _passthrough)
    return entered
