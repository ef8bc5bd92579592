"""enable_rls_policies

Revision ID: 8d41e0b6a5c3
Revises: 3f9a1c7e2b40
Create Date: 2026-09-02 14:32:05.904117+00:00

"""
from typing import Sequence, Union

from alembic import op


# revision identifiers, used by Alembic.
revision: str = '8d41e0b6a5c3'
down_revision: Union[str, None] = '3f9a1c7e2b40'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Tables with tenant_id that get RLS
RLS_TABLES = [
    "escolas", "produtos", "estoque_escolas", "estoque_lotes",
    "estoque_movimentacoes", "estoque_escolas_historico",
]


def upgrade() -> None:
    # Enable RLS and create tenant isolation policies. The table owner (the
    # migration/audit role) is not subject to them, so legacy NULL rows stay
    # reachable for the backfill.
    for table in RLS_TABLES:
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
        op.execute(
            f"CREATE POLICY tenant_isolation ON {table} "
            f"USING (tenant_id = current_setting('app.current_tenant_id', true)::uuid) "
            f"WITH CHECK (tenant_id = current_setting('app.current_tenant_id', true)::uuid)"
        )


def downgrade() -> None:
    for table in RLS_TABLES:
        op.execute(f"DROP POLICY IF EXISTS tenant_isolation ON {table}")
        op.execute(f"ALTER TABLE {table} DISABLE ROW LEVEL SECURITY")
