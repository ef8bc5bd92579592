"""initial_schema

Revision ID: 3f9a1c7e2b40
Revises:
Create Date: 2026-09-02 14:10:22.518301+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3f9a1c7e2b40'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

QTY = sa.Numeric(precision=12, scale=3)


def _fk(cols, target, **kw):
    # Deferrable so a tenant-migration rollback can restore rows in one pass
    return sa.ForeignKeyConstraint(cols, target, deferrable=True, initially='IMMEDIATE', **kw)


def upgrade() -> None:
    # 1. tenants (no FKs)
    op.create_table('tenants',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('slug', sa.String(length=50), nullable=False),
    sa.Column('name', sa.String(length=200), nullable=False),
    sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
    sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
    sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
    sa.CheckConstraint("status IN ('active','suspended','deleted')", name='chk_tenant_status'),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('slug')
    )
    op.create_index('idx_tenants_slug', 'tenants', ['slug'], unique=False)
    op.create_index('idx_tenants_status', 'tenants', ['status'], unique=False)

    # 2. escolas / produtos: tenant_id nullable for legacy rows
    op.create_table('escolas',
    sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
    sa.Column('tenant_id', sa.UUID(), nullable=True),
    sa.Column('nome', sa.String(length=255), nullable=False),
    sa.Column('ativo', sa.Boolean(), nullable=False, server_default=sa.true()),
    sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
    sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_escolas_tenant', 'escolas', ['tenant_id'], unique=False)

    op.create_table('produtos',
    sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
    sa.Column('tenant_id', sa.UUID(), nullable=True),
    sa.Column('nome', sa.String(length=255), nullable=False),
    sa.Column('categoria', sa.String(length=100), nullable=True),
    sa.Column('unidade', sa.String(length=20), nullable=True),
    sa.Column('ativo', sa.Boolean(), nullable=False, server_default=sa.true()),
    sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
    sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_produtos_tenant', 'produtos', ['tenant_id'], unique=False)

    # 3. estoque_escolas (aggregate)
    op.create_table('estoque_escolas',
    sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
    sa.Column('escola_id', sa.Integer(), nullable=False),
    sa.Column('produto_id', sa.Integer(), nullable=False),
    sa.Column('tenant_id', sa.UUID(), nullable=True),
    sa.Column('quantidade_atual', QTY, nullable=False, server_default='0'),
    sa.Column('tem_lotes_vencidos', sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column('tem_lotes_criticos', sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
    sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
    sa.CheckConstraint('quantidade_atual >= 0', name='chk_estoque_escola_qty'),
    _fk(['escola_id'], ['escolas.id']),
    _fk(['produto_id'], ['produtos.id']),
    sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('escola_id', 'produto_id', name='uq_estoque_escola_produto')
    )
    op.create_index('idx_estoque_escolas_tenant', 'estoque_escolas', ['tenant_id', 'escola_id'], unique=False)

    # 4. estoque_lotes (lot ledger)
    op.create_table('estoque_lotes',
    sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
    sa.Column('produto_id', sa.Integer(), nullable=False),
    sa.Column('escola_id', sa.Integer(), nullable=False),
    sa.Column('tenant_id', sa.UUID(), nullable=True),
    sa.Column('lote', sa.String(length=100), nullable=False),
    sa.Column('quantidade_inicial', QTY, nullable=False),
    sa.Column('quantidade_atual', QTY, nullable=False),
    sa.Column('data_fabricacao', sa.Date(), nullable=True),
    sa.Column('data_validade', sa.Date(), nullable=True),
    sa.Column('status', sa.String(length=20), nullable=False, server_default='ativo'),
    sa.Column('observacoes', sa.Text(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
    sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
    sa.CheckConstraint("status IN ('ativo','esgotado','vencido')", name='chk_lote_status'),
    sa.CheckConstraint('quantidade_atual >= 0', name='chk_lote_qty'),
    _fk(['escola_id'], ['escolas.id']),
    _fk(['produto_id'], ['produtos.id']),
    sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('escola_id', 'produto_id', 'lote', name='uq_lote_escola_produto_codigo')
    )
    op.create_index(
        'idx_lotes_fefo', 'estoque_lotes',
        ['tenant_id', 'escola_id', 'produto_id', 'status', 'data_validade'], unique=False,
    )

    # 5. estoque_movimentacoes (append-only)
    op.create_table('estoque_movimentacoes',
    sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
    sa.Column('lote_id', sa.Integer(), nullable=True),
    sa.Column('produto_id', sa.Integer(), nullable=False),
    sa.Column('tenant_id', sa.UUID(), nullable=True),
    sa.Column('tipo', sa.String(length=20), nullable=False),
    sa.Column('quantidade', QTY, nullable=False),
    sa.Column('quantidade_anterior', QTY, nullable=False),
    sa.Column('quantidade_posterior', QTY, nullable=False),
    sa.Column('motivo', sa.Text(), nullable=True),
    sa.Column('usuario_id', sa.String(length=64), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
    sa.CheckConstraint("tipo IN ('entrada','saida','ajuste')", name='chk_movimentacao_tipo'),
    _fk(['lote_id'], ['estoque_lotes.id']),
    _fk(['produto_id'], ['produtos.id']),
    sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_movimentacoes_tenant_produto', 'estoque_movimentacoes', ['tenant_id', 'produto_id'], unique=False)
    op.create_index('idx_movimentacoes_lote', 'estoque_movimentacoes', ['lote_id'], unique=False)
    op.create_index('idx_movimentacoes_created', 'estoque_movimentacoes', [sa.text('created_at DESC')], unique=False)

    # 6. estoque_escolas_historico (append-only)
    op.create_table('estoque_escolas_historico',
    sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
    sa.Column('estoque_escola_id', sa.Integer(), nullable=False),
    sa.Column('escola_id', sa.Integer(), nullable=False),
    sa.Column('produto_id', sa.Integer(), nullable=False),
    sa.Column('tenant_id', sa.UUID(), nullable=True),
    sa.Column('tipo_movimentacao', sa.String(length=20), nullable=False),
    sa.Column('quantidade_anterior', QTY, nullable=False),
    sa.Column('quantidade_movimentada', QTY, nullable=False),
    sa.Column('quantidade_posterior', QTY, nullable=False),
    sa.Column('motivo', sa.Text(), nullable=True),
    sa.Column('usuario_id', sa.String(length=64), nullable=True),
    sa.Column('data_movimentacao', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
    sa.CheckConstraint("tipo_movimentacao IN ('entrada','saida','ajuste')", name='chk_historico_tipo'),
    _fk(['estoque_escola_id'], ['estoque_escolas.id']),
    _fk(['escola_id'], ['escolas.id']),
    _fk(['produto_id'], ['produtos.id']),
    sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_historico_escola_produto', 'estoque_escolas_historico', ['escola_id', 'produto_id'], unique=False)
    op.create_index('idx_historico_tenant', 'estoque_escolas_historico', ['tenant_id'], unique=False)

    # 7. tenant_migrations (migration engine log)
    op.create_table('tenant_migrations',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('table_name', sa.String(length=63), nullable=False),
    sa.Column('backup_table_name', sa.String(length=63), nullable=True),
    sa.Column('tenant_id_assigned', sa.UUID(), nullable=False),
    sa.Column('records_updated', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
    sa.Column('dry_run', sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column('started_at', sa.DateTime(), nullable=True),
    sa.Column('finished_at', sa.DateTime(), nullable=True),
    sa.Column('rolled_back_at', sa.DateTime(), nullable=True),
    sa.Column('error', sa.Text(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
    sa.CheckConstraint(
        "status IN ('pending','running','completed','failed','rolled_back')",
        name='chk_tenant_migration_status',
    ),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_tenant_migrations_table', 'tenant_migrations', ['table_name', sa.text('created_at DESC')], unique=False)
    op.create_index('idx_tenant_migrations_status', 'tenant_migrations', ['status'], unique=False)


def downgrade() -> None:
    op.drop_table('tenant_migrations')
    op.drop_table('estoque_escolas_historico')
    op.drop_table('estoque_movimentacoes')
    op.drop_table('estoque_lotes')
    op.drop_table('estoque_escolas')
    op.drop_table('produtos')
    op.drop_table('escolas')
    op.drop_table('tenants')
