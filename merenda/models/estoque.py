import uuid
from datetime import datetime, date
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Integer,
    String,
    Boolean,
    Numeric,
    Date,
    DateTime,
    Text,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    Index,
    desc,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from merenda.database import Base

LOTE_ATIVO = "ativo"
LOTE_ESGOTADO = "esgotado"
LOTE_VENCIDO = "vencido"

ENTRADA = "entrada"
SAIDA = "saida"
AJUSTE = "ajuste"
MOVEMENT_TYPES = (ENTRADA, SAIDA, AJUSTE)

QUANTITY = Numeric(12, 3)


def _scoped_fk(target: str) -> ForeignKey:
    # Deferrable so a migration rollback can restore parents and children in any order
    return ForeignKey(target, deferrable=True, initially="IMMEDIATE")


class EstoqueEscola(Base):
    """Aggregate stock-on-hand, one row per school x product."""

    __tablename__ = "estoque_escolas"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    escola_id: Mapped[int] = mapped_column(
        Integer, _scoped_fk("escolas.id"), nullable=False
    )
    produto_id: Mapped[int] = mapped_column(
        Integer, _scoped_fk("produtos.id"), nullable=False
    )
    tenant_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id")
    )
    quantidade_atual: Mapped[Decimal] = mapped_column(QUANTITY, default=Decimal("0"))
    tem_lotes_vencidos: Mapped[bool] = mapped_column(Boolean, default=False)
    tem_lotes_criticos: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (
        UniqueConstraint("escola_id", "produto_id", name="uq_estoque_escola_produto"),
        CheckConstraint("quantidade_atual >= 0", name="chk_estoque_escola_qty"),
        Index("idx_estoque_escolas_tenant", "tenant_id", "escola_id"),
    )


class EstoqueLote(Base):
    """A batch of one product at one school, with its own expiry date."""

    __tablename__ = "estoque_lotes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    produto_id: Mapped[int] = mapped_column(
        Integer, _scoped_fk("produtos.id"), nullable=False
    )
    escola_id: Mapped[int] = mapped_column(
        Integer, _scoped_fk("escolas.id"), nullable=False
    )
    tenant_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id")
    )
    lote: Mapped[str] = mapped_column(String(100), nullable=False)
    quantidade_inicial: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False)
    quantidade_atual: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False)
    data_fabricacao: Mapped[Optional[date]] = mapped_column(Date)
    data_validade: Mapped[Optional[date]] = mapped_column(Date)
    status: Mapped[str] = mapped_column(String(20), default=LOTE_ATIVO)
    observacoes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (
        UniqueConstraint("escola_id", "produto_id", "lote", name="uq_lote_escola_produto_codigo"),
        CheckConstraint(
            "status IN ('ativo','esgotado','vencido')", name="chk_lote_status"
        ),
        CheckConstraint("quantidade_atual >= 0", name="chk_lote_qty"),
        Index("idx_lotes_fefo", "tenant_id", "escola_id", "produto_id", "status", "data_validade"),
    )


class EstoqueMovimentacao(Base):
    """Append-only movement record; written with every balance change."""

    __tablename__ = "estoque_movimentacoes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lote_id: Mapped[Optional[int]] = mapped_column(
        Integer, _scoped_fk("estoque_lotes.id")
    )
    produto_id: Mapped[int] = mapped_column(
        Integer, _scoped_fk("produtos.id"), nullable=False
    )
    tenant_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id")
    )
    tipo: Mapped[str] = mapped_column(String(20), nullable=False)
    # Signed for "ajuste": the delta applied to the aggregate
    quantidade: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False)
    quantidade_anterior: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False)
    quantidade_posterior: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False)
    motivo: Mapped[Optional[str]] = mapped_column(Text)
    usuario_id: Mapped[Optional[str]] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "tipo IN ('entrada','saida','ajuste')", name="chk_movimentacao_tipo"
        ),
        Index("idx_movimentacoes_tenant_produto", "tenant_id", "produto_id"),
        Index("idx_movimentacoes_lote", "lote_id"),
        Index("idx_movimentacoes_created", desc("created_at")),
    )


class EstoqueEscolaHistorico(Base):
    """Aggregate-level movement log per school x product; write-once."""

    __tablename__ = "estoque_escolas_historico"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    estoque_escola_id: Mapped[int] = mapped_column(
        Integer, _scoped_fk("estoque_escolas.id"), nullable=False
    )
    escola_id: Mapped[int] = mapped_column(
        Integer, _scoped_fk("escolas.id"), nullable=False
    )
    produto_id: Mapped[int] = mapped_column(
        Integer, _scoped_fk("produtos.id"), nullable=False
    )
    tenant_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id")
    )
    tipo_movimentacao: Mapped[str] = mapped_column(String(20), nullable=False)
    quantidade_anterior: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False)
    quantidade_movimentada: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False)
    quantidade_posterior: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False)
    motivo: Mapped[Optional[str]] = mapped_column(Text)
    usuario_id: Mapped[Optional[str]] = mapped_column(String(64))
    data_movimentacao: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "tipo_movimentacao IN ('entrada','saida','ajuste')",
            name="chk_historico_tipo",
        ),
        Index("idx_historico_escola_produto", "escola_id", "produto_id"),
        Index("idx_historico_tenant", "tenant_id"),
    )
