import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import String, Integer, DateTime, Text, Boolean, Index, desc
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from merenda.database import Base


class MigrationStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


ALLOWED_TRANSITIONS: dict[MigrationStatus, frozenset[MigrationStatus]] = {
    MigrationStatus.PENDING: frozenset({MigrationStatus.RUNNING}),
    MigrationStatus.RUNNING: frozenset({MigrationStatus.COMPLETED, MigrationStatus.FAILED}),
    MigrationStatus.COMPLETED: frozenset({MigrationStatus.ROLLED_BACK}),
    MigrationStatus.FAILED: frozenset(),
    MigrationStatus.ROLLED_BACK: frozenset(),
}


class MigrationRecord(Base):
    """One row per table per tenant-backfill run; append-only log."""

    __tablename__ = "tenant_migrations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    table_name: Mapped[str] = mapped_column(String(63), nullable=False)
    backup_table_name: Mapped[Optional[str]] = mapped_column(String(63))
    tenant_id_assigned: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False
    )
    records_updated: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(20), default=MigrationStatus.PENDING.value)
    dry_run: Mapped[bool] = mapped_column(Boolean, default=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    rolled_back_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    error: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )

    __table_args__ = (
        Index("idx_tenant_migrations_table", "table_name", desc("created_at")),
        Index("idx_tenant_migrations_status", "status"),
    )
