import uuid
from datetime import datetime

from sqlalchemy import String, DateTime, Index, CheckConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from merenda.database import Base

TENANT_ACTIVE = "active"
TENANT_SUSPENDED = "suspended"
TENANT_DELETED = "deleted"


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    slug: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=TENANT_ACTIVE)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('active','suspended','deleted')",
            name="chk_tenant_status",
        ),
        Index("idx_tenants_slug", "slug"),
        Index("idx_tenants_status", "status"),
    )
