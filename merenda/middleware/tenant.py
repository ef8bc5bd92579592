from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from merenda.database import get_db, set_tenant_context
from merenda.middleware.auth import get_current_user
from merenda.services.ownership_service import to_tenant_uuid


async def get_tenant_id(current_user: dict = Depends(get_current_user)) -> str:
    """FastAPI dependency: the caller's tenant, taken from the verified token only."""
    return str(to_tenant_uuid(current_user.get("tenant_id")))


async def get_db_with_tenant(
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> AsyncSession:
    """FastAPI dependency: get DB session with RLS tenant context set."""
    await set_tenant_context(db, tenant_id)
    return db
