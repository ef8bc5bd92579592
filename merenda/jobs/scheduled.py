# merenda/jobs/scheduled.py
"""
Scheduled jobs triggered by the platform scheduler -> internal endpoints.

Jobs:
  - expire-lots:      Daily at 00:30 local time
  - integrity-audit:  Nightly, after the expire-lots run
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from merenda.config import settings
from merenda.database import get_db
from merenda.services.integrity_service import run_full_validation
from merenda.services.inventory_service import expire_lots

logger = structlog.get_logger()
router = APIRouter()


async def _require_internal_auth(request: Request):
    """
    Verify request comes from the scheduler or an internal service.
    Validates X-Internal-Secret header against INTERNAL_JOB_SECRET from settings.
    """
    secret = settings.INTERNAL_JOB_SECRET
    if not secret:
        # In development (DEBUG=True), allow unauthenticated internal calls
        if settings.DEBUG:
            return
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="INTERNAL_JOB_SECRET is not configured",
        )
    provided = request.headers.get("X-Internal-Secret")
    if not provided or provided != secret:
        logger.warning("internal_auth_failed", path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Forbidden",
        )


@router.post("/expire-lots")
async def run_expire_lots(
    tenant_id: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    _auth: None = Depends(_require_internal_auth),
):
    """Daily: move lots past their expiry date to 'vencido' and refresh stock flags."""
    count = await expire_lots(db, tenant_id=tenant_id, today=date.today())
    logger.info("expire_lots_job_complete", expired=count)
    return {"processed": count}


@router.post("/integrity-audit")
async def run_integrity_audit(
    db: AsyncSession = Depends(get_db),
    _auth: None = Depends(_require_internal_auth),
):
    """Nightly read-only audit; returns the full report."""
    report = await run_full_validation(db)
    logger.info("integrity_audit_job_complete", **report.summary)
    return report.to_dict()
