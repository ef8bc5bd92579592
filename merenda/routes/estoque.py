from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from merenda.middleware.auth import get_current_user
from merenda.middleware.authorization import (
    STOCK_SUPERVISORS,
    STOCK_WRITERS,
    require_roles,
)
from merenda.middleware.tenant import get_db_with_tenant, get_tenant_id
from merenda.schemas.estoque import (
    AllocationResponse,
    DriftCorrection,
    DriftResponse,
    EstoqueResponse,
    LoteResponse,
    MovementCreate,
    MovementResponse,
)
from merenda.services.inventory_service import (
    MovementResult,
    apply_movement,
    correct_drift,
    detect_drift,
    get_effective_quantity,
    list_lots,
)
from merenda.services.ownership_service import validate_inventory_operation

logger = structlog.get_logger()
router = APIRouter()


def _movement_response(result: MovementResult) -> MovementResponse:
    return MovementResponse(
        tipo=result.tipo,
        escola_id=result.escola_id,
        produto_id=result.produto_id,
        quantidade_anterior=result.quantidade_anterior,
        quantidade_atual=result.new_aggregate,
        quantidade_movimentada=result.quantidade_movimentada,
        lotes=[
            AllocationResponse(lote_id=a.lote_id, quantidade=a.quantidade)
            for a in result.affected_lots
        ],
    )


@router.get("/escolas/{escola_id}/produtos/{produto_id}", response_model=EstoqueResponse)
async def get_estoque(
    escola_id: int,
    produto_id: int,
    include_inactive: bool = Query(False),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    """Effective stock for one school x product, with its lots in FEFO order."""
    await validate_inventory_operation(db, tenant_id, escola_id, produto_id)
    quantidade = await get_effective_quantity(db, escola_id, produto_id, tenant_id)
    lots = await list_lots(
        db, escola_id, produto_id, tenant_id, only_active=not include_inactive
    )
    return EstoqueResponse(
        escola_id=escola_id,
        produto_id=produto_id,
        tenant_id=tenant_id,
        quantidade=quantidade,
        lotes=[LoteResponse.model_validate(lot) for lot in lots],
    )


@router.post(
    "/escolas/{escola_id}/movimentacoes",
    response_model=MovementResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_movimentacao(
    escola_id: int,
    body: MovementCreate,
    current_user: dict = Depends(get_current_user),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db_with_tenant),
    _auth: None = Depends(require_roles(*STOCK_WRITERS)),
):
    result = await apply_movement(
        db,
        escola_id,
        body.produto_id,
        tenant_id,
        body.tipo,
        body.quantidade,
        body.motivo,
        lote=body.lote,
        data_validade=body.data_validade,
        data_fabricacao=body.data_fabricacao,
        usuario_id=current_user["user_id"],
    )
    return _movement_response(result)


@router.get("/drift", response_model=list[DriftResponse])
async def list_drift(
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db_with_tenant),
    _auth: None = Depends(require_roles(*STOCK_SUPERVISORS)),
):
    reports = await detect_drift(db, tenant_id)
    return [DriftResponse.model_validate(r) for r in reports]


@router.post(
    "/escolas/{escola_id}/produtos/{produto_id}/corrigir-divergencia",
    response_model=MovementResponse,
)
async def post_correct_drift(
    escola_id: int,
    produto_id: int,
    body: DriftCorrection,
    current_user: dict = Depends(get_current_user),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db_with_tenant),
    _auth: None = Depends(require_roles(*STOCK_SUPERVISORS)),
):
    """Set the aggregate to the active-lot sum (audited ajuste)."""
    result = await correct_drift(
        db, escola_id, produto_id, tenant_id, body.motivo, usuario_id=current_user["user_id"]
    )
    logger.info(
        "drift_corrected",
        escola_id=escola_id,
        produto_id=produto_id,
        user_id=current_user["user_id"],
    )
    return _movement_response(result)
