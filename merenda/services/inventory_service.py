"""
Inventory reconciler: stock-on-hand per school x product x tenant.

Two representations of the same stock live side by side:
  * estoque_escolas.quantidade_atual, the aggregate counter
  * estoque_lotes, the lot ledger with expiry dates (FEFO)

Products with lots read their quantity from the active lots; products
without lots read the aggregate. Every mutation goes through
apply_movement(), which validates ownership first, then locks the aggregate
row and the lots it touches, and writes the movement/history rows in the same
transaction. Drift between the two sides is reported, never auto-corrected;
correct_drift() is the explicit operator action.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Iterable, Optional

from sqlalchemy import and_, case, func, nulls_last, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from merenda.config import settings
from merenda.database import transaction
from merenda.exceptions import (
    CrossTenantAccessError,
    InsufficientStockError,
    InvalidMovementError,
)
from merenda.models.estoque import (
    AJUSTE,
    ENTRADA,
    LOTE_ATIVO,
    LOTE_ESGOTADO,
    LOTE_VENCIDO,
    MOVEMENT_TYPES,
    SAIDA,
    EstoqueEscola,
    EstoqueEscolaHistorico,
    EstoqueLote,
    EstoqueMovimentacao,
)
from merenda.services.ownership_service import (
    to_tenant_uuid,
    validate_inventory_operation,
)

logger = structlog.get_logger()

ZERO = Decimal("0")

STATUS_VENCIDO = "vencido"
STATUS_CRITICO = "critico"
STATUS_ATENCAO = "atencao"
STATUS_NORMAL = "normal"


@dataclass
class Allocation:
    lote_id: int
    quantidade: Decimal


@dataclass
class MovementResult:
    tipo: str
    escola_id: int
    produto_id: int
    tenant_id: str
    quantidade_anterior: Decimal
    new_aggregate: Decimal
    quantidade_movimentada: Decimal
    affected_lots: list[Allocation] = field(default_factory=list)


@dataclass
class DriftReport:
    escola_id: int
    produto_id: int
    tenant_id: str
    aggregate: Decimal
    lots: Decimal
    delta: Decimal


@dataclass
class LotView:
    id: int
    lote: str
    quantidade_atual: Decimal
    data_validade: Optional[date]
    status: str
    status_validade: str
    dias_para_vencimento: Optional[int]


def _q(value: Any) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


# ---------------------------------------------------------------------------
# Pure rules
# ---------------------------------------------------------------------------


def expiry_status(
    data_validade: Optional[date],
    today: date,
    critical_days: Optional[int] = None,
    warning_days: Optional[int] = None,
) -> str:
    """vencido / critico / atencao / normal for a lot's expiry date (reporting only)."""
    if data_validade is None:
        return STATUS_NORMAL
    critical_days = settings.EXPIRY_CRITICAL_DAYS if critical_days is None else critical_days
    warning_days = settings.EXPIRY_WARNING_DAYS if warning_days is None else warning_days
    if data_validade <= today:
        return STATUS_VENCIDO
    days = (data_validade - today).days
    if days <= critical_days:
        return STATUS_CRITICO
    if days <= warning_days:
        return STATUS_ATENCAO
    return STATUS_NORMAL


def is_expired(lot, today: date) -> bool:
    return lot.data_validade is not None and lot.data_validade <= today


def fefo_sort_key(lot):
    # Lots without an expiry date go last
    return (lot.data_validade is None, lot.data_validade or date.max, lot.id)


def plan_fefo(lots: Iterable, quantity_needed: Any, today: date, produto_id: Any = None) -> list[tuple[Any, Decimal]]:
    """Greedy FEFO plan over ``lots``: [(lot, quantity_taken), ...].

    Only active, non-expired lots with stock are used. Raises
    InsufficientStockError when they cannot cover the request.
    """
    needed = _q(quantity_needed)
    if needed <= ZERO:
        raise InvalidMovementError(f"Quantity to allocate must be positive, got {needed}")

    usable = sorted(
        (
            lot for lot in lots
            if lot.status == LOTE_ATIVO
            and _q(lot.quantidade_atual) > ZERO
            and not is_expired(lot, today)
        ),
        key=fefo_sort_key,
    )
    available = sum((_q(lot.quantidade_atual) for lot in usable), ZERO)
    if available < needed:
        raise InsufficientStockError(produto_id, needed, available)

    plan: list[tuple[Any, Decimal]] = []
    remaining = needed
    for lot in usable:
        if remaining <= ZERO:
            break
        take = min(_q(lot.quantidade_atual), remaining)
        plan.append((lot, take))
        remaining -= take
    return plan


def compare_quantities(rows: Iterable, tenant_id: Any, epsilon: Optional[Decimal] = None) -> list[DriftReport]:
    """Build drift reports from rows carrying escola_id, produto_id, aggregate, lots."""
    eps = _q(settings.DRIFT_EPSILON if epsilon is None else epsilon)
    reports = []
    for row in rows:
        aggregate = _q(row.aggregate)
        lots = _q(row.lots)
        delta = abs(aggregate - lots)
        if delta > eps:
            reports.append(
                DriftReport(
                    escola_id=row.escola_id,
                    produto_id=row.produto_id,
                    tenant_id=str(tenant_id),
                    aggregate=aggregate,
                    lots=lots,
                    delta=delta,
                )
            )
    return reports


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def _active_lot_totals(session: AsyncSession, escola_id, produto_id, tid) -> tuple[int, Decimal]:
    result = await session.execute(
        select(
            func.count(EstoqueLote.id),
            func.coalesce(func.sum(EstoqueLote.quantidade_atual), 0),
        ).where(
            EstoqueLote.escola_id == escola_id,
            EstoqueLote.produto_id == produto_id,
            EstoqueLote.tenant_id == tid,
            EstoqueLote.status == LOTE_ATIVO,
        )
    )
    count, total = result.one()
    return int(count or 0), _q(total)


async def get_effective_quantity(
    session: AsyncSession,
    escola_id: int,
    produto_id: int,
    tenant_id: Any,
) -> Decimal:
    """Active-lot sum when the pair has active lots, the aggregate counter otherwise."""
    tid = to_tenant_uuid(tenant_id)
    count, total = await _active_lot_totals(session, escola_id, produto_id, tid)
    if count:
        return total

    result = await session.execute(
        select(EstoqueEscola.quantidade_atual).where(
            EstoqueEscola.escola_id == escola_id,
            EstoqueEscola.produto_id == produto_id,
            EstoqueEscola.tenant_id == tid,
        )
    )
    return _q(result.scalar_one_or_none())


async def list_lots(
    session: AsyncSession,
    escola_id: int,
    produto_id: int,
    tenant_id: Any,
    only_active: bool = True,
    today: Optional[date] = None,
) -> list[LotView]:
    """Lots of a pair in FEFO order with their computed expiry status."""
    tid = to_tenant_uuid(tenant_id)
    today = today or date.today()
    q = select(EstoqueLote).where(
        EstoqueLote.escola_id == escola_id,
        EstoqueLote.produto_id == produto_id,
        EstoqueLote.tenant_id == tid,
    )
    if only_active:
        q = q.where(EstoqueLote.status == LOTE_ATIVO, EstoqueLote.quantidade_atual > 0)
    result = await session.execute(
        q.order_by(nulls_last(EstoqueLote.data_validade.asc()), EstoqueLote.id.asc())
    )
    return [
        LotView(
            id=lot.id,
            lote=lot.lote,
            quantidade_atual=_q(lot.quantidade_atual),
            data_validade=lot.data_validade,
            status=lot.status,
            status_validade=expiry_status(lot.data_validade, today),
            dias_para_vencimento=(
                (lot.data_validade - today).days if lot.data_validade else None
            ),
        )
        for lot in result.scalars().all()
    ]


async def detect_drift(
    session: AsyncSession,
    tenant_id: Any,
    epsilon: Optional[Decimal] = None,
) -> list[DriftReport]:
    """Compare active-lot sums with the aggregate for every pair that has lots."""
    tid = to_tenant_uuid(tenant_id)
    lot_sums = (
        select(
            EstoqueLote.escola_id.label("escola_id"),
            EstoqueLote.produto_id.label("produto_id"),
            func.coalesce(
                func.sum(
                    case(
                        (EstoqueLote.status == LOTE_ATIVO, EstoqueLote.quantidade_atual),
                        else_=0,
                    )
                ),
                0,
            ).label("lots"),
        )
        .where(EstoqueLote.tenant_id == tid)
        .group_by(EstoqueLote.escola_id, EstoqueLote.produto_id)
        .subquery()
    )
    stmt = (
        select(
            lot_sums.c.escola_id,
            lot_sums.c.produto_id,
            lot_sums.c.lots,
            func.coalesce(EstoqueEscola.quantidade_atual, 0).label("aggregate"),
        )
        .select_from(lot_sums)
        .outerjoin(
            EstoqueEscola,
            and_(
                EstoqueEscola.escola_id == lot_sums.c.escola_id,
                EstoqueEscola.produto_id == lot_sums.c.produto_id,
                EstoqueEscola.tenant_id == tid,
            ),
        )
        .order_by(lot_sums.c.escola_id, lot_sums.c.produto_id)
    )
    result = await session.execute(stmt)
    reports = compare_quantities(result.all(), tid, epsilon)
    if reports:
        logger.warning("drift_detected", tenant_id=str(tid), pairs=len(reports))
    return reports


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


async def _lock_aggregate(session: AsyncSession, escola_id, produto_id, tid) -> EstoqueEscola:
    """SELECT ... FOR UPDATE the aggregate row, creating it on first movement."""
    result = await session.execute(
        select(EstoqueEscola)
        .where(
            EstoqueEscola.escola_id == escola_id,
            EstoqueEscola.produto_id == produto_id,
        )
        .with_for_update()
    )
    estoque = result.scalar_one_or_none()
    if estoque is None:
        estoque = EstoqueEscola(
            escola_id=escola_id,
            produto_id=produto_id,
            tenant_id=tid,
            quantidade_atual=ZERO,
            tem_lotes_vencidos=False,
            tem_lotes_criticos=False,
        )
        session.add(estoque)
        await session.flush()
        logger.info("estoque_escola_created", escola_id=escola_id, produto_id=produto_id)
        return estoque

    if estoque.tenant_id is None or to_tenant_uuid(estoque.tenant_id) != tid:
        raise CrossTenantAccessError("estoque", estoque.id, tid, estoque.tenant_id)
    return estoque


async def _is_lot_tracked(session: AsyncSession, escola_id, produto_id, tid) -> bool:
    result = await session.execute(
        select(func.count(EstoqueLote.id)).where(
            EstoqueLote.escola_id == escola_id,
            EstoqueLote.produto_id == produto_id,
            EstoqueLote.tenant_id == tid,
        )
    )
    return (result.scalar() or 0) > 0


async def refresh_expiry_flags(session: AsyncSession, estoque: EstoqueEscola, today: Optional[date] = None):
    """Recompute tem_lotes_vencidos / tem_lotes_criticos from the pair's lots."""
    today = today or date.today()
    result = await session.execute(
        select(EstoqueLote.data_validade, EstoqueLote.status).where(
            EstoqueLote.escola_id == estoque.escola_id,
            EstoqueLote.produto_id == estoque.produto_id,
            EstoqueLote.tenant_id == estoque.tenant_id,
            EstoqueLote.quantidade_atual > 0,
            EstoqueLote.status.in_((LOTE_ATIVO, LOTE_VENCIDO)),
        )
    )
    statuses = set()
    for data_validade, status in result.all():
        if status == LOTE_VENCIDO:
            statuses.add(STATUS_VENCIDO)
        else:
            statuses.add(expiry_status(data_validade, today))
    estoque.tem_lotes_vencidos = STATUS_VENCIDO in statuses
    estoque.tem_lotes_criticos = STATUS_CRITICO in statuses


async def allocate_fefo(
    session: AsyncSession,
    escola_id: int,
    produto_id: int,
    tenant_id: Any,
    quantity_needed: Any,
    motivo: Optional[str] = None,
    usuario_id: Optional[str] = None,
    today: Optional[date] = None,
) -> list[Allocation]:
    """Take ``quantity_needed`` from the pair's lots, soonest expiry first.

    Runs in the caller's transaction. The candidate lots are re-read with
    FOR UPDATE so two concurrent outflows cannot take the same quantity.
    Each lot touched gets its own "saida" movement row.
    """
    tid = to_tenant_uuid(tenant_id)
    today = today or date.today()
    result = await session.execute(
        select(EstoqueLote)
        .where(
            EstoqueLote.escola_id == escola_id,
            EstoqueLote.produto_id == produto_id,
            EstoqueLote.tenant_id == tid,
            EstoqueLote.status == LOTE_ATIVO,
            EstoqueLote.quantidade_atual > 0,
            or_(EstoqueLote.data_validade.is_(None), EstoqueLote.data_validade > today),
        )
        .order_by(nulls_last(EstoqueLote.data_validade.asc()), EstoqueLote.id.asc())
        .with_for_update()
    )
    lots = list(result.scalars().all())
    plan = plan_fefo(lots, quantity_needed, today, produto_id)

    allocations: list[Allocation] = []
    for lot, take in plan:
        before = _q(lot.quantidade_atual)
        after = before - take
        lot.quantidade_atual = after
        if after == ZERO:
            lot.status = LOTE_ESGOTADO
        session.add(
            EstoqueMovimentacao(
                lote_id=lot.id,
                produto_id=produto_id,
                tenant_id=tid,
                tipo=SAIDA,
                quantidade=take,
                quantidade_anterior=before,
                quantidade_posterior=after,
                motivo=motivo,
                usuario_id=usuario_id,
            )
        )
        allocations.append(Allocation(lote_id=lot.id, quantidade=take))

    await session.flush()
    logger.info(
        "fefo_allocated",
        escola_id=escola_id,
        produto_id=produto_id,
        tenant_id=str(tid),
        requested=str(_q(quantity_needed)),
        lots=[a.lote_id for a in allocations],
    )
    return allocations


async def _receive_into_lot(
    session: AsyncSession,
    escola_id,
    produto_id,
    tid,
    lote_code: str,
    quantidade: Decimal,
    data_validade: Optional[date],
    data_fabricacao: Optional[date],
    motivo: Optional[str],
    usuario_id: Optional[str],
    today: date,
) -> Allocation:
    code = lote_code.strip()
    if data_fabricacao and data_validade and data_validade <= data_fabricacao:
        raise InvalidMovementError("Expiry date must be after the manufacturing date")
    if data_validade is not None and data_validade <= today:
        raise InvalidMovementError(f"Lot '{code}' expires on {data_validade} and cannot receive stock")

    result = await session.execute(
        select(EstoqueLote)
        .where(
            EstoqueLote.escola_id == escola_id,
            EstoqueLote.produto_id == produto_id,
            EstoqueLote.lote == code,
        )
        .with_for_update()
    )
    lot = result.scalar_one_or_none()

    if lot is None:
        before = ZERO
        lot = EstoqueLote(
            escola_id=escola_id,
            produto_id=produto_id,
            tenant_id=tid,
            lote=code,
            quantidade_inicial=quantidade,
            quantidade_atual=quantidade,
            data_validade=data_validade,
            data_fabricacao=data_fabricacao,
            status=LOTE_ATIVO,
        )
        session.add(lot)
        await session.flush()
    else:
        if lot.tenant_id is None or to_tenant_uuid(lot.tenant_id) != tid:
            raise CrossTenantAccessError("lote", lot.id, tid, lot.tenant_id)
        if lot.status == LOTE_VENCIDO or is_expired(lot, today):
            raise InvalidMovementError(f"Lot '{code}' is expired and cannot receive stock")
        before = _q(lot.quantidade_atual)
        lot.quantidade_atual = before + quantidade
        lot.status = LOTE_ATIVO

    session.add(
        EstoqueMovimentacao(
            lote_id=lot.id,
            produto_id=produto_id,
            tenant_id=tid,
            tipo=ENTRADA,
            quantidade=quantidade,
            quantidade_anterior=before,
            quantidade_posterior=before + quantidade,
            motivo=motivo,
            usuario_id=usuario_id,
        )
    )
    return Allocation(lote_id=lot.id, quantidade=quantidade)


def _check_quantity(tipo: str, quantidade: Any) -> Decimal:
    try:
        qty = _q(quantidade)
    except ArithmeticError:
        raise InvalidMovementError(f"Invalid quantity: {quantidade!r}") from None
    if not qty.is_finite():
        raise InvalidMovementError(f"Invalid quantity: {quantidade!r}")
    if tipo == AJUSTE:
        if qty < ZERO:
            raise InvalidMovementError("Adjustment sets an absolute quantity and cannot be negative")
    elif qty <= ZERO:
        raise InvalidMovementError(f"Quantity for '{tipo}' must be positive")
    return qty


async def apply_movement(
    session: AsyncSession,
    escola_id: int,
    produto_id: int,
    tenant_id: Any,
    tipo: str,
    quantidade: Any,
    motivo: Optional[str] = None,
    *,
    lote: Optional[str] = None,
    data_validade: Optional[date] = None,
    data_fabricacao: Optional[date] = None,
    usuario_id: Optional[str] = None,
    today: Optional[date] = None,
) -> MovementResult:
    """Apply one stock movement atomically.

    entrada: tops up (or creates) lot ``lote`` when given, then increments
             the aggregate. A lot-tracked pair requires ``lote``; expired
             lots never receive stock.
    saida:   FEFO allocation across lots when the pair is lot-tracked,
             aggregate check otherwise; decrements the aggregate by what
             was actually taken.
    ajuste:  sets the aggregate to ``quantidade`` and records the signed delta.

    Ownership is validated before the transaction opens, so a rejected call
    leaves no movement row behind.
    """
    tid = to_tenant_uuid(tenant_id)
    tipo = (tipo or "").strip().lower()
    if tipo not in MOVEMENT_TYPES:
        raise InvalidMovementError(f"Unknown movement type: {tipo!r}")
    qty = _check_quantity(tipo, quantidade)
    today = today or date.today()

    await validate_inventory_operation(session, tid, escola_id, produto_id)

    async with transaction(session, operation=f"movimentacao_{tipo}"):
        estoque = await _lock_aggregate(session, escola_id, produto_id, tid)
        before = _q(estoque.quantidade_atual)
        affected: list[Allocation] = []
        lots_changed = False

        if tipo == ENTRADA:
            if lote:
                affected.append(
                    await _receive_into_lot(
                        session, escola_id, produto_id, tid, lote, qty,
                        data_validade, data_fabricacao, motivo, usuario_id, today,
                    )
                )
                lots_changed = True
            else:
                if await _is_lot_tracked(session, escola_id, produto_id, tid):
                    raise InvalidMovementError(
                        f"School {escola_id} / product {produto_id} is lot-tracked; "
                        "an entrada must name a lote"
                    )
                session.add(
                    EstoqueMovimentacao(
                        lote_id=None,
                        produto_id=produto_id,
                        tenant_id=tid,
                        tipo=ENTRADA,
                        quantidade=qty,
                        quantidade_anterior=before,
                        quantidade_posterior=before + qty,
                        motivo=motivo,
                        usuario_id=usuario_id,
                    )
                )
            moved = qty
            after = before + qty

        elif tipo == SAIDA:
            if await _is_lot_tracked(session, escola_id, produto_id, tid):
                affected = await allocate_fefo(
                    session, escola_id, produto_id, tid, qty, motivo, usuario_id, today
                )
                moved = sum((a.quantidade for a in affected), ZERO)
                lots_changed = True
            else:
                if before < qty:
                    raise InsufficientStockError(produto_id, qty, before)
                session.add(
                    EstoqueMovimentacao(
                        lote_id=None,
                        produto_id=produto_id,
                        tenant_id=tid,
                        tipo=SAIDA,
                        quantidade=qty,
                        quantidade_anterior=before,
                        quantidade_posterior=before - qty,
                        motivo=motivo,
                        usuario_id=usuario_id,
                    )
                )
                moved = qty
            after = before - moved
            if after < ZERO:
                # Lots hold more than the aggregate: drift, refuse rather than go negative
                raise InsufficientStockError(produto_id, moved, before)

        else:
            after = qty
            moved = after - before
            session.add(
                EstoqueMovimentacao(
                    lote_id=None,
                    produto_id=produto_id,
                    tenant_id=tid,
                    tipo=AJUSTE,
                    quantidade=moved,
                    quantidade_anterior=before,
                    quantidade_posterior=after,
                    motivo=motivo,
                    usuario_id=usuario_id,
                )
            )

        estoque.quantidade_atual = after
        session.add(
            EstoqueEscolaHistorico(
                estoque_escola_id=estoque.id,
                escola_id=escola_id,
                produto_id=produto_id,
                tenant_id=tid,
                tipo_movimentacao=tipo,
                quantidade_anterior=before,
                quantidade_movimentada=moved,
                quantidade_posterior=after,
                motivo=motivo,
                usuario_id=usuario_id,
            )
        )
        if lots_changed:
            await refresh_expiry_flags(session, estoque, today)
        await session.flush()

    logger.info(
        "movimentacao_applied",
        tipo=tipo,
        escola_id=escola_id,
        produto_id=produto_id,
        tenant_id=str(tid),
        quantidade_anterior=str(before),
        quantidade_posterior=str(after),
        lotes=len(affected),
    )
    return MovementResult(
        tipo=tipo,
        escola_id=escola_id,
        produto_id=produto_id,
        tenant_id=str(tid),
        quantidade_anterior=before,
        new_aggregate=after,
        quantidade_movimentada=moved,
        affected_lots=affected,
    )


async def correct_drift(
    session: AsyncSession,
    escola_id: int,
    produto_id: int,
    tenant_id: Any,
    motivo: Optional[str] = None,
    usuario_id: Optional[str] = None,
) -> MovementResult:
    """Operator correction: set the aggregate to the active-lot sum via an "ajuste".

    Only the lots-to-aggregate direction is offered; the lot ledger is never
    rewritten from the counter.
    """
    tid = to_tenant_uuid(tenant_id)
    count, total = await _active_lot_totals(session, escola_id, produto_id, tid)
    if not count:
        raise InvalidMovementError(
            f"School {escola_id} / product {produto_id} has no active lots to reconcile from"
        )
    logger.info(
        "drift_correction_requested",
        escola_id=escola_id,
        produto_id=produto_id,
        tenant_id=str(tid),
        lots=str(total),
    )
    return await apply_movement(
        session,
        escola_id,
        produto_id,
        tid,
        AJUSTE,
        total,
        motivo or "Correção de divergência entre lotes e estoque agregado",
        usuario_id=usuario_id,
    )


async def expire_lots(
    session: AsyncSession,
    tenant_id: Any = None,
    today: Optional[date] = None,
) -> int:
    """Move active lots whose expiry date has passed to ``vencido``.

    Quantities are left untouched, so an expired lot leaves the active sum
    and shows up as drift until an operator adjusts the aggregate.
    """
    today = today or date.today()
    async with transaction(session, operation="expire_lots"):
        q = select(EstoqueLote).where(
            EstoqueLote.status == LOTE_ATIVO,
            EstoqueLote.data_validade.is_not(None),
            EstoqueLote.data_validade <= today,
        )
        if tenant_id is not None:
            q = q.where(EstoqueLote.tenant_id == to_tenant_uuid(tenant_id))
        result = await session.execute(q.with_for_update())
        lots = list(result.scalars().all())

        pairs: set[tuple[int, int]] = set()
        for lot in lots:
            lot.status = LOTE_VENCIDO
            pairs.add((lot.escola_id, lot.produto_id))

        for escola_id, produto_id in sorted(pairs):
            est_result = await session.execute(
                select(EstoqueEscola)
                .where(
                    EstoqueEscola.escola_id == escola_id,
                    EstoqueEscola.produto_id == produto_id,
                )
                .with_for_update()
            )
            estoque = est_result.scalar_one_or_none()
            if estoque is not None:
                await refresh_expiry_flags(session, estoque, today)
        await session.flush()

    if lots:
        logger.info("lots_expired", count=len(lots), tenant_id=str(tenant_id) if tenant_id else None)
    return len(lots)
