"""
Ownership validator: request-time tenant isolation checks.

Every inventory mutation calls into this module before writing anything. The
tenant id passed in always comes from the authenticated principal, never from
a request body. All functions are read-only and use the caller's session.
"""

import uuid
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from merenda.exceptions import (
    CrossTenantAccessError,
    NotFoundError,
    OwnershipViolation,
    TenantContextMissingError,
)
from merenda.models.escola import Escola
from merenda.models.estoque import (
    EstoqueEscola,
    EstoqueEscolaHistorico,
    EstoqueLote,
    EstoqueMovimentacao,
)
from merenda.models.produto import Produto
from merenda.models.tenant import Tenant, TENANT_ACTIVE
from merenda.tenant_scope import normalize_kind

logger = structlog.get_logger()

ENTITY_MODELS = {
    "escola": Escola,
    "produto": Produto,
    "estoque": EstoqueEscola,
    "lote": EstoqueLote,
    "movimentacao": EstoqueMovimentacao,
    "historico": EstoqueEscolaHistorico,
}


def to_tenant_uuid(tenant_id: Any) -> uuid.UUID:
    if tenant_id is None or tenant_id == "":
        raise TenantContextMissingError()
    if isinstance(tenant_id, uuid.UUID):
        return tenant_id
    try:
        return uuid.UUID(str(tenant_id))
    except (ValueError, TypeError):
        raise TenantContextMissingError(f"Invalid tenant id: {tenant_id!r}") from None


def _model_for(entity_kind: str):
    try:
        return normalize_kind(entity_kind), ENTITY_MODELS[normalize_kind(entity_kind)]
    except KeyError:
        raise ValueError(f"Unknown entity kind: {entity_kind}") from None


def _check_owner(kind: str, entity_id: Any, expected: uuid.UUID, actual: Optional[uuid.UUID]):
    if actual is None:
        logger.warning("unscoped_entity_access", entity_kind=kind, entity_id=entity_id)
        raise OwnershipViolation(
            kind, entity_id, expected,
            message=f"{kind} {entity_id} is not scoped to any tenant",
        )
    if to_tenant_uuid(actual) != expected:
        logger.warning(
            "cross_tenant_access_denied",
            entity_kind=kind,
            entity_id=entity_id,
            tenant_id=str(expected),
            owner_tenant_id=str(actual),
        )
        raise CrossTenantAccessError(kind, entity_id, expected, actual)


async def fetch_entity_tenant(session: AsyncSession, entity_kind: str, entity_id: Any) -> Optional[uuid.UUID]:
    """Return the tenant_id column of an entity; NotFoundError if the row is missing."""
    kind, model = _model_for(entity_kind)
    result = await session.execute(
        select(model.id, model.tenant_id).where(model.id == entity_id)
    )
    row = result.first()
    if row is None:
        raise NotFoundError(kind, entity_id)
    return row.tenant_id


async def validate_ownership(
    session: AsyncSession,
    entity_kind: str,
    entity_id: Any,
    tenant_id: Any,
) -> None:
    """Fail unless ``entity_id`` exists and belongs to ``tenant_id``."""
    expected = to_tenant_uuid(tenant_id)
    kind, _ = _model_for(entity_kind)
    actual = await fetch_entity_tenant(session, kind, entity_id)
    _check_owner(kind, entity_id, expected, actual)


async def validate_mixed_entities(
    session: AsyncSession,
    refs: Iterable[tuple[str, Any]],
    tenant_id: Any,
) -> None:
    """Validate a heterogeneous set of (kind, id) references, fail-fast.

    The raised error names the offending reference through its
    ``entity_kind`` / ``entity_id`` attributes.
    """
    expected = to_tenant_uuid(tenant_id)
    seen: set[tuple[str, str]] = set()
    for entity_kind, entity_id in refs:
        kind, _ = _model_for(entity_kind)
        key = (kind, str(entity_id))
        if key in seen:
            continue
        seen.add(key)
        await validate_ownership(session, kind, entity_id, expected)


async def validate_bulk_ownership(
    session: AsyncSession,
    entity_kind: str,
    entity_ids: Sequence[Any],
    tenant_id: Any,
) -> None:
    """Validate many ids of one kind with a single query.

    Missing ids are reported before foreign ones; every offending id is
    listed on the error.
    """
    expected = to_tenant_uuid(tenant_id)
    kind, model = _model_for(entity_kind)
    unique_ids = list(dict.fromkeys(entity_ids))
    if not unique_ids:
        return

    result = await session.execute(
        select(model.id, model.tenant_id).where(model.id.in_(unique_ids))
    )
    found = {row.id: row.tenant_id for row in result.all()}

    missing = [i for i in unique_ids if i not in found]
    if missing:
        raise NotFoundError(kind, missing[0] if len(missing) == 1 else missing)

    foreign = [i for i in unique_ids if found[i] is None or to_tenant_uuid(found[i]) != expected]
    if foreign:
        first_owner = found[foreign[0]]
        logger.warning(
            "cross_tenant_bulk_access_denied",
            entity_kind=kind,
            entity_ids=[str(i) for i in foreign],
            tenant_id=str(expected),
        )
        raise CrossTenantAccessError(
            kind,
            foreign[0] if len(foreign) == 1 else foreign,
            expected,
            first_owner,
            message=f"{kind}(s) {foreign} do not belong to tenant {expected}",
        )


async def validate_school_product_tenant_consistency(
    session: AsyncSession,
    escola_id: Any,
    produto_id: Any,
) -> uuid.UUID:
    """Assert the school and the product share one tenant, whatever the caller's.

    Returns that tenant id.
    """
    escola_tenant = await fetch_entity_tenant(session, "escola", escola_id)
    produto_tenant = await fetch_entity_tenant(session, "produto", produto_id)

    if escola_tenant is None or produto_tenant is None:
        kind, entity_id = (
            ("escola", escola_id) if escola_tenant is None else ("produto", produto_id)
        )
        raise OwnershipViolation(
            kind, entity_id, None,
            message=f"{kind} {entity_id} is not scoped to any tenant",
        )
    if to_tenant_uuid(escola_tenant) != to_tenant_uuid(produto_tenant):
        logger.error(
            "school_product_tenant_mismatch",
            escola_id=escola_id,
            produto_id=produto_id,
            escola_tenant_id=str(escola_tenant),
            produto_tenant_id=str(produto_tenant),
        )
        raise CrossTenantAccessError(
            "escola-produto",
            f"{escola_id}-{produto_id}",
            escola_tenant,
            produto_tenant,
            message=(
                f"School {escola_id} (tenant {escola_tenant}) and product {produto_id} "
                f"(tenant {produto_tenant}) belong to different tenants"
            ),
        )
    return to_tenant_uuid(escola_tenant)


async def validate_inventory_operation(
    session: AsyncSession,
    tenant_id: Any,
    escola_id: Any,
    produto_id: Any,
    lote_ids: Iterable[Any] = (),
) -> None:
    """Full pre-mutation check for one school x product stock operation."""
    refs: list[tuple[str, Any]] = [("escola", escola_id), ("produto", produto_id)]
    refs.extend(("lote", lote_id) for lote_id in lote_ids)
    await validate_mixed_entities(session, refs, tenant_id)
    await validate_school_product_tenant_consistency(session, escola_id, produto_id)


async def get_tenant(session: AsyncSession, tenant_id: Any) -> Optional[Tenant]:
    result = await session.execute(
        select(Tenant).where(Tenant.id == to_tenant_uuid(tenant_id))
    )
    return result.scalar_one_or_none()


async def require_active_tenant(session: AsyncSession, tenant_id: Any) -> Tenant:
    tenant = await get_tenant(session, tenant_id)
    if tenant is None:
        raise NotFoundError("tenant", str(tenant_id))
    if tenant.status != TENANT_ACTIVE:
        raise OwnershipViolation(
            "tenant", str(tenant_id), tenant_id,
            message=f"Tenant {tenant_id} is {tenant.status}",
        )
    return tenant
