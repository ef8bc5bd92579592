"""
Typed errors for the tenant isolation and inventory-consistency engine.

Every error carries a class-level ``code`` (machine readable, safe to put in
an API response) and ``http_status`` used by the HTTP adapter, plus the
structured data the caller needs to react without parsing messages.

    TenantEngineError
    +-- OwnershipViolation
    |   +-- CrossTenantAccessError
    +-- TenantContextMissingError
    +-- NotFoundError
    +-- InvalidMovementError
    +-- InsufficientStockError
    +-- PrerequisiteError
    |   +-- InvalidMigrationTransitionError
    +-- BackupIntegrityError
    +-- TransactionFailure

Ownership violations are never retried automatically. Migration and audit
errors are collected per table into the run result instead of aborting.
"""

from decimal import Decimal
from typing import Any, Optional


class TenantEngineError(Exception):
    """Base class for all engine errors."""

    code: str = "TENANT_ENGINE_ERROR"
    http_status: int = 500

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": str(self)}


class OwnershipViolation(TenantEngineError):
    """An entity is not owned by the tenant acting on it."""

    code: str = "TENANT_OWNERSHIP_VIOLATION"
    http_status: int = 403

    def __init__(self, entity_kind: str, entity_id: Any, tenant_id: Any, message: Optional[str] = None):
        self.entity_kind = entity_kind
        self.entity_id = entity_id
        self.tenant_id = str(tenant_id) if tenant_id is not None else None
        super().__init__(
            message or f"{entity_kind} {entity_id} does not belong to tenant {tenant_id}"
        )


class CrossTenantAccessError(OwnershipViolation):
    """Two tenants meet where only one is allowed.

    Raised when a caller of tenant A references a tenant B entity, or when two
    entities that must share a tenant (school and product of a stock row)
    disagree.
    """

    code: str = "CROSS_TENANT_ACCESS"

    def __init__(
        self,
        entity_kind: str,
        entity_id: Any,
        expected_tenant_id: Any,
        actual_tenant_id: Any,
        message: Optional[str] = None,
    ):
        self.expected_tenant_id = str(expected_tenant_id) if expected_tenant_id is not None else None
        self.actual_tenant_id = str(actual_tenant_id) if actual_tenant_id is not None else None
        super().__init__(
            entity_kind,
            entity_id,
            expected_tenant_id,
            message
            or (
                f"Cross-tenant access denied: {entity_kind} {entity_id} belongs to "
                f"tenant {actual_tenant_id}, not {expected_tenant_id}"
            ),
        )


class TenantContextMissingError(TenantEngineError):
    code: str = "TENANT_CONTEXT_MISSING"
    http_status: int = 400

    def __init__(self, message: str = "Tenant context is missing or invalid"):
        super().__init__(message)


class NotFoundError(TenantEngineError):
    code: str = "ENTITY_NOT_FOUND"
    http_status: int = 404

    def __init__(self, entity_kind: str, entity_id: Any):
        self.entity_kind = entity_kind
        self.entity_id = entity_id
        super().__init__(f"{entity_kind} {entity_id} not found")


class InvalidMovementError(TenantEngineError):
    code: str = "INVALID_MOVEMENT"
    http_status: int = 400


class InsufficientStockError(TenantEngineError):
    code: str = "INSUFFICIENT_STOCK"
    http_status: int = 409

    def __init__(self, produto_id: Any, requested: Decimal, available: Decimal):
        self.produto_id = produto_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for product {produto_id}: "
            f"requested {requested}, available {available}"
        )

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["requested"] = str(self.requested)
        data["available"] = str(self.available)
        return data


class PrerequisiteError(TenantEngineError):
    """Migration preconditions unmet; an operator must fix schema or tenant state."""

    code: str = "MIGRATION_PREREQUISITE"
    http_status: int = 412


class InvalidMigrationTransitionError(PrerequisiteError):
    code: str = "INVALID_MIGRATION_TRANSITION"

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Migration cannot move from '{current}' to '{target}'")


class BackupIntegrityError(TenantEngineError):
    """Rollback target is missing, empty or incompatible; rollback refused."""

    code: str = "BACKUP_INTEGRITY"
    http_status: int = 409

    def __init__(self, backup_table_name: Optional[str], reason: str):
        self.backup_table_name = backup_table_name
        self.reason = reason
        super().__init__(f"Backup {backup_table_name or '<none>'} unusable: {reason}")


class TransactionFailure(TenantEngineError):
    """Database failure during a mutating operation; nothing was persisted."""

    code: str = "TRANSACTION_FAILURE"
    http_status: int = 503

    def __init__(self, operation: str, cause: BaseException):
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation} failed and was rolled back: {cause}")
