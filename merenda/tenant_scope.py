"""
Entity ownership model: which tables carry tenant identity and which foreign
keys must agree on tenant.

This is plain data. The ownership validator, the migration engine and the
integrity auditor all read it; none of them infer relationships from the
live schema. Table names used in dynamic SQL must come from here.
"""

from dataclasses import dataclass, field
from typing import Iterable, Optional

TENANT_COLUMN = "tenant_id"
TENANTS_TABLE = "tenants"


@dataclass(frozen=True)
class TenantForeignKey:
    column: str
    ref_table: str
    ref_column: str = "id"
    nullable: bool = False


@dataclass(frozen=True)
class ScopedTable:
    name: str
    entity_kind: str
    foreign_keys: tuple[TenantForeignKey, ...] = field(default_factory=tuple)
    tenant_column: str = TENANT_COLUMN
    primary_key: str = "id"

    @property
    def depends_on(self) -> tuple[str, ...]:
        seen: list[str] = []
        for fk in self.foreign_keys:
            if fk.ref_table != self.name and fk.ref_table not in seen:
                seen.append(fk.ref_table)
        return tuple(seen)


# Declared in dependency order. The first foreign key of each table is the
# mandatory parent used to derive a missing tenant id.
SCOPED_TABLES: dict[str, ScopedTable] = {
    t.name: t
    for t in (
        ScopedTable("escolas", "escola"),
        ScopedTable("produtos", "produto"),
        ScopedTable(
            "estoque_escolas",
            "estoque",
            (
                TenantForeignKey("escola_id", "escolas"),
                TenantForeignKey("produto_id", "produtos"),
            ),
        ),
        ScopedTable(
            "estoque_lotes",
            "lote",
            (
                TenantForeignKey("escola_id", "escolas"),
                TenantForeignKey("produto_id", "produtos"),
            ),
        ),
        ScopedTable(
            "estoque_movimentacoes",
            "movimentacao",
            (
                TenantForeignKey("produto_id", "produtos"),
                TenantForeignKey("lote_id", "estoque_lotes", nullable=True),
            ),
        ),
        ScopedTable(
            "estoque_escolas_historico",
            "historico",
            (
                TenantForeignKey("estoque_escola_id", "estoque_escolas"),
                TenantForeignKey("escola_id", "escolas"),
                TenantForeignKey("produto_id", "produtos"),
            ),
        ),
    )
}

ENTITY_KINDS: dict[str, str] = {t.entity_kind: t.name for t in SCOPED_TABLES.values()}

# Aliases accepted from callers (English names used by API clients and scripts)
_KIND_ALIASES = {
    "school": "escola",
    "product": "produto",
    "inventory": "estoque",
    "batch": "lote",
    "movement": "movimentacao",
    "history": "historico",
}


def normalize_kind(kind: str) -> str:
    k = kind.strip().lower()
    k = _KIND_ALIASES.get(k, k)
    if k not in ENTITY_KINDS:
        raise KeyError(f"Unknown entity kind: {kind}")
    return k


def get_scoped_table(table_name: str) -> ScopedTable:
    try:
        return SCOPED_TABLES[table_name]
    except KeyError:
        raise KeyError(f"Table '{table_name}' is not a tenant-scoped table") from None


def dependencies_of(table_name: str) -> tuple[str, ...]:
    """Tables that must be migrated before ``table_name``, transitively."""
    out: list[str] = []

    def visit(name: str):
        for dep in get_scoped_table(name).depends_on:
            if dep not in out:
                visit(dep)
                out.append(dep)

    visit(table_name)
    return tuple(out)


def migration_order(tables: Optional[Iterable[str]] = None) -> list[str]:
    """Order ``tables`` (default: all) so every table follows its dependencies.

    Dependencies that were not requested are not added; callers decide
    whether to migrate them. Raises ValueError on a dependency cycle.
    """
    requested = list(SCOPED_TABLES) if tables is None else list(dict.fromkeys(tables))
    for name in requested:
        get_scoped_table(name)
    wanted = set(requested)

    ordered: list[str] = []
    visiting: set[str] = set()

    def visit(name: str):
        if name in ordered:
            return
        if name in visiting:
            raise ValueError(f"Dependency cycle at table '{name}'")
        visiting.add(name)
        for dep in get_scoped_table(name).depends_on:
            if dep in wanted:
                visit(dep)
        visiting.discard(name)
        ordered.append(name)

    for name in requested:
        visit(name)
    return ordered


def tenant_foreign_keys() -> list[tuple[ScopedTable, TenantForeignKey]]:
    """Every (child table, fk) pair whose two sides must share a tenant."""
    return [
        (table, fk)
        for table in SCOPED_TABLES.values()
        for fk in table.foreign_keys
        if fk.ref_table in SCOPED_TABLES
    ]
