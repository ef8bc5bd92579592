"""
Unit tests for merenda/tenant_scope.py

Tests: dependency ordering, transitive dependencies, kind aliases,
       the list of tenant-agreeing foreign keys.
"""

import pytest

from merenda.tenant_scope import (
    SCOPED_TABLES,
    dependencies_of,
    get_scoped_table,
    migration_order,
    normalize_kind,
    tenant_foreign_keys,
)


def test_full_order_puts_every_table_after_its_dependencies():
    order = migration_order()
    assert set(order) == set(SCOPED_TABLES)
    for name in order:
        for dep in get_scoped_table(name).depends_on:
            assert order.index(dep) < order.index(name)


def test_subset_order_does_not_add_unrequested_tables():
    order = migration_order(["estoque_lotes", "escolas"])
    assert order == ["escolas", "estoque_lotes"]


def test_subset_order_deduplicates():
    assert migration_order(["produtos", "produtos"]) == ["produtos"]


def test_unknown_table_in_order_raises():
    with pytest.raises(KeyError):
        migration_order(["users"])


def test_history_depends_transitively_on_aggregate_and_its_parents():
    deps = dependencies_of("estoque_escolas_historico")
    assert set(deps) == {"escolas", "produtos", "estoque_escolas"}
    assert deps.index("escolas") < deps.index("estoque_escolas")


def test_movements_depend_on_lots():
    assert "estoque_lotes" in dependencies_of("estoque_movimentacoes")


@pytest.mark.parametrize(
    "alias, expected",
    [("school", "escola"), ("Batch", "lote"), (" produto ", "produto"), ("movement", "movimentacao")],
)
def test_normalize_kind_accepts_aliases(alias, expected):
    assert normalize_kind(alias) == expected


def test_normalize_kind_rejects_unknown():
    with pytest.raises(KeyError):
        normalize_kind("fornecedor")


def test_tenant_foreign_keys_cover_every_scoped_reference():
    pairs = {(t.name, fk.column) for t, fk in tenant_foreign_keys()}
    assert ("estoque_escolas", "escola_id") in pairs
    assert ("estoque_movimentacoes", "lote_id") in pairs
    assert ("estoque_escolas_historico", "estoque_escola_id") in pairs
    assert len(pairs) == 9


def test_first_foreign_key_is_the_mandatory_parent():
    mov = get_scoped_table("estoque_movimentacoes")
    assert mov.foreign_keys[0].column == "produto_id"
    assert mov.foreign_keys[0].nullable is False
    assert mov.foreign_keys[1].nullable is True
