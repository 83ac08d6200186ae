from datetime import timedelta

import pytest

from stockledger.errors import InvalidMovement, ProductNotFound, VariantNotFound
from stockledger.services import analytics_service, movement_service, sales_service


@pytest.fixture
def history(make_product, make_variant, past):
    """Two products; one with two variants, each with a few dated movements."""
    tees = make_product(name="Classic Tee", sku="TEE")
    mugs = make_product(name="Coffee Mug", sku="MUG")
    tee_s = make_variant(tees, sku="TEE-S", stock=10, occurred_at=past)
    tee_m = make_variant(tees, sku="TEE-M", stock=5, occurred_at=past + timedelta(hours=1))
    mug = make_variant(mugs, sku="MUG-1", stock=8, occurred_at=past + timedelta(hours=2))

    movement_service.record_movement(tee_s.id, "SALE", -2, occurred_at=past + timedelta(days=1))
    movement_service.record_movement(tee_s.id, "RESTOCK", 6, occurred_at=past + timedelta(days=2))
    movement_service.record_movement(mug.id, "SHRINKAGE", -1, reason="damaged", occurred_at=past + timedelta(days=3))
    movement_service.record_movement(tee_m.id, "ADJUSTMENT", -1, occurred_at=past + timedelta(days=4))

    return {"tees": tees, "mugs": mugs, "tee_s": tee_s, "tee_m": tee_m, "mug": mug, "past": past}


def test_list_is_newest_first_and_paginated(history):
    page = analytics_service.list_movements(per_page=3)

    assert page.total == 7
    assert page.pages == 3
    times = [m.occurred_at for m in page.items]
    assert times == sorted(times, reverse=True)

    last_page = analytics_service.list_movements(page=3, per_page=3)
    assert len(last_page.items) == 1


def test_list_filters_by_type(history):
    page = analytics_service.list_movements(movement_type="restock")
    assert page.total == 4
    assert {m.type.value for m in page.items} == {"RESTOCK"}


def test_list_date_range_is_inclusive(history):
    past = history["past"]
    page = analytics_service.list_movements(start=past + timedelta(days=1), end=past + timedelta(days=3))
    assert page.total == 3


def test_search_matches_product_and_variant_sku(history):
    assert analytics_service.list_movements(search="coffee").total == 2
    assert analytics_service.list_movements(search="tee-m").total == 2
    assert analytics_service.list_movements(search="TEE").total == 5


def test_list_by_product_and_variant(history):
    assert analytics_service.list_movements(product_id=history["tees"].id).total == 5
    assert analytics_service.list_movements(variant_id=history["mug"].id).total == 2


def test_invalid_type_filter(history):
    with pytest.raises(InvalidMovement):
        analytics_service.list_movements(movement_type="BOGUS")


def test_recent_movements(history):
    rows = analytics_service.recent_movements(limit=2)
    assert [r.type.value for r in rows] == ["ADJUSTMENT", "SHRINKAGE"]


def test_variant_history(history):
    rows = analytics_service.variant_history(history["tee_s"].id)
    assert [r.type.value for r in rows] == ["RESTOCK", "SALE", "RESTOCK"]

    with pytest.raises(VariantNotFound):
        analytics_service.variant_history(99999)


def test_product_history_spans_variants(history):
    rows = analytics_service.product_history(history["tees"].id)
    assert {r.variant_id for r in rows} == {history["tee_s"].id, history["tee_m"].id}

    with pytest.raises(ProductNotFound):
        analytics_service.product_history(99999)


def test_restock_history_aggregates(history):
    summary = analytics_service.restock_history(history["tee_s"].id)

    assert summary["total_restocks"] == 2
    assert summary["total_quantity"] == 16
    assert summary["avg_quantity"] == 8
    assert len(summary["restocks"]) == 2


def test_restock_history_without_restocks(variant):
    summary = analytics_service.restock_history(variant.id)
    assert summary["total_restocks"] == 0
    assert summary["avg_quantity"] == 0


def test_movements_for_reference(make_variant):
    v = make_variant(stock=5)
    sale = sales_service.record_sale([{"variant_id": v.id, "quantity": 2, "unit_price_cents": 100}])

    rows = analytics_service.movements_for_reference(sale.id)

    assert len(rows) == 1
    assert rows[0].quantity == -2
