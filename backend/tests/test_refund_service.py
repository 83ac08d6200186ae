"""
Refund Reconciler tests.

Scenario walk-through (restock 50 -> sell 3 -> refund 2 -> refund 2 again)
plus status transitions, discounted amounts and atomicity.
"""

from datetime import timedelta

import pytest

from stockledger.errors import (
    InvalidRefundRequest,
    RefundExceedsAvailable,
    SaleItemNotFound,
    TransactionNotFound,
    TransactionStateError,
)
from stockledger.extensions import db
from stockledger.models import (
    MovementType,
    SaleItem,
    SaleTransaction,
    StockMovement,
    Variant,
    TRANSACTION_STATUS_PENDING,
)
from stockledger.services import movement_service, refund_service, sales_service
from stockledger.services.audit_service import audit_variant
from stockledger.time_utils import to_utc_naive


def _sell(variant, quantity, *, unit_price_cents=1000, final_price_cents=None):
    return sales_service.record_sale([{
        "variant_id": variant.id,
        "quantity": quantity,
        "unit_price_cents": unit_price_cents,
        "final_price_cents": final_price_cents,
    }])


def _movement_count():
    return StockMovement.query.count()


@pytest.fixture
def stocked(variant):
    movement_service.record_movement(variant.id, "RESTOCK", 50)
    return variant


def test_partial_refund_restores_stock(stocked):
    sale = _sell(stocked, 3)
    line = sale.items[0]
    assert db.session.get(Variant, stocked.id).stock == 47

    result = refund_service.refund_items(sale.id, [{"sale_item_id": line.id, "quantity_to_refund": 2}])

    assert result.refunded_amount_cents == 2000
    assert result.refunded_items == {line.id: 2}
    assert result.transaction.status == "partially_refunded"
    assert db.session.get(Variant, stocked.id).stock == 49

    [movement] = result.movements
    assert movement.type is MovementType.RETURN
    assert movement.quantity == 2
    assert movement.previous_stock == 47
    assert movement.reference_id == str(sale.id)
    assert movement.reason == refund_service.REASON_PARTIAL_REFUND
    assert movement.notes == f"Partial Refund: 2 of 3 units from transaction {sale.id}"

    refreshed = db.session.get(SaleItem, line.id)
    assert refreshed.refunded_quantity == 2
    assert refreshed.refunded_at is not None



def test_refunded_at_is_the_refund_event_time(make_variant, past):
    v = make_variant(stock=5, occurred_at=past)
    sale = sales_service.record_sale(
        [{"variant_id": v.id, "quantity": 2, "unit_price_cents": 900}],
        occurred_at=past + timedelta(hours=1),
    )
    line_id = sale.items[0].id

    refund_service.refund_transaction(sale.id, occurred_at=past + timedelta(hours=3))

    refreshed = db.session.get(SaleItem, line_id)
    assert to_utc_naive(refreshed.refunded_at) == past + timedelta(hours=3)

def test_refund_beyond_remaining_fails_without_side_effects(stocked):
    sale = _sell(stocked, 3)
    line_id = sale.items[0].id
    refund_service.refund_items(sale.id, [{"sale_item_id": line_id, "quantity_to_refund": 2}])
    before = _movement_count()

    with pytest.raises(RefundExceedsAvailable) as exc:
        refund_service.refund_items(sale.id, [{"sale_item_id": line_id, "quantity_to_refund": 2}])

    assert exc.value.details["available"] == 1
    assert _movement_count() == before
    assert db.session.get(Variant, stocked.id).stock == 49
    assert db.session.get(SaleItem, line_id).refunded_quantity == 2


def test_refunding_fully_refunded_item_fails(stocked, make_variant):
    other = make_variant(stock=5)
    sale = sales_service.record_sale([
        {"variant_id": stocked.id, "quantity": 2, "unit_price_cents": 500},
        {"variant_id": other.id, "quantity": 1, "unit_price_cents": 300},
    ])
    line_id = sale.items[0].id
    refund_service.refund_items(sale.id, [{"sale_item_id": line_id, "quantity_to_refund": 2}])
    before = _movement_count()

    with pytest.raises(RefundExceedsAvailable):
        refund_service.refund_items(sale.id, [{"sale_item_id": line_id, "quantity_to_refund": 1}])
    assert _movement_count() == before


def test_status_moves_to_refunded_when_all_lines_done(stocked, make_variant):
    other = make_variant(stock=5)
    sale = sales_service.record_sale([
        {"variant_id": stocked.id, "quantity": 2, "unit_price_cents": 500},
        {"variant_id": other.id, "quantity": 1, "unit_price_cents": 300},
    ])
    first, second = sale.items

    result = refund_service.refund_items(sale.id, [{"sale_item_id": first.id, "quantity_to_refund": 2}])
    assert result.transaction.status == "partially_refunded"

    result = refund_service.refund_items(sale.id, [{"sale_item_id": second.id, "quantity_to_refund": 1}])
    assert result.transaction.status == "refunded"

    with pytest.raises(TransactionStateError):
        refund_service.refund_items(sale.id, [{"sale_item_id": first.id, "quantity_to_refund": 1}])


def test_full_refund(stocked, make_variant):
    other = make_variant(stock=5)
    sale = sales_service.record_sale([
        {"variant_id": stocked.id, "quantity": 4, "unit_price_cents": 500},
        {"variant_id": other.id, "quantity": 2, "unit_price_cents": 300, "final_price_cents": 250},
    ])
    first = sale.items[0]
    refund_service.refund_items(sale.id, [{"sale_item_id": first.id, "quantity_to_refund": 1}])

    result = refund_service.refund_transaction(sale.id)

    assert result.transaction.status == "refunded"
    assert result.refunded_amount_cents == 3 * 500 + 2 * 250
    assert all(m.reason == refund_service.REASON_FULL_REFUND for m in result.movements)
    assert db.session.get(Variant, stocked.id).stock == 50
    assert db.session.get(Variant, other.id).stock == 5
    assert audit_variant(stocked.id).is_consistent
    assert audit_variant(other.id).is_consistent

    with pytest.raises(TransactionStateError):
        refund_service.refund_transaction(sale.id)


def test_discounted_price_drives_refund_amount(stocked):
    sale = _sell(stocked, 4, unit_price_cents=1000, final_price_cents=800)
    result = refund_service.refund_items(sale.id, [{"sale_item_id": sale.items[0].id, "quantity_to_refund": 3}])
    assert result.refunded_amount_cents == 2400


def test_duplicate_lines_are_summed(stocked):
    sale = _sell(stocked, 3)
    line_id = sale.items[0].id

    with pytest.raises(RefundExceedsAvailable):
        refund_service.refund_items(sale.id, [
            {"sale_item_id": line_id, "quantity_to_refund": 2},
            {"sale_item_id": line_id, "quantity_to_refund": 2},
        ])

    result = refund_service.refund_items(sale.id, [
        {"sale_item_id": line_id, "quantity_to_refund": 1},
        {"sale_item_id": line_id, "quantity_to_refund": 2},
    ])
    assert result.transaction.status == "refunded"


def test_invalid_line_aborts_whole_request(stocked, make_variant):
    other = make_variant(stock=5)
    sale = sales_service.record_sale([
        {"variant_id": stocked.id, "quantity": 2, "unit_price_cents": 500},
        {"variant_id": other.id, "quantity": 1, "unit_price_cents": 300},
    ])
    first, second = sale.items
    before = _movement_count()

    with pytest.raises(RefundExceedsAvailable):
        refund_service.refund_items(sale.id, [
            {"sale_item_id": first.id, "quantity_to_refund": 1},
            {"sale_item_id": second.id, "quantity_to_refund": 5},
        ])

    assert _movement_count() == before
    assert db.session.get(SaleItem, first.id).refunded_quantity == 0
    assert db.session.get(SaleTransaction, sale.id).status == "completed"


@pytest.mark.parametrize("quantity", [0, -1, "2", 1.5])
def test_quantity_must_be_positive_integer(stocked, quantity):
    sale = _sell(stocked, 3)
    with pytest.raises(RefundExceedsAvailable):
        refund_service.refund_items(sale.id, [{"sale_item_id": sale.items[0].id, "quantity_to_refund": quantity}])


def test_item_from_another_transaction(stocked):
    sale = _sell(stocked, 1)
    other_sale = _sell(stocked, 1)
    with pytest.raises(SaleItemNotFound):
        refund_service.refund_items(sale.id, [{"sale_item_id": other_sale.items[0].id, "quantity_to_refund": 1}])


def test_empty_request(stocked):
    sale = _sell(stocked, 1)
    with pytest.raises(InvalidRefundRequest):
        refund_service.refund_items(sale.id, [])


def test_unknown_transaction(db_session):
    with pytest.raises(TransactionNotFound):
        refund_service.refund_items(123456, [{"sale_item_id": 1, "quantity_to_refund": 1}])


def test_pending_transaction_not_refundable(db_session):
    sale = SaleTransaction(status=TRANSACTION_STATUS_PENDING)
    db.session.add(sale)
    db.session.commit()

    with pytest.raises(TransactionStateError):
        refund_service.refund_transaction(sale.id)


def test_variantless_line_refunds_without_movement(make_product):
    product = make_product()
    sale = sales_service.record_sale([{"product_id": product.id, "quantity": 2, "unit_price_cents": 100}])
    line = sale.items[0]
    assert line.variant_id is None
    before = _movement_count()

    result = refund_service.refund_items(sale.id, [{"sale_item_id": line.id, "quantity_to_refund": 1}])

    assert result.movements == []
    assert result.refunded_amount_cents == 100
    assert _movement_count() == before


def test_refund_summary(stocked):
    sale = _sell(stocked, 3, unit_price_cents=700)
    refund_service.refund_items(sale.id, [{"sale_item_id": sale.items[0].id, "quantity_to_refund": 1}])

    summary = refund_service.get_refund_summary(sale.id)

    assert summary["total_cents"] == 2100
    assert summary["refunded_cents"] == 700
    assert summary["net_cents"] == 1400
    assert summary["is_refundable"] is True
    assert [m["type"] for m in summary["movements"]] == ["SALE", "RETURN"]
