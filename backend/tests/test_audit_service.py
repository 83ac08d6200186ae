"""
Audit engine tests.

Drift and chain breaks are planted with table-level Core statements, which
is exactly the kind of out-of-band write the audit exists to catch.
"""

from datetime import timedelta

import pytest

from stockledger.errors import VariantNotFound
from stockledger.extensions import db
from stockledger.models import StockMovement, Variant
from stockledger.services import audit_service, movement_service, sales_service, refund_service


def _force_stock(variant_id: int, stock: int) -> None:
    db.session.execute(Variant.__table__.update().where(Variant.id == variant_id).values(stock=stock))
    db.session.commit()


def test_clean_history_is_consistent(make_variant):
    v = make_variant(stock=20)
    movement_service.record_movement(v.id, "SALE", -5)
    sale = sales_service.record_sale([{"variant_id": v.id, "quantity": 3, "unit_price_cents": 100}])
    refund_service.refund_items(sale.id, [{"sale_item_id": sale.items[0].id, "quantity_to_refund": 1}])

    result = audit_service.audit_variant(v.id)

    assert result.is_consistent
    assert result.expected_stock == result.actual_stock == 13
    assert result.movement_count == 4
    assert result.drift == 0


def test_direct_stock_write_is_reported_as_drift(make_variant):
    v = make_variant(stock=10)
    _force_stock(v.id, 13)

    result = audit_service.audit_variant(v.id)

    assert not result.is_consistent
    assert result.expected_stock == 10
    assert result.actual_stock == 13
    assert result.drift == 3
    assert result.chain_breaks == []


def test_chain_break_is_located(make_variant):
    v = make_variant(stock=10)
    movement_service.record_movement(v.id, "SALE", -2)
    third = movement_service.record_movement(v.id, "SALE", -3)

    # Rewrite the third row so it no longer starts where the second ended
    db.session.execute(
        StockMovement.__table__.update()
        .where(StockMovement.id == third.id)
        .values(previous_stock=9, quantity=-3, new_stock=6)
    )
    db.session.commit()

    result = audit_service.audit_variant(v.id)

    assert [b.movement_id for b in result.chain_breaks] == [third.id]
    assert result.chain_breaks[0].expected_previous_stock == 8
    assert not result.is_consistent


def test_replay_as_of(make_variant, past):
    v = make_variant(stock=10, occurred_at=past)
    movement_service.record_movement(v.id, "SALE", -4, occurred_at=past + timedelta(days=1))
    movement_service.record_movement(v.id, "RESTOCK", 6, occurred_at=past + timedelta(days=2))

    assert audit_service.replay_stock(v.id, as_of=past) == 10
    assert audit_service.replay_stock(v.id, as_of=past + timedelta(days=1)) == 6
    assert audit_service.replay_stock(v.id) == 12


def test_audit_unknown_variant(db_session):
    with pytest.raises(VariantNotFound):
        audit_service.audit_variant(404)


# =============================================================================
# STOCKOUTS
# =============================================================================

def test_stockout_duration_rounds_up(make_variant, past):
    v = make_variant(stock=5, occurred_at=past)
    out = movement_service.record_movement(v.id, "SALE", -5, occurred_at=past + timedelta(hours=1))
    movement_service.record_movement(v.id, "RESTOCK", 10, occurred_at=past + timedelta(days=2, hours=2))

    [stockout] = audit_service.find_stockouts(v.id)

    assert stockout.movement_id == out.id
    assert stockout.days_out_of_stock == 3
    assert stockout.restock_quantity == 10
    assert not stockout.still_out_of_stock


def test_ongoing_stockout(make_variant, past):
    v = make_variant(stock=2, occurred_at=past)
    movement_service.record_movement(v.id, "SHRINKAGE", -2, occurred_at=past + timedelta(hours=1))

    summary = audit_service.stockout_summary(v.id)

    assert summary["total_stockouts"] == 1
    assert summary["avg_days_out_of_stock"] == 0
    assert summary["history"][0]["still_out_of_stock"] is True
    assert summary["history"][0]["days_out_of_stock"] is None


def test_restock_at_same_instant_recovers_by_id(make_variant, past):
    v = make_variant(stock=1, occurred_at=past)
    when = past + timedelta(hours=1)
    movement_service.record_movement(v.id, "SALE", -1, occurred_at=when)
    movement_service.record_movement(v.id, "RESTOCK", 4, occurred_at=when)

    [stockout] = audit_service.find_stockouts(v.id)

    assert stockout.days_out_of_stock == 0
    assert stockout.restock_quantity == 4


def test_earlier_restock_does_not_count(make_variant, past):
    v = make_variant(stock=1, occurred_at=past)
    movement_service.record_movement(v.id, "SALE", -1, occurred_at=past + timedelta(days=3))

    stockouts = audit_service.find_stockouts(v.id)

    # The initial restock happened before the stockout, so it is not a recovery
    assert stockouts[0].still_out_of_stock


def test_stockout_average(make_variant, past):
    v = make_variant(stock=1, occurred_at=past)
    movement_service.record_movement(v.id, "SALE", -1, occurred_at=past + timedelta(hours=1))
    movement_service.record_movement(v.id, "RESTOCK", 1, occurred_at=past + timedelta(days=1))
    movement_service.record_movement(v.id, "SALE", -1, occurred_at=past + timedelta(days=2))
    movement_service.record_movement(v.id, "RESTOCK", 1, occurred_at=past + timedelta(days=4))

    summary = audit_service.stockout_summary(v.id)

    assert summary["total_stockouts"] == 2
    assert [s["days_out_of_stock"] for s in summary["history"]] == [1, 2]
    assert summary["avg_days_out_of_stock"] == 1.5


# =============================================================================
# SWEEP
# =============================================================================

def test_sweep_reports_only_drifted_variants(make_variant):
    variants = [make_variant(stock=n + 1) for n in range(5)]
    _force_stock(variants[3].id, 99)

    report = audit_service.sweep_audit(chunk_size=2)

    assert report.audited == 5
    assert report.chunks == 3
    assert [r.variant_id for r in report.drifted] == [variants[3].id]
    assert not report.is_clean


def test_sweep_on_clean_ledger(make_variant):
    for n in range(3):
        make_variant(stock=n + 2)

    report = audit_service.sweep_audit(chunk_size=10)

    assert report.is_clean
    assert report.audited == 3


def test_sweep_logs_and_skips_slow_chunks(make_variant):
    for n in range(4):
        make_variant(stock=n + 1)

    report = audit_service.sweep_audit(chunk_size=2, time_limit_seconds=-1)

    assert report.audited == 0
    assert len(report.failed_chunks) == 2
    assert "time limit" in report.failed_chunks[0]["error"]
    assert not report.is_clean
