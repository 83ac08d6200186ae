from stockledger.models import Product, SaleItem, StockMovement, Variant
from stockledger.services import audit_service, seed_service


def test_generated_history_passes_audit(db_session):
    report = seed_service.generate_history(products=3, variants_per_product=2, days=30, seed=7, chunk_size=2)

    assert report.failed_chunks == []
    assert report.chunks_committed == 2
    assert report.products_created == 3
    assert report.variants_created == 6
    assert Product.query.count() == 3
    assert Variant.query.count() == 6
    assert StockMovement.query.count() == report.movements_created

    sweep = audit_service.sweep_audit()
    assert sweep.is_clean
    assert sweep.audited == 6


def test_generated_history_respects_invariants(db_session):
    seed_service.generate_history(products=2, variants_per_product=2, days=45, seed=11)

    assert all(v.stock >= 0 for v in Variant.query.all())
    for movement in StockMovement.query.all():
        assert movement.new_stock == movement.previous_stock + movement.quantity
        assert movement.new_stock >= 0
    for item in SaleItem.query.all():
        assert 0 <= item.refunded_quantity <= item.quantity


def test_same_seed_same_shape(db_session):
    first = seed_service.generate_history(products=2, variants_per_product=1, days=20, seed=3)
    second = seed_service.generate_history(products=2, variants_per_product=1, days=20, seed=3)

    assert first.movements_created == second.movements_created
    assert first.sales_created == second.sales_created


def test_timed_out_chunks_roll_back(db_session):
    report = seed_service.generate_history(products=4, variants_per_product=1, days=10, chunk_size=2,
                                           time_limit_seconds=-1)

    assert report.chunks_committed == 0
    assert len(report.failed_chunks) == 2
    assert Product.query.count() == 0
    assert StockMovement.query.count() == 0
