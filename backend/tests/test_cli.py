from stockledger.extensions import db
from stockledger.models import Product, Variant
from stockledger.services import movement_service


def test_audit_command_clean(app, make_variant):
    make_variant(stock=4)
    result = app.test_cli_runner().invoke(args=['ledger', 'audit'])

    assert result.exit_code == 0
    assert 'PASS' in result.output


def test_audit_command_reports_drift(app, make_variant):
    v = make_variant(stock=4)
    db.session.execute(Variant.__table__.update().where(Variant.id == v.id).values(stock=1))
    db.session.commit()

    result = app.test_cli_runner().invoke(args=['ledger', 'audit'])

    assert result.exit_code == 1
    assert f'FAIL variant {v.id}' in result.output


def test_audit_variant_command(app, make_variant):
    v = make_variant(stock=4)
    result = app.test_cli_runner().invoke(args=['ledger', 'audit-variant', str(v.id)])
    assert result.exit_code == 0
    assert 'ledger replay:  4' in result.output

    missing = app.test_cli_runner().invoke(args=['ledger', 'audit-variant', '99999'])
    assert missing.exit_code != 0


def test_stockouts_command(app, make_variant):
    v = make_variant(stock=1)
    movement_service.record_movement(v.id, 'SALE', -1)

    result = app.test_cli_runner().invoke(args=['ledger', 'stockouts', str(v.id)])

    assert result.exit_code == 0
    assert 'still out of stock' in result.output


def test_seed_command(app, db_session):
    result = app.test_cli_runner().invoke(args=[
        'ledger', 'seed', '--products', '2', '--variants', '1', '--days', '10', '--seed', '5',
    ])

    assert result.exit_code == 0
    assert 'Created 2 products, 2 variants' in result.output
    assert Product.query.count() == 2
