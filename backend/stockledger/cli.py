# Overview: Flask CLI command groups for ledger audits, history seeding, and DB maintenance.

# backend/stockledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Ledger inspection:
# - python -m flask ledger audit [--chunk-size 50] [--time-limit 30]
#   Replay every variant's movements and report stock drift. Exit code 1 on drift.
# - python -m flask ledger audit-variant 12
#   Replay one variant and print expected vs stored stock plus chain breaks.
# - python -m flask ledger stockouts 12
#   Print each time the variant hit zero and how long it stayed there.
#
# Synthetic history:
# - python -m flask ledger seed --products 10 --variants 3 --days 90 [--seed 42]
#   Generate products, variants and simulated sales/restocks/refunds.
#
# System:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).

import click
from flask.cli import with_appcontext

from .extensions import db
from .errors import StockLedgerError
from .services import audit_service, seed_service


@click.group('ledger')
def ledger_group():
    """Stock ledger audits and history generation."""


@ledger_group.command('audit')
@click.option('--chunk-size', type=int, default=None, help='Variants per chunk (default: LEDGER_BULK_CHUNK_SIZE)')
@click.option('--time-limit', type=float, default=None, help='Seconds per chunk (default: LEDGER_CHUNK_TIME_LIMIT_SECONDS)')
@with_appcontext
def audit_all(chunk_size, time_limit):
    """Sweep-audit every variant against its movement history."""
    click.echo("START Auditing stock ledger...")
    report = audit_service.sweep_audit(chunk_size=chunk_size, time_limit_seconds=time_limit)

    for result in report.drifted:
        click.echo(
            f"FAIL variant {result.variant_id}: stored {result.actual_stock}, "
            f"ledger {result.expected_stock} (drift {result.drift:+d}, "
            f"chain breaks {len(result.chain_breaks)})"
        )
    for failed in report.failed_chunks:
        click.echo(
            f"WARN chunk {failed['chunk']} (variants {failed['first_variant_id']}"
            f"..{failed['last_variant_id']}) skipped: {failed['error']}"
        )

    click.echo(f"\nAudited {report.audited} variants in {report.chunks} chunks")
    if report.is_clean:
        click.echo("PASS Ledger and stock counters agree")
    else:
        raise SystemExit(1)


@ledger_group.command('audit-variant')
@click.argument('variant_id', type=int)
@with_appcontext
def audit_one(variant_id):
    """Audit a single variant."""
    try:
        result = audit_service.audit_variant(variant_id)
    except StockLedgerError as e:
        raise click.ClickException(e.message)

    click.echo(f"Variant {variant_id}: {result.movement_count} movements")
    click.echo(f"  stored stock:   {result.actual_stock}")
    click.echo(f"  ledger replay:  {result.expected_stock}")
    for brk in result.chain_breaks:
        click.echo(
            f"  FAIL chain break at movement {brk.movement_id}: expected previous "
            f"{brk.expected_previous_stock}, found {brk.previous_stock}"
        )
    if result.is_consistent:
        click.echo("PASS consistent")
    else:
        click.echo(f"FAIL drift {result.drift:+d}")
        raise SystemExit(1)


@ledger_group.command('stockouts')
@click.argument('variant_id', type=int)
@with_appcontext
def stockouts(variant_id):
    """List stockouts and recovery times for a variant."""
    try:
        summary = audit_service.stockout_summary(variant_id)
    except StockLedgerError as e:
        raise click.ClickException(e.message)

    if not summary["history"]:
        click.echo(f"No stockouts for variant {variant_id}")
        return

    for entry in summary["history"]:
        if entry["still_out_of_stock"]:
            click.echo(f"  {entry['stockout_at']}  still out of stock")
        else:
            click.echo(
                f"  {entry['stockout_at']}  restocked {entry['next_restock_at']} "
                f"(+{entry['restock_quantity']}) after {entry['days_out_of_stock']} day(s)"
            )
    click.echo(
        f"\n{summary['total_stockouts']} stockouts, "
        f"avg {summary['avg_days_out_of_stock']} days out of stock"
    )


@ledger_group.command('seed')
@click.option('--products', type=int, default=10, show_default=True)
@click.option('--variants', 'variants_per_product', type=int, default=3, show_default=True)
@click.option('--days', type=int, default=90, show_default=True)
@click.option('--seed', type=int, default=None, help='Random seed for a reproducible history')
@click.option('--chunk-size', type=int, default=None, help='Products per transaction')
@with_appcontext
def seed(products, variants_per_product, days, seed, chunk_size):
    """Generate simulated sales/restock/refund history."""
    click.echo(f"START Seeding {products} products x {variants_per_product} variants over {days} days...")
    report = seed_service.generate_history(
        products=products,
        variants_per_product=variants_per_product,
        days=days,
        seed=seed,
        chunk_size=chunk_size,
    )

    click.echo(f"PASS Created {report.products_created} products, {report.variants_created} variants")
    click.echo(
        f"PASS Recorded {report.movements_created} movements "
        f"({report.sales_created} sales, {report.refunds_created} refunds)"
    )
    for failed in report.failed_chunks:
        click.echo(f"WARN products {failed['first_product']}..{failed['last_product']} rolled back: {failed['error']}")


@click.group('system')
def system_group():
    """Database maintenance commands."""


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA, including the append-only movement ledger!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(ledger_group)
    app.cli.add_command(system_group)
