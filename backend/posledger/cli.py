# Overview: Flask CLI command groups for bootstrap, scheduled jobs, and ledger checks.

# backend/posledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables (idempotent).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Catalog:
# - python -m flask catalog add-product --name "Milk 1L" --unit pcs --min-stock 10
#
# Scheduled jobs (cron):
# - python -m flask inventory sweep-expired
#   Write off expired batches (run daily just after midnight).
# - python -m flask orders cancel-expired
#   Cancel online orders whose payment window has passed (run hourly).
#
# Inspection:
# - python -m flask inventory check-ledger [--product-id 1]
#   Replay every batch's ledger and compare with its stored quantity.

import click
from flask.cli import with_appcontext

from .extensions import db
from .errors import LedgerInvariantViolation
from .models import StockBatch
from .services import catalog_service, expiry_service, order_service
from .services.ledger_service import replay_quantity


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database tables created.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA, including the stock ledger!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete.")


@click.group('catalog')
def catalog_group():
    """Product master data."""


@catalog_group.command('add-product')
@click.option('--name', required=True, help='Product name')
@click.option('--unit', default='pcs', show_default=True, help='Unit of measure')
@click.option('--min-stock', type=int, default=0, show_default=True, help='Low-stock threshold')
@with_appcontext
def add_product(name, unit, min_stock):
    product = catalog_service.create_product(name=name, unit=unit, min_stock=min_stock)
    click.echo(f"PASS Created product {product.name} (ID: {product.id})")


@click.group('inventory')
def inventory_group():
    """Stock batch maintenance."""


@inventory_group.command('sweep-expired')
@with_appcontext
def sweep_expired():
    """Write off every active batch past its expiry date."""
    result = expiry_service.sweep(actor_id="system")
    click.echo(f"PASS Expired {result.processed_count} batch(es)")
    for batch_id in result.batch_ids:
        click.echo(f"  - batch {batch_id}")


@inventory_group.command('check-ledger')
@click.option('--product-id', type=int, help='Only check batches of this product')
@with_appcontext
def check_ledger(product_id):
    """
    Replay the ledger of each batch and compare with the stored quantity.

    Exits non-zero when any batch disagrees with its ledger.
    """
    q = db.session.query(StockBatch)
    if product_id is not None:
        q = q.filter(StockBatch.product_id == product_id)

    problems = 0
    checked = 0
    for batch in q.order_by(StockBatch.id.asc()).all():
        checked += 1
        try:
            replayed = replay_quantity(batch.id)
        except LedgerInvariantViolation as e:
            problems += 1
            click.echo(f"FAIL batch {batch.id}: {e} {e.details}")
            continue
        if replayed != batch.quantity:
            problems += 1
            click.echo(f"FAIL batch {batch.id}: stored {batch.quantity}, ledger {replayed}")

    if problems:
        raise click.ClickException(f"{problems} of {checked} batch(es) disagree with the ledger")
    click.echo(f"PASS {checked} batch(es) match the ledger")


@click.group('orders')
def orders_group():
    """Order maintenance."""


@orders_group.command('cancel-expired')
@with_appcontext
def cancel_expired():
    """Cancel online orders whose payment window has passed."""
    count = order_service.cancel_expired_orders()
    click.echo(f"PASS Cancelled {count} expired order(s)")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(catalog_group)
    app.cli.add_command(inventory_group)
    app.cli.add_command(orders_group)
