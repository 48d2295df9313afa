# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/stockroom/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables and the default store (idempotent).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Inventory inspection:
# - python -m flask inventory reconcile
#   List records whose transaction log does not sum to the stored quantity.
#   Exits with status 1 when any record is out of balance.
# - python -m flask inventory low-stock --store-id 1
#   List records at or below their low-stock threshold.
#
# Document number sequences:
# - python -m flask sequences next SO [--date 2025-06-15]
#   Allocate and print the next number for a prefix.
# - python -m flask sequences reset SO --date 2025-06-15 --start-from 100
#   Make start-from the next number issued for that prefix and date.

import click
from flask.cli import with_appcontext

from .errors import InventoryError
from .extensions import db
from .models import Store
from .services import inventory_service, sequence_service

DEFAULT_STORE_NAME = "Main Store"
DEFAULT_STORE_CODE = "MAIN"


def _parse_date(ctx, param, value):
    if value is None:
        return None
    return value.date()


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create tables and the default store."""
    db.create_all()
    click.echo("PASS Tables created")

    store = db.session.query(Store).filter_by(code=DEFAULT_STORE_CODE).first()
    if store:
        click.echo(f"PASS Using existing store: {store.name} (ID: {store.id})")
    else:
        store = Store(name=DEFAULT_STORE_NAME, code=DEFAULT_STORE_CODE)
        db.session.add(store)
        db.session.commit()
        click.echo(f"PASS Created default store: {store.name} (ID: {store.id})")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask system init-db' to create the default store.")


@click.group('inventory')
def inventory_group():
    """Inventory ledger inspection."""


@inventory_group.command('reconcile')
@with_appcontext
def reconcile():
    """Replay every record's transaction log against its stored quantity."""
    reports = inventory_service.find_unreconciled_records()
    if not reports:
        click.echo("PASS All inventory records reconcile")
        return

    click.echo(f"FAIL {len(reports)} record(s) out of balance")
    click.echo(f"{'Record':<8} {'Variant':<8} {'Store':<6} {'Stored':>8} {'Ledger':>8}")
    for report in reports:
        click.echo(
            f"{report.record_id:<8} {report.product_variant_id:<8} {report.store_id:<6} "
            f"{report.stored_quantity:>8} {report.ledger_quantity:>8}"
        )
    raise click.exceptions.Exit(1)


@inventory_group.command('low-stock')
@click.option('--store-id', type=int, default=None, help='Limit to one store')
@with_appcontext
def low_stock(store_id):
    """List records at or below their low-stock threshold."""
    records = inventory_service.list_low_stock(store_id)
    if not records:
        click.echo("No low-stock records.")
        return

    click.echo(f"{'Variant':<8} {'Store':<6} {'On hand':>8} {'Threshold':>10}")
    for record in records:
        click.echo(
            f"{record.product_variant_id:<8} {record.store_id:<6} "
            f"{record.quantity:>8} {record.low_stock_threshold:>10}"
        )


@click.group('sequences')
def sequences_group():
    """Document number sequences."""


@sequences_group.command('next')
@click.argument('prefix')
@click.option('--date', 'on_date', type=click.DateTime(formats=["%Y-%m-%d"]), callback=_parse_date,
              default=None, help='Scope date (default: today, UTC)')
@with_appcontext
def next_number(prefix, on_date):
    """Allocate and print the next number for PREFIX."""
    try:
        click.echo(sequence_service.next_number(prefix, on_date=on_date))
    except InventoryError as e:
        raise click.ClickException(e.message) from e


@sequences_group.command('reset')
@click.argument('prefix')
@click.option('--date', 'on_date', type=click.DateTime(formats=["%Y-%m-%d"]), callback=_parse_date,
              required=True, help='Scope date')
@click.option('--start-from', type=int, default=1, show_default=True, help='Next number to issue')
@with_appcontext
def reset_sequence(prefix, on_date, start_from):
    """Reset the PREFIX counter for one date."""
    try:
        sequence_service.reset_sequence(prefix, on_date=on_date, start_from=start_from)
    except InventoryError as e:
        raise click.ClickException(e.message) from e
    click.echo(f"PASS Next {prefix} number for {on_date.isoformat()}: "
               f"{sequence_service.format_number(prefix, on_date, start_from)}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(inventory_group)
    app.cli.add_command(sequences_group)
