# Overview: Flask CLI command groups for schema maintenance and stock ledger inspection.

# backend/tabcore/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Stock ledger:
# - python -m flask stock verify-ledger [--stock-item-id 3]
#   Compare qty_on_hand with the sum of movement deltas; exits 1 on mismatch.

import click
from flask.cli import with_appcontext

from .extensions import db
from .services import stock_service


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


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

    click.echo("PASS Database reset complete.")


@click.group('stock')
def stock_group():
    """Stock ledger inspection commands."""


@stock_group.command('verify-ledger')
@click.option('--stock-item-id', type=int, default=None, help='Check a single stock item')
@with_appcontext
def verify_ledger_cli(stock_item_id):
    """Check qty_on_hand == SUM(delta) for every stock item."""
    mismatches = stock_service.verify_ledger(stock_item_id)
    if not mismatches:
        click.echo("PASS Stock ledger consistent.")
        return

    for row in mismatches:
        click.echo(
            f"FAIL stock_item={row['stock_item_id']} "
            f"qty_on_hand={row['qty_on_hand']} ledger={row['ledger_qty']}"
        )
    raise SystemExit(1)


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(stock_group)
