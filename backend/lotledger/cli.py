# Overview: Flask CLI command group for ledger bootstrap, reconciliation and repair.

# backend/lotledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to lotledger (PowerShell: $env:FLASK_APP="lotledger").
# - Use: python -m flask ledger <command> [options]
#
# - python -m flask ledger init-db
#   Create all tables directly (dev/test; production uses `flask db upgrade`).
# - python -m flask ledger reconcile [--product-id 7] [--fail-on-drift]
#   Compare aggregate stock with lot sums and print any drift.
# - python -m flask ledger repair [--product-id 7]
#   Rebuild aggregate stock from lots (idempotent).
# - python -m flask ledger link-returns [--dry-run]
#   Auto-link legacy returns with no parent line; ambiguous ones are listed, never linked.
# - python -m flask ledger over-returns
#   List sale lines whose returns exceed the sold quantity.

import click
from flask.cli import with_appcontext

from .extensions import db
from .errors import DriftDetected
from .services import reconciliation_service
from .services import return_service


@click.group('ledger')
def ledger_group():
    """Lot ledger maintenance commands."""


@ledger_group.command('init-db')
@with_appcontext
def init_db():
    """Create all ledger tables."""
    db.create_all()
    click.echo("Ledger tables created.")


def _print_report(report):
    click.echo(f"Checked {report.checked} product(s); {len(report.entries)} drifted.")
    for entry in report.entries:
        click.echo(
            f"  product {entry.product_id}: cached {entry.cached}, "
            f"lots {entry.expected}, delta {entry.delta}"
        )


@ledger_group.command('reconcile')
@click.option('--product-id', type=int, default=None, help='Limit to one product')
@click.option('--fail-on-drift', is_flag=True, help='Exit non-zero when drift is found')
@with_appcontext
def reconcile_cli(product_id, fail_on_drift):
    """Report drift between aggregate stock and lots."""
    try:
        report = reconciliation_service.reconcile(product_id, raise_on_drift=fail_on_drift)
    except DriftDetected as e:
        _print_report(e.report)
        raise click.ClickException(str(e))
    _print_report(report)


@ledger_group.command('repair')
@click.option('--product-id', type=int, default=None, help='Limit to one product')
@with_appcontext
def repair_cli(product_id):
    """Rebuild aggregate stock from lots."""
    report = reconciliation_service.repair(product_id)
    _print_report(report)
    click.echo("Aggregate stock rebuilt.")


@ledger_group.command('link-returns')
@click.option('--dry-run', is_flag=True, help='Report what would be linked without saving')
@with_appcontext
def link_returns_cli(dry_run):
    """Auto-link unlinked returns through shared lots."""
    report = return_service.auto_link_returns(dry_run=dry_run)
    verb = "Would link" if dry_run else "Linked"
    for item in report.linked:
        click.echo(f"{verb} return {item['return_line_id']} -> sale {item['sale_line_id']}")
    for item in report.ambiguous:
        candidates = ", ".join(str(c) for c in item["candidates"])
        click.echo(f"AMBIGUOUS return {item['return_line_id']}: candidates {candidates}")
    if report.unmatched:
        click.echo(f"No candidate for returns: {', '.join(str(i) for i in report.unmatched)}")
    click.echo(
        f"{len(report.linked)} linked, {len(report.ambiguous)} ambiguous, "
        f"{len(report.unmatched)} unmatched."
    )


@ledger_group.command('over-returns')
@with_appcontext
def over_returns_cli():
    """List sale lines whose returns exceed the sold quantity."""
    rows = return_service.find_over_returns()
    if not rows:
        click.echo("No over-returned sale lines.")
        return
    for row in rows:
        click.echo(
            f"sale line {row['sale_line_id']} (product {row['product_id']}): "
            f"sold {row['sold']}, returned {row['returned']}, excess {row['excess']}"
        )


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(ledger_group)
