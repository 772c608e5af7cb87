# Overview: Flask CLI command groups for bootstrap, stock intake, and maintenance.

# backend/resale_pos/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Schema:
# - python -m flask db upgrade
#   Apply migrations (Flask-Migrate).
#
# User bootstrap:
# - python -m flask users create --name "Ana" --email ana@shop.local --role seller
#   Create a staff member known to the sale engine.
# - python -m flask users list
#   List users with roles and active status.
#
# Stock:
# - python -m flask stock add --brand Apple --model "iPhone 13" --imei 3569... --cost-cents 45000000 --warranty-days 90
#   Register one serialized unit as available.
# - python -m flask stock reconcile [--apply]
#   Compare unit status with sale history; --apply writes the repairs.
#
# Maintenance:
# - python -m flask maintenance purge-idempotency-keys
#   Delete idempotency records past their expiry.

import json

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import StockItem, User
from .models.enums import StockStatus, UserRole
from .services import maintenance_service, reconcile_service


@click.group('users')
def users_group():
    """Staff commands."""


@users_group.command('create')
@click.option('--name', prompt=True, help='Display name')
@click.option('--email', default=None, help='Email address (optional, unique)')
@click.option('--role', type=click.Choice([r.value for r in UserRole]), default=UserRole.SELLER.value, show_default=True)
@with_appcontext
def create_user_cli(name, email, role):
    """Create a user. Authentication is handled upstream; no password is stored here."""
    if email and db.session.query(User).filter_by(email=email).first():
        click.echo(f"FAIL A user with email {email} already exists")
        return

    user = User(name=name, email=email, role=UserRole(role), is_active=True)
    db.session.add(user)
    db.session.commit()
    click.echo(f"PASS Created user: {user.name} (ID: {user.id}) with role '{role}'")


@users_group.command('list')
@with_appcontext
def list_users_cli():
    """List all users with roles and active status."""
    users = db.session.query(User).order_by(User.id.asc()).all()
    if not users:
        click.echo("No users found.")
        return
    for user in users:
        status = "active" if user.is_active else "inactive"
        click.echo(f"{user.id:>5}  {user.name:<30} {user.role.value:<8} {status}")


@click.group('stock')
def stock_group():
    """Serialized stock commands."""


@stock_group.command('add')
@click.option('--brand', required=True)
@click.option('--model', 'model_name', required=True)
@click.option('--imei', default=None)
@click.option('--cost-cents', type=int, default=None, help='Purchase cost in ARS cents')
@click.option('--warranty-days', type=int, default=None, help='Defaults to DEFAULT_WARRANTY_DAYS at sale time')
@with_appcontext
def add_stock_cli(brand, model_name, imei, cost_cents, warranty_days):
    """Register one unit as available for sale."""
    unit = StockItem(
        brand=brand,
        model=model_name,
        imei=imei,
        status=StockStatus.AVAILABLE,
        purchase_cost_cents=cost_cents,
        warranty_days=warranty_days,
    )
    db.session.add(unit)
    db.session.commit()
    click.echo(f"PASS Added stock item {unit.id}: {brand} {model_name}")


@stock_group.command('reconcile')
@click.option('--apply', 'apply_changes', is_flag=True, help='Write the planned repairs')
@with_appcontext
def reconcile_stock_cli(apply_changes):
    """
    Reconcile unit status with sale history.

    Dry run by default: prints the plan as JSON without touching data.
    """
    report = reconcile_service.reconcile_stock(apply=apply_changes)
    click.echo(json.dumps(report.to_dict(), indent=2, default=str))


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('purge-idempotency-keys')
@with_appcontext
def purge_idempotency_keys_cli():
    """Delete idempotency records past their expiry."""
    deleted = maintenance_service.cleanup_idempotency_records()
    click.echo(f"Deleted {deleted} expired idempotency records.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(users_group)
    app.cli.add_command(stock_group)
    app.cli.add_command(maintenance_group)
