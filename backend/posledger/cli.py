# Overview: Flask CLI command groups for bootstrap and ledger verification.

# backend/posledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP (PowerShell: $env:FLASK_APP="posledger:create_app").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init [--shop "Main Shop"]
#   Idempotent bootstrap: creates tables, default shop, super admin, payment
#   methods, price categories and default settings.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Stock ledger:
# - python -m flask stock verify
#   Replay every movement and report stock records that drifted.
#   Exits with status 1 when drift is found.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import PaymentMethod, PriceCategory, Shop, User
from .services.settings_service import seed_default_settings
from .services.stock_ledger import verify_ledger


DEFAULT_PAYMENT_METHODS = ("Cash", "Card", "Bank Transfer")
DEFAULT_PRICE_CATEGORIES = ("Retail", "Wholesale")


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--shop', 'shop_name', default='Main Shop', help='Name of the default shop')
@click.option('--admin-email', default='admin@posledger.local', help='Email of the super admin user')
@with_appcontext
def init_system(shop_name, admin_email):
    """
    Initialize the database with the defaults a fresh install needs.

    Safe to run repeatedly: existing rows are kept.
    """
    click.echo("START Initializing posledger...")

    db.create_all()

    shop = db.session.query(Shop).first()
    if not shop:
        shop = Shop(name=shop_name, is_active=True)
        db.session.add(shop)
        db.session.flush()
        click.echo(f"PASS Created default shop: {shop.name} (ID: {shop.id})")
    else:
        click.echo(f"PASS Using existing shop: {shop.name} (ID: {shop.id})")

    admin = db.session.query(User).filter_by(email=admin_email).first()
    if not admin:
        admin = User(name="Super Admin", email=admin_email, role="super_admin", shop_id=shop.id)
        db.session.add(admin)
        click.echo(f"PASS Created super admin: {admin_email}")

    for name in DEFAULT_PAYMENT_METHODS:
        if not db.session.query(PaymentMethod).filter_by(name=name).first():
            db.session.add(PaymentMethod(name=name, is_active=True))

    for name in DEFAULT_PRICE_CATEGORIES:
        if not db.session.query(PriceCategory).filter_by(name=name).first():
            db.session.add(PriceCategory(name=name))

    created = seed_default_settings()
    db.session.commit()

    click.echo(f"PASS Seeded {created} default settings")
    click.echo("DONE posledger initialized.")


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

    click.echo("PASS Database reset complete. Run 'python -m flask system init' to initialize.")


@click.group('stock')
def stock_group():
    """Stock ledger inspection commands."""


@stock_group.command('verify')
@with_appcontext
def verify_stock():
    """Replay stock movements and compare against current stock records."""
    drifts = verify_ledger()
    if not drifts:
        click.echo("PASS Stock ledger is consistent.")
        return

    for drift in drifts:
        click.echo(
            f"FAIL product={drift.product_id} shop={drift.shop_id} "
            f"stock={drift.stock} expected={drift.expected} (diff {drift.difference:+d})"
        )
    raise click.exceptions.Exit(1)


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(stock_group)
