# Overview: Flask CLI command groups for bootstrap, catalog stock and anomaly review.

# backend/storefront/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables (use "flask db upgrade" for migrated deployments).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Accounts:
# - python -m flask users create --email admin@shop.local --password "Password123" --role admin
# - python -m flask users list
#
# Catalog stock:
# - python -m flask products create --sku TSHIRT-M --name "T-shirt M" --price 19.99 --stock 10
# - python -m flask products set-stock 1 25
# - python -m flask products list
#
# Operator alerts:
# - python -m flask anomalies list [--kind STOCK_UNDERFLOW] [--all]
# - python -m flask anomalies resolve 3 --note "Restocked from supplier"

from decimal import Decimal, InvalidOperation

import click
from flask.cli import with_appcontext

from .errors import StorefrontError
from .extensions import db
from .models import Product, User
from .models.auth import VALID_ROLES
from .services import alert_service, auth_service, inventory_service


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


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

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete.")


@click.group('users')
def users_group():
    """Account management commands."""


@users_group.command('create')
@click.option('--email', prompt=True, help='Email address')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--role', type=click.Choice(list(VALID_ROLES)), default='customer', show_default=True)
@click.option('--first-name', default=None)
@click.option('--last-name', default=None)
@with_appcontext
def create_user_cli(email, password, role, first_name, last_name):
    try:
        user = auth_service.create_user(
            email, password, role=role, first_name=first_name, last_name=last_name
        )
    except StorefrontError as e:
        raise click.ClickException(e.message)
    click.echo(f"PASS Created {user.role} {user.email} (ID: {user.id})")


@users_group.command('list')
@with_appcontext
def list_users():
    users = db.session.query(User).order_by(User.id).all()
    if not users:
        click.echo("No users found.")
        return
    for user in users:
        status = "active" if user.is_active else "inactive"
        click.echo(f"{user.id:>5}  {user.email:<40} {user.role:<10} {status}")


@click.group('products')
def products_group():
    """Catalog stock commands."""


@products_group.command('create')
@click.option('--sku', required=True)
@click.option('--name', required=True)
@click.option('--price', required=True, help='Unit price in currency units, e.g. 19.99')
@click.option('--stock', type=int, default=0, show_default=True)
@click.option('--description', default=None)
@with_appcontext
def create_product_cli(sku, name, price, stock, description):
    try:
        price_cents = int((Decimal(price) * 100).to_integral_value())
    except InvalidOperation:
        raise click.BadParameter("price must be a number", param_hint="--price")
    if price_cents < 0 or stock < 0:
        raise click.BadParameter("price and stock must be non-negative")
    if db.session.query(Product.id).filter_by(sku=sku).first() is not None:
        raise click.ClickException(f"SKU {sku} already exists")

    product = Product(
        sku=sku,
        name=name,
        description=description,
        price_cents=price_cents,
        stock_quantity=stock,
        is_active=True,
    )
    db.session.add(product)
    db.session.commit()
    click.echo(f"PASS Created product {product.sku} (ID: {product.id}, stock {product.stock_quantity})")


@products_group.command('set-stock')
@click.argument('product_id', type=int)
@click.argument('quantity', type=int)
@with_appcontext
def set_stock_cli(product_id, quantity):
    """Absolute stock correction."""
    try:
        product = inventory_service.set_stock(product_id, quantity)
    except StorefrontError as e:
        raise click.ClickException(e.message)
    click.echo(f"PASS {product.sku} stock is now {product.stock_quantity}")


@products_group.command('list')
@with_appcontext
def list_products():
    for product in db.session.query(Product).order_by(Product.id).all():
        flag = "" if product.is_active else "  (inactive)"
        click.echo(
            f"{product.id:>5}  {product.sku:<20} {product.price_cents / 100:>10.2f}  "
            f"stock {product.stock_quantity}{flag}"
        )


@click.group('anomalies')
def anomalies_group():
    """Operator alert review."""


@anomalies_group.command('list')
@click.option('--kind', default=None, help='Filter by anomaly kind')
@click.option('--all', 'include_resolved', is_flag=True, help='Include resolved anomalies')
@click.option('--limit', type=int, default=50, show_default=True)
@with_appcontext
def list_anomalies(kind, include_resolved, limit):
    anomalies = alert_service.list_alerts(kind=kind, unresolved_only=not include_resolved, limit=limit)
    if not anomalies:
        click.echo("No anomalies.")
        return
    for anomaly in anomalies:
        state = "resolved" if anomaly.resolved_at else "OPEN"
        click.echo(
            f"{anomaly.id:>5}  {state:<8} {anomaly.kind:<24} order={anomaly.order_id} "
            f"product={anomaly.product_id}  {anomaly.message}"
        )


@anomalies_group.command('resolve')
@click.argument('anomaly_id', type=int)
@click.option('--note', default=None, help='Resolution note')
@with_appcontext
def resolve_anomaly(anomaly_id, note):
    anomaly = alert_service.resolve_alert(anomaly_id, note)
    if anomaly is None:
        raise click.ClickException(f"Anomaly {anomaly_id} not found")
    click.echo(f"PASS Anomaly {anomaly.id} resolved")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(products_group)
    app.cli.add_command(anomalies_group)
