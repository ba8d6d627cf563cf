# Overview: Flask CLI command groups for bootstrap, users and coupons.

# backend/storefront/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py.
# - Use: python -m flask <group> <command> [options]
#
# Database bootstrap:
# - python -m flask shop init-db
#   Create all tables (use `flask db upgrade` for migration-managed databases).
# - python -m flask shop reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - python -m flask shop seed
#   Idempotent demo data: admin + customer users, categories, products, SAVE10 coupon.
#
# Users:
# - python -m flask users create --email admin@shop.local --password "Password123" --role admin
# - python -m flask users list
#
# Coupons:
# - python -m flask coupons create --code SAVE10 --type percentage --value 10 --days 30
# - python -m flask coupons list

from datetime import timedelta

import click
from flask.cli import with_appcontext

from .errors import ShopError
from .extensions import db
from .models import Category, Coupon, Product, User
from .services import auth_service, coupon_service
from .time_utils import utcnow


DEFAULT_PASSWORD = "Password123"


@click.group('shop')
def shop_group():
    """Database bootstrap commands."""


@shop_group.command('init-db')
@with_appcontext
def init_db():
    db.create_all()
    click.echo("PASS Tables created")


@shop_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    if not yes:
        click.confirm("This deletes ALL data. Continue?", abort=True)
    db.drop_all()
    db.create_all()
    click.echo("PASS Database reset")


def _ensure_user(email, role, first_name, last_name):
    user = db.session.query(User).filter_by(email=email).first()
    if user:
        click.echo(f"PASS Using existing user {email}")
        return user
    user = auth_service.create_user(
        email, DEFAULT_PASSWORD, first_name=first_name, last_name=last_name, role=role,
    )
    click.echo(f"PASS Created {role} {email}")
    return user


@shop_group.command('seed')
@with_appcontext
def seed():
    """Idempotent demo data."""
    db.create_all()
    admin = _ensure_user("admin@shop.local", "admin", "Shop", "Admin")
    _ensure_user("customer@shop.local", "customer", "Casey", "Customer")

    categories = {}
    for name in ("Apparel", "Footwear", "Accessories"):
        category = db.session.query(Category).filter_by(name=name).first()
        if not category:
            category = Category(name=name)
            db.session.add(category)
            db.session.flush()
        categories[name] = category

    products = [
        ("TSHIRT-001", "Cotton T-Shirt", "Apparel", 2500, 50),
        ("HOODIE-001", "Fleece Hoodie", "Apparel", 6000, 20),
        ("SNEAKER-001", "Canvas Sneaker", "Footwear", 10000, 8),
        ("CAP-001", "Baseball Cap", "Accessories", 1500, 0),
    ]
    for sku, name, category_name, price_cents, stock in products:
        if db.session.query(Product).filter_by(sku=sku).first():
            continue
        db.session.add(Product(
            sku=sku,
            name=name,
            category_id=categories[category_name].id,
            price_cents=price_cents,
            tax_rate_bps=800,
            stock=stock,
        ))
    db.session.commit()
    click.echo(f"PASS {len(products)} products present")

    if not db.session.query(Coupon).filter_by(code="SAVE10").first():
        now = utcnow()
        coupon_service.create_coupon({
            "code": "SAVE10",
            "description": "10% off your order",
            "type": "percentage",
            "value": 10,
            "minimum_order_cents": 5000,
            "valid_from": now,
            "valid_until": now + timedelta(days=365),
        }, admin.id)
        click.echo("PASS Created coupon SAVE10")

    click.echo(f"\nLogin with admin@shop.local or customer@shop.local / {DEFAULT_PASSWORD}")


@click.group('users')
def users_group():
    """User management commands."""


@users_group.command('create')
@click.option('--email', prompt=True, help='Email address')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--role', type=click.Choice(['admin', 'customer']), default='customer', help='Role')
@click.option('--first-name', default='', help='First name')
@click.option('--last-name', default='', help='Last name')
@with_appcontext
def create_user_cli(email, password, role, first_name, last_name):
    try:
        user = auth_service.create_user(
            email, password, first_name=first_name, last_name=last_name, role=role,
        )
    except ShopError as e:
        raise click.ClickException(e.message)
    click.echo(f"PASS Created user {user.email} (ID: {user.id}, role: {user.role})")


@users_group.command('list')
@with_appcontext
def list_users():
    users = db.session.query(User).order_by(User.id).all()
    if not users:
        click.echo("No users found")
        return
    for user in users:
        status = "active" if user.is_active else "inactive"
        click.echo(f"{user.id:>4}  {user.email:<32} {user.role:<10} {status}")


@click.group('coupons')
def coupons_group():
    """Coupon management commands."""


@coupons_group.command('create')
@click.option('--code', default=None, help='Code (generated when omitted)')
@click.option('--type', 'coupon_type', type=click.Choice(['percentage', 'fixed']), required=True)
@click.option('--value', type=int, required=True, help='Whole percent, or cents for fixed coupons')
@click.option('--minimum-order-cents', type=int, default=0)
@click.option('--maximum-discount-cents', type=int, default=None)
@click.option('--usage-limit', type=int, default=None)
@click.option('--days', type=int, default=30, help='Valid from now for this many days')
@click.option('--created-by', 'created_by_email', default='admin@shop.local', help='Admin email')
@with_appcontext
def create_coupon_cli(code, coupon_type, value, minimum_order_cents, maximum_discount_cents,
                      usage_limit, days, created_by_email):
    admin = db.session.query(User).filter_by(email=created_by_email).first()
    if not admin:
        raise click.ClickException(f"User {created_by_email} not found")

    now = utcnow()
    data = {
        "code": code,
        "type": coupon_type,
        "value": value,
        "minimum_order_cents": minimum_order_cents,
        "maximum_discount_cents": maximum_discount_cents,
        "usage_limit": usage_limit,
        "valid_from": now,
        "valid_until": now + timedelta(days=days),
    }
    try:
        coupon = coupon_service.create_coupon(data, admin.id)
    except ShopError as e:
        raise click.ClickException(e.message)
    click.echo(f"PASS Created coupon {coupon.code} (ID: {coupon.id})")


@coupons_group.command('list')
@with_appcontext
def list_coupons_cli():
    result = coupon_service.list_coupons(per_page=100)
    for c in result["items"]:
        limit = c["usage_limit"] if c["usage_limit"] is not None else "unlimited"
        click.echo(f"{c['id']:>4}  {c['code']:<20} {c['type']:<10} {c['value']:>8}  used {c['used_count']}/{limit}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(shop_group)
    app.cli.add_command(users_group)
    app.cli.add_command(coupons_group)
