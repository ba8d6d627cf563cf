"""
Pytest fixtures for storefront backend tests.

Provides an in-memory application, per-test data reset, catalog/user/coupon
fixtures and the test client.
"""

from datetime import timedelta

import pytest

from storefront import create_app
from storefront.extensions import db
from storefront.models import Category, Coupon, Product, User
from storefront.services import auth_service, order_service
from storefront.services.pricing_service import CartLine
from storefront.time_utils import utcnow


PASSWORD = "Password123"
GATEWAY_SECRET = "gateway-test-secret"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'BCRYPT_ROUNDS': 4,
        'NOTIFICATION_SERVICE_URL': '',
        'PAYMENT_GATEWAY_SECRET': GATEWAY_SECRET,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Clear all data but keep schema."""
    with app.app_context():
        db.session.rollback()
        for table in reversed(db.metadata.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        db.session.expunge_all()

        yield db.session

        db.session.rollback()


@pytest.fixture
def admin(db_session):
    return auth_service.create_user(
        "admin@shop.test", PASSWORD, first_name="Ada", last_name="Admin", role="admin",
    )


@pytest.fixture
def customer(db_session):
    return auth_service.create_user(
        "casey@shop.test", PASSWORD, first_name="Casey", last_name="Customer",
    )


@pytest.fixture
def other_customer(db_session):
    return auth_service.create_user(
        "olive@shop.test", PASSWORD, first_name="Olive", last_name="Other",
    )


@pytest.fixture
def apparel(db_session):
    category = Category(name="Apparel")
    db_session.add(category)
    db_session.commit()
    return category


@pytest.fixture
def footwear(db_session):
    category = Category(name="Footwear")
    db_session.add(category)
    db_session.commit()
    return category


@pytest.fixture
def make_product(db_session):
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        fields = {
            "sku": f"SKU-{counter['n']:03d}",
            "name": f"Product {counter['n']}",
            "price_cents": 10000,
            "tax_rate_bps": 800,
            "stock": 10,
        }
        fields.update(overrides)
        product = Product(**fields)
        db_session.add(product)
        db_session.commit()
        return product

    return _make


@pytest.fixture
def shirt(make_product, apparel):
    """100.00 with 8% tax, 10 in stock."""
    return make_product(sku="SHIRT-1", name="Shirt", category_id=apparel.id)


@pytest.fixture
def sneaker(make_product, footwear):
    """50.00 with 8% tax, 3 in stock."""
    return make_product(sku="SNEAKER-1", name="Sneaker", price_cents=5000, stock=3, category_id=footwear.id)


@pytest.fixture
def make_coupon(db_session, admin):
    def _make(**overrides):
        now = utcnow()
        fields = {
            "code": "SAVE10",
            "coupon_type": "percentage",
            "value": 10,
            "minimum_order_cents": 5000,
            "usage_limit": None,
            "usage_limit_per_user": 1,
            "used_count": 0,
            "valid_from": now - timedelta(days=1),
            "valid_until": now + timedelta(days=30),
            "applicable_product_ids": [],
            "applicable_category_ids": [],
            "excluded_product_ids": [],
            "excluded_category_ids": [],
            "applicable_user_ids": [],
            "first_time_user_only": False,
            "is_active": True,
            "created_by_user_id": admin.id,
        }
        fields.update(overrides)
        coupon = Coupon(**fields)
        db_session.add(coupon)
        db_session.commit()
        return coupon

    return _make


@pytest.fixture
def address():
    return {
        "first_name": "Casey",
        "last_name": "Customer",
        "address1": "1 Market Street",
        "city": "Springfield",
        "state": "IL",
        "postal_code": "62701",
        "country": "US",
    }


@pytest.fixture
def place_order(address):
    """Checkout helper: place_order(user, [(product, qty), ...], **kwargs)."""
    def _place(user, items, **kwargs):
        kwargs.setdefault("shipping_address", address)
        kwargs.setdefault("payment_method", "credit_card")
        lines = [CartLine(product_id=product.id, quantity=qty) for product, qty in items]
        return order_service.create_order(user, lines, **kwargs)

    return _place


def reload(instance):
    """Re-read a row from the database."""
    db.session.expire(instance)
    return db.session.get(type(instance), instance.id)


def get_auth_token(client, email: str, password: str = PASSWORD) -> str:
    """Helper to get auth token for a user."""
    response = client.post('/api/auth/login', json={
        'email': email,
        'password': password,
    })
    if response.status_code == 200:
        return response.json.get('token')
    return None


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}
