"""
Pytest fixtures for tabcore backend tests.

Provides a per-test SQLite file database, a fake payment gateway, two tenants
with owner/manager/staff employees, and a small catalog with stock.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from tabcore import create_app
from tabcore.errors import GatewayError
from tabcore.extensions import db
from tabcore.models import Business, CatalogItem, Employee, TaxRule
from tabcore.models.tenancy import ROLE_MANAGER, ROLE_OWNER, ROLE_STAFF
from tabcore.services import stock_service
from tabcore.services.gateway import CheckoutSession
from tabcore.time_utils import utcnow


WEBHOOK_SECRET = "whsec_test_secret"


class FakeGateway:
    """Records checkout sessions and refunds instead of calling Stripe."""

    def __init__(self):
        self.sessions = []
        self.refunds = []
        self.fail_next = False
        self.fail_next_refund = False
        self.on_refund = None

    def create_checkout_session(self, amount_cents, currency, success_url, cancel_url, payment_id):
        if self.fail_next:
            self.fail_next = False
            raise GatewayError("Payment gateway error")
        session_id = f"cs_test_{payment_id}_{len(self.sessions) + 1}"
        self.sessions.append({
            "session_id": session_id,
            "amount_cents": amount_cents,
            "currency": currency,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "payment_id": payment_id,
        })
        return CheckoutSession(session_id=session_id, url=f"https://checkout.test/{session_id}")

    def refund(self, session_id, amount_cents):
        if self.fail_next_refund:
            self.fail_next_refund = False
            raise GatewayError("Payment gateway error")
        if self.on_refund is not None:
            self.on_refund(session_id, amount_cents)
        self.refunds.append((session_id, amount_cents))


@pytest.fixture(scope='function')
def app(tmp_path):
    """Create application for testing, backed by a throwaway SQLite file."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'tabcore-test.sqlite3'}",
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'STRIPE_WEBHOOK_SECRET': WEBHOOK_SECRET,
        'PUBLIC_BASE_URL': 'http://pos.test',
        'RETRY_BACKOFF_SECONDS': 0,
    })
    app.extensions["payment_gateway"] = FakeGateway()

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def gateway(app):
    return app.extensions["payment_gateway"]


# =============================================================================
# TENANTS
# =============================================================================

@pytest.fixture(scope='function')
def business(app):
    """Business A (first tenant)."""
    business = Business(name="Cafe A", country_code="LT")
    db.session.add(business)
    db.session.commit()
    return business


@pytest.fixture(scope='function')
def other_business(app):
    """Business B (second tenant)."""
    business = Business(name="Bar B", country_code="LV")
    db.session.add(business)
    db.session.commit()
    return business


def _employee(business, name, role):
    employee = Employee(business_id=business.id, name=name, role=role)
    db.session.add(employee)
    db.session.commit()
    return employee


@pytest.fixture(scope='function')
def owner(business):
    return _employee(business, "Olivia Owner", ROLE_OWNER)


@pytest.fixture(scope='function')
def manager(business):
    return _employee(business, "Max Manager", ROLE_MANAGER)


@pytest.fixture(scope='function')
def staff(business):
    return _employee(business, "Sam Staff", ROLE_STAFF)


@pytest.fixture(scope='function')
def other_staff(business):
    return _employee(business, "Tina Staff", ROLE_STAFF)


# =============================================================================
# CATALOG / TAX / STOCK
# =============================================================================

@pytest.fixture(scope='function')
def vat_rule(business):
    """21% standard rate for LT, valid around now."""
    now = utcnow()
    rule = TaxRule(
        country_code="LT",
        tax_class="standard",
        rate_percent=Decimal("21.000"),
        valid_from=now - timedelta(days=365),
        valid_to=now + timedelta(days=365),
    )
    db.session.add(rule)
    db.session.commit()
    return rule


@pytest.fixture(scope='function')
def product(business):
    """Stock-tracked Product priced 50.00."""
    item = CatalogItem(
        business_id=business.id,
        name="House Wine Bottle",
        code="WINE-01",
        type="Product",
        base_price=Decimal("50.00"),
        tax_class="standard",
    )
    db.session.add(item)
    db.session.commit()
    return item


@pytest.fixture(scope='function')
def service_item(business):
    """Service item: never touches stock."""
    item = CatalogItem(
        business_id=business.id,
        name="Table Service",
        code="SERV-01",
        type="Service",
        base_price=Decimal("5.00"),
        tax_class="standard",
    )
    db.session.add(item)
    db.session.commit()
    return item


@pytest.fixture(scope='function')
def product_stock(business, product):
    """10 units on hand at 1.00 average cost."""
    return stock_service.create_stock_item(
        business.id,
        product.id,
        unit="pcs",
        initial_qty=10,
        unit_cost=Decimal("1.00"),
    )


@pytest.fixture(scope='function')
def foreign_product(other_business):
    item = CatalogItem(
        business_id=other_business.id,
        name="Foreign Beer",
        code="BEER-B",
        type="Product",
        base_price=Decimal("3.00"),
        tax_class="standard",
    )
    db.session.add(item)
    db.session.commit()
    return item
