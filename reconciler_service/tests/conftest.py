"""Test fixtures for the reconciler service tests."""

from decimal import Decimal

import pytest

from reconciler_service.client import OrderApiClient
from reconciler_service.config import ServiceConfig, UserSession
from reconciler_service.notifier import LogNotifier
from reconciler_service.outbox import Outbox
from reconciler_service.reconciler import OrderReconciler
from reconciler_service.schemas import Order, OrderLineItem

BACKEND_METHODS = [
    "get_credit_limit",
    "get_order_products",
    "get_customer_prices",
    "get_latest_price",
    "place_order",
    "update_order",
    "cancel_order",
    "delete_order_product",
    "add_product_to_order",
    "deduct_credit",
    "increase_credit",
    "update_amount_due",
    "collect_cash",
]


def _stub_backend(mocker, client: OrderApiClient) -> OrderApiClient:
    for name in BACKEND_METHODS:
        mocker.patch.object(client, name, return_value={})
    client.get_credit_limit.return_value = Decimal("1000.00")
    client.get_order_products.return_value = []
    client.get_customer_prices.return_value = {}
    client.get_latest_price.return_value = None
    return client


@pytest.fixture
def config(tmp_path):
    """Configuration pointing at a fake backend and a temporary outbox."""
    return ServiceConfig(api_base_url="http://backend:8090", outbox_path=str(tmp_path / "outbox.jsonl"))


@pytest.fixture
def customer_session():
    return UserSession(token="customer-token", role="customer", user_id="42")


@pytest.fixture
def admin_session():
    return UserSession(token="admin-token", role="admin", user_id="7")


@pytest.fixture
def api(mocker, config, customer_session):
    """API client whose backend calls are MagicMocks; the ceiling is 1000."""
    return _stub_backend(mocker, OrderApiClient(config, customer_session, http=mocker.MagicMock()))


@pytest.fixture
def admin_api(mocker, config, admin_session):
    return _stub_backend(mocker, OrderApiClient(config, admin_session, http=mocker.MagicMock()))


@pytest.fixture
def outbox(config):
    return Outbox(config.outbox_path)


@pytest.fixture
def notifier():
    return LogNotifier()


@pytest.fixture
def reconciler(api, outbox, notifier):
    return OrderReconciler(api, outbox, notifier)


@pytest.fixture
def admin_reconciler(admin_api, outbox, notifier):
    return OrderReconciler(admin_api, outbox, notifier)


@pytest.fixture
def order():
    """An order worth 500 belonging to customer 42."""
    return Order(id=1001, customer_id=42, total_amount=500, order_type="AM", loading_slip="No", cancelled="No")


@pytest.fixture
def items():
    """Line items matching the 500 total of the ``order`` fixture."""
    return [
        OrderLineItem(product_id=1, name="Milk 500ml", category="Milk", price=25, quantity=12),
        OrderLineItem(product_id=2, name="Curd 1kg", category="Curd", price=100, quantity=2),
    ]
