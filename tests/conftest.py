import os
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional
from unittest.mock import Mock

os.environ["DATABASE_URL"] = "sqlite:///:memory:"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from chatcommerce.config import Settings  # noqa: E402
from chatcommerce.database import build_engine, build_session_factory, init_db  # noqa: E402
from chatcommerce.main import create_app  # noqa: E402
from chatcommerce.services.container import build_container  # noqa: E402
from chatcommerce.services.messaging_client import MessagingClient  # noqa: E402
from chatcommerce.services.store_gateway import (  # noqa: E402
    Cart,
    CartGateway,
    CartItem,
    CatalogGateway,
    Category,
    Order,
    OrderGateway,
    Product,
    Variation,
)

WEBHOOK_SECRET = "test-app-secret"
ADMIN_TOKEN = "test-admin-token"
VERIFY_TOKEN = "test-verify-token"


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current = self.current + timedelta(seconds=seconds)
        return self.current


class FakeStore(CatalogGateway, CartGateway, OrderGateway):
    """In-memory shop backend."""

    def __init__(self):
        self.categories = [Category(12, "Shoes"), Category(13, "Shirts")]
        self.products = {
            5: Product(5, "Runner", 49.9, "USD", "Light running shoe", stock=10, category_id=12),
            6: Product(6, "Trail Boot", 89.0, "USD", stock=0, category_id=12),
            7: Product(
                7,
                "Tee",
                15.0,
                "USD",
                stock=5,
                category_id=13,
                variations=[Variation(71, "Small", 15.0, 2), Variation(72, "Medium", 16.0, 0)],
            ),
        }
        self.lines: dict[str, dict[tuple, CartItem]] = {}
        self.orders: list[dict] = []
        self.calls: list[tuple] = []
        self._lock = threading.Lock()

    def list_categories(self):
        return list(self.categories)

    def list_products(self, category_id, limit=10):
        return [p for p in self.products.values() if p.category_id == category_id][:limit]

    def search_products(self, query, limit=10):
        query = query.lower()
        return [p for p in self.products.values() if query in p.name.lower()][:limit]

    def get_product(self, product_id):
        return self.products.get(product_id)

    def get_stock_levels(self, product_ids):
        self.calls.append(("stock", tuple(product_ids)))
        return {pid: (self.products[pid].stock if pid in self.products else None) for pid in product_ids}

    def get_cart(self, customer_id):
        with self._lock:
            items = list(self.lines.get(customer_id, {}).values())
        return Cart(customer_id=customer_id, items=items, currency="USD")

    def set_quantity(self, customer_id, product_id, variation_id, quantity, unit_price):
        with self._lock:
            lines = self.lines.setdefault(customer_id, {})
            key = (product_id, variation_id)
            if quantity <= 0:
                lines.pop(key, None)
            else:
                name = self.products[product_id].name if product_id in self.products else ""
                lines[key] = CartItem(product_id, quantity, unit_price, name, variation_id)
        return self.get_cart(customer_id)

    def clear_cart(self, customer_id):
        with self._lock:
            self.lines.pop(customer_id, None)

    def place_order(self, customer_id, cart, address, payment_method, idempotency_key):
        for order in self.orders:
            if order["idempotency_key"] == idempotency_key:
                return order["order"]
        order = Order(order_id=str(1000 + len(self.orders)), total=cart.total, currency=cart.currency)
        self.orders.append(
            {
                "customer_id": customer_id,
                "address": address,
                "payment_method": payment_method,
                "idempotency_key": idempotency_key,
                "order": order,
            }
        )
        return order


class FakeMessaging(MessagingClient):
    def __init__(self):
        self.sent: list[tuple[str, dict]] = []
        self.fail_with: Optional[Exception] = None

    def send(self, customer_id, message):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((customer_id, message))
        return f"wamid.{len(self.sent)}"


@pytest.fixture
def mock_env(monkeypatch):
    """Set test environment variables."""
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'chatcommerce.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def db_session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def messaging():
    return FakeMessaging()


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        webhook_app_secret=WEBHOOK_SECRET,
        webhook_verify_token=VERIFY_TOKEN,
        admin_token=ADMIN_TOKEN,
        openai_api_key=None,
        job_worker_enabled=False,
        alert_bot_token=None,
        alert_chat_id=None,
    )


@pytest.fixture
def alert():
    return Mock(return_value=True)


@pytest.fixture
def container(test_settings, session_factory, store, messaging, alert):
    return build_container(
        test_settings,
        session_factory,
        messaging=messaging,
        catalog=store,
        carts=store,
        orders=store,
        alert=alert,
    )


@pytest.fixture
def client(container):
    with TestClient(create_app(container)) as test_client:
        yield test_client
