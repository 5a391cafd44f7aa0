import os
import tempfile
from decimal import Decimal

# Must be in place before anything under shared/ is imported
_DB_DIR = tempfile.mkdtemp(prefix="campus-orders-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/orders.db"
os.environ["ORDER_DB_SCHEMA"] = ""
os.environ["OTEL_TRACING_ENABLED"] = "false"
os.environ["JWT_SECRET_KEY"] = "test-secret"
os.environ["INTERNAL_API_KEY"] = "test-internal-key"

import httpx
import pytest

from main import app
from services.order_service.collaborators import (
    AddressSnapshot,
    MenuItemSnapshot,
    RestaurantSnapshot,
    get_addresses,
    get_catalog,
    get_notifier,
    get_payment_gateway,
)
from services.order_service.service import nudges, sla_supervisor
from services.realtime_service.hub import hub
from shared.config.database import Base, engine
from shared.security import create_access_token, limiter


class FakeCatalog:
    def __init__(self):
        self.restaurants = {
            1: RestaurantSnapshot(id=1, delivery_fee=Decimal("5.00")),
            2: RestaurantSnapshot(id=2, delivery_fee=Decimal("3.00"), minimum_order=Decimal("20.00")),
            3: RestaurantSnapshot(id=3, delivery_fee=Decimal("4.00"), is_active=False),
        }
        self.menu = {
            10: MenuItemSnapshot(id=10, restaurant_id=1, name="Iskender", price=Decimal("50.00")),
            11: MenuItemSnapshot(
                id=11,
                restaurant_id=1,
                name="Lahmacun",
                price=Decimal("30.00"),
                options={"extra cheese": Decimal("1.50"), "no onion": Decimal("0.00")},
            ),
            12: MenuItemSnapshot(id=12, restaurant_id=1, name="Sold out baklava", price=Decimal("8.00"), is_available=False),
            20: MenuItemSnapshot(id=20, restaurant_id=2, name="Pide", price=Decimal("9.00")),
            30: MenuItemSnapshot(id=30, restaurant_id=3, name="Closed kitchen soup", price=Decimal("6.00")),
        }

    async def get_restaurant(self, restaurant_id):
        return self.restaurants.get(restaurant_id)

    async def get_menu_item(self, menu_item_id):
        return self.menu.get(menu_item_id)


class FakeAddresses:
    def __init__(self):
        self.addresses = {
            100: AddressSnapshot(id=100, user_id="student-1"),
            200: AddressSnapshot(id=200, user_id="student-2"),
        }

    async def get_address(self, address_id):
        return self.addresses.get(address_id)


class FakeNotifier:
    def __init__(self):
        self.sent = []

    async def send(self, kind, payload):
        self.sent.append((kind, payload))
        return True


class FakeGateway:
    def __init__(self):
        self.checkouts = []

    async def create_checkout(self, order_id, amount):
        self.checkouts.append((order_id, amount))
        return f"https://pay.example.test/checkout/{order_id}"


def token_for(sub, role="student", restaurant_id=None):
    claims = {"sub": sub, "role": role}
    if restaurant_id is not None:
        claims["restaurant_id"] = restaurant_id
    return create_access_token(claims)


def auth(sub, role="student", restaurant_id=None):
    return {"Authorization": f"Bearer {token_for(sub, role, restaurant_id)}"}


STUDENT = auth("student-1")
OTHER_STUDENT = auth("student-2")
RESTAURANT = auth("staff-1", "restaurant", 1)
OTHER_RESTAURANT = auth("staff-2", "restaurant", 2)
COURIER = auth("courier-1", "courier", 1)


def order_payload(**overrides):
    payload = {
        "restaurantId": 1,
        "addressId": 100,
        "paymentMethod": "card_on_delivery",
        "items": [
            {"menuItemId": 10, "quantity": 1},
            {"menuItemId": 11, "quantity": 1},
        ],
    }
    payload.update(overrides)
    return payload


@pytest.fixture(autouse=True)
async def database():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    # Pooled connections must not outlive the loop that opened them
    await engine.dispose()
    limiter.enabled = False
    yield
    await sla_supervisor.shutdown()
    hub.clear()
    nudges.clear()
    await engine.dispose()


@pytest.fixture
def catalog():
    return FakeCatalog()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def overrides(catalog, notifier, gateway):
    addresses = FakeAddresses()
    app.dependency_overrides[get_catalog] = lambda: catalog
    app.dependency_overrides[get_addresses] = lambda: addresses
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    yield app.dependency_overrides
    app.dependency_overrides.clear()


@pytest.fixture
async def client(overrides):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def place_order(client):
    async def _place(headers=STUDENT, **overrides):
        resp = await client.post("/orders", json=order_payload(**overrides), headers=headers)
        assert resp.status_code == 201, resp.text
        return resp.json()

    return _place
