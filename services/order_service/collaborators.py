"""
Narrow clients for the services the order lifecycle only reads from or
notifies: catalog, address book, payment gateway and notification sink.

Each is exposed through a ``get_*`` dependency so routes (and tests) can swap
the implementation.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

import httpx
import structlog

from shared.config.settings import (
    ADDRESS_URL,
    CATALOG_URL,
    COLLABORATOR_TIMEOUT_SECONDS,
    NOTIFICATION_URL,
    PAYMENT_URL,
)
from shared.observability import notification_failures_total
from shared.security.api_key import INTERNAL_API_HEADERS

from .exceptions import DependencyUnavailable

logger = structlog.get_logger(__name__)


def _money(value) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"))


@dataclass(frozen=True)
class RestaurantSnapshot:
    id: int
    delivery_fee: Decimal
    minimum_order: Decimal = Decimal("0")
    is_active: bool = True


@dataclass(frozen=True)
class MenuItemSnapshot:
    id: int
    restaurant_id: int
    name: str
    price: Decimal
    is_available: bool = True
    # customization name -> extra price
    options: dict = field(default_factory=dict)


@dataclass(frozen=True)
class AddressSnapshot:
    id: int
    user_id: str


class CatalogClient:
    async def _get(self, path: str) -> Optional[dict]:
        try:
            async with httpx.AsyncClient(timeout=COLLABORATOR_TIMEOUT_SECONDS) as client:
                resp = await client.get(f"{CATALOG_URL}{path}", headers=INTERNAL_API_HEADERS)
        except httpx.HTTPError as e:
            logger.error("catalog_unreachable", path=path, error=str(e))
            raise DependencyUnavailable("Catalog service is unavailable") from e
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            logger.error("catalog_error", path=path, status_code=resp.status_code)
            raise DependencyUnavailable("Catalog service is unavailable")
        return resp.json()

    async def get_restaurant(self, restaurant_id: int) -> Optional[RestaurantSnapshot]:
        data = await self._get(f"/restaurants/{restaurant_id}")
        if data is None:
            return None
        return RestaurantSnapshot(
            id=data["id"],
            delivery_fee=_money(data.get("deliveryFee", 0)),
            minimum_order=_money(data.get("minimumOrder", 0)),
            is_active=data.get("isActive", True),
        )

    async def get_menu_item(self, menu_item_id: int) -> Optional[MenuItemSnapshot]:
        data = await self._get(f"/menu-items/{menu_item_id}")
        if data is None:
            return None
        return MenuItemSnapshot(
            id=data["id"],
            restaurant_id=data["restaurantId"],
            name=data.get("name", f"Item {menu_item_id}"),
            price=_money(data["price"]),
            is_available=data.get("isAvailable", True),
            options={o["name"]: _money(o.get("price", 0)) for o in data.get("options", [])},
        )


class AddressClient:
    async def get_address(self, address_id: int) -> Optional[AddressSnapshot]:
        try:
            async with httpx.AsyncClient(timeout=COLLABORATOR_TIMEOUT_SECONDS) as client:
                resp = await client.get(f"{ADDRESS_URL}/addresses/{address_id}", headers=INTERNAL_API_HEADERS)
        except httpx.HTTPError as e:
            logger.error("address_book_unreachable", address_id=address_id, error=str(e))
            raise DependencyUnavailable("Address service is unavailable") from e
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise DependencyUnavailable("Address service is unavailable")
        data = resp.json()
        return AddressSnapshot(id=data["id"], user_id=str(data["userId"]))


class PaymentGatewayClient:
    async def create_checkout(self, order_id: int, amount: Decimal) -> str:
        """Starts a hosted checkout and returns the URL the student is redirected to."""
        payload = {
            "conversationId": f"order-{order_id}",
            "basketId": f"basket-{order_id}",
            "price": str(amount),
            "callbackPath": f"/orders/{order_id}/payment",
        }
        try:
            async with httpx.AsyncClient(timeout=COLLABORATOR_TIMEOUT_SECONDS) as client:
                resp = await client.post(f"{PAYMENT_URL}/checkout", json=payload, headers=INTERNAL_API_HEADERS)
                resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("payment_gateway_unavailable", order_id=order_id, error=str(e))
            raise DependencyUnavailable("Payment gateway is unavailable") from e
        return resp.json()["checkoutUrl"]


class NotificationClient:
    async def send(self, kind: str, payload: dict) -> bool:
        """Fire-and-forget: failures are logged and counted, never raised."""
        try:
            async with httpx.AsyncClient(timeout=COLLABORATOR_TIMEOUT_SECONDS) as client:
                resp = await client.post(
                    f"{NOTIFICATION_URL}/notifications",
                    json={"kind": kind, **payload},
                    headers=INTERNAL_API_HEADERS,
                )
                resp.raise_for_status()
            return True
        except Exception as e:
            notification_failures_total.labels(kind=kind).inc()
            logger.warning("notification_failed", kind=kind, error=str(e))
            return False


_catalog = CatalogClient()
_addresses = AddressClient()
_payment_gateway = PaymentGatewayClient()
_notifier = NotificationClient()


def get_catalog() -> CatalogClient:
    return _catalog


def get_addresses() -> AddressClient:
    return _addresses


def get_payment_gateway() -> PaymentGatewayClient:
    return _payment_gateway


def get_notifier() -> NotificationClient:
    return _notifier
