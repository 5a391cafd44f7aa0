import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config.database import AsyncSessionLocal
from shared.config.settings import (
    ORDER_ACK_WINDOW_SECONDS,
    ORDER_NUDGE_COOLDOWN_SECONDS,
    ORDER_PREP_ESTIMATE_MINUTES,
    ORDER_SERVICE_FEE,
)
from shared.observability import order_transitions_total, orders_created_total
from shared.security.actors import Actor, ActorRole, SYSTEM_ACTOR
from services.realtime_service.events import location_event, nudge_event, status_changed_event
from services.realtime_service.hub import hub

from .collaborators import AddressClient, CatalogClient, NotificationClient, PaymentGatewayClient
from .exceptions import IllegalTransitionError, NotFoundError, ValidationError
from .models import Order, OrderItem, OrderStatusEvent, utcnow
from .repository import OrderRepository
from .schemas import OrderCreate, PaymentMethod, PaymentStatus
from .sla import NudgeLimiter, SLASupervisor, as_utc
from .state_machine import (
    INITIAL_STATUS,
    OrderStatus,
    cancel_reason_for,
    check_transition,
    is_terminal,
)

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")


def _money(value) -> Decimal:
    return Decimal(value).quantize(CENT)


def compute_totals(line_totals, delivery_fee, service_fee, tip=0, discount=0) -> Dict[str, Decimal]:
    """Order financials. Computed once at creation and never again."""
    subtotal = _money(sum((Decimal(t) for t in line_totals), Decimal("0")))
    delivery_fee, service_fee = _money(delivery_fee), _money(service_fee)
    tip, discount = _money(tip), _money(discount)
    total = subtotal + delivery_fee + service_fee + tip - discount
    return {
        "subtotal": subtotal,
        "delivery_fee": delivery_fee,
        "service_fee": service_fee,
        "tip": tip,
        "discount": discount,
        "total": _money(total),
    }


def initial_payment_status(method: PaymentMethod) -> PaymentStatus:
    return PaymentStatus.CASH_DUE if method is PaymentMethod.CASH else PaymentStatus.PENDING


class _OrderLocks:
    """Serializes transitions of one order inside this process; the store's CAS covers the rest."""

    def __init__(self):
        self._locks: Dict[int, asyncio.Lock] = {}
        self._holders: Dict[int, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, order_id: int):
        lock = self._locks.setdefault(order_id, asyncio.Lock())
        self._holders[order_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._holders[order_id] -= 1
            if not self._holders[order_id]:
                del self._holders[order_id]
                self._locks.pop(order_id, None)


_order_locks = _OrderLocks()


class OrderService:
    @staticmethod
    def is_visible(order: Order, actor: Actor) -> bool:
        if actor.role is ActorRole.SYSTEM:
            return True
        if actor.role is ActorRole.STUDENT:
            return order.user_id == actor.id
        return actor.restaurant_id is not None and actor.restaurant_id == order.restaurant_id

    @staticmethod
    async def create_order(
        db: AsyncSession,
        actor: Actor,
        data: OrderCreate,
        catalog: CatalogClient,
        addresses: AddressClient,
    ) -> Order:
        if actor.role is not ActorRole.STUDENT:
            raise ValidationError("Only students can place orders")
        if not data.items:
            raise ValidationError("Cart is empty")
        if data.address_id is None:
            raise ValidationError("A delivery address is required")
        if data.tip < 0 or data.discount < 0:
            raise ValidationError("Tip and discount cannot be negative")

        address = await addresses.get_address(data.address_id)
        if address is None or address.user_id != actor.id:
            raise ValidationError(f"Delivery address {data.address_id} not found")

        menu = {}
        for line in data.items:
            if line.quantity <= 0:
                raise ValidationError(f"Quantity for menu item {line.menu_item_id} must be positive")
            if line.menu_item_id in menu:
                continue
            snapshot = await catalog.get_menu_item(line.menu_item_id)
            if snapshot is None or not snapshot.is_available:
                raise ValidationError(f"Menu item {line.menu_item_id} is not available")
            menu[line.menu_item_id] = snapshot

        restaurant_id = data.restaurant_id or menu[data.items[0].menu_item_id].restaurant_id
        foreign = sorted(mid for mid, snap in menu.items() if snap.restaurant_id != restaurant_id)
        if foreign:
            raise ValidationError(
                f"Menu items {foreign} do not belong to restaurant {restaurant_id}; "
                "an order can only contain items from one restaurant"
            )

        restaurant = await catalog.get_restaurant(restaurant_id)
        if restaurant is None or not restaurant.is_active:
            raise ValidationError(f"Restaurant {restaurant_id} is not accepting orders")

        items, line_totals = [], []
        for line in data.items:
            snapshot = menu[line.menu_item_id]
            chosen = []
            for c in line.customizations:
                if c.name not in snapshot.options:
                    raise ValidationError(f"'{c.name}' is not an option for {snapshot.name}")
                chosen.append({"name": c.name, "price": str(snapshot.options[c.name])})
            extras = sum((Decimal(c["price"]) for c in chosen), Decimal("0"))
            line_totals.append((snapshot.price + extras) * line.quantity)
            items.append(
                OrderItem(
                    menu_item_id=snapshot.id,
                    name=snapshot.name,
                    quantity=line.quantity,
                    unit_price=snapshot.price,
                    customizations=chosen,
                    notes=line.notes,
                )
            )

        totals = compute_totals(
            line_totals, restaurant.delivery_fee, ORDER_SERVICE_FEE, data.tip, data.discount
        )
        if totals["subtotal"] < restaurant.minimum_order:
            raise ValidationError(f"Minimum order for this restaurant is {restaurant.minimum_order}")
        if totals["discount"] > totals["subtotal"]:
            raise ValidationError("Discount cannot exceed the subtotal")

        now = utcnow()
        order = Order(
            user_id=actor.id,
            restaurant_id=restaurant_id,
            address_id=data.address_id,
            status=INITIAL_STATUS.value,
            payment_method=data.payment_method.value,
            payment_status=initial_payment_status(data.payment_method).value,
            special_instructions=data.special_instructions,
            created_at=now,
            updated_at=now,
            items=items,
            **totals,
        )
        created = OrderStatusEvent(
            from_status=None,
            to_status=INITIAL_STATUS.value,
            actor_role=actor.role.value,
            actor_id=actor.id,
            reason="placed",
        )
        order = await OrderRepository.create_order(db, order, created)

        orders_created_total.labels(payment_method=order.payment_method).inc()
        logger.info(
            "order_created",
            order_id=order.id,
            restaurant_id=restaurant_id,
            total=str(order.total),
            payment_method=order.payment_method,
        )
        sla_supervisor.schedule(order.id, order.created_at)
        return order

    @staticmethod
    async def get_order(db: AsyncSession, order_id: int, actor: Actor) -> Order:
        order = await OrderRepository.get_order(db, order_id)
        if order is None or not OrderService.is_visible(order, actor):
            raise NotFoundError(f"Order {order_id} not found")
        return order

    @staticmethod
    async def list_orders_for_user(db: AsyncSession, actor: Actor, status: Optional[OrderStatus] = None):
        return await OrderRepository.list_for_user(db, actor.id, status.value if status else None)

    @staticmethod
    async def list_orders_for_restaurant(
        db: AsyncSession, actor: Actor, restaurant_id: int, status: Optional[OrderStatus] = None
    ):
        if actor.role is not ActorRole.SYSTEM and actor.restaurant_id != restaurant_id:
            raise NotFoundError(f"Restaurant {restaurant_id} not found")
        return await OrderRepository.list_for_restaurant(db, restaurant_id, status.value if status else None)

    @staticmethod
    async def apply_transition(
        db: AsyncSession, order_id: int, next_status, actor: Actor, **extra_values
    ) -> Order:
        async with _order_locks.hold(order_id):
            order = await OrderService.get_order(db, order_id, actor)
            current = OrderStatus(order.status)
            try:
                next_status = check_transition(current, next_status, actor)
            except IllegalTransitionError as e:
                order_transitions_total.labels(
                    to_status=e.requested_status.value if e.requested_status else "unknown",
                    actor_role=actor.role.value,
                    outcome="rejected",
                ).inc()
                logger.info("transition_rejected", order_id=order_id, actor_role=actor.role.value, reason=e.message)
                raise

            extra = dict(extra_values)
            reason = None
            if next_status is OrderStatus.CANCELED:
                reason = cancel_reason_for(actor)
                extra["cancel_reason"] = reason
                if order.payment_method == PaymentMethod.ONLINE_CARD.value:
                    extra["payment_status"] = PaymentStatus.REFUND_PENDING.value
            elif next_status is OrderStatus.PREPARING:
                extra["estimated_delivery_time"] = utcnow() + timedelta(minutes=ORDER_PREP_ESTIMATE_MINUTES)

            event = OrderStatusEvent(
                order_id=order_id,
                from_status=current.value,
                to_status=next_status.value,
                actor_role=actor.role.value,
                actor_id=actor.id,
                reason=reason,
            )
            applied = await OrderRepository.compare_and_set_status(
                db, order_id, current.value, next_status.value, event, **extra
            )
            if not applied:
                order_transitions_total.labels(
                    to_status=next_status.value, actor_role=actor.role.value, outcome="rejected"
                ).inc()
                latest = await OrderRepository.get_order(db, order_id)
                raise IllegalTransitionError(
                    f"Order {order_id} is no longer '{current.value}' (now '{latest.status if latest else 'gone'}')",
                    current_status=OrderStatus(latest.status) if latest else None,
                    requested_status=next_status,
                )

        order_transitions_total.labels(
            to_status=next_status.value, actor_role=actor.role.value, outcome="accepted"
        ).inc()
        logger.info(
            "order_transitioned",
            order_id=order_id,
            from_status=current.value,
            to_status=next_status.value,
            actor_role=actor.role.value,
            actor_id=actor.id,
        )
        if current is OrderStatus.PENDING:
            sla_supervisor.cancel(order_id)
            nudges.forget(order_id)

        order = await OrderRepository.get_order(db, order_id)
        await hub.publish(order_id, status_changed_event(order_id, next_status, as_utc(order.updated_at), reason))
        return order

    @staticmethod
    async def expire_order(order_id: int) -> Order:
        """SLA deadline passed: the system cancels the order if it is still pending."""
        async with AsyncSessionLocal() as db:
            return await OrderService.apply_transition(db, order_id, OrderStatus.CANCELED, SYSTEM_ACTOR)

    @staticmethod
    async def can_watch(order_id: int, actor: Actor) -> bool:
        """Whether ``actor`` may follow live updates of the order."""
        async with AsyncSessionLocal() as db:
            try:
                await OrderService.get_order(db, order_id, actor)
            except NotFoundError:
                return False
        return True

    @staticmethod
    async def collect_cash(
        db: AsyncSession, order_id: int, actor: Actor, amount_received, courier_notes: Optional[str] = None
    ) -> Order:
        """
        Courier hands over a cash order: the order becomes delivered and the
        payment completed in the same write, or neither happens.
        """
        order = await OrderService.get_order(db, order_id, actor)
        if actor.role is not ActorRole.COURIER:
            raise ValidationError("Only the courier can record a cash payment")
        if order.payment_method != PaymentMethod.CASH.value:
            raise ValidationError("This order is not paid in cash")
        if order.payment_status != PaymentStatus.CASH_DUE.value:
            raise ValidationError("Cash for this order has already been collected")
        amount_received = _money(amount_received)
        if amount_received < order.total:
            raise ValidationError(f"Amount received {amount_received} is less than the order total {order.total}")

        order = await OrderService.apply_transition(
            db,
            order_id,
            OrderStatus.DELIVERED,
            actor,
            payment_status=PaymentStatus.COMPLETED.value,
            cash_received=amount_received,
            courier_notes=courier_notes,
        )
        logger.info("cash_collected", order_id=order_id, amount=str(amount_received), courier_id=actor.id)
        return order

    @staticmethod
    async def update_payment_status(
        db: AsyncSession, order_id: int, payment_status: PaymentStatus, payment_reference: Optional[str] = None
    ) -> Order:
        updated = await OrderRepository.update_payment(
            db, order_id, PaymentStatus(payment_status).value, payment_reference
        )
        if not updated:
            raise NotFoundError(f"Order {order_id} not found")
        order = await OrderRepository.get_order(db, order_id)
        logger.info(
            "payment_updated",
            order_id=order_id,
            reported=PaymentStatus(payment_status).value,
            payment_status=order.payment_status,
        )
        return order

    @staticmethod
    async def start_checkout(db: AsyncSession, order_id: int, actor: Actor, gateway: PaymentGatewayClient) -> str:
        order = await OrderService.get_order(db, order_id, actor)
        if order.user_id != actor.id:
            raise NotFoundError(f"Order {order_id} not found")
        if order.payment_method != PaymentMethod.ONLINE_CARD.value:
            raise ValidationError("Online checkout is only available for online card payments")
        if order.payment_status != PaymentStatus.PENDING.value or is_terminal(order.status):
            raise ValidationError("This order is not awaiting payment")
        return await gateway.create_checkout(order.id, order.total)

    @staticmethod
    async def status_history(db: AsyncSession, order_id: int, actor: Actor):
        await OrderService.get_order(db, order_id, actor)
        return await OrderRepository.status_history(db, order_id)

    @staticmethod
    async def sla_status(db: AsyncSession, order_id: int, actor: Actor) -> dict:
        order = await OrderService.get_order(db, order_id, actor)
        return {
            "order_id": order.id,
            "status": order.status,
            "deadline": sla_supervisor.deadline_for(order.id),
            "seconds_remaining": sla_supervisor.remaining(order.id) or 0,
        }

    @staticmethod
    async def nudge_restaurant(db: AsyncSession, order_id: int, actor: Actor):
        """Pings the restaurant about a waiting order. Never touches status or the SLA deadline."""
        order = await OrderService.get_order(db, order_id, actor)
        if actor.role is not ActorRole.STUDENT:
            raise ValidationError("Only the customer can nudge the restaurant")
        if order.status != OrderStatus.PENDING.value:
            raise ValidationError("The restaurant has already responded to this order")
        nudges.acquire(order_id)
        notified_at = datetime.now(timezone.utc)
        await hub.publish(order_id, nudge_event(order_id, notified_at))
        logger.info("restaurant_nudged", order_id=order_id, restaurant_id=order.restaurant_id)
        return order, notified_at

    @staticmethod
    async def share_location(db: AsyncSession, order_id: int, actor: Actor, lat: float, lng: float) -> int:
        order = await OrderService.get_order(db, order_id, actor)
        if actor.role is not ActorRole.COURIER:
            raise ValidationError("Only couriers can share a delivery location")
        if is_terminal(order.status):
            raise ValidationError("This order is no longer being delivered")
        return await hub.publish(order_id, location_event(order_id, lat, lng))

    @staticmethod
    async def rearm_pending_timers(db: AsyncSession) -> int:
        """Recreates SLA entries for orders still pending, e.g. after a restart."""
        pending = await OrderRepository.list_by_status(db, OrderStatus.PENDING.value)
        for order in pending:
            sla_supervisor.schedule(order.id, order.created_at)
        # Windows that ran out while the process was down close now, not on the next tick
        expired = await sla_supervisor.check_deadlines()
        if pending:
            logger.info("sla_rearmed", count=len(pending), expired=expired)
        return len(pending)


async def send_order_receipt(notifier: NotificationClient, order: dict):
    """Post-commit hook: the order exists whether or not this succeeds."""
    await notifier.send("receipt", {"orderId": order["id"], "userId": order["userId"], "order": order})


async def send_nudge_notification(notifier: NotificationClient, order_id: int, restaurant_id: int):
    await notifier.send("nudge", {"orderId": order_id, "restaurantId": restaurant_id})


sla_supervisor = SLASupervisor(ORDER_ACK_WINDOW_SECONDS, on_expire=OrderService.expire_order)
nudges = NudgeLimiter(ORDER_NUDGE_COOLDOWN_SECONDS)
