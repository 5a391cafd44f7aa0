import math
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config.database import get_db
from shared.config.settings import ORDER_CREATE_RATE_LIMIT
from shared.security import Actor, get_current_actor, limiter, verify_internal_api_key

from .collaborators import (
    AddressClient,
    CatalogClient,
    NotificationClient,
    PaymentGatewayClient,
    get_addresses,
    get_catalog,
    get_notifier,
    get_payment_gateway,
)
from .exceptions import IllegalTransitionError, NudgeCooldownError, OrderServiceError
from .schemas import (
    CashPayment,
    CheckoutResponse,
    LocationUpdate,
    NudgeResponse,
    OrderCreate,
    OrderResponse,
    OrderStatusEventResponse,
    PaymentUpdate,
    SlaResponse,
    StatusUpdate,
)
from .service import OrderService, nudges, send_nudge_notification, send_order_receipt
from .state_machine import OrderStatus

router = APIRouter(tags=["Orders"])
# The payment collaborator calls back with the internal service key, not a user token
callback_router = APIRouter(tags=["Payment callbacks"], dependencies=[Depends(verify_internal_api_key)])
public_router = APIRouter()


@public_router.get("/health", include_in_schema=False)
async def health_check():
    return {"service": "orders", "status": "running"}


@router.post("/orders", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(ORDER_CREATE_RATE_LIMIT)
async def create_order(
    request: Request,                          # slowapi needs the request to key the limit
    payload: OrderCreate,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    catalog: CatalogClient = Depends(get_catalog),
    addresses: AddressClient = Depends(get_addresses),
    notifier: NotificationClient = Depends(get_notifier),
):
    order = await OrderService.create_order(db, actor, payload, catalog, addresses)
    response = OrderResponse.model_validate(order)
    # Receipt goes out after the response; its failure never affects the order
    background_tasks.add_task(send_order_receipt, notifier, response.model_dump(mode="json", by_alias=True))
    return response


@router.get("/orders", response_model=List[OrderResponse])
async def list_my_orders(
    status_filter: Optional[OrderStatus] = Query(None, alias="status"),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    return await OrderService.list_orders_for_user(db, actor, status_filter)


@router.get("/restaurants/{restaurant_id}/orders", response_model=List[OrderResponse])
async def list_restaurant_orders(
    restaurant_id: int,
    status_filter: Optional[OrderStatus] = Query(None, alias="status"),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    return await OrderService.list_orders_for_restaurant(db, actor, restaurant_id, status_filter)


@router.get("/orders/{order_id}", response_model=OrderResponse)
async def get_order(order_id: int, actor: Actor = Depends(get_current_actor), db: AsyncSession = Depends(get_db)):
    return await OrderService.get_order(db, order_id, actor)


@router.put("/orders/{order_id}/status", response_model=OrderResponse)
async def update_order_status(
    order_id: int,
    payload: StatusUpdate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    return await OrderService.apply_transition(db, order_id, payload.status, actor)


@router.post("/orders/{order_id}/cash-payment", response_model=OrderResponse)
async def collect_cash_payment(
    order_id: int,
    payload: CashPayment,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    return await OrderService.collect_cash(db, order_id, actor, payload.amount_received, payload.courier_notes)


@router.get("/orders/{order_id}/history", response_model=List[OrderStatusEventResponse])
async def get_order_history(order_id: int, actor: Actor = Depends(get_current_actor), db: AsyncSession = Depends(get_db)):
    return await OrderService.status_history(db, order_id, actor)


@router.get("/orders/{order_id}/sla", response_model=SlaResponse)
async def get_order_sla(order_id: int, actor: Actor = Depends(get_current_actor), db: AsyncSession = Depends(get_db)):
    return await OrderService.sla_status(db, order_id, actor)


@router.post("/orders/{order_id}/nudge", response_model=NudgeResponse)
async def nudge_restaurant(
    order_id: int,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationClient = Depends(get_notifier),
):
    order, notified_at = await OrderService.nudge_restaurant(db, order_id, actor)
    background_tasks.add_task(send_nudge_notification, notifier, order.id, order.restaurant_id)
    return NudgeResponse(order_id=order.id, notified_at=notified_at, retry_after=nudges.cooldown)


@router.post("/orders/{order_id}/location", status_code=status.HTTP_202_ACCEPTED)
async def share_location(
    order_id: int,
    payload: LocationUpdate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    delivered = await OrderService.share_location(db, order_id, actor, payload.lat, payload.lng)
    return {"orderId": order_id, "delivered": delivered}


@router.post("/orders/{order_id}/payment/checkout", response_model=CheckoutResponse)
async def start_checkout(
    order_id: int,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGatewayClient = Depends(get_payment_gateway),
):
    checkout_url = await OrderService.start_checkout(db, order_id, actor, gateway)
    return CheckoutResponse(order_id=order_id, checkout_url=checkout_url)


@callback_router.put("/orders/{order_id}/payment", response_model=OrderResponse)
async def update_order_payment(order_id: int, payload: PaymentUpdate, db: AsyncSession = Depends(get_db)):
    return await OrderService.update_payment_status(db, order_id, payload.payment_status, payload.payment_id)


async def order_error_handler(request: Request, exc: OrderServiceError):
    body = {"detail": exc.message, "error": type(exc).__name__}
    headers = {}
    if isinstance(exc, IllegalTransitionError) and exc.current_status is not None:
        body["currentStatus"] = exc.current_status.value
    if isinstance(exc, NudgeCooldownError):
        body["retryAfter"] = exc.retry_after
        headers["Retry-After"] = str(math.ceil(exc.retry_after))
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)
