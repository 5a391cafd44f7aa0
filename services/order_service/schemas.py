from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from .state_machine import OrderStatus


class PaymentMethod(str, Enum):
    CARD_ON_DELIVERY = "card_on_delivery"
    ONLINE_CARD = "online_card"
    CASH = "cash"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    CASH_DUE = "cash_due"
    COMPLETED = "completed"
    REFUND_PENDING = "refund_pending"


class CamelModel(BaseModel):
    """Wire format is camelCase; snake_case is accepted on input too."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


# --- Requests ---

class CustomizationIn(CamelModel):
    name: str


class OrderItemIn(CamelModel):
    menu_item_id: int
    quantity: int = 1
    customizations: List[CustomizationIn] = []
    notes: Optional[str] = None


class OrderCreate(CamelModel):
    # Address and items are checked by the service so that a missing value is a 400, not a 422
    restaurant_id: Optional[int] = None
    address_id: Optional[int] = None
    payment_method: PaymentMethod
    items: List[OrderItemIn] = []
    special_instructions: Optional[str] = None
    tip: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")


class StatusUpdate(CamelModel):
    # Unknown values are rejected by the state machine with the order's current status
    status: str


class PaymentUpdate(CamelModel):
    payment_status: PaymentStatus
    payment_id: Optional[str] = None


class CashPayment(CamelModel):
    amount_received: Decimal
    courier_notes: Optional[str] = None


class LocationUpdate(CamelModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


# --- Responses ---

class CustomizationResponse(CamelModel):
    name: str
    price: Decimal


class OrderItemResponse(CamelModel):
    id: int
    menu_item_id: int
    name: str
    quantity: int
    unit_price: Decimal
    customizations: List[CustomizationResponse] = []
    notes: Optional[str] = None


class OrderResponse(CamelModel):
    id: int
    user_id: str
    restaurant_id: int
    address_id: int
    status: OrderStatus
    cancel_reason: Optional[str] = None
    subtotal: Decimal
    delivery_fee: Decimal
    service_fee: Decimal
    tip: Decimal
    discount: Decimal
    total: Decimal
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    payment_reference: Optional[str] = None
    cash_received: Optional[Decimal] = None
    courier_notes: Optional[str] = None
    special_instructions: Optional[str] = None
    estimated_delivery_time: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    items: List[OrderItemResponse] = []


class OrderStatusEventResponse(CamelModel):
    from_status: Optional[OrderStatus] = None
    to_status: OrderStatus
    actor_role: str
    actor_id: str
    reason: Optional[str] = None
    created_at: datetime


class SlaResponse(CamelModel):
    order_id: int
    status: OrderStatus
    deadline: Optional[datetime] = None
    seconds_remaining: float = 0


class NudgeResponse(CamelModel):
    order_id: int
    notified_at: datetime
    retry_after: float


class CheckoutResponse(CamelModel):
    order_id: int
    checkout_url: str
