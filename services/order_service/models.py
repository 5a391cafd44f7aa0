from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, Numeric, String, Text
from sqlalchemy.orm import relationship

from shared.config.database import Base, DB_SCHEMA, qualified

from .state_machine import INITIAL_STATUS

Money = Numeric(10, 2)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Order(Base):
    __tablename__ = "orders"
    # Orders live in their own schema on Postgres; disabled for SQLite
    __table_args__ = {"schema": DB_SCHEMA}

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    restaurant_id = Column(Integer, nullable=False, index=True)
    address_id = Column(Integer, nullable=False)

    status = Column(String(32), nullable=False, default=INITIAL_STATUS.value, index=True)
    cancel_reason = Column(String(32), nullable=True)

    # Fixed at creation from the catalog snapshot
    subtotal = Column(Money, nullable=False)
    delivery_fee = Column(Money, nullable=False)
    service_fee = Column(Money, nullable=False, default=0)
    tip = Column(Money, nullable=False, default=0)
    discount = Column(Money, nullable=False, default=0)
    total = Column(Money, nullable=False)

    payment_method = Column(String(32), nullable=False)
    payment_status = Column(String(32), nullable=False, default="pending")
    payment_reference = Column(String(128), nullable=True)
    # Set by the courier when a cash order is handed over
    cash_received = Column(Money, nullable=True)
    courier_notes = Column(Text, nullable=True)

    special_instructions = Column(Text, nullable=True)
    estimated_delivery_time = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    items = relationship(
        "OrderItem", back_populates="order", lazy="selectin", cascade="all, delete-orphan"
    )


class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = {"schema": DB_SCHEMA}

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey(qualified("orders.id")), nullable=False, index=True)
    menu_item_id = Column(Integer, nullable=False)
    name = Column(String(255), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Money, nullable=False)
    customizations = Column(JSON, nullable=False, default=list) # [{"name": ..., "price": "1.50"}]
    notes = Column(Text, nullable=True)

    order = relationship("Order", back_populates="items")


class OrderStatusEvent(Base):
    """Append-only trail of accepted transitions."""

    __tablename__ = "order_status_events"
    __table_args__ = {"schema": DB_SCHEMA}

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey(qualified("orders.id")), nullable=False, index=True)
    from_status = Column(String(32), nullable=True) # None for the creation row
    to_status = Column(String(32), nullable=False)
    actor_role = Column(String(32), nullable=False)
    actor_id = Column(String(64), nullable=False)
    reason = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
