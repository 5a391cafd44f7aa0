from typing import Optional

from sqlalchemy import and_, case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Order, OrderStatusEvent, utcnow


class OrderRepository:
    @staticmethod
    async def create_order(db: AsyncSession, order: Order, created_event: OrderStatusEvent) -> Order:
        db.add(order)
        await db.flush() # assigns order.id
        created_event.order_id = order.id
        db.add(created_event)
        await db.commit()
        await db.refresh(order)
        return order

    @staticmethod
    async def get_order(db: AsyncSession, order_id: int) -> Optional[Order]:
        result = await db.execute(
            select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        )
        return result.scalars().first()

    @staticmethod
    async def list_for_user(db: AsyncSession, user_id: str, status: Optional[str] = None):
        stmt = select(Order).where(Order.user_id == user_id)
        if status:
            stmt = stmt.where(Order.status == status)
        result = await db.execute(stmt.order_by(Order.created_at.desc(), Order.id.desc()))
        return result.scalars().all()

    @staticmethod
    async def list_for_restaurant(db: AsyncSession, restaurant_id: int, status: Optional[str] = None):
        stmt = select(Order).where(Order.restaurant_id == restaurant_id)
        if status:
            stmt = stmt.where(Order.status == status)
        result = await db.execute(stmt.order_by(Order.created_at.desc(), Order.id.desc()))
        return result.scalars().all()

    @staticmethod
    async def list_by_status(db: AsyncSession, status: str):
        result = await db.execute(select(Order).where(Order.status == status).order_by(Order.id))
        return result.scalars().all()

    @staticmethod
    async def compare_and_set_status(
        db: AsyncSession,
        order_id: int,
        expected_status: str,
        new_status: str,
        event: OrderStatusEvent,
        **extra_values,
    ) -> bool:
        """
        Moves the order to ``new_status`` only if it is still in ``expected_status``.
        Returns False (and writes nothing) when another writer got there first.
        """
        result = await db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == expected_status)
            .values(status=new_status, updated_at=utcnow(), **extra_values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            return False
        db.add(event)
        await db.commit()
        return True

    @staticmethod
    async def update_payment(
        db: AsyncSession, order_id: int, payment_status: str, payment_reference: Optional[str] = None
    ) -> bool:
        """
        Records a gateway result. On a canceled order a late 'completed' means
        money to give back, so the order stays refund_pending.
        """
        refund_due = Order.status == "canceled"
        if payment_status != "completed":
            refund_due = and_(refund_due, Order.payment_status == "refund_pending")
        values = {
            "payment_status": case((refund_due, "refund_pending"), else_=payment_status),
            "updated_at": utcnow(),
        }
        if payment_reference:
            values["payment_reference"] = payment_reference
        result = await db.execute(
            update(Order)
            .where(Order.id == order_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount == 1

    @staticmethod
    async def status_history(db: AsyncSession, order_id: int):
        result = await db.execute(
            select(OrderStatusEvent)
            .where(OrderStatusEvent.order_id == order_id)
            .order_by(OrderStatusEvent.id)
        )
        return result.scalars().all()
