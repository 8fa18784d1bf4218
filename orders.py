"""
orders.py: order lookup and status changes after checkout.

Prices on an order are frozen at checkout; only status and history change here.
Cancelling an order puts its stock back, once.
"""
from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

from errors import OrderNotFound, ValidationError
from logging_config import get_logger
from quotes import utc_now
from schemas import MovementType, Order, OrderPage, OrderStatus, as_utc

log = get_logger(__name__)

ALLOWED_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED, OrderStatus.CANCELLED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return OrderStatus(target) in ALLOWED_TRANSITIONS[OrderStatus(current)]


class OrderService:
    def __init__(self, store, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    async def get(self, order_id: str) -> Order:
        order = await self.store.get_order(order_id)
        if order is None:
            raise OrderNotFound("Order not found")
        return order

    async def list(
        self,
        status: Optional[OrderStatus] = None,
        customer_email: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20,
    ) -> OrderPage:
        """Orders newest first. Filters left as None do not apply; the date range is inclusive."""
        orders, total = await self.store.list_orders(
            status=OrderStatus(status) if status else None,
            customer_email=(customer_email or "").strip() or None,
            date_from=as_utc(date_from),
            date_to=as_utc(date_to),
            skip=(page - 1) * limit,
            limit=limit,
        )
        return OrderPage(data=orders, total=total)

    async def update_status(self, order_id: str, status: OrderStatus) -> Order:
        """
        Moves an order to `status` and appends it to the status history.

        Setting the current status again is a no-op. Moving to CANCELLED restores
        the stock of every line in the same transaction as the status change.

        Raises:
            OrderNotFound: Unknown order id.
            ValidationError: The transition is not allowed, also when another update
                moved the order first.
        """
        order = await self.get(order_id)
        target = OrderStatus(status)
        if OrderStatus(order.status) == target:
            return order
        if not can_transition(order.status, target):
            raise ValidationError(f"Cannot change order status from {order.status} to {target.value}")

        now = self.clock()

        async def apply(session) -> bool:
            # The write only lands if nobody moved the order since it was read
            if not await self.store.push_order_status(order.id, target, now, expected=order.status, session=session):
                current = await self.store.get_order(order.id, session=session)
                if current is None:
                    raise OrderNotFound("Order not found")
                if OrderStatus(current.status) == target:
                    return False
                raise ValidationError(f"Cannot change order status from {current.status} to {target.value}")
            if target == OrderStatus.CANCELLED:
                await self._restore_stock(order, session)
            return True

        if await self.store.run_in_transaction(apply):
            log.info(f"[Order: {order.id}] Status {order.status} -> {target.value}")
        return await self.get(order.id)

    async def _restore_stock(self, order: Order, session):
        if await self.store.has_movement(order.id, MovementType.RESTORE, session=session):
            log.warning(f"[Order: {order.id}] Stock already restored, skipping.")
            return
        for item in order.items:
            await self.store.increment_stock(item.product_id, item.quantity, session=session)
            await self.store.insert_movement(
                item.product_id, order.id, MovementType.RESTORE, item.quantity,
                f"Order {order.id} cancelled", session=session,
            )
        log.info(f"[Order: {order.id}] Restored stock for {len(order.items)} line(s).")
