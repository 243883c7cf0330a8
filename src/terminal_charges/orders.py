"""Order payment state and its synchronization with terminal charge outcomes."""

import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .database import Order, OrderPaymentStatus, OrderRepository, session_scope, utcnow
from .errors import ConflictError, NotFoundError
from .events import CHARGE_OUTCOME_EVENTS, InMemoryEventBus
from .status import ChargeStatus

logger = logging.getLogger(__name__)

# Charges created by this client keep their order in lockstep with the charge.
POS_CLIENT = "scanner-app"

TicketIssuer = Callable[[Dict[str, Any]], Awaitable[None]]


class OrderService:
    """Conditional payment-state transitions of business orders."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ticket_issuer: Optional[TicketIssuer] = None,
    ):
        self.session_factory = session_factory
        self.ticket_issuer = ticket_issuer

    async def create_order(
        self,
        unit_price: int,
        quantity: int = 1,
        order_id: Optional[str] = None,
        event_id: Optional[str] = None,
        ticket_tier_id: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> Order:
        async with session_scope(self.session_factory) as session:
            return await OrderRepository(session).create(
                unit_price=unit_price,
                quantity=quantity,
                order_id=order_id,
                event_id=event_id,
                ticket_tier_id=ticket_tier_id,
                customer_id=customer_id,
            )

    async def get_order(self, order_id: str) -> Order:
        async with session_scope(self.session_factory) as session:
            order = await OrderRepository(session).get(order_id)
        if order is None:
            raise NotFoundError("Order not found")
        return order

    async def lock_for_processing(self, order_id: str) -> Order:
        """Move a pending order to processing so only one cashier can charge it.

        Raises:
            NotFoundError: Order does not exist.
            ConflictError: Order is not pending.
        """
        async with session_scope(self.session_factory) as session:
            repo = OrderRepository(session)
            locked = await repo.transition(
                order_id,
                OrderPaymentStatus.PENDING.value,
                OrderPaymentStatus.PROCESSING.value,
                last_payment_attempt_at=utcnow(),
            )
            order = await repo.get(order_id)
        if order is None:
            raise NotFoundError("Order not found")
        if not locked:
            raise ConflictError(f"Order is not available for payment (status {order.payment_status})")
        logger.info(f"Order {order_id} locked for processing")
        return order

    async def mark_paid(
        self,
        order_id: str,
        payment_details: Optional[Dict[str, Any]] = None,
        payment_method: str = "terminal",
    ) -> bool:
        """Mark an order paid and issue its tickets.

        Returns:
            False if the order was already paid or cannot be paid.
        """
        values = {
            "paid_at": utcnow(),
            "payment_method": payment_method,
            "payment_details_json": json.dumps(payment_details, default=str) if payment_details else None,
        }
        async with session_scope(self.session_factory) as session:
            repo = OrderRepository(session)
            paid = await repo.transition(
                order_id, OrderPaymentStatus.PROCESSING.value, OrderPaymentStatus.PAID.value, **values
            )
            if not paid:
                paid = await repo.transition(
                    order_id, OrderPaymentStatus.PENDING.value, OrderPaymentStatus.PAID.value, **values
                )
            order = await repo.get(order_id) if paid else None

        if order is None:
            logger.warning(f"Order {order_id} could not be marked paid")
            return False

        logger.info(f"Order {order_id} paid")
        if self.ticket_issuer is not None:
            await self.ticket_issuer({
                "order_id": order.id,
                "event_id": order.event_id,
                "ticket_tier_id": order.ticket_tier_id,
                "customer_id": order.customer_id,
                "quantity": order.quantity,
                "total_amount": order.total_amount,
            })
        return True

    async def release_to_pending(self, order_id: str, error: Optional[Dict[str, Any]] = None) -> bool:
        """Return a processing order to pending so the payment can be retried."""
        async with session_scope(self.session_factory) as session:
            released = await OrderRepository(session).transition(
                order_id,
                OrderPaymentStatus.PROCESSING.value,
                OrderPaymentStatus.PENDING.value,
                last_payment_error_json=json.dumps(error, default=str) if error else None,
            )
        if released:
            logger.info(f"Order {order_id} returned to pending")
        return released


class OrderPaymentSync:
    """Keeps point-of-sale orders in lockstep with their charges' outcomes."""

    def __init__(self, orders: OrderService):
        self.orders = orders

    def attach(self, bus: InMemoryEventBus) -> None:
        for event_name in CHARGE_OUTCOME_EVENTS:
            bus.subscribe(event_name, self.handle)

    def detach(self, bus: InMemoryEventBus) -> None:
        for event_name in CHARGE_OUTCOME_EVENTS:
            bus.unsubscribe(event_name, self.handle)

    async def handle(self, event_name: str, payload: Dict[str, Any]) -> None:
        if payload.get("pos_client") != POS_CLIENT:
            return

        order_id = payload["transaction_id"]
        if payload["status"] == ChargeStatus.APPROVED.value:
            await self.orders.mark_paid(order_id, payload.get("payment_details"))
        else:
            error = dict(payload.get("error_details") or {"code": payload["status"]})
            error["charge_id"] = payload["charge_id"]
            await self.orders.release_to_pending(order_id, error)
