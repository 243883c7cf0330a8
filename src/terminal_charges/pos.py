"""Point-of-sale charge flow and terminal connection test."""

import asyncio
import logging
import uuid
from typing import Optional

from .config import Settings
from .errors import ChargeError, ConflictError, UnauthorizedError
from .orders import POS_CLIENT, OrderService
from .schemas import ChargeView, TerminalTestResult
from .services import ChargeService
from .status import ChargeStatus, TerminalStatus
from .terminals import TerminalLeaseManager, TerminalRegistry

logger = logging.getLogger(__name__)


class PosChargeService:
    """Charges orders on terminals for cashiers."""

    def __init__(
        self,
        charges: ChargeService,
        orders: OrderService,
        leases: TerminalLeaseManager,
        registry: TerminalRegistry,
        settings: Settings,
        test_poll_attempts: int = 10,
        test_poll_interval: float = 1.0,
    ):
        self.charges = charges
        self.orders = orders
        self.leases = leases
        self.registry = registry
        self.settings = settings
        self.test_poll_attempts = test_poll_attempts
        self.test_poll_interval = test_poll_interval

    async def start_order_charge(
        self,
        order_id: str,
        terminal_id: str,
        event_id: Optional[str] = None,
        cashier_id: Optional[str] = None,
    ) -> ChargeView:
        """Lock an order and push its total to a terminal.

        A retry while the order's last attempt is still reserved returns that
        charge without touching the terminal or the order. The order goes back
        to pending if the charge cannot be started.

        Raises:
            ConflictError: Terminal not available or order not pending.
            NotFoundError: Order does not exist.
        """
        order = await self.orders.get_order(order_id)
        replay = await self.charges.find_recent_charge(order.id, order.total_amount)
        if replay is not None:
            logger.info(f"Order {order_id} retried, returning charge {replay.charge_id}")
            return replay

        status = await self.leases.get_terminal_status(terminal_id)
        if status == TerminalStatus.BUSY:
            raise ConflictError("Terminal is busy with another charge")
        if status != TerminalStatus.ONLINE:
            raise ConflictError(f"Terminal is not available (status {status.value})")

        order = await self.orders.lock_for_processing(order_id)
        try:
            view = await self.charges.create_charge(
                transaction_id=order.id,
                amount=order.total_amount,
                terminal_id=terminal_id,
                ticket_tier_id=order.ticket_tier_id,
                metadata={
                    "pos_client": POS_CLIENT,
                    "event_id": event_id or order.event_id,
                    "cashier_id": cashier_id,
                },
            )
        except Exception as e:
            message = e.message if isinstance(e, ChargeError) else "Error starting terminal payment"
            await self.orders.release_to_pending(order.id, {"code": "charge_failed", "message": message})
            raise

        if view.status.is_terminal and view.status != ChargeStatus.APPROVED:
            # Replayed attempt that had already failed
            await self.orders.release_to_pending(order.id, view.error_details or {"code": view.status.value})

        logger.info(f"Started charge {view.charge_id} for order {order_id} on terminal {terminal_id}")
        return view

    async def test_terminal_connection(self, organization_id: str, terminal_id: str) -> TerminalTestResult:
        """Send a minimum-amount test charge and wait a bounded time for its outcome.

        Raises:
            UnauthorizedError: Terminal does not belong to the organization.
        """
        if not await self.registry.belongs_to(organization_id, terminal_id):
            raise UnauthorizedError("Terminal does not belong to your organization")

        try:
            view = await self.charges.create_charge(
                transaction_id=f"terminal-test-{uuid.uuid4().hex[:12]}",
                amount=self.settings.test_charge_amount,
                terminal_id=terminal_id,
                metadata={"test": True, "organization_id": organization_id},
            )
        except ChargeError as e:
            logger.warning(f"Terminal {terminal_id} test charge failed: {e.message}")
            return TerminalTestResult(success=False, status=ChargeStatus.ERROR.value, message=e.message)

        for _ in range(self.test_poll_attempts):
            if view.status.is_terminal:
                break
            await asyncio.sleep(self.test_poll_interval)
            view = await self.charges.get_charge_status(view.charge_id)

        success = view.status == ChargeStatus.APPROVED
        if success:
            message = "Terminal test payment approved"
        elif view.status == ChargeStatus.PENDING:
            message = "Terminal did not confirm the test payment in time"
        else:
            message = f"Terminal test payment ended as {view.status.value}"
        return TerminalTestResult(
            success=success,
            status=view.status.value,
            message=message,
            charge_id=view.charge_id,
        )
