"""Repository layer for charge, assignment, terminal and order persistence."""

import json
import logging
from datetime import datetime
from typing import Optional, Dict, Any, List

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from ..status import ChargeStatus
from .models import (
    Charge,
    ChargeStatusHistory,
    ChargeWebhookEvent,
    OrganizationTerminal,
    TerminalAssignment,
    Order,
    utcnow,
)

logger = logging.getLogger(__name__)


def _dumps(value: Optional[Dict[str, Any]]) -> Optional[str]:
    return json.dumps(value, default=str) if value is not None else None


class ChargeRepository:
    """Repository for the charge store.

    Status and history only ever change together through ``add_status_history``.
    """

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def create(
        self,
        charge_id: str,
        transaction_id: str,
        amount: int,
        currency: str,
        terminal_id: str,
        ticket_tier_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Charge:
        """Create a pending charge together with its initial history entry.

        Args:
            charge_id: Generated charge id.
            transaction_id: Linked business transaction/order id.
            amount: Amount in minor currency units.
            currency: Three-letter currency code.
            terminal_id: Terminal the charge is sent to.
            ticket_tier_id: Optional price-tier id.
            metadata: Optional metadata dictionary.

        Returns:
            Created Charge instance.
        """
        now = utcnow()
        charge = Charge(
            id=charge_id,
            transaction_id=transaction_id,
            ticket_tier_id=ticket_tier_id,
            amount=amount,
            currency=currency.upper(),
            terminal_id=terminal_id,
            status=ChargeStatus.PENDING.value,
            poll_attempts=0,
            reconciled=False,
            created_at=now,
            updated_at=now,
        )
        charge.charge_metadata = metadata or {}
        self.session.add(charge)
        self.session.add(
            ChargeStatusHistory(
                charge_id=charge_id,
                sequence=1,
                status=ChargeStatus.PENDING.value,
                previous_status=None,
                reason="Charge initiated",
                created_at=now,
            )
        )
        await self.session.flush()

        logger.info(f"Created charge {charge_id} for transaction {transaction_id} on terminal {terminal_id}")
        return charge

    async def get_by_id(self, charge_id: str) -> Optional[Charge]:
        """Get a charge by its id, refreshing any stale identity-map copy."""
        result = await self.session.execute(
            select(Charge)
            .where(Charge.id == charge_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_provider_transaction_id(
        self,
        provider_transaction_id: str
    ) -> Optional[Charge]:
        """Get a charge by provider transaction id."""
        result = await self.session.execute(
            select(Charge)
            .where(Charge.provider_transaction_id == provider_transaction_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def set_provider_transaction_id(self, charge_id: str, provider_transaction_id: str) -> None:
        await self.session.execute(
            update(Charge)
            .where(Charge.id == charge_id)
            .values(provider_transaction_id=provider_transaction_id, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    async def add_status_history(
        self,
        charge_id: str,
        status: ChargeStatus,
        reason: str,
        raw_payload: Optional[Dict[str, Any]] = None,
        *,
        expected_status: Optional[ChargeStatus] = ChargeStatus.PENDING,
        payment_details: Optional[Dict[str, Any]] = None,
        error_details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Move a charge to ``status`` and append the matching history entry.

        The status column is updated with a compare-and-set on
        ``expected_status``; when another writer got there first nothing is
        written and False is returned.

        Args:
            charge_id: Charge to transition.
            status: New canonical status.
            reason: Human readable reason stored in history.
            raw_payload: Provider payload that caused the transition.
            expected_status: Status the charge must currently have, None to skip the check.
            payment_details: Stored when the charge is approved.
            error_details: Stored when the charge is declined or errored.

        Returns:
            True if this call performed the transition.
        """
        current = await self.session.scalar(select(Charge.status).where(Charge.id == charge_id))
        if current is None:
            return False

        values: Dict[str, Any] = {"status": status.value, "updated_at": utcnow()}
        if status.is_terminal:
            values["reconciled"] = True
        if payment_details is not None:
            values["payment_details_json"] = _dumps(payment_details)
        if error_details is not None:
            values["error_details_json"] = _dumps(error_details)

        stmt = update(Charge).where(Charge.id == charge_id)
        if expected_status is not None:
            stmt = stmt.where(Charge.status == expected_status.value)
        result = await self.session.execute(
            stmt.values(**values).execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info(f"Charge {charge_id} was not in {expected_status}, skipping transition to {status.value}")
            return False

        last_sequence = await self.session.scalar(
            select(func.max(ChargeStatusHistory.sequence)).where(ChargeStatusHistory.charge_id == charge_id)
        )
        entry = ChargeStatusHistory(
            charge_id=charge_id,
            sequence=(last_sequence or 0) + 1,
            status=status.value,
            previous_status=expected_status.value if expected_status is not None else current,
            reason=reason,
        )
        entry.raw_payload = raw_payload
        self.session.add(entry)
        await self.session.flush()

        logger.info(f"Charge {charge_id} transitioned to {status.value}: {reason}")
        return True

    async def get_status_history(self, charge_id: str) -> List[ChargeStatusHistory]:
        result = await self.session.execute(
            select(ChargeStatusHistory)
            .where(ChargeStatusHistory.charge_id == charge_id)
            .order_by(ChargeStatusHistory.sequence)
        )
        return list(result.scalars().all())

    async def record_poll(self, charge_id: str, polled_at: Optional[datetime] = None) -> None:
        """Bump poll bookkeeping as a single atomic update."""
        await self.session.execute(
            update(Charge)
            .where(Charge.id == charge_id)
            .values(
                last_poll_at=polled_at or utcnow(),
                poll_attempts=Charge.poll_attempts + 1,
            )
            .execution_options(synchronize_session=False)
        )

    async def list_pending_for_reconciliation(
        self,
        created_before: datetime,
        limit: int = 100,
    ) -> List[Charge]:
        """List unreconciled pending charges created before the cutoff, oldest first.

        Args:
            created_before: Grace-window cutoff.
            limit: Maximum number of results.

        Returns:
            List of Charge instances.
        """
        result = await self.session.execute(
            select(Charge)
            .where(
                Charge.status == ChargeStatus.PENDING.value,
                Charge.reconciled.is_(False),
                Charge.created_at < created_before,
            )
            .order_by(Charge.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_by_transaction(self, transaction_id: str) -> List[Charge]:
        result = await self.session.execute(
            select(Charge)
            .where(Charge.transaction_id == transaction_id)
            .order_by(Charge.created_at.desc())
        )
        return list(result.scalars().all())


class WebhookEventRepository:
    """Repository for webhook delivery receipts."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def record(
        self,
        event_type: str,
        provider_event_id: Optional[str],
        provider_transaction_id: Optional[str],
        charge_id: Optional[str],
    ) -> Optional[ChargeWebhookEvent]:
        """Store a webhook receipt.

        A concurrent insert of the same provider event id surfaces as
        IntegrityError from the flush; the caller's unit of work is then
        rolled back and the delivery treated as a duplicate.

        Returns:
            The new receipt, or None if a receipt with the same provider event id exists.
        """
        if provider_event_id and await self.get_by_provider_event_id(provider_event_id):
            logger.info(f"Webhook event {provider_event_id} already recorded")
            return None
        receipt = ChargeWebhookEvent(
            charge_id=charge_id,
            provider_transaction_id=provider_transaction_id,
            provider_event_id=provider_event_id,
            event_type=event_type,
            processed=False,
        )
        self.session.add(receipt)
        await self.session.flush()
        return receipt

    async def get_by_provider_event_id(self, provider_event_id: str) -> Optional[ChargeWebhookEvent]:
        result = await self.session.execute(
            select(ChargeWebhookEvent).where(ChargeWebhookEvent.provider_event_id == provider_event_id)
        )
        return result.scalar_one_or_none()

    async def mark_processed(self, receipt_id: str) -> None:
        await self.session.execute(
            update(ChargeWebhookEvent)
            .where(ChargeWebhookEvent.id == receipt_id)
            .values(processed=True)
            .execution_options(synchronize_session=False)
        )

    async def list_unprocessed(self, limit: int = 100) -> List[ChargeWebhookEvent]:
        result = await self.session.execute(
            select(ChargeWebhookEvent)
            .where(ChargeWebhookEvent.processed.is_(False))
            .order_by(ChargeWebhookEvent.received_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())


class TerminalRepository:
    """Repository for terminals registered to organizations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(
        self,
        organization_id: str,
        terminal_id: str,
        active_only: bool = True,
    ) -> Optional[OrganizationTerminal]:
        stmt = select(OrganizationTerminal).where(
            OrganizationTerminal.organization_id == organization_id,
            OrganizationTerminal.terminal_id == terminal_id,
        )
        if active_only:
            stmt = stmt.where(OrganizationTerminal.active.is_(True))
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_organization(
        self,
        organization_id: str,
        active_only: bool = True,
    ) -> List[OrganizationTerminal]:
        stmt = select(OrganizationTerminal).where(OrganizationTerminal.organization_id == organization_id)
        if active_only:
            stmt = stmt.where(OrganizationTerminal.active.is_(True))
        result = await self.session.execute(stmt.order_by(OrganizationTerminal.terminal_id))
        return list(result.scalars().all())

    async def add(
        self,
        organization_id: str,
        terminal_id: str,
        serial_number: str,
        location: str = "",
    ) -> OrganizationTerminal:
        terminal = OrganizationTerminal(
            organization_id=organization_id,
            terminal_id=terminal_id,
            serial_number=serial_number,
            location=location,
            active=True,
        )
        self.session.add(terminal)
        await self.session.flush()
        return terminal


class TerminalAssignmentRepository:
    """Repository for terminal assignments."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_active_for_terminal(self, terminal_id: str, event_id: str) -> Optional[TerminalAssignment]:
        result = await self.session.execute(
            select(TerminalAssignment).where(
                TerminalAssignment.terminal_id == terminal_id,
                TerminalAssignment.event_id == event_id,
                TerminalAssignment.active.is_(True),
            )
        )
        return result.scalars().first()

    async def get_active_for_user(self, user_id: str, event_id: str) -> Optional[TerminalAssignment]:
        result = await self.session.execute(
            select(TerminalAssignment).where(
                TerminalAssignment.user_id == user_id,
                TerminalAssignment.event_id == event_id,
                TerminalAssignment.active.is_(True),
            )
        )
        return result.scalars().first()

    async def list_active_for_event(self, event_id: str) -> List[TerminalAssignment]:
        result = await self.session.execute(
            select(TerminalAssignment).where(
                TerminalAssignment.event_id == event_id,
                TerminalAssignment.active.is_(True),
            )
        )
        return list(result.scalars().all())

    async def deactivate_for_user(self, user_id: str, event_id: str) -> int:
        """Deactivate every active assignment of the user for the event."""
        result = await self.session.execute(
            update(TerminalAssignment)
            .where(
                TerminalAssignment.user_id == user_id,
                TerminalAssignment.event_id == event_id,
                TerminalAssignment.active.is_(True),
            )
            .values(active=False)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def create(
        self,
        organization_id: str,
        user_id: str,
        event_id: str,
        terminal_id: str,
        location: str = "",
        last_status: Optional[str] = None,
    ) -> TerminalAssignment:
        now = utcnow()
        assignment = TerminalAssignment(
            organization_id=organization_id,
            user_id=user_id,
            event_id=event_id,
            terminal_id=terminal_id,
            location=location,
            active=True,
            assigned_at=now,
            last_status_check=now,
        )
        if last_status:
            assignment.last_status = last_status
        self.session.add(assignment)
        await self.session.flush()
        return assignment

    async def deactivate_older_than(self, cutoff: datetime) -> int:
        """Deactivate all active assignments made before ``cutoff`` in one statement."""
        result = await self.session.execute(
            update(TerminalAssignment)
            .where(
                TerminalAssignment.active.is_(True),
                TerminalAssignment.assigned_at < cutoff,
            )
            .values(active=False)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount


class OrderRepository:
    """Repository for business orders."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        unit_price: int,
        quantity: int = 1,
        order_id: Optional[str] = None,
        event_id: Optional[str] = None,
        ticket_tier_id: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> Order:
        order = Order(
            unit_price=unit_price,
            quantity=quantity,
            event_id=event_id,
            ticket_tier_id=ticket_tier_id,
            customer_id=customer_id,
        )
        if order_id:
            order.id = order_id
        self.session.add(order)
        await self.session.flush()
        return order

    async def get(self, order_id: str) -> Optional[Order]:
        result = await self.session.execute(
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def transition(
        self,
        order_id: str,
        from_status: str,
        to_status: str,
        **values: Any,
    ) -> bool:
        """Conditionally move an order between payment states.

        Args:
            order_id: Order to update.
            from_status: Status the order must currently have.
            to_status: Target status.
            **values: Extra columns to set in the same statement.

        Returns:
            True if the order was in ``from_status`` and has been updated.
        """
        result = await self.session.execute(
            update(Order)
            .where(Order.id == order_id, Order.payment_status == from_status)
            .values(payment_status=to_status, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
