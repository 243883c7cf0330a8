"""Terminal charge service: creation, webhook ingestion, polling and status transitions."""

import asyncio
import hashlib
import hmac
import json
import logging
from datetime import datetime, timedelta
from typing import Optional, Dict, Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .config import Settings
from .connectors.base import GatewayBase, GatewayPaymentRequest, GatewayPaymentStatus
from .database import (
    Charge,
    ChargeRepository,
    WebhookEventRepository,
    generate_charge_id,
    session_scope,
    utcnow,
)
from .errors import (
    ChargeError,
    ChargeValidationError,
    ConflictError,
    NotFoundError,
    UnauthorizedError,
    UpstreamUnavailableError,
)
from .events import CHARGE_INITIATED, EventPublisher, charge_event_name
from .idempotency import IdempotencyLedger
from .reconciliation.models import ChargeSweepFailure, ReconciliationReport
from .schemas import ChargeView
from .status import ChargeStatus, map_provider_status
from .terminals import TerminalLeaseManager

logger = logging.getLogger(__name__)

# Provider error code -> message shown to the cashier
ERROR_MESSAGES = {
    "insufficient_funds": "Payment declined: insufficient funds",
    "card_declined": "Payment declined: card declined",
    "expired_card": "Payment declined: card expired",
    "invalid_pin": "Incorrect PIN",
    "timeout": "Payment timed out, please try again",
    "terminal_offline": "Terminal offline, check its connection",
    "terminal_busy": "Terminal busy, please wait",
    "duplicate_transaction": "Duplicate transaction",
    "amount_limit_exceeded": "Amount exceeds the allowed limit",
    "security_violation": "Security check failed, contact your bank",
    "issuer_unavailable": "Card issuer unavailable, try again later",
}
DEFAULT_ERROR_MESSAGE = "Error processing the payment, please try again"

# Webhook event type -> outcome status reported when the body carries none
WEBHOOK_OUTCOMES = {
    "payment.approved": "approved",
    "payment.declined": "declined",
    "payment.reversed": "reversed",
    "payment.cancelled": "cancelled",
}


def user_friendly_error(code: Optional[str]) -> str:
    return ERROR_MESSAGES.get(code or "", DEFAULT_ERROR_MESSAGE)


class ChargeService:
    """Owns the lifecycle of terminal charges.

    Every database step runs in its own short unit of work; no transaction
    is held open across a gateway call.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: IdempotencyLedger,
        leases: TerminalLeaseManager,
        gateway: GatewayBase,
        events: EventPublisher,
        settings: Settings,
    ):
        """Initialize the service with its collaborators.

        Args:
            session_factory: Factory for database sessions.
            ledger: Idempotency ledger for charge creation.
            leases: Terminal busy lease manager.
            gateway: Payment provider connector.
            events: Domain event publisher.
            settings: Runtime settings.
        """
        self.session_factory = session_factory
        self.ledger = ledger
        self.leases = leases
        self.gateway = gateway
        self.events = events
        self.settings = settings

    @property
    def payment_window(self) -> timedelta:
        return timedelta(seconds=self.settings.payment_window_seconds)

    async def create_charge(
        self,
        transaction_id: str,
        amount: int,
        terminal_id: str,
        ticket_tier_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChargeView:
        """Create a charge on a terminal, or return the charge a retried attempt already created.

        Args:
            transaction_id: Linked business transaction/order id.
            amount: Amount in minor currency units.
            terminal_id: Terminal to push the payment to.
            ticket_tier_id: Optional price-tier id.
            metadata: Optional metadata, e.g. ``pos_client``.

        Returns:
            Current view of the charge.

        Raises:
            ChargeValidationError: Malformed amount or ids.
            ConflictError: Terminal busy.
            ChargeError: Gateway rejection, after the charge was recorded as error.
        """
        self._validate(transaction_id, amount, terminal_id)

        charge_id = generate_charge_id()
        existing_id = await self.ledger.reserve(transaction_id, amount, charge_id)
        if existing_id is not None:
            logger.info(f"Replaying charge {existing_id} for transaction {transaction_id}")
            return await self._wait_for_charge(existing_id)

        if not await self.leases.try_acquire_busy(terminal_id, holder=charge_id):
            await self.ledger.discard(transaction_id, amount, charge_id)
            raise ConflictError("Terminal is busy with another charge")

        try:
            async with session_scope(self.session_factory) as session:
                await ChargeRepository(session).create(
                    charge_id=charge_id,
                    transaction_id=transaction_id,
                    amount=amount,
                    currency=self.settings.currency,
                    terminal_id=terminal_id,
                    ticket_tier_id=ticket_tier_id,
                    metadata=metadata,
                )
        except Exception:
            await self.leases.release_busy(terminal_id, holder=charge_id)
            await self.ledger.discard(transaction_id, amount, charge_id)
            raise

        request = GatewayPaymentRequest(
            amount=amount,
            currency=self.settings.currency,
            terminal_id=terminal_id,
            reference_id=charge_id,
            description=f"Transaction {transaction_id}",
            metadata={
                "transaction_id": str(transaction_id),
                "ticket_tier_id": str(ticket_tier_id) if ticket_tier_id else None,
                "charge_id": charge_id,
            },
        )
        try:
            response = await self.gateway.create_payment(request)
        except Exception as e:
            error = e if isinstance(e, ChargeError) else UpstreamUnavailableError("Error connecting to payment service")
            if not isinstance(e, ChargeError):
                logger.exception(f"Unexpected gateway failure creating charge {charge_id}")
            await self._fail_creation(charge_id, transaction_id, amount, error)
            if error is e:
                raise
            raise error from e

        async with session_scope(self.session_factory) as session:
            repo = ChargeRepository(session)
            await repo.set_provider_transaction_id(charge_id, response.provider_transaction_id)
            charge = await repo.get_by_id(charge_id)
            payload = self._event_payload(charge, ChargeStatus.PENDING)

        logger.info(f"Charge {charge_id} accepted by gateway as {response.provider_transaction_id}")
        await self.events.publish(CHARGE_INITIATED, payload)

        return await self.get_charge(charge_id)

    def _validate(self, transaction_id: str, amount: int, terminal_id: str) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ChargeValidationError("Amount must be a positive integer in minor units")
        if not transaction_id or not str(transaction_id).strip():
            raise ChargeValidationError("Transaction id is required")
        if not terminal_id or not str(terminal_id).strip():
            raise ChargeValidationError("Terminal id is required")

    async def find_recent_charge(self, transaction_id: str, amount: int) -> Optional[ChargeView]:
        """Charge a retried attempt would replay, while its reservation is live."""
        existing_id = await self.ledger.lookup(transaction_id, amount)
        if existing_id is None:
            return None
        return await self._wait_for_charge(existing_id)

    async def _wait_for_charge(self, charge_id: str) -> ChargeView:
        """Return a replayed charge once the winning attempt has persisted it."""
        for attempt in range(self.settings.idempotency_wait_attempts + 1):
            async with session_scope(self.session_factory) as session:
                charge = await ChargeRepository(session).get_by_id(charge_id)
                if charge is not None:
                    return ChargeView.from_charge(charge)
            if attempt < self.settings.idempotency_wait_attempts:
                await asyncio.sleep(self.settings.idempotency_wait_interval_seconds)
        raise ConflictError("Charge attempt is still being created, retry shortly")

    async def _fail_creation(
        self,
        charge_id: str,
        transaction_id: str,
        amount: int,
        error: ChargeError,
    ) -> None:
        """Record a gateway rejection; the transition releases the busy lease."""
        logger.warning(f"Gateway rejected charge {charge_id}: {error.message}")
        await self._transition(
            charge_id,
            ChargeStatus.ERROR,
            reason=f"Gateway rejected charge: {error.message}",
            error_details={
                "code": "gateway_error",
                "message": error.message,
                "http_status": getattr(error, "upstream_status", None) or error.status_code,
            },
        )
        # The provider answered definitively, so no payment exists under this reference.
        if isinstance(error, (ChargeValidationError, NotFoundError)):
            await self.ledger.discard(transaction_id, amount, charge_id)

    async def get_charge(self, charge_id: str, include_history: bool = False) -> ChargeView:
        async with session_scope(self.session_factory) as session:
            charge = await ChargeRepository(session).get_by_id(charge_id)
            if charge is None:
                raise NotFoundError("Charge not found")
            return ChargeView.from_charge(charge, include_history=include_history)

    async def get_charge_status(self, charge_id: str) -> ChargeView:
        """Return the charge, polling the provider first while it is pending and in its window."""
        async with session_scope(self.session_factory) as session:
            charge = await ChargeRepository(session).get_by_id(charge_id)
            if charge is None:
                raise NotFoundError("Charge not found")

        if charge.status == ChargeStatus.PENDING.value and not charge.is_timed_out(window=self.payment_window):
            try:
                await self.poll_status(charge)
            except ChargeError as e:
                logger.warning(f"Status poll for charge {charge_id} failed: {e.message}")

        return await self.get_charge(charge_id)

    async def poll_status(self, charge: Charge) -> bool:
        """Query the provider for a charge and apply any status change.

        Poll bookkeeping is bumped whenever the provider was queried, even if
        the query failed.

        Returns:
            True if the charge transitioned.

        Raises:
            UpstreamUnavailableError: Provider unreachable or the query timed out.
        """
        if not charge.provider_transaction_id:
            return False

        try:
            result = await asyncio.wait_for(
                self.gateway.get_payment(charge.provider_transaction_id),
                timeout=self.settings.poll_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise UpstreamUnavailableError("Payment status query timed out") from e
        finally:
            async with session_scope(self.session_factory) as session:
                await ChargeRepository(session).record_poll(charge.id)

        if map_provider_status(result.status).value == charge.status:
            return False
        return await self.update_status(charge.id, result, reason=f"Polled status: {result.status}")

    async def update_status(
        self,
        charge_id: str,
        provider_status: GatewayPaymentStatus,
        reason: str,
        raw_payload: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Apply a provider-reported status to a charge.

        Equal statuses are a no-op and a charge in a final status never moves
        again, so duplicate or late notifications are harmless.

        Args:
            charge_id: Charge to update.
            provider_status: Status report from webhook or poll.
            reason: Reason recorded in the status history.
            raw_payload: Provider payload stored with the history entry.

        Returns:
            True if this call transitioned the charge.
        """
        status = map_provider_status(provider_status.status)
        payment_details = None
        error_details = None
        if status == ChargeStatus.APPROVED:
            payment_details = provider_status.payment_details()
        elif status in (ChargeStatus.DECLINED, ChargeStatus.ERROR):
            code = provider_status.failure_code
            error_details = {
                "code": code or "unknown",
                "message": user_friendly_error(code),
                "provider_code": code,
                "provider_message": provider_status.error_message,
            }
        return await self._transition(
            charge_id,
            status,
            reason=reason,
            raw_payload=raw_payload if raw_payload is not None else provider_status.raw_provider_response,
            payment_details=payment_details,
            error_details=error_details,
        )

    async def mark_timed_out(self, charge_id: str) -> bool:
        return await self._transition(
            charge_id,
            ChargeStatus.TIMEOUT,
            reason="Payment window elapsed without confirmation",
            error_details={"code": "timeout", "message": user_friendly_error("timeout")},
        )

    async def _transition(
        self,
        charge_id: str,
        status: ChargeStatus,
        reason: str,
        raw_payload: Optional[Dict[str, Any]] = None,
        payment_details: Optional[Dict[str, Any]] = None,
        error_details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        async with session_scope(self.session_factory) as session:
            repo = ChargeRepository(session)
            charge = await repo.get_by_id(charge_id)
            if charge is None:
                raise NotFoundError("Charge not found")

            current = ChargeStatus(charge.status)
            if current == status:
                return False
            if current.is_terminal:
                logger.info(f"Charge {charge_id} is already {current.value}, ignoring {status.value}")
                return False

            changed = await repo.add_status_history(
                charge_id,
                status,
                reason,
                raw_payload,
                expected_status=current,
                payment_details=payment_details,
                error_details=error_details,
            )
            if not changed:
                return False
            payload = self._event_payload(charge, status, payment_details, error_details)

        await self.leases.release_busy(charge.terminal_id, holder=charge.id)
        await self.events.publish(charge_event_name(status), payload)
        return True

    def _event_payload(
        self,
        charge: Charge,
        status: ChargeStatus,
        payment_details: Optional[Dict[str, Any]] = None,
        error_details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        return {
            "charge_id": charge.id,
            "transaction_id": charge.transaction_id,
            "ticket_tier_id": charge.ticket_tier_id,
            "amount": charge.amount,
            "terminal_id": charge.terminal_id,
            "status": status.value,
            "payment_details": payment_details,
            "error_details": error_details,
            "pos_client": charge.pos_client,
            "provider_transaction_id": charge.provider_transaction_id,
        }

    def verify_signature(self, signature: Optional[str], payload: bytes) -> None:
        """Check the HMAC-SHA256 hex signature of a raw webhook body.

        Raises:
            UnauthorizedError: Missing secret, missing signature or mismatch.
        """
        secret = self.settings.bold_webhook_secret
        if not secret:
            logger.error("Webhook secret is not configured, rejecting webhook")
            raise UnauthorizedError("Invalid webhook signature")
        if not signature:
            raise UnauthorizedError("Missing webhook signature")
        expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(signature.strip().lower().encode(), expected.encode()):
            raise UnauthorizedError("Invalid webhook signature")

    async def process_webhook(self, signature: Optional[str], payload: bytes) -> Dict[str, Any]:
        """Verify and apply a provider webhook.

        Args:
            signature: Value of the signature header.
            payload: Raw request body.

        Returns:
            Processing summary: ``processed`` plus details.

        Raises:
            UnauthorizedError: Signature check failed.
            ChargeValidationError: Body is not a webhook event.
        """
        self.verify_signature(signature, payload)

        try:
            body = json.loads(payload)
        except ValueError as e:
            raise ChargeValidationError("Malformed webhook payload") from e
        if not isinstance(body, dict):
            raise ChargeValidationError("Malformed webhook payload")

        event_type = body.get("event_type")
        provider_transaction_id = body.get("transaction_id")
        event_id = body.get("event_id")
        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        if not event_type or not provider_transaction_id:
            raise ChargeValidationError("Webhook is missing event_type or transaction_id")
        provider_transaction_id = str(provider_transaction_id)
        event_id = str(event_id) if event_id else None

        logger.info(f"Webhook {event_type} received for transaction {provider_transaction_id}")

        try:
            async with session_scope(self.session_factory) as session:
                charge = await ChargeRepository(session).get_by_provider_transaction_id(provider_transaction_id)
                receipts = WebhookEventRepository(session)
                receipt = await receipts.record(
                    event_type=event_type,
                    provider_event_id=event_id,
                    provider_transaction_id=provider_transaction_id,
                    charge_id=charge.id if charge else None,
                )
                if receipt is None:
                    receipt = await receipts.get_by_provider_event_id(event_id)
                    if receipt.processed or charge is None:
                        return {"processed": False, "duplicate": True}
                    logger.info(f"Webhook event {event_id} was not fully processed before, retrying")
                receipt_id = receipt.id
        except IntegrityError:
            logger.info(f"Webhook event {event_id} recorded concurrently, skipping")
            return {"processed": False, "duplicate": True}

        if charge is None:
            logger.warning(f"Webhook for unknown transaction {provider_transaction_id}, left unprocessed")
            return {"processed": False, "reason": "unknown_transaction"}

        transitioned = False
        outcome = WEBHOOK_OUTCOMES.get(event_type)
        if outcome is None:
            logger.info(f"Ignoring webhook event type {event_type}")
        else:
            provider_status = GatewayPaymentStatus.from_provider(provider_transaction_id, data)
            if not provider_status.status:
                provider_status.status = outcome
            transitioned = await self.update_status(
                charge.id,
                provider_status,
                reason=f"Webhook {event_type}",
                raw_payload=body,
            )

        async with session_scope(self.session_factory) as session:
            await WebhookEventRepository(session).mark_processed(receipt_id)

        return {"processed": True, "charge_id": charge.id, "transitioned": transitioned}

    async def reconcile_charge(self, charge_id: str, now: Optional[datetime] = None) -> ChargeView:
        """Reconcile a single charge: time it out if past the window, otherwise poll it."""
        async with session_scope(self.session_factory) as session:
            charge = await ChargeRepository(session).get_by_id(charge_id)
            if charge is None:
                raise NotFoundError("Charge not found")

        if charge.status == ChargeStatus.PENDING.value:
            if charge.is_timed_out(now, self.payment_window):
                await self.mark_timed_out(charge_id)
            else:
                await self.poll_status(charge)
        return await self.get_charge(charge_id, include_history=True)

    async def reconcile_all(self, now: Optional[datetime] = None, limit: int = 100) -> ReconciliationReport:
        """Sweep pending charges past the grace window.

        Charges past the payment window are timed out without a provider
        call; the rest are polled. A failure on one charge is recorded in the
        report and the sweep moves on.
        """
        now = now or utcnow()
        report = ReconciliationReport(started_at=now)
        cutoff = now - timedelta(seconds=self.settings.reconcile_grace_seconds)

        async with session_scope(self.session_factory) as session:
            charges = await ChargeRepository(session).list_pending_for_reconciliation(cutoff, limit=limit)
        report.examined = len(charges)

        for charge in charges:
            try:
                if charge.is_timed_out(now, self.payment_window):
                    if await self.mark_timed_out(charge.id):
                        report.timed_out += 1
                else:
                    report.polled += 1
                    if await self.poll_status(charge):
                        report.transitioned += 1
            except ChargeError as e:
                logger.warning(f"Reconciliation of charge {charge.id} failed: {e.message}")
                report.failed += 1
                report.failures.append(ChargeSweepFailure(charge_id=charge.id, error=e.message))
            except Exception as e:
                logger.exception(f"Unexpected error reconciling charge {charge.id}")
                report.failed += 1
                report.failures.append(ChargeSweepFailure(charge_id=charge.id, error=str(e)))

        report.finished_at = utcnow()
        logger.info(
            f"Reconciled {report.examined} charges: {report.timed_out} timed out, "
            f"{report.transitioned} resolved, {report.failed} failed"
        )
        return report
