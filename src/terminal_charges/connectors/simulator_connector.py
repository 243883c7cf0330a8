"""Simulator connector for exercising terminal charge flows without a real provider."""

import asyncio
import hashlib
import hmac
import json
import uuid
import logging
from typing import Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone

from ..errors import NotFoundError, UpstreamUnavailableError
from .base import (
    GatewayBase,
    GatewayPaymentRequest,
    GatewayPaymentResponse,
    GatewayPaymentStatus,
    GatewayTerminalStatus,
)

logger = logging.getLogger(__name__)


@dataclass
class SimulatedPayment:
    """In-memory representation of a payment pushed to a simulated terminal."""
    id: str
    reference_id: str
    amount: int
    currency: str
    terminal_id: str
    status: str = "pending"
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    decline_code: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SimulatorConfig:
    """Configuration for simulator behavior."""
    delay_ms: int = 0  # Simulated response delay in ms
    auto_approve: bool = False  # Resolve every payment as approved on first status query


class SimulatorConnector(GatewayBase):
    """
    In-memory provider for local runs and tests.

    Features:
    - Provider-side idempotency on the reference id
    - Terminal status reporting, settable per terminal
    - Manual completion of payments and signed webhook bodies
    - Special terminal ids for specific scenarios
    """

    name = "simulator"

    # Special terminal ids for triggering specific behaviors
    TERMINAL_APPROVE = "sim_terminal_approve"
    TERMINAL_DECLINE = "sim_terminal_decline"
    TERMINAL_OFFLINE = "sim_terminal_offline"
    TERMINAL_UNAVAILABLE = "sim_terminal_unavailable"
    TERMINAL_UNKNOWN = "sim_terminal_unknown"

    def __init__(self, config: Optional[SimulatorConfig] = None):
        self.config = config or SimulatorConfig()
        self._payments: Dict[str, SimulatedPayment] = {}
        self._by_reference: Dict[str, str] = {}
        self._terminal_status: Dict[str, str] = {}
        self.create_calls = 0
        self.status_calls = 0
        logger.info("SimulatorConnector initialized")

    def _generate_id(self) -> str:
        return f"sim_{uuid.uuid4().hex[:24]}"

    async def _apply_delay(self) -> None:
        if self.config.delay_ms > 0:
            await asyncio.sleep(self.config.delay_ms / 1000.0)

    def _check_terminal(self, terminal_id: str) -> None:
        if terminal_id == self.TERMINAL_UNAVAILABLE:
            raise UpstreamUnavailableError("Payment service temporarily unavailable", upstream_status=503)
        if terminal_id == self.TERMINAL_UNKNOWN:
            raise NotFoundError("Terminal not found")

    async def create_payment(self, request: GatewayPaymentRequest) -> GatewayPaymentResponse:
        """Create a simulated payment, replaying the original for a repeated reference id."""
        await self._apply_delay()
        self.create_calls += 1
        self._check_terminal(request.terminal_id)
        if request.terminal_id == self.TERMINAL_OFFLINE:
            raise UpstreamUnavailableError("Terminal offline", upstream_status=503)

        existing_id = self._by_reference.get(request.reference_id)
        if existing_id:
            payment = self._payments[existing_id]
        else:
            payment = SimulatedPayment(
                id=self._generate_id(),
                reference_id=request.reference_id,
                amount=request.amount,
                currency=request.currency,
                terminal_id=request.terminal_id,
                metadata=dict(request.metadata),
            )
            self._payments[payment.id] = payment
            self._by_reference[request.reference_id] = payment.id

        return GatewayPaymentResponse(
            provider_transaction_id=payment.id,
            status=payment.status,
            raw_provider_response={"id": payment.id, "status": payment.status, "simulator": True},
        )

    async def get_payment(self, provider_transaction_id: str) -> GatewayPaymentStatus:
        await self._apply_delay()
        self.status_calls += 1
        payment = self._payments.get(provider_transaction_id)
        if payment is None:
            raise NotFoundError("Transaction not found")
        self._check_terminal(payment.terminal_id)

        if payment.status == "pending":
            if payment.terminal_id == self.TERMINAL_DECLINE:
                self.complete_payment(payment.id, "declined", decline_code="card_declined")
            elif payment.terminal_id == self.TERMINAL_APPROVE or self.config.auto_approve:
                self.complete_payment(payment.id, "approved")

        return GatewayPaymentStatus.from_provider(payment.id, self._payment_data(payment))

    async def get_terminal_status(self, terminal_id: str) -> GatewayTerminalStatus:
        await self._apply_delay()
        self._check_terminal(terminal_id)
        if terminal_id == self.TERMINAL_OFFLINE:
            status = "OFFLINE"
        else:
            status = self._terminal_status.get(terminal_id, "ONLINE")
        return GatewayTerminalStatus(
            terminal_id=terminal_id,
            status=status,
            raw_provider_response={"id": terminal_id, "status": status, "simulator": True},
        )

    def set_terminal_status(self, terminal_id: str, status: str) -> None:
        """Set the provider status reported for a terminal (ONLINE, OFFLINE, BUSY, ...)."""
        self._terminal_status[terminal_id] = status

    def complete_payment(
        self,
        provider_transaction_id: str,
        status: str = "approved",
        decline_code: Optional[str] = None,
    ) -> SimulatedPayment:
        """Resolve a payment as if the cardholder finished at the terminal (simulator-specific)."""
        payment = self._payments.get(provider_transaction_id)
        if payment is None:
            raise NotFoundError("Transaction not found")
        payment.status = status
        payment.decline_code = decline_code
        return payment

    def _payment_data(self, payment: SimulatedPayment) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": payment.id,
            "status": payment.status,
            "amount": payment.amount,
            "currency": payment.currency,
            "reference_id": payment.reference_id,
            "simulator": True,
        }
        if payment.status == "approved":
            data.update(
                authorization_code=f"AUTH{payment.id[-6:].upper()}",
                card_brand="VISA",
                last_four="4242",
                cardholder_name="SIMULATED CARDHOLDER",
                payment_method="card",
            )
        elif payment.decline_code:
            data["decline_code"] = payment.decline_code
        return data

    def build_webhook(
        self,
        provider_transaction_id: str,
        event_type: str = "payment.approved",
        event_id: Optional[str] = None,
    ) -> bytes:
        """Build a webhook body for the payment's current state."""
        payment = self._payments.get(provider_transaction_id)
        if payment is None:
            raise NotFoundError("Transaction not found")
        body = {
            "event_type": event_type,
            "event_id": event_id or f"evt_{uuid.uuid4().hex[:24]}",
            "transaction_id": payment.id,
            "data": self._payment_data(payment),
        }
        return json.dumps(body).encode()

    @staticmethod
    def sign(body: bytes, secret: str) -> str:
        """HMAC-SHA256 hex signature of a raw webhook body."""
        return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()

    def get_payment_by_reference(self, reference_id: str) -> Optional[SimulatedPayment]:
        """Get a payment from in-memory storage (for testing)."""
        payment_id = self._by_reference.get(reference_id)
        return self._payments.get(payment_id) if payment_id else None

    def get_all_payments(self) -> Dict[str, SimulatedPayment]:
        """Get all payments (for testing)."""
        return dict(self._payments)

    def clear(self) -> None:
        """Clear all stored payments (for test cleanup)."""
        self._payments.clear()
        self._by_reference.clear()
        self._terminal_status.clear()

    def health_check(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "provider": self.name,
            "payment_count": len(self._payments),
            "config": {
                "delay_ms": self.config.delay_ms,
                "auto_approve": self.config.auto_approve,
            },
        }
