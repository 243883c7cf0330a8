"""Tests for order payment state, point-of-sale charges and terminal tests."""

import pytest

from conftest import ORG_ID
from terminal_charges.connectors import SimulatorConnector
from terminal_charges.errors import ConflictError, NotFoundError, UnauthorizedError, UpstreamUnavailableError
from terminal_charges.orders import POS_CLIENT
from terminal_charges.status import ChargeStatus


@pytest.fixture
def issued(container):
    """Ticket issuance requests made by the order service."""
    calls = []

    async def issue(order):
        calls.append(order)

    container.orders.ticket_issuer = issue
    return calls


@pytest.fixture
async def order(container):
    return await container.orders.create_order(
        unit_price=2500,
        quantity=2,
        order_id="order-1",
        event_id="event_1",
        ticket_tier_id="tier-a",
        customer_id="cust-1",
    )


async def _approve(container, signed_webhook, view, event_id="evt_1"):
    container.gateway.complete_payment(view.provider_transaction_id, "approved")
    body, signature = signed_webhook(view.provider_transaction_id, "payment.approved", event_id)
    return await container.charges.process_webhook(signature, body)


class TestOrderService:
    async def test_lock_for_processing(self, container, order):
        locked = await container.orders.lock_for_processing(order.id)
        assert locked.payment_status == "processing"
        assert locked.last_payment_attempt_at is not None

        with pytest.raises(ConflictError):
            await container.orders.lock_for_processing(order.id)

    async def test_unknown_order(self, container):
        with pytest.raises(NotFoundError):
            await container.orders.lock_for_processing("missing")
        with pytest.raises(NotFoundError):
            await container.orders.get_order("missing")

    async def test_mark_paid_issues_tickets_once(self, container, order, issued):
        await container.orders.lock_for_processing(order.id)

        assert await container.orders.mark_paid(order.id, {"authorization_code": "AUTH1"})
        assert not await container.orders.mark_paid(order.id, {"authorization_code": "AUTH1"})

        paid = await container.orders.get_order(order.id)
        assert paid.payment_status == "paid"
        assert paid.paid_at is not None
        assert paid.payment_details == {"authorization_code": "AUTH1"}
        assert issued == [{
            "order_id": "order-1",
            "event_id": "event_1",
            "ticket_tier_id": "tier-a",
            "customer_id": "cust-1",
            "quantity": 2,
            "total_amount": 5000,
        }]

    async def test_release_to_pending(self, container, order):
        await container.orders.lock_for_processing(order.id)
        assert await container.orders.release_to_pending(order.id, {"code": "card_declined"})
        assert not await container.orders.release_to_pending(order.id)

        released = await container.orders.get_order(order.id)
        assert released.payment_status == "pending"
        assert released.last_payment_error == {"code": "card_declined"}


class TestOrderPaymentSync:
    async def test_ignores_charges_from_other_clients(self, container, order, signed_webhook):
        view = await container.charges.create_charge(order.id, order.total_amount, "T1")
        await _approve(container, signed_webhook, view)

        assert (await container.orders.get_order(order.id)).payment_status == "pending"

    async def test_approved_event_pays_pending_order(self, container, order, issued):
        payload = {
            "charge_id": "CHG_X",
            "transaction_id": order.id,
            "status": "approved",
            "payment_details": {"authorization_code": "AUTH1"},
            "error_details": None,
            "pos_client": POS_CLIENT,
        }
        await container.order_sync.handle("charge.approved", payload)
        await container.order_sync.handle("charge.approved", payload)

        assert (await container.orders.get_order(order.id)).payment_status == "paid"
        assert len(issued) == 1

    async def test_failure_does_not_mutate_event_payload(self, container, order):
        await container.orders.lock_for_processing(order.id)
        error_details = {"code": "card_declined", "message": "Payment declined: card declined"}
        payload = {
            "charge_id": "CHG_X",
            "transaction_id": order.id,
            "status": "declined",
            "error_details": error_details,
            "pos_client": POS_CLIENT,
        }
        await container.order_sync.handle("charge.declined", payload)

        assert "charge_id" not in error_details
        released = await container.orders.get_order(order.id)
        assert released.payment_status == "pending"
        assert released.last_payment_error["charge_id"] == "CHG_X"


class TestPosCharge:
    """Point-of-sale flow from order to terminal outcome."""

    async def test_approved_charge_pays_order(self, container, order, issued, signed_webhook):
        view = await container.pos.start_order_charge(order.id, "T1", cashier_id="cashier-1")

        assert view.amount == 5000
        assert view.transaction_id == order.id
        assert view.ticket_tier_id == "tier-a"
        assert (await container.orders.get_order(order.id)).payment_status == "processing"

        await _approve(container, signed_webhook, view)

        paid = await container.orders.get_order(order.id)
        assert paid.payment_status == "paid"
        assert paid.payment_details["last_four_digits"] == "4242"
        assert len(issued) == 1

    async def test_declined_charge_returns_order_to_pending(self, container, order, signed_webhook):
        view = await container.pos.start_order_charge(order.id, "T1")
        container.gateway.complete_payment(view.provider_transaction_id, "declined", decline_code="card_declined")
        body, signature = signed_webhook(view.provider_transaction_id, "payment.declined")
        await container.charges.process_webhook(signature, body)

        released = await container.orders.get_order(order.id)
        assert released.payment_status == "pending"
        assert released.last_payment_error["code"] == "card_declined"
        assert released.last_payment_error["charge_id"] == view.charge_id

    async def test_timed_out_charge_returns_order_to_pending(self, container, order):
        view = await container.pos.start_order_charge(order.id, "T1")
        await container.charges.mark_timed_out(view.charge_id)

        released = await container.orders.get_order(order.id)
        assert released.payment_status == "pending"
        assert released.last_payment_error["code"] == "timeout"

    async def test_retry_after_decline(self, container, order, issued, redis, settings, signed_webhook):
        """Test a quick retry replays the declined charge and a later one starts a new charge."""
        first = await container.pos.start_order_charge(order.id, "T1")
        container.gateway.complete_payment(first.provider_transaction_id, "declined", decline_code="card_declined")
        body, signature = signed_webhook(first.provider_transaction_id, "payment.declined")
        await container.charges.process_webhook(signature, body)

        replay = await container.pos.start_order_charge(order.id, "T2")
        assert replay.charge_id == first.charge_id
        assert replay.status == ChargeStatus.DECLINED
        assert (await container.orders.get_order(order.id)).payment_status == "pending"

        redis.advance(settings.idempotency_ttl_seconds + 1)
        second = await container.pos.start_order_charge(order.id, "T2")
        assert second.charge_id != first.charge_id
        assert second.status == ChargeStatus.PENDING
        await _approve(container, signed_webhook, second, event_id="evt_2")

        assert (await container.orders.get_order(order.id)).payment_status == "paid"
        assert len(issued) == 1

    async def test_busy_terminal(self, container, order):
        await container.leases.try_acquire_busy("T1")
        with pytest.raises(ConflictError):
            await container.pos.start_order_charge(order.id, "T1")
        assert (await container.orders.get_order(order.id)).payment_status == "pending"

    async def test_offline_terminal(self, container, order):
        with pytest.raises(ConflictError):
            await container.pos.start_order_charge(order.id, SimulatorConnector.TERMINAL_OFFLINE)
        assert (await container.orders.get_order(order.id)).payment_status == "pending"

    async def test_retried_request_returns_charge_in_flight(self, container, order, gateway):
        """Test a repeated POS request gets the pending charge back even on a busy terminal."""
        first = await container.pos.start_order_charge(order.id, "T1")

        retry = await container.pos.start_order_charge(order.id, "T1")

        assert retry.charge_id == first.charge_id
        assert retry.status == ChargeStatus.PENDING
        assert gateway.create_calls == 1
        assert (await container.orders.get_order(order.id)).payment_status == "processing"

    async def test_order_already_processing(self, container, order):
        await container.orders.lock_for_processing(order.id)
        with pytest.raises(ConflictError):
            await container.pos.start_order_charge(order.id, "T2")

    async def test_gateway_failure_releases_order(self, container, order, monkeypatch):
        async def unavailable(request):
            raise UpstreamUnavailableError("Payment service temporarily unavailable", upstream_status=503)

        monkeypatch.setattr(container.gateway, "create_payment", unavailable)
        with pytest.raises(UpstreamUnavailableError):
            await container.pos.start_order_charge(order.id, "T1")

        released = await container.orders.get_order(order.id)
        assert released.payment_status == "pending"
        assert released.last_payment_error is not None
        assert not await container.leases.is_busy("T1")


class TestTerminalConnectionTest:
    async def test_approved(self, container, registered_terminals):
        result = await container.pos.test_terminal_connection(ORG_ID, SimulatorConnector.TERMINAL_APPROVE)

        assert result.success is True
        assert result.status == "approved"
        assert result.charge_id.startswith("CHG_")

    async def test_uses_minimum_amount(self, container, registered_terminals):
        result = await container.pos.test_terminal_connection(ORG_ID, SimulatorConnector.TERMINAL_APPROVE)
        charge = await container.charges.get_charge(result.charge_id)
        assert charge.amount == container.settings.test_charge_amount

    async def test_terminal_of_other_organization(self, container, registered_terminals):
        with pytest.raises(UnauthorizedError):
            await container.pos.test_terminal_connection("other_org", "T1")

    async def test_offline_terminal(self, container, registered_terminals):
        result = await container.pos.test_terminal_connection(ORG_ID, SimulatorConnector.TERMINAL_OFFLINE)

        assert result.success is False
        assert result.status == "error"
        assert result.charge_id is None

    async def test_unconfirmed_terminal(self, container, registered_terminals):
        container.pos.test_poll_attempts = 2
        result = await container.pos.test_terminal_connection(ORG_ID, "T1")

        assert result.success is False
        assert result.status == "pending"
        assert "in time" in result.message
