"""Tests for the SimulatorConnector."""

import json

import pytest

from terminal_charges.connectors import GatewayPaymentRequest, SimulatorConfig, SimulatorConnector
from terminal_charges.errors import NotFoundError, UpstreamUnavailableError


def _request(terminal_id="T1", reference_id="CHG_REF_1", amount=5000):
    return GatewayPaymentRequest(
        amount=amount,
        currency="COP",
        terminal_id=terminal_id,
        reference_id=reference_id,
    )


class TestSimulatorPayments:
    """Test basic payment operations with the simulator."""

    async def test_create_payment(self):
        connector = SimulatorConnector()
        response = await connector.create_payment(_request())

        assert response.provider_transaction_id.startswith("sim_")
        assert response.status == "pending"
        assert connector.get_payment_by_reference("CHG_REF_1").amount == 5000

    async def test_same_reference_is_not_charged_twice(self):
        connector = SimulatorConnector()
        first = await connector.create_payment(_request())
        second = await connector.create_payment(_request())

        assert first.provider_transaction_id == second.provider_transaction_id
        assert len(connector.get_all_payments()) == 1

    async def test_payment_stays_pending_until_completed(self):
        connector = SimulatorConnector()
        response = await connector.create_payment(_request())

        status = await connector.get_payment(response.provider_transaction_id)
        assert status.status == "pending"

        connector.complete_payment(response.provider_transaction_id, "approved")
        status = await connector.get_payment(response.provider_transaction_id)
        assert status.status == "approved"
        assert status.authorization_code.startswith("AUTH")
        assert status.last_four == "4242"

    async def test_auto_approve(self):
        connector = SimulatorConnector(SimulatorConfig(auto_approve=True))
        response = await connector.create_payment(_request())
        status = await connector.get_payment(response.provider_transaction_id)
        assert status.status == "approved"

    async def test_unknown_transaction(self):
        connector = SimulatorConnector()
        with pytest.raises(NotFoundError):
            await connector.get_payment("sim_missing")
        with pytest.raises(NotFoundError):
            connector.complete_payment("sim_missing")


class TestSimulatorScenarios:
    """Special terminal ids."""

    async def test_approve_terminal(self):
        connector = SimulatorConnector()
        response = await connector.create_payment(_request(SimulatorConnector.TERMINAL_APPROVE))
        status = await connector.get_payment(response.provider_transaction_id)
        assert status.status == "approved"

    async def test_decline_terminal(self):
        connector = SimulatorConnector()
        response = await connector.create_payment(_request(SimulatorConnector.TERMINAL_DECLINE))
        status = await connector.get_payment(response.provider_transaction_id)
        assert status.status == "declined"
        assert status.failure_code == "card_declined"

    async def test_offline_terminal(self):
        connector = SimulatorConnector()
        with pytest.raises(UpstreamUnavailableError):
            await connector.create_payment(_request(SimulatorConnector.TERMINAL_OFFLINE))
        status = await connector.get_terminal_status(SimulatorConnector.TERMINAL_OFFLINE)
        assert status.status == "OFFLINE"

    async def test_unavailable_terminal(self):
        connector = SimulatorConnector()
        with pytest.raises(UpstreamUnavailableError):
            await connector.create_payment(_request(SimulatorConnector.TERMINAL_UNAVAILABLE))
        with pytest.raises(UpstreamUnavailableError):
            await connector.get_terminal_status(SimulatorConnector.TERMINAL_UNAVAILABLE)

    async def test_unknown_terminal(self):
        connector = SimulatorConnector()
        with pytest.raises(NotFoundError):
            await connector.create_payment(_request(SimulatorConnector.TERMINAL_UNKNOWN))

    async def test_terminal_status_override(self):
        connector = SimulatorConnector()
        assert (await connector.get_terminal_status("T1")).status == "ONLINE"
        connector.set_terminal_status("T1", "BUSY")
        assert (await connector.get_terminal_status("T1")).status == "BUSY"


class TestSimulatorWebhooks:
    async def test_build_webhook(self):
        connector = SimulatorConnector()
        response = await connector.create_payment(_request())
        connector.complete_payment(response.provider_transaction_id, "declined", decline_code="insufficient_funds")

        body = json.loads(connector.build_webhook(response.provider_transaction_id, "payment.declined", "evt_1"))

        assert body["event_type"] == "payment.declined"
        assert body["event_id"] == "evt_1"
        assert body["transaction_id"] == response.provider_transaction_id
        assert body["data"]["status"] == "declined"
        assert body["data"]["decline_code"] == "insufficient_funds"

    def test_sign_is_hex_sha256(self):
        signature = SimulatorConnector.sign(b"{}", "secret")
        assert len(signature) == 64
        assert signature == SimulatorConnector.sign(b"{}", "secret")
        assert signature != SimulatorConnector.sign(b"{}", "other")


class TestSimulatorHousekeeping:
    async def test_clear(self):
        connector = SimulatorConnector()
        await connector.create_payment(_request())
        connector.set_terminal_status("T1", "OFFLINE")
        connector.clear()

        assert connector.get_all_payments() == {}
        assert (await connector.get_terminal_status("T1")).status == "ONLINE"

    def test_health_check(self):
        health = SimulatorConnector().health_check()
        assert health["ok"] is True
        assert health["provider"] == "simulator"
        assert health["payment_count"] == 0
