"""Payment provider connectors."""

from redis.asyncio import Redis

from ..config import Settings
from .base import (
    GatewayBase,
    GatewayPaymentRequest,
    GatewayPaymentResponse,
    GatewayPaymentStatus,
    GatewayTerminalStatus,
)
from .bold_connector import BoldConnector, classify_http_error
from .simulator_connector import (
    SimulatorConnector,
    SimulatorConfig,
    SimulatedPayment,
)


def get_gateway(settings: Settings, redis: Redis) -> GatewayBase:
    """Build the configured gateway connector."""
    if settings.gateway_provider == "simulator":
        return SimulatorConnector()
    return BoldConnector(
        client_id=settings.bold_client_id,
        client_secret=settings.bold_client_secret,
        redis=redis,
        environment=settings.bold_environment,
        timeout=settings.gateway_timeout_seconds,
        token_safety_margin=settings.access_token_safety_margin_seconds,
        terminal_prefix=settings.bold_terminal_prefix,
    )


__all__ = [
    # Base classes and models
    "GatewayBase",
    "GatewayPaymentRequest",
    "GatewayPaymentResponse",
    "GatewayPaymentStatus",
    "GatewayTerminalStatus",
    # Connectors
    "BoldConnector",
    "classify_http_error",
    "SimulatorConnector",
    "SimulatorConfig",
    "SimulatedPayment",
    "get_gateway",
]
