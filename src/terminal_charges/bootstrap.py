"""Wiring of the charge services from settings."""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from redis.asyncio import Redis

from .cache import get_redis_client
from .config import Settings
from .connectors import GatewayBase, get_gateway
from .database import DatabaseManager
from .events import InMemoryEventBus
from .idempotency import IdempotencyLedger
from .orders import OrderPaymentSync, OrderService, TicketIssuer
from .pos import PosChargeService
from .reconciliation.scheduler import ReconciliationScheduler
from .services import ChargeService
from .terminals import TerminalLeaseManager, TerminalRegistry

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    db: DatabaseManager
    redis: Redis
    gateway: GatewayBase
    events: InMemoryEventBus
    ledger: IdempotencyLedger
    registry: TerminalRegistry
    leases: TerminalLeaseManager
    charges: ChargeService
    orders: OrderService
    order_sync: OrderPaymentSync
    pos: PosChargeService
    scheduler: ReconciliationScheduler

    async def close(self) -> None:
        if self.scheduler.running:
            await self.scheduler.stop()
        self.order_sync.detach(self.events)
        await self.gateway.close()
        await self.db.shutdown()


async def build_container(
    settings: Settings,
    redis: Optional[Redis] = None,
    gateway: Optional[GatewayBase] = None,
    ticket_issuer: Optional[TicketIssuer] = None,
    create_schema: bool = True,
) -> ServiceContainer:
    """Initialize the database and assemble every service.

    Args:
        settings: Runtime settings.
        redis: Redis client; built from ``settings.redis_url`` when omitted.
        gateway: Gateway connector; built from settings when omitted.
        ticket_issuer: Callback invoked once when an order is paid.
        create_schema: Create missing tables on startup.
    """
    db = DatabaseManager(settings.database_url)
    await db.initialize(create_schema=create_schema)

    redis = redis if redis is not None else get_redis_client(settings.redis_url)
    gateway = gateway or get_gateway(settings, redis)
    events = InMemoryEventBus()
    ledger = IdempotencyLedger(redis, ttl_seconds=settings.idempotency_ttl_seconds)
    registry = TerminalRegistry(db.session_factory)
    leases = TerminalLeaseManager(redis, db.session_factory, gateway, settings, registry=registry)
    charges = ChargeService(db.session_factory, ledger, leases, gateway, events, settings)

    orders = OrderService(db.session_factory, ticket_issuer=ticket_issuer)
    order_sync = OrderPaymentSync(orders)
    order_sync.attach(events)

    pos = PosChargeService(charges, orders, leases, registry, settings)
    scheduler = ReconciliationScheduler(
        charges,
        redis,
        interval_seconds=settings.reconcile_interval_seconds,
        lock_ttl_seconds=settings.reconcile_lock_ttl_seconds,
        leases=leases,
    )
    logger.info(f"Charge services ready with {gateway.name} gateway")
    return ServiceContainer(
        settings=settings,
        db=db,
        redis=redis,
        gateway=gateway,
        events=events,
        ledger=ledger,
        registry=registry,
        leases=leases,
        charges=charges,
        orders=orders,
        order_sync=order_sync,
        pos=pos,
        scheduler=scheduler,
    )


def get_container(request: Request) -> ServiceContainer:
    """FastAPI dependency returning the services attached to the app."""
    return request.app.state.container
