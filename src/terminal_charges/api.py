"""HTTP surface for terminal charges, terminals and webhooks."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from redis.asyncio import Redis
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .auth import CHARGE_RATE_LIMIT, Caller, get_caller, limiter, verify_api_key
from .bootstrap import ServiceContainer, build_container, get_container
from .cache import close_redis_connections
from .config import Settings, configure_logging, get_settings
from .connectors import GatewayBase
from .errors import ChargeError, UnauthorizedError
from .reconciliation.api import router as reconciliation_router
from .schemas import AssignTerminalRequest, CreateChargeRequest, PosChargeRequest

logger = logging.getLogger(__name__)

router = APIRouter()


def create_app(
    settings: Optional[Settings] = None,
    redis: Optional[Redis] = None,
    gateway: Optional[GatewayBase] = None,
) -> FastAPI:
    """Build the FastAPI application.

    Services are assembled on startup; ``redis`` and ``gateway`` override the
    ones built from settings.
    """
    settings = settings or get_settings()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        container = await build_container(settings, redis=redis, gateway=gateway)
        app.state.container = container
        if settings.scheduler_enabled:
            container.scheduler.start()
        try:
            yield
        finally:
            await container.close()
            if redis is None:
                await close_redis_connections()

    app = FastAPI(title="Terminal Charges API", lifespan=lifespan)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    @app.exception_handler(ChargeError)
    async def charge_error_handler(request: Request, exc: ChargeError):
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.message})

    app.include_router(router)
    app.include_router(reconciliation_router)
    return app


@router.get("/health")
async def health(container: ServiceContainer = Depends(get_container)):
    return {"ok": True, "gateway": container.gateway.health_check()}


@router.post("/charges")
@limiter.limit(CHARGE_RATE_LIMIT)
async def create_charge(
    request: Request,
    body: CreateChargeRequest,
    container: ServiceContainer = Depends(get_container),
    api_key: str = Depends(verify_api_key),
):
    charge = await container.charges.create_charge(
        transaction_id=body.transaction_id,
        amount=body.amount,
        terminal_id=body.terminal_id,
        ticket_tier_id=body.ticket_tier_id,
        metadata=body.metadata,
    )
    return {"success": True, "charge": charge.model_dump(mode="json")}


@router.get("/charges/{charge_id}")
async def get_charge(
    charge_id: str,
    container: ServiceContainer = Depends(get_container),
    api_key: str = Depends(verify_api_key),
):
    charge = await container.charges.get_charge_status(charge_id)
    return {"success": True, "charge": charge.model_dump(mode="json")}


@router.post("/webhooks/bold")
async def bold_webhook(
    request: Request,
    x_bold_signature: Optional[str] = Header(None),
    container: ServiceContainer = Depends(get_container),
):
    """
    Receive provider webhooks.

    Only a failed signature check answers 401; every other failure is
    acknowledged with 200 so the provider does not redeliver.
    """
    payload = await request.body()
    try:
        result = await container.charges.process_webhook(x_bold_signature, payload)
    except UnauthorizedError as e:
        logger.warning(f"Webhook signature verification failed: {e.message}")
        return JSONResponse(status_code=401, content={"success": False, "error": "Invalid signature"})
    except Exception:
        logger.exception("Webhook processing error")
        return JSONResponse(status_code=200, content={"success": False, "error": "Internal processing error"})
    return {"success": True, **result}


@router.post("/pos/charge")
@limiter.limit(CHARGE_RATE_LIMIT)
async def pos_charge(
    request: Request,
    body: PosChargeRequest,
    caller: Caller = Depends(get_caller),
    container: ServiceContainer = Depends(get_container),
    api_key: str = Depends(verify_api_key),
):
    charge = await container.pos.start_order_charge(
        order_id=body.order_id,
        terminal_id=body.terminal_id,
        event_id=body.event_id,
        cashier_id=caller.user_id,
    )
    return {"success": True, "charge": charge.model_dump(mode="json")}


@router.get("/terminals/available/{event_id}")
async def available_terminals(
    event_id: str,
    caller: Caller = Depends(get_caller),
    container: ServiceContainer = Depends(get_container),
    api_key: str = Depends(verify_api_key),
):
    terminals = await container.leases.list_available_terminals(
        caller.organization_id, caller.user_id, event_id
    )
    return {"success": True, "terminals": terminals}


@router.post("/terminals/assign")
async def assign_terminal(
    body: AssignTerminalRequest,
    caller: Caller = Depends(get_caller),
    container: ServiceContainer = Depends(get_container),
    api_key: str = Depends(verify_api_key),
):
    assignment = await container.leases.assign(
        organization_id=caller.organization_id,
        user_id=caller.user_id,
        event_id=body.event_id,
        terminal_id=body.terminal_id,
        location=body.location,
    )
    return {"success": True, "assignment": assignment}


@router.get("/terminals/assignment/{event_id}")
async def current_assignment(
    event_id: str,
    caller: Caller = Depends(get_caller),
    container: ServiceContainer = Depends(get_container),
    api_key: str = Depends(verify_api_key),
):
    assignment = await container.leases.current_assignment(caller.user_id, event_id)
    return {"success": True, "assignment": assignment}


@router.delete("/terminals/assignment/{event_id}")
async def release_assignment(
    event_id: str,
    caller: Caller = Depends(get_caller),
    container: ServiceContainer = Depends(get_container),
    api_key: str = Depends(verify_api_key),
):
    await container.leases.release(caller.user_id, event_id)
    return {"success": True}


@router.get("/terminals/{terminal_id}/status")
async def terminal_status(
    terminal_id: str,
    container: ServiceContainer = Depends(get_container),
    api_key: str = Depends(verify_api_key),
):
    status = await container.leases.get_terminal_status(terminal_id)
    return {"success": True, "terminal_id": terminal_id, "status": status.value}


@router.post("/terminals/{terminal_id}/test")
async def test_terminal(
    terminal_id: str,
    caller: Caller = Depends(get_caller),
    container: ServiceContainer = Depends(get_container),
    api_key: str = Depends(verify_api_key),
):
    result = await container.pos.test_terminal_connection(caller.organization_id, terminal_id)
    return result.model_dump()
