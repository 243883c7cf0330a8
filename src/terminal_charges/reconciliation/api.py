"""API endpoints for charge reconciliation."""

import logging

from fastapi import APIRouter, Depends

from ..auth import verify_api_key
from ..bootstrap import ServiceContainer, get_container

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])


@router.post("/charges/{charge_id}")
async def reconcile_charge(
    charge_id: str,
    container: ServiceContainer = Depends(get_container),
    api_key: str = Depends(verify_api_key),
):
    """
    Reconcile one charge now.

    Polls the provider while the charge is inside its payment window and
    times it out afterwards. Returns the charge with its status history.
    """
    charge = await container.charges.reconcile_charge(charge_id)
    return {"success": True, "charge": charge.model_dump(mode="json")}


@router.post("/sweep")
async def run_sweep(
    container: ServiceContainer = Depends(get_container),
    api_key: str = Depends(verify_api_key),
):
    """
    Run a reconciliation sweep now.

    Shares the scheduler's run lease, so the call reports ``skipped`` while a
    scheduled sweep is in flight.
    """
    logger.info("Manual reconciliation sweep requested")
    report = await container.scheduler.run_once()
    return report.model_dump(mode="json")


@router.get("/health")
async def reconciliation_health(
    container: ServiceContainer = Depends(get_container),
    api_key: str = Depends(verify_api_key),
):
    return {
        "scheduler_running": container.scheduler.running,
        "interval_seconds": container.scheduler.interval_seconds,
        "gateway": container.gateway.health_check(),
    }
