"""Periodic driver for charge reconciliation sweeps."""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Optional

from redis.asyncio import Redis

from ..cache import delete_if_value, scheduler_lock_key
from ..database.models import utcnow
from .models import ReconciliationReport

logger = logging.getLogger(__name__)

JOB_NAME = "reconcile-charges"


class ReconciliationScheduler:
    """
    Runs ``reconcile_all`` on a fixed interval.

    Each cycle first takes a lease in Redis with ``SET NX EX``; a cycle that
    finds the lease held (by this or another process) is skipped instead of
    overlapping. The lease TTL bounds how long a crashed holder blocks sweeps.
    """

    def __init__(
        self,
        service: Any,
        redis: Redis,
        interval_seconds: float = 30.0,
        lock_ttl_seconds: int = 300,
        leases: Optional[Any] = None,
        job_name: str = JOB_NAME,
    ):
        """
        Args:
            service: ChargeService whose ``reconcile_all`` is driven.
            redis: Redis client holding the run lease.
            interval_seconds: Delay between cycles.
            lock_ttl_seconds: Run lease TTL.
            leases: Optional TerminalLeaseManager; when given, expired
                terminal assignments are swept in the same cycle.
            job_name: Lease name, one per independent job.
        """
        self.service = service
        self.redis = redis
        self.interval_seconds = interval_seconds
        self.lock_ttl_seconds = lock_ttl_seconds
        self.leases = leases
        self.owner = uuid.uuid4().hex
        self._lock_key = str(scheduler_lock_key(job_name))
        self._stopping = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    async def _try_lock(self) -> bool:
        return bool(await self.redis.set(self._lock_key, self.owner, ex=self.lock_ttl_seconds, nx=True))

    async def _unlock(self) -> None:
        await delete_if_value(self.redis, self._lock_key, self.owner)

    async def run_once(self, now: Optional[datetime] = None) -> ReconciliationReport:
        """Run one sweep unless another run holds the lease."""
        started_at = now or utcnow()
        if not await self._try_lock():
            logger.info("Reconciliation already running elsewhere, skipping cycle")
            return ReconciliationReport.skipped(started_at)

        try:
            report = await self.service.reconcile_all(now=now)
            if self.leases is not None:
                report.assignments_expired = await self.leases.sweep_expired(now)
            return report
        finally:
            await self._unlock()

    async def _loop(self) -> None:
        logger.info(f"Reconciliation scheduler started, interval {self.interval_seconds}s")
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Reconciliation cycle failed")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Reconciliation scheduler stopped")

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._loop())
        return self._task

    async def stop(self) -> None:
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
