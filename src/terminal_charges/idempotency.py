"""Short-lived (reference, amount) -> charge id ledger backed by Redis."""

import logging
from typing import Optional

from redis.asyncio import Redis

from .cache import delete_if_value, idempotency_key
from .errors import ConflictError

logger = logging.getLogger(__name__)

DEFAULT_IDEMPOTENCY_TTL_SECONDS = 300


class IdempotencyLedger:
    """Maps a charge attempt to the charge id it resolved to.

    Reservation is a single ``SET NX EX`` so concurrent callers racing on the
    same key cannot both win.
    """

    def __init__(self, redis: Redis, ttl_seconds: int = DEFAULT_IDEMPOTENCY_TTL_SECONDS):
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    async def reserve(self, reference: str, amount: int, charge_id: str) -> Optional[str]:
        """Reserve the attempt for ``charge_id`` or return the charge id that already holds it.

        Args:
            reference: Business transaction/order reference.
            amount: Charge amount in minor units.
            charge_id: Charge id to record if the attempt is not yet reserved.

        Returns:
            None if the reservation was established, otherwise the existing charge id.
        """
        key = str(idempotency_key(reference, amount))
        # The holder may expire between a failed SET and the GET, so retry.
        for _ in range(3):
            if await self.redis.set(key, charge_id, ex=self.ttl_seconds, nx=True):
                logger.debug(f"Reserved idempotency key {key} for {charge_id}")
                return None
            existing = await self.redis.get(key)
            if existing is not None:
                logger.info(f"Idempotency key {key} already resolved to {existing}")
                return existing
        raise ConflictError("Charge attempt is being created concurrently, retry shortly")

    async def lookup(self, reference: str, amount: int) -> Optional[str]:
        """Return the charge id recorded for the attempt, if any."""
        return await self.redis.get(str(idempotency_key(reference, amount)))

    async def discard(self, reference: str, amount: int, charge_id: str) -> None:
        """Drop the reservation if it still points at ``charge_id``.

        Used when a charge is abandoned before it was persisted, so that a
        retry is not redirected to a charge that never existed.
        """
        key = str(idempotency_key(reference, amount))
        if await delete_if_value(self.redis, key, charge_id):
            logger.debug(f"Discarded idempotency key {key}")
