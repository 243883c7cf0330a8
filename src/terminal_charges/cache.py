"""Async Redis client helpers and typed cache keys."""

import enum
import logging
from dataclasses import dataclass
from typing import Dict, Tuple

from redis.asyncio import Redis

logger = logging.getLogger(__name__)

KEY_PREFIX = "terminal_charges"

_CLIENTS: Dict[str, Redis] = {}


class CacheNamespace(str, enum.Enum):
    """One namespace per cache concern; keys from different namespaces never collide."""
    IDEMPOTENCY = "idempotency"
    TERMINAL_BUSY = "terminal-busy"
    ASSIGNMENT = "assignment"
    TERMINAL_STATUS = "terminal-status"
    ACCESS_TOKEN = "access-token"
    SCHEDULER_LOCK = "scheduler-lock"


def _escape(part: str) -> str:
    return part.replace("%", "%25").replace(":", "%3A")


@dataclass(frozen=True)
class CacheKey:
    """A namespaced cache key built from escaped parts."""
    namespace: CacheNamespace
    parts: Tuple[str, ...]

    def __str__(self) -> str:
        escaped = ":".join(_escape(p) for p in self.parts)
        return f"{KEY_PREFIX}:{self.namespace.value}:{escaped}"


def idempotency_key(reference: str, amount: int) -> CacheKey:
    return CacheKey(CacheNamespace.IDEMPOTENCY, (str(reference), str(int(amount))))


def terminal_busy_key(terminal_id: str) -> CacheKey:
    return CacheKey(CacheNamespace.TERMINAL_BUSY, (terminal_id,))


def assignment_key(user_id: str, event_id: str) -> CacheKey:
    return CacheKey(CacheNamespace.ASSIGNMENT, (user_id, event_id))


def terminal_status_key(terminal_id: str) -> CacheKey:
    return CacheKey(CacheNamespace.TERMINAL_STATUS, (terminal_id,))


def access_token_key(provider: str) -> CacheKey:
    return CacheKey(CacheNamespace.ACCESS_TOKEN, (provider,))


def scheduler_lock_key(job: str) -> CacheKey:
    return CacheKey(CacheNamespace.SCHEDULER_LOCK, (job,))


# Deletes KEYS[1] only while it still holds ARGV[1].
COMPARE_AND_DELETE_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""


async def delete_if_value(redis: Redis, key: str, value: str) -> bool:
    """Atomically delete ``key`` if its value is still ``value``.

    Returns:
        True if the key was deleted.
    """
    return bool(await redis.eval(COMPARE_AND_DELETE_SCRIPT, 1, key, value))


def get_redis_client(redis_url: str) -> Redis:
    """Return a cached Redis client for the given URL."""
    if redis_url not in _CLIENTS:
        _CLIENTS[redis_url] = Redis.from_url(redis_url, decode_responses=True)
        logger.info("Created Redis client")
    return _CLIENTS[redis_url]


async def close_redis_connections() -> None:
    """Close all cached Redis connections (used for shutdown/tests)."""
    for client in _CLIENTS.values():
        await client.aclose()
    _CLIENTS.clear()
