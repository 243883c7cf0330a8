"""Shared test fixtures and configuration."""

import time
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest

from terminal_charges.api import create_app
from terminal_charges.auth import limiter
from terminal_charges.bootstrap import build_container
from terminal_charges.cache import COMPARE_AND_DELETE_SCRIPT
from terminal_charges.config import Settings
from terminal_charges.connectors import SimulatorConnector
from terminal_charges.events import CHARGE_INITIATED, CHARGE_OUTCOME_EVENTS

API_KEY = "test_api_key_12345"
WEBHOOK_SECRET = "whsec_test_secret"
ORG_ID = "org_1"
EVENT_ID = "event_1"


class StubRedis:
    """In-process stand-in for the subset of redis.asyncio commands in use."""

    def __init__(self) -> None:
        self._store: Dict[str, Tuple[str, Optional[float]]] = {}
        self._offset = 0.0
        self.set_calls: List[Dict[str, Any]] = []

    def _now(self) -> float:
        return time.monotonic() + self._offset

    def advance(self, seconds: float) -> None:
        """Move the stub's clock forward so TTLs run out."""
        self._offset += seconds

    def _live(self, key: str) -> Optional[str]:
        entry = self._store.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._now():
            del self._store[key]
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        return self._live(key)

    async def set(self, key: str, value: Any, ex: Optional[int] = None, nx: bool = False) -> Optional[bool]:
        self.set_calls.append({"key": key, "value": value, "ex": ex, "nx": nx})
        if nx and self._live(key) is not None:
            return None
        expires_at = self._now() + ex if ex else None
        self._store[key] = (str(value), expires_at)
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._live(key) is not None:
                removed += 1
            self._store.pop(key, None)
        return removed

    async def exists(self, *keys: str) -> int:
        return sum(1 for key in keys if self._live(key) is not None)

    async def eval(self, script: str, numkeys: int, *keys_and_args: Any) -> int:
        """Run the compare-and-delete script, the only one in use."""
        assert script == COMPARE_AND_DELETE_SCRIPT
        assert numkeys == 1
        key, expected = keys_and_args
        if self._live(key) == str(expected):
            del self._store[key]
            return 1
        return 0

    async def aclose(self) -> None:
        self._store.clear()


@pytest.fixture
def redis() -> StubRedis:
    return StubRedis()


@pytest.fixture
def gateway() -> SimulatorConnector:
    return SimulatorConnector()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at a throwaway SQLite file."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'charges.db'}",
        api_key=API_KEY,
        gateway_provider="simulator",
        bold_webhook_secret=WEBHOOK_SECRET,
        idempotency_wait_interval_seconds=0.01,
        idempotency_wait_attempts=200,
    )


@pytest.fixture
async def container(settings, redis, gateway):
    container = await build_container(settings, redis=redis, gateway=gateway)
    container.pos.test_poll_interval = 0
    yield container
    await container.close()


@pytest.fixture
def charges(container):
    return container.charges


@pytest.fixture
def leases(container):
    return container.leases


@pytest.fixture
def published(container) -> List[Tuple[str, Dict[str, Any]]]:
    """Every charge event published on the container's bus, in order."""
    events: List[Tuple[str, Dict[str, Any]]] = []

    async def record(event_name: str, payload: Dict[str, Any]) -> None:
        events.append((event_name, payload))

    for event_name in (CHARGE_INITIATED, *CHARGE_OUTCOME_EVENTS):
        container.events.subscribe(event_name, record)
    return events


@pytest.fixture
async def registered_terminals(container):
    """Terminals T1..T3 plus the simulator scenario terminals, owned by ORG_ID."""
    terminal_ids = [
        "T1",
        "T2",
        "T3",
        SimulatorConnector.TERMINAL_APPROVE,
        SimulatorConnector.TERMINAL_OFFLINE,
    ]
    for i, terminal_id in enumerate(terminal_ids):
        await container.registry.add_terminal(ORG_ID, terminal_id, serial_number=f"SN{i:04d}", location="Gate A")
    return terminal_ids


@pytest.fixture
def signed_webhook(gateway):
    """Build a signed webhook body for a payment's current simulator state."""

    def build(provider_transaction_id: str, event_type: str = "payment.approved",
              event_id: Optional[str] = None) -> Tuple[bytes, str]:
        body = gateway.build_webhook(provider_transaction_id, event_type=event_type, event_id=event_id)
        return body, SimulatorConnector.sign(body, WEBHOOK_SECRET)

    return build


@pytest.fixture
async def app(settings, redis, gateway):
    """Application with its services started."""
    app = create_app(settings, redis=redis, gateway=gateway)
    async with app.router.lifespan_context(app):
        yield app


@pytest.fixture
async def client(app):
    limiter.reset()
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


@pytest.fixture
def auth_headers():
    """Return authenticated headers for a cashier of ORG_ID."""
    return {
        "Authorization": f"Bearer {API_KEY}",
        "X-User-Id": "user_1",
        "X-Organization-Id": ORG_ID,
    }
