"""Terminal registry, busy leases and terminal assignments."""

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from redis.asyncio import Redis
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .cache import assignment_key, delete_if_value, terminal_busy_key, terminal_status_key
from .config import Settings
from .connectors.base import GatewayBase
from .database.models import OrganizationTerminal, utcnow
from .database.repository import TerminalAssignmentRepository, TerminalRepository
from .database.session import session_scope
from .errors import ChargeError, ConflictError, NotFoundError
from .status import TerminalStatus, map_terminal_status

logger = logging.getLogger(__name__)

BUSY_MARKER = "in_use"


class TerminalRegistry:
    """Terminals owned by organizations."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_terminal(self, organization_id: str, terminal_id: str) -> Optional[OrganizationTerminal]:
        async with session_scope(self.session_factory) as session:
            return await TerminalRepository(session).get(organization_id, terminal_id)

    async def belongs_to(self, organization_id: str, terminal_id: str) -> bool:
        return await self.get_terminal(organization_id, terminal_id) is not None

    async def list_terminals(self, organization_id: str) -> List[OrganizationTerminal]:
        async with session_scope(self.session_factory) as session:
            return await TerminalRepository(session).list_for_organization(organization_id)

    async def add_terminal(
        self,
        organization_id: str,
        terminal_id: str,
        serial_number: str,
        location: str = "",
    ) -> OrganizationTerminal:
        """Register a terminal, reactivating it if it was previously removed."""
        try:
            async with session_scope(self.session_factory) as session:
                repo = TerminalRepository(session)
                existing = await repo.get(organization_id, terminal_id, active_only=False)
                if existing is not None:
                    if existing.active:
                        raise ConflictError(f"Terminal {terminal_id} is already registered")
                    existing.active = True
                    existing.serial_number = serial_number
                    existing.location = location
                    existing.added_at = utcnow()
                    return existing
                terminal = await repo.add(organization_id, terminal_id, serial_number, location)
        except IntegrityError as e:
            raise ConflictError(f"Terminal {terminal_id} is already registered") from e
        logger.info(f"Registered terminal {terminal_id} for organization {organization_id}")
        return terminal

    async def remove_terminal(self, organization_id: str, terminal_id: str) -> None:
        async with session_scope(self.session_factory) as session:
            terminal = await TerminalRepository(session).get(organization_id, terminal_id)
            if terminal is None:
                raise NotFoundError("Terminal not found")
            terminal.active = False
        logger.info(f"Removed terminal {terminal_id} from organization {organization_id}")


class TerminalLeaseManager:
    """
    Exclusive use of terminals.

    Busy leases are short ``SET NX EX`` markers held while a charge is in
    flight on a terminal. Assignments are durable bindings of a terminal to a
    (user, event) pair; the partial unique indexes on ``terminal_assignments``
    back the one-active-assignment rules against concurrent writers.
    """

    def __init__(
        self,
        redis: Redis,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: GatewayBase,
        settings: Settings,
        registry: Optional[TerminalRegistry] = None,
    ):
        self.redis = redis
        self.session_factory = session_factory
        self.gateway = gateway
        self.settings = settings
        self.registry = registry or TerminalRegistry(session_factory)

    # Busy leases

    async def try_acquire_busy(self, terminal_id: str, holder: str = BUSY_MARKER, ttl: Optional[int] = None) -> bool:
        """Take the busy lease on a terminal for ``holder``, usually a charge id.

        Returns:
            False if the terminal is already leased.
        """
        ttl = ttl or self.settings.busy_lease_ttl_seconds
        acquired = await self.redis.set(str(terminal_busy_key(terminal_id)), holder, ex=ttl, nx=True)
        if acquired:
            logger.debug(f"Terminal {terminal_id} leased busy by {holder} for {ttl}s")
        return bool(acquired)

    async def release_busy(self, terminal_id: str, holder: Optional[str] = None) -> bool:
        """Drop the busy lease.

        With ``holder`` the lease is only dropped while that holder still owns
        it, so a charge whose lease already expired cannot free a terminal
        leased again by a newer charge. Without it the release is unconditional.

        Returns:
            True if a lease was removed.
        """
        key = str(terminal_busy_key(terminal_id))
        if holder is None:
            released = bool(await self.redis.delete(key))
        else:
            released = await delete_if_value(self.redis, key, holder)
        if released:
            logger.debug(f"Terminal {terminal_id} busy lease released")
        return released

    async def busy_holder(self, terminal_id: str) -> Optional[str]:
        return await self.redis.get(str(terminal_busy_key(terminal_id)))

    async def is_busy(self, terminal_id: str) -> bool:
        return bool(await self.redis.exists(str(terminal_busy_key(terminal_id))))

    # Terminal status

    async def get_terminal_status(self, terminal_id: str) -> TerminalStatus:
        """Current terminal status: busy while leased, otherwise the provider's (cached)."""
        if await self.is_busy(terminal_id):
            return TerminalStatus.BUSY

        cache_key = str(terminal_status_key(terminal_id))
        cached = await self.redis.get(cache_key)
        if cached:
            return TerminalStatus(cached)

        try:
            provider_status = await self.gateway.get_terminal_status(terminal_id)
        except ChargeError as e:
            logger.warning(f"Could not fetch status of terminal {terminal_id}: {e.message}")
            return TerminalStatus.UNKNOWN

        status = map_terminal_status(provider_status.status)
        await self.redis.set(cache_key, status.value, ex=self.settings.terminal_status_ttl_seconds)
        return status

    async def is_terminal_available(self, terminal_id: str) -> bool:
        return await self.get_terminal_status(terminal_id) == TerminalStatus.ONLINE

    async def list_available_terminals(
        self,
        organization_id: str,
        user_id: str,
        event_id: str,
    ) -> List[Dict[str, Any]]:
        """List the organization's active terminals with status and current assignee."""
        async with session_scope(self.session_factory) as session:
            terminals = await TerminalRepository(session).list_for_organization(organization_id)
            assignments = await TerminalAssignmentRepository(session).list_active_for_event(event_id)
        assigned_to = {a.terminal_id: a.user_id for a in assignments}

        result = []
        for terminal in terminals:
            status = await self.get_terminal_status(terminal.terminal_id)
            assignee = assigned_to.get(terminal.terminal_id)
            result.append({
                "terminal_id": terminal.terminal_id,
                "serial_number": terminal.serial_number,
                "location": terminal.location,
                "status": status.value,
                "available": status == TerminalStatus.ONLINE and assignee in (None, user_id),
                "assigned_to": assignee,
                "assigned_to_me": assignee == user_id,
            })
        return result

    # Assignments

    async def assign(
        self,
        organization_id: str,
        user_id: str,
        event_id: str,
        terminal_id: str,
        location: str = "",
    ) -> Dict[str, Any]:
        """Bind a terminal to the user for the event.

        Args:
            organization_id: Organization the user acts for.
            user_id: User taking the terminal.
            event_id: Event the terminal is used at.
            terminal_id: Terminal to assign.
            location: Free-form location label.

        Returns:
            The new assignment as a dictionary.

        Raises:
            NotFoundError: Terminal unknown or inactive in the organization.
            ConflictError: Terminal actively assigned to another user for the event.
        """
        status = await self.get_terminal_status(terminal_id)
        try:
            async with session_scope(self.session_factory) as session:
                terminal = await TerminalRepository(session).get(organization_id, terminal_id)
                if terminal is None:
                    raise NotFoundError("Terminal not found or inactive")

                repo = TerminalAssignmentRepository(session)
                existing = await repo.get_active_for_terminal(terminal_id, event_id)
                if existing is not None and existing.user_id != user_id:
                    raise ConflictError("Terminal is already assigned to another user for this event")

                await repo.deactivate_for_user(user_id, event_id)
                assignment = await repo.create(
                    organization_id=organization_id,
                    user_id=user_id,
                    event_id=event_id,
                    terminal_id=terminal_id,
                    location=location or terminal.location,
                    last_status=status.value,
                )
                data = assignment.to_dict()
        except IntegrityError as e:
            raise ConflictError("Terminal is already assigned to another user for this event") from e

        await self.redis.delete(str(assignment_key(user_id, event_id)))
        logger.info(f"Assigned terminal {terminal_id} to user {user_id} for event {event_id}")
        return data

    async def current_assignment(self, user_id: str, event_id: str) -> Optional[Dict[str, Any]]:
        """Active assignment of the user for the event, served from cache when fresh."""
        cache_key = str(assignment_key(user_id, event_id))
        cached = await self.redis.get(cache_key)
        if cached:
            return json.loads(cached)

        async with session_scope(self.session_factory) as session:
            assignment = await TerminalAssignmentRepository(session).get_active_for_user(user_id, event_id)
            data = assignment.to_dict() if assignment else None

        if data is not None:
            await self.redis.set(cache_key, json.dumps(data), ex=self.settings.assignment_cache_ttl_seconds)
        return data

    async def release(self, user_id: str, event_id: str) -> None:
        """Deactivate the user's active assignment for the event.

        Raises:
            NotFoundError: No active assignment exists.
        """
        async with session_scope(self.session_factory) as session:
            released = await TerminalAssignmentRepository(session).deactivate_for_user(user_id, event_id)
        if not released:
            raise NotFoundError("No active terminal assignment found")
        await self.redis.delete(str(assignment_key(user_id, event_id)))
        logger.info(f"Released terminal assignment of user {user_id} for event {event_id}")

    async def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """Deactivate assignments older than the maximum age.

        A single conditional bulk update, so concurrent sweeps are harmless.
        Cached reads may serve a swept assignment until their short TTL runs out.

        Returns:
            Number of assignments deactivated.
        """
        cutoff = (now or utcnow()) - timedelta(hours=self.settings.assignment_max_age_hours)
        async with session_scope(self.session_factory) as session:
            count = await TerminalAssignmentRepository(session).deactivate_older_than(cutoff)
        if count:
            logger.info(f"Deactivated {count} expired terminal assignments")
        return count
