"""Canonical charge statuses and provider status translation."""

import enum
import logging
from typing import Optional

logger = logging.getLogger(__name__)


class ChargeStatus(str, enum.Enum):
    """Canonical charge statuses."""
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"
    ERROR = "error"
    TIMEOUT = "timeout"
    REVERSED = "reversed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not ChargeStatus.PENDING


TERMINAL_STATUSES = frozenset(s for s in ChargeStatus if s.is_terminal)

# Provider vocabulary -> canonical status. Anything else is an error.
PROVIDER_STATUS_MAP = {
    "pending": ChargeStatus.PENDING,
    "processing": ChargeStatus.PENDING,
    "approved": ChargeStatus.APPROVED,
    "declined": ChargeStatus.DECLINED,
    "failed": ChargeStatus.ERROR,
    "cancelled": ChargeStatus.CANCELLED,
    "reversed": ChargeStatus.REVERSED,
    "timeout": ChargeStatus.TIMEOUT,
}


class TerminalStatus(str, enum.Enum):
    """Device status reported for a physical terminal."""
    ONLINE = "online"
    OFFLINE = "offline"
    BUSY = "busy"
    UNKNOWN = "unknown"


TERMINAL_STATUS_MAP = {
    "ONLINE": TerminalStatus.ONLINE,
    "OFFLINE": TerminalStatus.OFFLINE,
    "BUSY": TerminalStatus.BUSY,
    "PROCESSING": TerminalStatus.BUSY,
}


def map_provider_status(provider_status: Optional[str]) -> ChargeStatus:
    """Map a provider payment status to the canonical status.

    Never raises: unrecognized or missing values map to ``ChargeStatus.ERROR``
    so that a charge always lands in an inspectable state.

    Args:
        provider_status: Status string reported by the provider.

    Returns:
        Canonical ChargeStatus.
    """
    if not isinstance(provider_status, str):
        logger.warning(f"Provider status missing or not a string: {provider_status!r}")
        return ChargeStatus.ERROR
    status = PROVIDER_STATUS_MAP.get(provider_status.strip().lower())
    if status is None:
        logger.warning(f"Unrecognized provider status {provider_status!r}, treating as error")
        return ChargeStatus.ERROR
    return status


def map_terminal_status(provider_status: Optional[str]) -> TerminalStatus:
    """Map a provider terminal status (ONLINE, OFFLINE, ...) to TerminalStatus."""
    if not isinstance(provider_status, str):
        return TerminalStatus.UNKNOWN
    return TERMINAL_STATUS_MAP.get(provider_status.strip().upper(), TerminalStatus.UNKNOWN)
