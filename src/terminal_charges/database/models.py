"""SQLAlchemy models for terminal charges, assignments and orders."""

import json
import secrets
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List

from sqlalchemy import (
    Boolean,
    String,
    Integer,
    DateTime,
    ForeignKey,
    Text,
    Index,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column
import enum

from ..status import ChargeStatus, TerminalStatus

# Default payment window: a pending charge older than this has timed out.
PAYMENT_WINDOW = timedelta(minutes=2)

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the naive DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _base36(value: int) -> str:
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits)) or "0"


def generate_charge_id() -> str:
    """Generate a charge id of the form ``CHG_<time36>_<random>``."""
    timestamp = _base36(int(time.time() * 1000))
    random_part = _base36(secrets.randbits(46)).rjust(9, "0")
    return f"CHG_{timestamp}_{random_part}".upper()


def _dumps(value: Optional[Dict[str, Any]]) -> Optional[str]:
    return json.dumps(value, default=str) if value is not None else None


def _loads(value: Optional[str]) -> Optional[Dict[str, Any]]:
    return json.loads(value) if value else None


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class OrderPaymentStatus(str, enum.Enum):
    """Payment states of a business order/transaction."""
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"


class Charge(Base):
    """One attempt to collect payment through a physical terminal."""
    __tablename__ = "terminal_charges"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=generate_charge_id)
    provider_transaction_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)

    # Linkage to the business transaction
    transaction_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    ticket_tier_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="COP")
    terminal_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=ChargeStatus.PENDING.value)

    payment_details_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_details_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Reconciliation bookkeeping
    last_poll_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    poll_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reconciled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    status_history: Mapped[List["ChargeStatusHistory"]] = relationship(
        "ChargeStatusHistory",
        back_populates="charge",
        order_by="ChargeStatusHistory.sequence",
        lazy="selectin",
    )
    webhook_events: Mapped[List["ChargeWebhookEvent"]] = relationship(
        "ChargeWebhookEvent",
        back_populates="charge",
        order_by="ChargeWebhookEvent.received_at",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_terminal_charges_transaction_status", "transaction_id", "status"),
        Index("ix_terminal_charges_reconcile", "reconciled", "status", "created_at"),
    )

    @property
    def payment_details(self) -> Optional[Dict[str, Any]]:
        return _loads(self.payment_details_json)

    @payment_details.setter
    def payment_details(self, value: Optional[Dict[str, Any]]) -> None:
        self.payment_details_json = _dumps(value)

    @property
    def error_details(self) -> Optional[Dict[str, Any]]:
        return _loads(self.error_details_json)

    @error_details.setter
    def error_details(self, value: Optional[Dict[str, Any]]) -> None:
        self.error_details_json = _dumps(value)

    @property
    def charge_metadata(self) -> Dict[str, Any]:
        return _loads(self.metadata_json) or {}

    @charge_metadata.setter
    def charge_metadata(self, value: Optional[Dict[str, Any]]) -> None:
        self.metadata_json = _dumps(value)

    @property
    def pos_client(self) -> Optional[str]:
        return self.charge_metadata.get("pos_client")

    def is_timed_out(
        self,
        now: Optional[datetime] = None,
        window: timedelta = PAYMENT_WINDOW,
    ) -> bool:
        """True if the charge is still pending after the payment window elapsed."""
        now = now or utcnow()
        return self.status == ChargeStatus.PENDING.value and (now - self.created_at) > window

    def to_dict(self) -> Dict[str, Any]:
        """Convert charge to dictionary representation."""
        return {
            "charge_id": self.id,
            "provider_transaction_id": self.provider_transaction_id,
            "transaction_id": self.transaction_id,
            "ticket_tier_id": self.ticket_tier_id,
            "amount": self.amount,
            "currency": self.currency,
            "terminal_id": self.terminal_id,
            "status": self.status,
            "payment_details": self.payment_details,
            "error_details": self.error_details,
            "metadata": self.charge_metadata,
            "last_poll_at": self.last_poll_at.isoformat() if self.last_poll_at else None,
            "poll_attempts": self.poll_attempts,
            "reconciled": self.reconciled,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class ChargeStatusHistory(Base):
    """Append-only audit trail of charge status transitions."""
    __tablename__ = "charge_status_history"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    charge_id: Mapped[str] = mapped_column(String(64), ForeignKey("terminal_charges.id"), nullable=False, index=True)
    # Monotonic per-charge position; (charge_id, sequence) is unique.
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    previous_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    raw_payload_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    charge: Mapped["Charge"] = relationship("Charge", back_populates="status_history")

    __table_args__ = (
        UniqueConstraint("charge_id", "sequence", name="uq_charge_status_history_sequence"),
    )

    @property
    def raw_payload(self) -> Optional[Dict[str, Any]]:
        return _loads(self.raw_payload_json)

    @raw_payload.setter
    def raw_payload(self, value: Optional[Dict[str, Any]]) -> None:
        self.raw_payload_json = _dumps(value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "status": self.status,
            "previous_status": self.previous_status,
            "reason": self.reason,
            "raw_payload": self.raw_payload,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class ChargeWebhookEvent(Base):
    """Receipt of a provider webhook delivery.

    ``provider_event_id`` is unique so a redelivered event cannot be recorded twice.
    Receipts for unknown transactions keep ``charge_id`` empty and stay unprocessed.
    """
    __tablename__ = "charge_webhook_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    charge_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("terminal_charges.id"), nullable=True, index=True)
    provider_transaction_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    provider_event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    received_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    charge: Mapped[Optional["Charge"]] = relationship("Charge", back_populates="webhook_events")

    __table_args__ = (
        Index("ix_charge_webhook_events_processed", "processed", "received_at"),
    )


class OrganizationTerminal(Base):
    """A physical terminal registered to an organization."""
    __tablename__ = "organization_terminals"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    terminal_id: Mapped[str] = mapped_column(String(255), nullable=False)
    serial_number: Mapped[str] = mapped_column(String(255), nullable=False)
    location: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    added_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("organization_id", "terminal_id", name="uq_organization_terminals_terminal"),
    )


class TerminalAssignment(Base):
    """Binding of a terminal to a (user, event) for an operating session."""
    __tablename__ = "terminal_assignments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    terminal_id: Mapped[str] = mapped_column(String(255), nullable=False)
    location: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    assigned_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    last_status_check: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    last_status: Mapped[str] = mapped_column(String(20), nullable=False, default=TerminalStatus.UNKNOWN.value)

    __table_args__ = (
        Index("ix_terminal_assignments_event_terminal", "event_id", "terminal_id"),
        Index("ix_terminal_assignments_user_event", "user_id", "event_id"),
        Index("ix_terminal_assignments_active_assigned", "active", "assigned_at"),
        # At most one active assignment per (terminal, event) and per (user, event)
        Index(
            "uq_terminal_assignments_active_terminal",
            "terminal_id",
            "event_id",
            unique=True,
            sqlite_where=text("active = 1"),
            postgresql_where=text("active"),
        ),
        Index(
            "uq_terminal_assignments_active_user",
            "user_id",
            "event_id",
            unique=True,
            sqlite_where=text("active = 1"),
            postgresql_where=text("active"),
        ),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "user_id": self.user_id,
            "event_id": self.event_id,
            "terminal_id": self.terminal_id,
            "location": self.location,
            "active": self.active,
            "assigned_at": self.assigned_at.isoformat() if self.assigned_at else None,
            "last_status": self.last_status,
        }


class Order(Base):
    """Business order/transaction paid for at the point of sale."""
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(255), primary_key=True, default=lambda: str(uuid.uuid4()))
    event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    ticket_tier_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_price: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False, default=OrderPaymentStatus.PENDING.value)
    payment_method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    payment_details_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_payment_error_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_payment_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def total_amount(self) -> int:
        return self.quantity * self.unit_price

    @property
    def payment_details(self) -> Optional[Dict[str, Any]]:
        return _loads(self.payment_details_json)

    @property
    def last_payment_error(self) -> Optional[Dict[str, Any]]:
        return _loads(self.last_payment_error_json)
