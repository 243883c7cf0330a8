"""Database module for terminal charge persistence."""

from .models import (
    Base,
    Charge,
    ChargeStatusHistory,
    ChargeWebhookEvent,
    OrganizationTerminal,
    TerminalAssignment,
    Order,
    OrderPaymentStatus,
    PAYMENT_WINDOW,
    generate_charge_id,
    utcnow,
)
from .session import (
    get_database_url,
    create_async_engine,
    create_session_factory,
    create_tables,
    session_scope,
    DatabaseManager,
)
from .repository import (
    ChargeRepository,
    WebhookEventRepository,
    TerminalRepository,
    TerminalAssignmentRepository,
    OrderRepository,
)

__all__ = [
    # Models
    "Base",
    "Charge",
    "ChargeStatusHistory",
    "ChargeWebhookEvent",
    "OrganizationTerminal",
    "TerminalAssignment",
    "Order",
    "OrderPaymentStatus",
    "PAYMENT_WINDOW",
    "generate_charge_id",
    "utcnow",
    # Session management
    "get_database_url",
    "create_async_engine",
    "create_session_factory",
    "create_tables",
    "session_scope",
    "DatabaseManager",
    # Repositories
    "ChargeRepository",
    "WebhookEventRepository",
    "TerminalRepository",
    "TerminalAssignmentRepository",
    "OrderRepository",
]
