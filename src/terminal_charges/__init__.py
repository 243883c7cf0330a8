# terminal_charges package
__version__ = "0.1.0"

from .status import ChargeStatus, TerminalStatus, map_provider_status
from .errors import (
    ChargeError,
    NotFoundError,
    ConflictError,
    UnauthorizedError,
    UpstreamUnavailableError,
    ChargeValidationError,
)
from .config import Settings, get_settings
from .idempotency import IdempotencyLedger
from .terminals import TerminalLeaseManager, TerminalRegistry
from .services import ChargeService
from .schemas import ChargeView

# Reconciliation exports
from .reconciliation import (
    ReconciliationReport,
    ReconciliationScheduler,
)
