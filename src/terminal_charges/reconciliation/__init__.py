"""Reconciliation of pending terminal charges.

Charges whose outcome has not arrived by webhook are swept periodically:
those still inside the payment window are polled at the provider, the rest
are declared timed out.
"""

from .models import (
    SweepStatus,
    ChargeSweepFailure,
    ReconciliationReport,
)
from .scheduler import ReconciliationScheduler

__all__ = [
    "SweepStatus",
    "ChargeSweepFailure",
    "ReconciliationReport",
    "ReconciliationScheduler",
]
