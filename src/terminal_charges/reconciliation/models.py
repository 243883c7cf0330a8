"""Models for charge reconciliation sweeps."""

import enum
from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel, Field


class SweepStatus(str, enum.Enum):
    """Outcome of a scheduled sweep cycle."""
    COMPLETED = "completed"
    SKIPPED = "skipped"  # another run held the lock
    FAILED = "failed"


class ChargeSweepFailure(BaseModel):
    """A charge whose reconciliation raised during a sweep."""
    charge_id: str = Field(..., description="Charge that failed")
    error: str = Field(..., description="Error message")


class ReconciliationReport(BaseModel):
    """Result of one reconcile_all sweep."""
    started_at: datetime
    finished_at: Optional[datetime] = None
    status: SweepStatus = SweepStatus.COMPLETED
    examined: int = Field(default=0, description="Pending charges past the grace window")
    polled: int = Field(default=0, description="Charges queried at the provider")
    transitioned: int = Field(default=0, description="Charges moved to a final status by polling")
    timed_out: int = Field(default=0, description="Charges declared timed out")
    failed: int = Field(default=0, description="Charges whose reconciliation raised")
    failures: List[ChargeSweepFailure] = Field(default_factory=list)
    assignments_expired: int = Field(default=0, description="Terminal assignments deactivated")

    @classmethod
    def skipped(cls, started_at: datetime) -> "ReconciliationReport":
        return cls(started_at=started_at, finished_at=started_at, status=SweepStatus.SKIPPED)
