"""Request and response models shared by the services and the HTTP surface."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .status import ChargeStatus


class CreateChargeRequest(BaseModel):
    transaction_id: str = Field(..., min_length=1)
    ticket_tier_id: Optional[str] = None
    amount: int = Field(..., gt=0, description="Amount in minor currency units")
    terminal_id: str = Field(..., min_length=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class StatusHistoryEntry(BaseModel):
    sequence: int
    status: str
    previous_status: Optional[str] = None
    reason: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class ChargeView(BaseModel):
    """Caller-facing state of a charge.

    Payment details are only exposed for approved charges, error details
    only for declined or errored ones.
    """
    charge_id: str
    transaction_id: str
    ticket_tier_id: Optional[str] = None
    status: ChargeStatus
    amount: int
    currency: str
    terminal_id: str
    provider_transaction_id: Optional[str] = None
    payment_details: Optional[Dict[str, Any]] = None
    error_details: Optional[Dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime
    status_history: List[StatusHistoryEntry] = Field(default_factory=list)

    @classmethod
    def from_charge(cls, charge: Any, include_history: bool = False) -> "ChargeView":
        status = ChargeStatus(charge.status)
        return cls(
            charge_id=charge.id,
            transaction_id=charge.transaction_id,
            ticket_tier_id=charge.ticket_tier_id,
            status=status,
            amount=charge.amount,
            currency=charge.currency,
            terminal_id=charge.terminal_id,
            provider_transaction_id=charge.provider_transaction_id,
            payment_details=charge.payment_details if status == ChargeStatus.APPROVED else None,
            error_details=(
                charge.error_details
                if status in (ChargeStatus.DECLINED, ChargeStatus.ERROR, ChargeStatus.TIMEOUT)
                else None
            ),
            created_at=charge.created_at,
            updated_at=charge.updated_at,
            status_history=(
                [StatusHistoryEntry.model_validate(h) for h in charge.status_history]
                if include_history
                else []
            ),
        )


class PosChargeRequest(BaseModel):
    order_id: str = Field(..., min_length=1)
    terminal_id: str = Field(..., min_length=1)
    event_id: Optional[str] = None


class AssignTerminalRequest(BaseModel):
    terminal_id: str = Field(..., min_length=1)
    event_id: str = Field(..., min_length=1)
    location: str = ""


class TerminalTestResult(BaseModel):
    success: bool
    status: Optional[str] = None
    message: str
    charge_id: Optional[str] = None
