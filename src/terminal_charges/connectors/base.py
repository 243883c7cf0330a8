from abc import ABC, abstractmethod
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field


# Canonical gateway models
class GatewayPaymentRequest(BaseModel):
    amount: int = Field(..., gt=0)  # minor units
    currency: str = Field(..., min_length=3, max_length=3)
    terminal_id: str
    reference_id: str  # our charge id, also the provider-side idempotency key
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class GatewayPaymentResponse(BaseModel):
    provider_transaction_id: str
    status: Optional[str] = None  # provider vocabulary, mapped by the engine
    raw_provider_response: Optional[Dict[str, Any]] = None


class GatewayPaymentStatus(BaseModel):
    provider_transaction_id: str
    status: Optional[str] = None
    authorization_code: Optional[str] = None
    card_brand: Optional[str] = None
    last_four: Optional[str] = None
    cardholder_name: Optional[str] = None
    payment_method: Optional[str] = None
    decline_code: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    raw_provider_response: Optional[Dict[str, Any]] = None

    @classmethod
    def from_provider(cls, provider_transaction_id: str, data: Dict[str, Any]) -> "GatewayPaymentStatus":
        """Build from a provider payment/webhook ``data`` object."""
        return cls(
            provider_transaction_id=provider_transaction_id,
            status=data.get("status"),
            authorization_code=data.get("authorization_code"),
            card_brand=data.get("card_brand"),
            last_four=data.get("last_four"),
            cardholder_name=data.get("cardholder_name"),
            payment_method=data.get("payment_method"),
            decline_code=data.get("decline_code"),
            error_code=data.get("error_code"),
            error_message=data.get("error_message") or data.get("message"),
            raw_provider_response=data,
        )

    @property
    def failure_code(self) -> Optional[str]:
        return self.decline_code or self.error_code

    def payment_details(self) -> Dict[str, Any]:
        return {
            "authorization_code": self.authorization_code,
            "card_brand": self.card_brand,
            "last_four_digits": self.last_four,
            "cardholder_name": self.cardholder_name,
            "payment_method": self.payment_method,
        }


class GatewayTerminalStatus(BaseModel):
    terminal_id: str
    status: Optional[str] = None  # ONLINE|OFFLINE|BUSY|PROCESSING
    raw_provider_response: Optional[Dict[str, Any]] = None


class GatewayBase(ABC):
    """
    Card-present payment provider interface. Implementations raise the typed
    errors from ``terminal_charges.errors`` on failure instead of returning
    failed responses.
    """

    name: str = "gateway"

    @abstractmethod
    async def create_payment(self, request: GatewayPaymentRequest) -> GatewayPaymentResponse:
        """
        Push a payment to a terminal. Retrying with the same reference id must
        not create a second payment at the provider.
        """
        raise NotImplementedError

    @abstractmethod
    async def get_payment(self, provider_transaction_id: str) -> GatewayPaymentStatus:
        raise NotImplementedError

    @abstractmethod
    async def get_terminal_status(self, terminal_id: str) -> GatewayTerminalStatus:
        raise NotImplementedError

    async def close(self) -> None:
        return None

    def health_check(self) -> Dict[str, Any]:
        return {"ok": True, "provider": self.name}
