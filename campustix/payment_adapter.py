from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class NotificationKind(str, Enum):
    SETTLED = "settled"
    CHALLENGED = "challenged"
    PENDING = "pending"
    FAILED = "failed"
    EXPIRED = "expired"
    REFUNDED = "refunded"
    UNKNOWN = "unknown"


@dataclass
class ProviderNotification:
    kind: NotificationKind
    order_id: str
    idempotency_key: str
    transaction_id: Optional[str] = None
    payment_method: Optional[str] = None
    gross_amount: Optional[int] = None
    # provider payload as received, for anything not modelled above
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class IntentRequest:
    order_id: str
    gross_amount: int
    currency: str
    customer_name: str
    customer_email: str
    customer_phone: str
    items: List[Dict[str, Any]]
    expiry_minutes: int
    finish_url: Optional[str] = None


@dataclass
class IntentResult:
    token: str
    redirect_url: str
    order_id: str


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class PaymentAdapter(ABC):
    name = "abstract"

    @abstractmethod
    async def create_intent(self, req: IntentRequest) -> IntentResult:
        """Raises PaymentProviderUnavailable when the provider fails."""

    @abstractmethod
    def verify_notification(self, payload: bytes, headers: dict) -> dict:
        """Authenticate a notification. Raises InvalidSignature."""

    @abstractmethod
    def parse_notification(self, event: dict) -> ProviderNotification: ...

    @abstractmethod
    async def cancel(self, order_id: str) -> bool:
        """Best-effort cancellation of an open intent."""
