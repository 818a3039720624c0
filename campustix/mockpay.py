from typing import Optional, Tuple
import base64
import hashlib
import hmac
import time
import uuid

import orjson
from loguru import logger

from .errors import InvalidSignature
from .payment_adapter import (
    IntentRequest, IntentResult, NotificationKind, PaymentAdapter,
    ProviderNotification,
)

_KINDS = {
    "succeeded": NotificationKind.SETTLED,
    "challenge": NotificationKind.CHALLENGED,
    "pending": NotificationKind.PENDING,
    "failed": NotificationKind.FAILED,
    "canceled": NotificationKind.FAILED,
    "expired": NotificationKind.EXPIRED,
    "refunded": NotificationKind.REFUNDED,
}

EMITTABLE = frozenset(_KINDS)


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):
    """In-process provider: hosted page at /mockpay/{order_id}, HMAC webhooks."""
    name = "mockpay"

    def __init__(self, secret: str) -> None:
        self.secret = secret

    def sign(self, payload: bytes) -> str:
        mac = hmac.new(self.secret.encode(), payload, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    def build_event(
        self, order_id: str, kind: str, amount: int,
        method: str = "mock_card", idempotency_key: Optional[str] = None,
    ) -> Tuple[bytes, dict]:
        event = {
            "type": f"payment.{kind}",
            "order_id": order_id,
            "transaction_id": f"mtx_{uuid.uuid4().hex[:16]}",
            "payment_method": method,
            "amount": int(amount),
            "created_at": int(time.time()),
            "idempotency_key": idempotency_key or f"evt_{uuid.uuid4().hex}",
        }
        payload = orjson.dumps(event)
        return payload, {
            "x-mockpay-signature": self.sign(payload),
            "content-type": "application/json",
        }

    async def create_intent(self, req: IntentRequest) -> IntentResult:
        token = f"mock_{uuid.uuid4().hex}"
        return IntentResult(
            token=token,
            redirect_url=f"/mockpay/{req.order_id}",
            order_id=req.order_id,
        )

    def verify_notification(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("x-mockpay-signature")
        expected = self.sign(payload)
        if not sig or not hmac.compare_digest(expected, sig):
            logger.warning("mockpay webhook with bad signature")
            raise InvalidSignature()
        try:
            return orjson.loads(payload)
        except orjson.JSONDecodeError:
            logger.warning("mockpay webhook with malformed body")
            raise InvalidSignature()

    def parse_notification(self, event: dict) -> ProviderNotification:
        kind = event.get("type", "").split(".")[-1]
        return ProviderNotification(
            kind=_KINDS.get(kind, NotificationKind.UNKNOWN),
            order_id=event.get("order_id", ""),
            idempotency_key=event.get("idempotency_key") or "",
            transaction_id=event.get("transaction_id"),
            payment_method=event.get("payment_method"),
            gross_amount=event.get("amount"),
            raw=event,
        )

    async def cancel(self, order_id: str) -> bool:
        logger.info("mockpay intent {} cancelled", order_id)
        return True
