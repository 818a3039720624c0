"""Hosted-checkout provider speaking the Midtrans Snap dialect."""
from __future__ import annotations
import hashlib

import httpx
import orjson
from loguru import logger

from .errors import InvalidSignature, PaymentProviderUnavailable
from .helpers import ct_equal
from .infra.timings import timeit
from .payment_adapter import (
    IntentRequest, IntentResult, NotificationKind, PaymentAdapter,
    ProviderNotification,
)

SNAP_URL = {
    True: "https://app.midtrans.com/snap/v1/transactions",
    False: "https://app.sandbox.midtrans.com/snap/v1/transactions",
}
CORE_URL = {
    True: "https://api.midtrans.com/v2",
    False: "https://api.sandbox.midtrans.com/v2",
}


def notification_signature(order_id: str, status_code: str,
                           gross_amount: str, server_key: str) -> str:
    raw = f"{order_id}{status_code}{gross_amount}{server_key}"
    return hashlib.sha512(raw.encode()).hexdigest()


def map_status(transaction_status: str, fraud_status: str | None
               ) -> NotificationKind:
    if transaction_status in ("capture", "settlement"):
        if fraud_status == "challenge":
            return NotificationKind.CHALLENGED
        if fraud_status in (None, "", "accept"):
            return NotificationKind.SETTLED
        return NotificationKind.FAILED
    if transaction_status == "pending":
        return NotificationKind.PENDING
    if transaction_status in ("deny", "cancel", "failure"):
        return NotificationKind.FAILED
    if transaction_status == "expire":
        return NotificationKind.EXPIRED
    if transaction_status in ("refund", "partial_refund"):
        return NotificationKind.REFUNDED
    return NotificationKind.UNKNOWN


class SnapPay(PaymentAdapter):
    name = "snap"

    def __init__(self, http: httpx.AsyncClient, server_key: str,
                 is_production: bool = False) -> None:
        self.http = http
        self.server_key = server_key
        self.snap_url = SNAP_URL[is_production]
        self.core_url = CORE_URL[is_production]

    @property
    def _auth(self) -> tuple:
        return (self.server_key, "")

    async def create_intent(self, req: IntentRequest) -> IntentResult:
        body = {
            "transaction_details": {
                "order_id": req.order_id,
                "gross_amount": req.gross_amount,
            },
            "customer_details": {
                "first_name": req.customer_name,
                "email": req.customer_email,
                "phone": req.customer_phone,
            },
            "item_details": req.items,
            "expiry": {"unit": "minutes", "duration": req.expiry_minutes},
        }
        if req.finish_url:
            body["callbacks"] = {"finish": req.finish_url}
        try:
            async with timeit("provider.create_intent"):
                r = await self.http.post(
                    self.snap_url, content=orjson.dumps(body),
                    auth=self._auth,
                    headers={"content-type": "application/json",
                             "accept": "application/json"},
                )
            r.raise_for_status()
            data = r.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("snap intent for {} failed: {}", req.order_id, e)
            raise PaymentProviderUnavailable()
        if "token" not in data or "redirect_url" not in data:
            logger.error("snap intent for {} answered {}", req.order_id, data)
            raise PaymentProviderUnavailable()
        return IntentResult(token=data["token"],
                            redirect_url=data["redirect_url"],
                            order_id=req.order_id)

    def verify_notification(self, payload: bytes, headers: dict) -> dict:
        try:
            event = orjson.loads(payload)
        except orjson.JSONDecodeError:
            logger.warning("snap notification with malformed body")
            raise InvalidSignature()
        if not isinstance(event, dict):
            raise InvalidSignature()
        expected = notification_signature(
            str(event.get("order_id", "")), str(event.get("status_code", "")),
            str(event.get("gross_amount", "")), self.server_key,
        )
        got = str(event.get("signature_key", ""))
        if not got or not ct_equal(expected, got):
            logger.warning("snap notification for {} with bad signature",
                           event.get("order_id"))
            raise InvalidSignature()
        return event

    def parse_notification(self, event: dict) -> ProviderNotification:
        status = event.get("transaction_status", "")
        tx_id = event.get("transaction_id")
        gross = event.get("gross_amount")
        try:
            gross = int(float(gross)) if gross is not None else None
        except (TypeError, ValueError):
            gross = None
        return ProviderNotification(
            kind=map_status(status, event.get("fraud_status")),
            order_id=event.get("order_id", ""),
            idempotency_key=(
                f"{tx_id}:{status}:{event.get('status_code', '')}"
            ),
            transaction_id=tx_id,
            payment_method=event.get("payment_type"),
            gross_amount=gross,
            raw=event,
        )

    async def cancel(self, order_id: str) -> bool:
        try:
            async with timeit("provider.cancel"):
                r = await self.http.post(
                    f"{self.core_url}/{order_id}/cancel", auth=self._auth,
                    headers={"accept": "application/json"},
                )
        except httpx.HTTPError as e:
            logger.warning("snap cancel for {} failed: {}", order_id, e)
            return False
        return r.is_success
