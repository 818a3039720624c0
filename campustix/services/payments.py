"""
Payment reconciliation.

Provider notifications are authenticated, de-duplicated by idempotency key
and applied with guarded transitions. Anything that only informs people runs
after commit through the side-effect queue.
"""
from __future__ import annotations
from typing import Callable, List, Tuple

from loguru import logger

from ..collaborators import Actor, Template
from ..errors import (
    Forbidden, PaymentProviderUnavailable, RefundNotAllowed,
    RegistrationNotFound, ValidationFailed, DomainError,
)
from ..helpers import now_ts
from ..infra.timings import timeit
from ..model import catalog, registrations as store
from ..model.db import Database, Tx
from ..model.orm import (
    Registration, PENDING_PAYMENT, CANCELLED, CONFIRMED, ATTENDED, NO_SHOW,
    PAY_PAID, PAY_FAILED, PAY_EXPIRED, PAY_REFUNDED,
    TIX_CANCELLED, TIX_EXPIRED, REFUND_PENDING, REFUND_REFUNDED,
)
from ..payment_adapter import (
    IntentRequest, IntentResult, NotificationKind, PaymentAdapter,
    ProviderNotification,
)
from ..sidefx import SideEffectQueue
from .lifecycle import Lifecycle

Effect = Tuple[str, dict]

LATE_PAYMENT_REASON = "payment received after the registration was closed"


class PaymentReconciler:
    def __init__(self, db: Database, adapter: PaymentAdapter,
                 lifecycle: Lifecycle, sidefx: SideEffectQueue, *,
                 client_url: str = "",
                 clock: Callable[[], float] = now_ts) -> None:
        self.db = db
        self.adapter = adapter
        self.lifecycle = lifecycle
        self.sidefx = sidefx
        self.client_url = client_url.rstrip("/")
        self.clock = clock

    def _flush(self, effects: List[Effect]) -> None:
        for kind, payload in effects:
            self.sidefx.enqueue(kind, **payload)

    # ----------------------------
    # Intents
    # ----------------------------
    async def create_payment_intent(self, registration_id: str
                                    ) -> IntentResult:
        async with self.db.transaction() as tx:
            reg = await store.get(tx.session, registration_id)
            if reg is None:
                raise RegistrationNotFound()
            ev = await catalog.get_event(tx.session, reg.event_id)

        p = reg.participant or {}
        items = [{
            "id": reg.tier_id,
            "price": reg.unit_price,
            "quantity": reg.quantity,
            "name": f"{ev.title} - {reg.tier_name}"[:50],
        }]
        if reg.admin_fee:
            items.append({"id": "admin_fee", "price": reg.admin_fee,
                          "quantity": 1, "name": "Admin fee"})
        req = IntentRequest(
            order_id=reg.external_order_id,
            gross_amount=reg.total_amount,
            currency=reg.currency,
            customer_name=p.get("full_name", ""),
            customer_email=p.get("email", ""),
            customer_phone=p.get("phone", ""),
            items=items,
            expiry_minutes=max(1, int((reg.expired_at - self.clock()) / 60)),
            finish_url=(f"{self.client_url}/registrations/{reg.id}"
                        if self.client_url else None),
        )
        try:
            async with timeit("provider.create_intent"):
                result = await self.adapter.create_intent(req)
        except DomainError:
            raise
        except Exception as e:
            logger.exception("payment intent for {} failed: {}",
                             reg.external_order_id, e)
            raise PaymentProviderUnavailable()

        async with self.db.transaction() as tx:
            await store.guarded_update(
                tx.session, reg.id, [PENDING_PAYMENT], dict(
                    external_order_id=result.order_id,
                    payment_token=result.token,
                    payment_redirect_url=result.redirect_url,
                    updated_at=self.clock(),
                ),
            )
        return result

    # ----------------------------
    # Notifications
    # ----------------------------
    async def handle_provider_notification(self, body: bytes,
                                           headers: dict) -> dict:
        event = self.adapter.verify_notification(body, headers)
        note = self.adapter.parse_notification(event)
        if not note.order_id:
            raise ValidationFailed("notification without order id")
        key = note.idempotency_key or (
            f"{note.order_id}:{note.kind.value}:{note.transaction_id}"
        )

        effects: List[Effect] = []
        async with self.db.transaction() as tx:
            reg = await store.get_by_order_id(tx.session, note.order_id)
            if reg is None:
                logger.warning("notification {} for unknown order {}",
                               note.kind.value, note.order_id)
                return {"ok": True, "outcome": "unknown_order"}

            fresh = await store.record_webhook_event(
                tx.session, key, note.order_id, note.kind.value, self.clock()
            )
            if not fresh:
                return {"ok": True, "idempotent": True}

            outcome = await self._apply(tx, reg, note, effects)

        self._flush(effects)
        logger.info("order {}: {} -> {}", note.order_id, note.kind.value,
                    outcome)
        return {"ok": True, "outcome": outcome}

    async def _apply(self, tx: Tx, reg: Registration,
                     note: ProviderNotification,
                     effects: List[Effect]) -> str:
        kind = note.kind

        if kind == NotificationKind.SETTLED:
            return await self._settle(tx, reg, note, effects)

        if kind == NotificationKind.CHALLENGED:
            logger.warning("order {} held for fraud review", note.order_id)
            return "challenged"

        if kind == NotificationKind.PENDING:
            return "pending"

        if kind in (NotificationKind.FAILED, NotificationKind.EXPIRED):
            expired = kind == NotificationKind.EXPIRED
            ok = await self.lifecycle.fail_pending(
                tx, reg,
                payment_status=PAY_EXPIRED if expired else PAY_FAILED,
                ticket_status=TIX_EXPIRED if expired else TIX_CANCELLED,
                by="provider",
                reason="payment expired" if expired else "payment failed",
            )
            if not ok:
                return "ignored"
            effects.append(("notify", dict(
                registration_id=reg.id,
                template=Template.REGISTRATION_CANCELLED.value)))
            return "expired" if expired else "failed"

        if kind == NotificationKind.REFUNDED:
            ok = await self.lifecycle.settle_refund(tx, reg, by="provider")
            if not ok:
                return "ignored"
            effects.append(("notify", dict(
                registration_id=reg.id,
                template=Template.REFUND_PROCESSED.value)))
            return "refunded"

        logger.warning("unhandled notification for {}: {}", note.order_id,
                       note.raw)
        return "ignored"

    async def _settle(self, tx: Tx, reg: Registration,
                      note: ProviderNotification,
                      effects: List[Effect]) -> str:
        if await self.lifecycle.confirm(
            tx, reg, transaction_id=note.transaction_id,
            payment_method=note.payment_method,
        ):
            effects.append(("issue_ticket", dict(registration_id=reg.id)))
            return "confirmed"

        reg = await store.get(tx.session, reg.id, refresh=True)
        if reg.payment_status in (PAY_PAID, PAY_REFUNDED):
            return "already_paid"

        # money arrived for a registration that is already closed; it stays
        # closed and the payment is queued for refund
        now = self.clock()
        ok = await store.guarded_update(
            tx.session, reg.id, [CANCELLED], dict(
                payment_status=PAY_PAID, paid_at=now,
                transaction_id=note.transaction_id,
                payment_method=note.payment_method,
                refund_status=REFUND_PENDING,
                refund_reason=LATE_PAYMENT_REASON,
                refund_requested_at=now, updated_at=now,
            ),
            extra=[Registration.payment_status != PAY_PAID],
        )
        if not ok:
            return "ignored"
        logger.warning("late payment on closed registration {} ({})",
                       reg.id, note.order_id)
        effects.append(("notify_admins", dict(
            registration_id=reg.id, template=Template.LATE_PAYMENT.value)))
        return "refund_required"

    # ----------------------------
    # Refunds
    # ----------------------------
    async def request_refund(self, actor: Actor, registration_id: str,
                             reason: str) -> Registration:
        async with self.db.transaction() as tx:
            reg = await store.get(tx.session, registration_id)
            if reg is None:
                raise RegistrationNotFound()
            if not (actor.is_admin or actor.user_id == reg.buyer_id):
                raise Forbidden()
            if reg.payment_status != PAY_PAID or reg.total_amount <= 0:
                raise RefundNotAllowed(current_status=reg.payment_status)
            now = self.clock()
            ok = await store.guarded_update(
                tx.session, reg.id,
                [CONFIRMED, CANCELLED, ATTENDED, NO_SHOW],
                dict(refund_status=REFUND_PENDING, refund_reason=reason,
                     refund_requested_at=now, updated_at=now),
                extra=[Registration.payment_status == PAY_PAID,
                       Registration.refund_status != REFUND_REFUNDED],
            )
            if not ok:
                raise RefundNotAllowed(current_status=reg.payment_status)
            reg = await store.get(tx.session, reg.id, refresh=True)

        self._flush([("notify_admins", dict(
            registration_id=reg.id,
            template=Template.REFUND_REQUESTED.value))])
        return reg

    async def process_refund(self, actor: Actor,
                             registration_id: str) -> Registration:
        if not actor.is_admin:
            raise Forbidden()
        async with self.db.transaction() as tx:
            reg = await store.get(tx.session, registration_id)
            if reg is None:
                raise RegistrationNotFound()
            if reg.payment_status == PAY_REFUNDED:
                return reg
            if reg.payment_status != PAY_PAID:
                raise RefundNotAllowed(current_status=reg.payment_status)
            ok = await self.lifecycle.settle_refund(
                tx, reg, by=actor.user_id,
                reason=reg.refund_reason or "refunded by admin",
            )
            if not ok:
                reg = await store.get(tx.session, reg.id, refresh=True)
                raise RefundNotAllowed(current_status=reg.status)
            reg = await store.get(tx.session, reg.id, refresh=True)

        self._flush([("notify", dict(
            registration_id=reg.id,
            template=Template.REFUND_PROCESSED.value))])
        return reg

    # ----------------------------
    # Side-effect handlers
    # ----------------------------
    async def cancel_intent(self, order_id: str) -> None:
        if not await self.adapter.cancel(order_id):
            raise PaymentProviderUnavailable(
                f"provider did not cancel {order_id}")

