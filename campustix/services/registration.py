"""
Registration service: creating, cancelling and reading registrations.

Creation reserves inventory and writes the registration in one transaction.
Free registrations are confirmed in that same transaction; paid ones get a
payment intent afterwards, and a provider failure unwinds the registration.
"""
from __future__ import annotations
import csv
import io
import uuid
from typing import Callable, List, Optional, Tuple

from loguru import logger
from sqlalchemy.exc import IntegrityError

from ..collaborators import Actor, Template, ROLE_ORGANIZER, ROLE_STAFF
from ..errors import (
    AlreadyCancelled, DomainError, DuplicateRegistration, EventNotFound,
    EventNotPublished, Forbidden, InvalidTransition,
    RegistrationNotFound,
    RegistrationWindowClosed, TierInactiveOrSoldOut, TierNotFound,
    ValidationFailed,
)
from ..helpers import (
    is_valid_email, new_order_id, new_registration_number, now_ts, to_iso,
)
from ..model import catalog, registrations as store
from ..model.db import Database, Tx
from ..model.orm import (
    Event, Registration,
    EV_DRAFT, EV_PUBLISHED, EV_CANCELLED,
    PENDING_PAYMENT, CONFIRMED, ATTENDED, CANCELLED, NO_SHOW,
    PAY_PENDING, PAY_PAID, PAY_FAILED, TIX_CANCELLED, REFUND_PENDING,
    REFUND_NOT_APPLICABLE,
)
from ..payment_adapter import IntentResult
from ..sidefx import SideEffectQueue
from .lifecycle import Lifecycle
from .payments import PaymentReconciler

Effect = Tuple[str, dict]

PARTICIPANT_FIELDS = ("full_name", "email", "phone", "student_id",
                      "institution", "faculty", "major", "batch")

CSV_COLUMNS = [
    "Registration Number", "Full Name", "Email", "Phone", "Student ID",
    "Institution", "Tier", "Quantity", "Status", "Payment Status",
    "Total Amount", "Ticket Number", "Checked In", "Check-in Time",
    "Registered At",
]


def normalize_participant(raw: Optional[dict]) -> dict:
    if not isinstance(raw, dict):
        raise ValidationFailed("participant details are required")
    p = {k: (str(raw[k]).strip() if raw.get(k) is not None else None)
         for k in PARTICIPANT_FIELDS}
    if not p["full_name"]:
        raise ValidationFailed("participant full_name is required")
    if not is_valid_email(p["email"]):
        raise ValidationFailed("participant email must be a valid address")
    if not p["phone"]:
        raise ValidationFailed("participant phone is required")
    return {k: v for k, v in p.items() if v}


class RegistrationService:
    def __init__(self, db: Database, lifecycle: Lifecycle,
                 reconciler: PaymentReconciler, sidefx: SideEffectQueue, *,
                 payment_expiry_hours: float = 24.0, admin_fee: int = 0,
                 currency: str = "IDR", max_quantity: int = 5,
                 clock: Callable[[], float] = now_ts) -> None:
        self.db = db
        self.lifecycle = lifecycle
        self.reconciler = reconciler
        self.sidefx = sidefx
        self.payment_expiry_hours = payment_expiry_hours
        self.admin_fee = admin_fee
        self.currency = currency
        self.max_quantity = max_quantity
        self.clock = clock

    def _flush(self, effects: List[Effect]) -> None:
        for kind, payload in effects:
            self.sidefx.enqueue(kind, **payload)

    # ----------------------------
    # Create
    # ----------------------------
    async def create(
        self, actor: Actor, event_id: str, tier_id: str, quantity: int,
        participant: dict, *, source: Optional[str] = None,
        referral_code: Optional[str] = None,
        custom_fields: Optional[dict] = None,
    ) -> Tuple[Registration, Optional[IntentResult]]:
        participant = normalize_participant(participant)
        if not isinstance(quantity, int) or quantity < 1:
            raise ValidationFailed("quantity must be a positive integer")
        if quantity > self.max_quantity:
            raise ValidationFailed(
                f"at most {self.max_quantity} tickets per registration")

        now = self.clock()
        async with self.db.transaction() as tx:
            ev = await catalog.get_event(tx.session, event_id)
            if ev is None:
                raise EventNotFound()
            if ev.status != EV_PUBLISHED:
                raise EventNotPublished()
            if not (ev.registration_opens_at <= now
                    <= ev.registration_closes_at):
                raise RegistrationWindowClosed()
            tier = await catalog.get_tier(tx.session, tier_id)
            if tier is None or tier.event_id != ev.id:
                raise TierNotFound()
            if not tier.is_active:
                raise TierInactiveOrSoldOut()
            if await store.live_exists(tx.session, actor.user_id, ev.id):
                raise DuplicateRegistration()

            hold = await tx.ledger.try_reserve(ev.id, tier.id, quantity)

            amount = tier.unit_price * quantity
            free = amount == 0
            fee = 0 if free else self.admin_fee
            window_hours = ev.payment_window_hours or self.payment_expiry_hours
            reg = Registration(
                id=uuid.uuid4().hex,
                registration_number=new_registration_number(now),
                event_id=ev.id,
                tier_id=tier.id,
                tier_name=tier.name,
                unit_price=tier.unit_price,
                organizer_id=ev.organizer_id,
                buyer_id=actor.user_id,
                quantity=quantity,
                status=PENDING_PAYMENT,
                participant=participant,
                custom_fields=custom_fields,
                source=source,
                referral_code=referral_code,
                amount=amount,
                admin_fee=fee,
                total_amount=amount + fee,
                currency=self.currency,
                payment_status=PAY_PENDING,
                external_order_id=None if free else new_order_id(now),
                expired_at=None if free else now + window_hours * 3600,
                refund_status=REFUND_NOT_APPLICABLE,
                hold_id=hold.hold_id,
                checked_in=False,
                confirmation_sent=False,
                reminder_sent=False,
                thank_you_sent=False,
                created_at=now,
                updated_at=now,
            )
            tx.session.add(reg)
            try:
                await tx.session.flush()
            except IntegrityError:
                # lost the race on the live (buyer, event) index
                raise DuplicateRegistration()

            if free:
                await self.lifecycle.confirm(tx, reg, payment_method="free")
            reg = await store.get(tx.session, reg.id, refresh=True)

        logger.info("registration {} created for event {} ({}x {})",
                    reg.registration_number, ev.id, quantity, tier.name)
        if free:
            self._flush([("issue_ticket", dict(registration_id=reg.id))])
            return reg, None

        try:
            intent = await self.reconciler.create_payment_intent(reg.id)
        except DomainError as e:
            async with self.db.transaction() as tx:
                reg = await store.get(tx.session, reg.id)
                await self.lifecycle.fail_pending(
                    tx, reg, payment_status=PAY_FAILED,
                    ticket_status=TIX_CANCELLED, by="system",
                    reason=f"payment intent failed: {e.code}",
                )
            raise

        async with self.db.transaction() as tx:
            reg = await store.get(tx.session, reg.id, refresh=True)
        return reg, intent

    # ----------------------------
    # Cancel
    # ----------------------------
    def _may_manage(self, actor: Actor, reg: Registration) -> bool:
        if actor.is_admin or actor.user_id == reg.buyer_id:
            return True
        return (actor.role == ROLE_ORGANIZER
                and reg.organizer_id == actor.user_id)

    async def _cancel_in_tx(self, tx: Tx, reg: Registration, *, by: str,
                            reason: str, effects: List[Effect]) -> None:
        # one retry covers a webhook confirming the registration under us
        for _ in range(2):
            if reg.status == CANCELLED:
                raise AlreadyCancelled(current_status=reg.status)
            if reg.status == PENDING_PAYMENT:
                if await self.lifecycle.fail_pending(
                    tx, reg, payment_status=PAY_FAILED,
                    ticket_status=TIX_CANCELLED, by=by, reason=reason,
                ):
                    if reg.external_order_id:
                        effects.append(("cancel_intent", dict(
                            order_id=reg.external_order_id)))
                    break
            elif reg.status == CONFIRMED:
                if await self.lifecycle.cancel_confirmed(
                    tx, reg, by=by, reason=reason,
                ):
                    if reg.payment_status == PAY_PAID and reg.total_amount:
                        effects.append(("notify_admins", dict(
                            registration_id=reg.id,
                            template=Template.REFUND_REQUESTED.value)))
                    break
            else:
                raise InvalidTransition(current_status=reg.status)
            reg = await store.get(tx.session, reg.id, refresh=True)
        else:
            raise InvalidTransition(current_status=reg.status)

        effects.append(("notify", dict(
            registration_id=reg.id,
            template=Template.REGISTRATION_CANCELLED.value)))

    async def cancel(self, actor: Actor, registration_id: str,
                     reason: Optional[str] = None) -> Registration:
        effects: List[Effect] = []
        async with self.db.transaction() as tx:
            reg = await store.get(tx.session, registration_id)
            if reg is None:
                raise RegistrationNotFound()
            if not self._may_manage(actor, reg):
                raise Forbidden()
            await self._cancel_in_tx(
                tx, reg, by=actor.user_id,
                reason=reason or "cancelled by user", effects=effects,
            )
            reg = await store.get(tx.session, reg.id, refresh=True)
        self._flush(effects)
        logger.info("registration {} cancelled by {}",
                    reg.registration_number, actor.user_id)
        return reg

    async def cancel_event(self, actor: Actor, event_id: str,
                           reason: Optional[str] = None) -> dict:
        reason = reason or "event cancelled by organizer"
        async with self.db.transaction() as tx:
            ev = await catalog.get_event(tx.session, event_id)
            if ev is None:
                raise EventNotFound()
            if not (actor.is_admin or (actor.role == ROLE_ORGANIZER
                                       and ev.organizer_id == actor.user_id)):
                raise Forbidden()
            await catalog.set_event_status(
                tx.session, event_id, [EV_DRAFT, EV_PUBLISHED], EV_CANCELLED)
            live = await store.find(
                tx.session, event_id=event_id,
                statuses=[PENDING_PAYMENT, CONFIRMED])
            ids = [r.id for r in live]

        cancelled, failed = 0, []
        for reg_id in ids:
            effects: List[Effect] = []
            try:
                async with self.db.transaction() as tx:
                    reg = await store.get(tx.session, reg_id)
                    await self._cancel_in_tx(tx, reg, by=actor.user_id,
                                             reason=reason, effects=effects)
            except DomainError as e:
                failed.append({"registration_id": reg_id, "error": e.code})
                continue
            self._flush(effects)
            cancelled += 1
        logger.info("event {} cancelled: {} registrations cancelled, {} "
                    "skipped", event_id, cancelled, len(failed))
        return {"event_id": event_id, "cancelled": cancelled,
                "failed": failed}

    # ----------------------------
    # Queries
    # ----------------------------
    async def _event_for_staff(self, tx: Tx, actor: Actor,
                               event_id: str) -> Event:
        ev = await catalog.get_event(tx.session, event_id)
        if ev is None:
            raise EventNotFound()
        if actor.is_admin or actor.role == ROLE_STAFF:
            return ev
        if actor.role == ROLE_ORGANIZER and ev.organizer_id == actor.user_id:
            return ev
        raise Forbidden()

    async def get(self, actor: Actor, registration_id: str) -> Registration:
        async with self.db.transaction() as tx:
            reg = await store.get(tx.session, registration_id)
            if reg is None:
                raise RegistrationNotFound()
        if self._may_manage(actor, reg) or actor.can_check_in:
            return reg
        raise Forbidden()

    async def list_for_buyer(self, actor: Actor,
                             status: Optional[str] = None
                             ) -> List[Registration]:
        async with self.db.transaction() as tx:
            return await store.find(tx.session, buyer_id=actor.user_id,
                                    status=status)

    async def list_for_event(self, actor: Actor, event_id: str,
                             status: Optional[str] = None
                             ) -> List[Registration]:
        async with self.db.transaction() as tx:
            await self._event_for_staff(tx, actor, event_id)
            return await store.find(tx.session, event_id=event_id,
                                    status=status)

    async def statistics(self, actor: Actor, event_id: str) -> dict:
        async with self.db.transaction() as tx:
            await self._event_for_staff(tx, actor, event_id)
            by_status = await store.count_by(
                tx.session, event_id, Registration.status)
        attended = by_status.get(ATTENDED, 0)
        eligible = (by_status.get(CONFIRMED, 0) + attended
                    + by_status.get(NO_SHOW, 0))
        return {
            "event_id": event_id,
            "total": sum(by_status.values()),
            "pending_payment": by_status.get(PENDING_PAYMENT, 0),
            "confirmed": by_status.get(CONFIRMED, 0),
            "attended": attended,
            "cancelled": by_status.get(CANCELLED, 0),
            "no_show": by_status.get(NO_SHOW, 0),
            "attendance_rate": (
                round(attended / eligible * 100, 2) if eligible else 0.0
            ),
        }

    async def payment_statistics(self, actor: Actor, event_id: str) -> dict:
        async with self.db.transaction() as tx:
            await self._event_for_staff(tx, actor, event_id)
            regs = await store.find(tx.session, event_id=event_id)
        by_status: dict = {}
        by_method: dict = {}
        revenue = 0
        refunds_pending = 0
        for r in regs:
            by_status[r.payment_status] = by_status.get(r.payment_status, 0) + 1
            if r.refund_status == REFUND_PENDING:
                refunds_pending += 1
            if r.payment_status != PAY_PAID:
                continue
            revenue += r.total_amount
            m = by_method.setdefault(r.payment_method or "unknown",
                                     {"count": 0, "revenue": 0})
            m["count"] += 1
            m["revenue"] += r.total_amount
        return {
            "event_id": event_id,
            "by_status": by_status,
            "total_revenue": revenue,
            "refunds_pending": refunds_pending,
            "by_method": by_method,
        }

    async def export_csv(self, actor: Actor, event_id: str) -> str:
        async with self.db.transaction() as tx:
            await self._event_for_staff(tx, actor, event_id)
            regs = await store.find(tx.session, event_id=event_id)
        buf = io.StringIO()
        w = csv.writer(buf)
        w.writerow(CSV_COLUMNS)
        for r in regs:
            p = r.participant or {}
            w.writerow([
                r.registration_number, p.get("full_name", ""),
                p.get("email", ""), p.get("phone", ""),
                p.get("student_id", ""), p.get("institution", ""),
                r.tier_name, r.quantity, r.status,
                r.payment_status, r.total_amount, r.ticket_number or "",
                "yes" if r.checked_in else "no",
                to_iso(r.checked_in_at) or "", to_iso(r.created_at),
            ])
        return buf.getvalue()

    async def event_statistics(self, event_id: str) -> dict:
        """Inventory and revenue projection, cached until the ledger moves."""
        cached = await self.db.cache.get(event_id)
        if cached is not None:
            return cached
        async with self.db.transaction() as tx:
            ev = await catalog.get_event(tx.session, event_id)
            if ev is None:
                raise EventNotFound()
            tiers = await catalog.list_tiers(tx.session, event_id)
            snaps = {s.tier_id: s
                     for s in await tx.ledger.snapshots(event_id)}
            revenue = await store.sold_amount_by_tier(
                tx.session, event_id, [CONFIRMED, ATTENDED, NO_SHOW])
        out_tiers = []
        for t in tiers:
            s = snaps[t.id]
            out_tiers.append(dict(
                s.to_dict(), name=t.name, unit_price=t.unit_price,
                is_active=t.is_active, revenue=revenue.get(t.id, 0),
            ))
        stats = {
            "event_id": event_id,
            "status": ev.status,
            "tiers": out_tiers,
            "total_sold": sum(t["sold"] for t in out_tiers),
            "total_reserved": sum(t["reserved"] for t in out_tiers),
            "total_revenue": sum(t["revenue"] for t in out_tiers),
            "computed_at": to_iso(self.clock()),
        }
        await self.db.cache.put(event_id, stats)
        return stats
