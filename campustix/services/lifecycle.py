"""
Registration state transitions.

Each method performs one guarded update keyed on the current status and, only
when that update won, the matching ledger movement inside the same
transaction. A False return means the registration was no longer in the
expected state; the caller decides whether that is an error or a no-op.

    pending_payment -> confirmed | cancelled
    confirmed       -> attended | cancelled | no_show
    attended        -> confirmed   (undo check-in)
"""
from __future__ import annotations
from typing import Callable, Optional

from sqlalchemy import insert

from ..helpers import now_ts
from ..model import registrations as store
from ..model.db import Tx
from ..model.orm import (
    Registration, CheckInAudit,
    PENDING_PAYMENT, CONFIRMED, ATTENDED, CANCELLED, NO_SHOW,
    PAY_PENDING, PAY_PAID, PAY_REFUNDED,
    TIX_VALID, TIX_USED, TIX_CANCELLED, TIX_EXPIRED,
    REFUND_NOT_APPLICABLE, REFUND_PENDING, REFUND_REFUNDED,
)
from .issuance import TicketIssuer


class Lifecycle:
    def __init__(self, issuer: TicketIssuer,
                 clock: Callable[[], float] = now_ts) -> None:
        self.issuer = issuer
        self.clock = clock

    async def confirm(self, tx: Tx, reg: Registration, *,
                      transaction_id: Optional[str] = None,
                      payment_method: Optional[str] = None) -> bool:
        now = self.clock()
        values = dict(
            status=CONFIRMED, payment_status=PAY_PAID, paid_at=now,
            hold_id=None, updated_at=now,
        )
        if transaction_id is not None:
            values["transaction_id"] = transaction_id
        if payment_method is not None:
            values["payment_method"] = payment_method
        ok = await store.guarded_update(
            tx.session, reg.id, [PENDING_PAYMENT], values,
            extra=[Registration.payment_status == PAY_PENDING],
        )
        if not ok:
            return False
        await tx.ledger.convert(reg.event_id, reg.tier_id, reg.quantity,
                                reg.hold_id)
        await self.issuer.issue(tx.session, reg.id)
        return True

    async def fail_pending(self, tx: Tx, reg: Registration, *,
                           payment_status: str, ticket_status: str,
                           by: str, reason: str) -> bool:
        """pending_payment -> cancelled, reservation released."""
        now = self.clock()
        ok = await store.guarded_update(
            tx.session, reg.id, [PENDING_PAYMENT], dict(
                status=CANCELLED, payment_status=payment_status,
                ticket_status=ticket_status, hold_id=None,
                cancelled_at=now, cancelled_by=by, cancel_reason=reason,
                updated_at=now,
            ),
            extra=[Registration.payment_status == PAY_PENDING],
        )
        if not ok:
            return False
        await tx.ledger.release(reg.event_id, reg.tier_id, reg.quantity,
                                reg.hold_id)
        return True

    async def cancel_confirmed(self, tx: Tx, reg: Registration, *,
                               by: str, reason: str) -> bool:
        """confirmed -> cancelled, sold units go back to the pool."""
        now = self.clock()
        captured = reg.payment_status == PAY_PAID and reg.total_amount > 0
        values = dict(
            status=CANCELLED, ticket_status=TIX_CANCELLED,
            refund_status=REFUND_PENDING if captured else REFUND_NOT_APPLICABLE,
            cancelled_at=now, cancelled_by=by, cancel_reason=reason,
            updated_at=now,
        )
        if captured:
            values.update(refund_reason=reason, refund_requested_at=now)
        ok = await store.guarded_update(tx.session, reg.id, [CONFIRMED],
                                        values)
        if not ok:
            return False
        await tx.ledger.release_sale(reg.event_id, reg.tier_id, reg.quantity)
        return True

    async def settle_refund(self, tx: Tx, reg: Registration, *,
                            by: str, reason: Optional[str] = None) -> bool:
        """
        Money went back to the buyer. A confirmed registration is cancelled
        and its units released; in any other state only the payment record
        changes.
        """
        now = self.clock()
        refunded = dict(
            payment_status=PAY_REFUNDED, refund_status=REFUND_REFUNDED,
            refunded_at=now, updated_at=now,
        )
        if reg.status == CONFIRMED:
            ok = await store.guarded_update(
                tx.session, reg.id, [CONFIRMED], dict(
                    refunded, status=CANCELLED, ticket_status=TIX_CANCELLED,
                    cancelled_at=now, cancelled_by=by,
                    cancel_reason=reason or "refunded",
                ),
                extra=[Registration.payment_status == PAY_PAID],
            )
            if ok:
                await tx.ledger.release_sale(reg.event_id, reg.tier_id,
                                             reg.quantity)
            return ok
        return await store.guarded_update(
            tx.session, reg.id, [CANCELLED, ATTENDED, NO_SHOW], refunded,
            extra=[Registration.payment_status == PAY_PAID],
        )

    async def attend(self, tx: Tx, reg: Registration, *, staff_id: str,
                     location: Optional[str] = None,
                     device: Optional[str] = None) -> bool:
        now = self.clock()
        return await store.guarded_update(
            tx.session, reg.id, [CONFIRMED], dict(
                status=ATTENDED, ticket_status=TIX_USED, checked_in=True,
                checked_in_at=now, checked_in_by=staff_id,
                checkin_location=location, checkin_device=device,
                updated_at=now,
            ),
            extra=[
                Registration.ticket_status == TIX_VALID,
                Registration.checked_in.is_(False),
            ],
        )

    async def revert_attendance(self, tx: Tx, reg: Registration, *,
                                staff_id: str,
                                reason: Optional[str] = None) -> bool:
        """attended -> confirmed; the undone check-in is archived."""
        now = self.clock()
        ok = await store.guarded_update(
            tx.session, reg.id, [ATTENDED], dict(
                status=CONFIRMED, ticket_status=TIX_VALID, checked_in=False,
                checked_in_at=None, checked_in_by=None,
                checkin_location=None, checkin_device=None, updated_at=now,
            ),
        )
        if not ok:
            return False
        await tx.session.execute(insert(CheckInAudit).values(
            registration_id=reg.id,
            event_id=reg.event_id,
            checked_in_at=reg.checked_in_at,
            checked_in_by=reg.checked_in_by,
            checkin_location=reg.checkin_location,
            checkin_device=reg.checkin_device,
            undone_at=now,
            undone_by=staff_id,
            reason=reason,
        ))
        return True

    async def mark_no_show(self, tx: Tx, reg: Registration) -> bool:
        now = self.clock()
        return await store.guarded_update(
            tx.session, reg.id, [CONFIRMED], dict(
                status=NO_SHOW, ticket_status=TIX_EXPIRED, updated_at=now,
            ),
        )

