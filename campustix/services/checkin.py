"""
Door check-in.

A credential is trusted only if it decrypts, the registration it names
exists and the ticket number matches. The attended transition is a guarded
update, so of two scanners racing on one ticket exactly one wins.
"""
from __future__ import annotations
import csv
import io
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

from loguru import logger

from ..collaborators import Actor, Template
from ..credentials import CredentialCodec
from ..errors import (
    AlreadyCheckedIn, DomainError, EventNotFound, Forbidden,
    InvalidCredential, NotCheckedIn, NotYetConfirmed, RegistrationNotFound,
    TicketCancelledOrExpired,
)
from ..helpers import ct_equal, now_ts, to_iso
from ..model import catalog, registrations as store
from ..model.db import Database
from ..model.orm import (
    Registration, CheckInAudit, PENDING_PAYMENT, CONFIRMED, ATTENDED,
    NO_SHOW, TIX_VALID,
)
from ..sidefx import SideEffectQueue
from ..views import audit_view
from .lifecycle import Lifecycle

REASON_INVALID = "invalid"
REASON_USED = "already used"
REASON_CLOSED = "cancelled or expired"
REASON_UNCONFIRMED = "not confirmed"

CSV_COLUMNS = ["Registration Number", "Full Name", "Email", "Ticket Number",
               "Status", "Checked In", "Check-in Time", "Checked In By",
               "Location"]


@dataclass
class Validation:
    valid: bool
    reason: Optional[str] = None
    registration: Optional[Registration] = None


def _refusal(reg: Registration) -> DomainError:
    if reg.checked_in or reg.status == ATTENDED:
        return AlreadyCheckedIn(current_status=reg.status)
    if reg.status == PENDING_PAYMENT:
        return NotYetConfirmed(current_status=reg.status)
    return TicketCancelledOrExpired(current_status=reg.status)


def _reason(reg: Registration) -> Optional[str]:
    if reg.checked_in or reg.status == ATTENDED:
        return REASON_USED
    if reg.status == PENDING_PAYMENT:
        return REASON_UNCONFIRMED
    if reg.status != CONFIRMED or reg.ticket_status != TIX_VALID:
        return REASON_CLOSED
    return None


class CheckInValidator:
    def __init__(self, db: Database, codec: CredentialCodec,
                 lifecycle: Lifecycle, sidefx: SideEffectQueue,
                 clock: Callable[[], float] = now_ts) -> None:
        self.db = db
        self.codec = codec
        self.lifecycle = lifecycle
        self.sidefx = sidefx
        self.clock = clock

    @staticmethod
    def _require_staff(actor: Actor) -> None:
        if not actor.can_check_in:
            raise Forbidden()

    async def validate(self, credential: str) -> Validation:
        try:
            payload = self.codec.open(credential)
        except InvalidCredential:
            logger.warning("credential failed to decrypt")
            return Validation(False, REASON_INVALID)

        async with self.db.transaction() as tx:
            reg = await store.get(tx.session, str(payload["registrationId"]))
        if reg is None or not reg.ticket_number or not ct_equal(
            reg.ticket_number, str(payload["ticketNumber"])
        ):
            logger.warning("credential for {} does not match a ticket",
                           payload.get("registrationId"))
            return Validation(False, REASON_INVALID)

        reason = _reason(reg)
        if reason is not None:
            return Validation(False, reason, reg)
        return Validation(True, None, reg)

    async def check_in(self, actor: Actor, registration_id: str, *,
                       location: Optional[str] = None,
                       device: Optional[str] = None) -> Registration:
        self._require_staff(actor)
        async with self.db.transaction() as tx:
            reg = await store.get(tx.session, registration_id)
            if reg is None:
                raise RegistrationNotFound()
            ok = await self.lifecycle.attend(
                tx, reg, staff_id=actor.user_id, location=location,
                device=device,
            )
            reg = await store.get(tx.session, reg.id, refresh=True)
            if not ok:
                raise _refusal(reg)

        logger.info("checked in {} by {} at {}", reg.registration_number,
                    actor.user_id, location)
        self.sidefx.enqueue("notify", registration_id=reg.id,
                            template=Template.CHECKIN_CONFIRMED.value)
        return reg

    async def check_in_credential(self, actor: Actor, credential: str, *,
                                  location: Optional[str] = None,
                                  device: Optional[str] = None
                                  ) -> Registration:
        self._require_staff(actor)
        v = await self.validate(credential)
        if v.registration is None:
            raise InvalidCredential()
        return await self.check_in(actor, v.registration.id,
                                   location=location, device=device)

    async def bulk_check_in(self, actor: Actor,
                            registration_ids: Iterable[str], *,
                            location: Optional[str] = None,
                            device: Optional[str] = None) -> List[dict]:
        self._require_staff(actor)
        results = []
        for reg_id in registration_ids:
            try:
                reg = await self.check_in(actor, reg_id, location=location,
                                          device=device)
            except DomainError as e:
                results.append({"registration_id": reg_id, "success": False,
                                "error": e.code, "message": e.message})
                continue
            results.append({"registration_id": reg_id, "success": True,
                            "checked_in_at": to_iso(reg.checked_in_at)})
        return results

    async def undo_check_in(self, actor: Actor, registration_id: str,
                            reason: Optional[str] = None) -> Registration:
        self._require_staff(actor)
        async with self.db.transaction() as tx:
            reg = await store.get(tx.session, registration_id)
            if reg is None:
                raise RegistrationNotFound()
            if not await self.lifecycle.revert_attendance(
                tx, reg, staff_id=actor.user_id, reason=reason,
            ):
                reg = await store.get(tx.session, reg.id, refresh=True)
                raise NotCheckedIn(current_status=reg.status)
            reg = await store.get(tx.session, reg.id, refresh=True)
        logger.info("check-in of {} undone by {}", reg.registration_number,
                    actor.user_id)
        return reg

    async def history(self, actor: Actor, registration_id: str) -> dict:
        self._require_staff(actor)
        async with self.db.transaction() as tx:
            reg = await store.get(tx.session, registration_id)
            if reg is None:
                raise RegistrationNotFound()
            trail: List[CheckInAudit] = await store.audit_trail(
                tx.session, registration_id)
        return {
            "registration_id": reg.id,
            "current": None if not reg.checked_in else {
                "checked_in_at": to_iso(reg.checked_in_at),
                "checked_in_by": reg.checked_in_by,
                "location": reg.checkin_location,
                "device": reg.checkin_device,
            },
            "undone": [audit_view(a) for a in trail],
        }

    async def stats(self, actor: Actor, event_id: str) -> dict:
        self._require_staff(actor)
        async with self.db.transaction() as tx:
            if await catalog.get_event(tx.session, event_id) is None:
                raise EventNotFound()
            regs = await store.find(
                tx.session, event_id=event_id,
                statuses=[CONFIRMED, ATTENDED, NO_SHOW])
        checked = [r for r in regs if r.checked_in]
        hourly: dict = {}
        for r in checked:
            hour = to_iso(r.checked_in_at - r.checked_in_at % 3600)
            hourly[hour] = hourly.get(hour, 0) + 1
        total = len(regs)
        return {
            "event_id": event_id,
            "total": total,
            "checked_in": len(checked),
            "not_checked_in": total - len(checked),
            "rate": round(len(checked) / total * 100, 2) if total else 0.0,
            "hourly": [{"hour": h, "count": n}
                       for h, n in sorted(hourly.items())],
        }

    async def list(self, actor: Actor, event_id: str,
                   checked_in: Optional[bool] = None) -> List[Registration]:
        self._require_staff(actor)
        async with self.db.transaction() as tx:
            return await store.find(
                tx.session, event_id=event_id, checked_in=checked_in,
                statuses=[CONFIRMED, ATTENDED, NO_SHOW])

    async def export_csv(self, actor: Actor, event_id: str) -> str:
        regs = await self.list(actor, event_id)
        buf = io.StringIO()
        w = csv.writer(buf)
        w.writerow(CSV_COLUMNS)
        for r in regs:
            p = r.participant or {}
            w.writerow([
                r.registration_number, p.get("full_name", ""),
                p.get("email", ""), r.ticket_number or "", r.status,
                "yes" if r.checked_in else "no",
                to_iso(r.checked_in_at) or "", r.checked_in_by or "",
                r.checkin_location or "",
            ])
        return buf.getvalue()
