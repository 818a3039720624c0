from __future__ import annotations
from typing import Any, Dict, List, Optional

from loguru import logger

from ..collaborators import Channel, Notifier, Template
from ..helpers import to_iso
from ..model import catalog, registrations as store
from ..model.db import Database


class Messenger:
    """Resolves recipients and hands messages to the notifier."""

    def __init__(self, db: Database, notifier: Notifier,
                 admin_recipients: Optional[List[str]] = None) -> None:
        self.db = db
        self.notifier = notifier
        self.admin_recipients = admin_recipients or []

    async def _context(self, registration_id: str) -> Optional[Dict[str, Any]]:
        async with self.db.transaction() as tx:
            reg = await store.get(tx.session, registration_id)
            if reg is None:
                return None
            ev = await catalog.get_event(tx.session, reg.event_id)
        return {
            "recipient": (reg.participant or {}).get("email", ""),
            "payload": {
                "registration_id": reg.id,
                "registration_number": reg.registration_number,
                "participant_name": (reg.participant or {}).get("full_name"),
                "event_title": ev.title if ev else None,
                "event_starts_at": to_iso(ev.starts_at) if ev else None,
                "venue": ev.venue if ev else None,
                "status": reg.status,
                "total_amount": reg.total_amount,
                "currency": reg.currency,
                "ticket_number": reg.ticket_number,
                "pdf_url": reg.pdf_url,
                "payment_redirect_url": reg.payment_redirect_url,
                "payment_deadline": to_iso(reg.expired_at),
                "refund_status": reg.refund_status,
                "refund_reason": reg.refund_reason,
            },
        }

    async def send_buyer(self, registration_id: str, template: Template,
                         channel: Channel = Channel.EMAIL) -> bool:
        ctx = await self._context(registration_id)
        if ctx is None or not ctx["recipient"]:
            logger.warning("no recipient for {} on {}", template.value,
                           registration_id)
            return False
        return await self.notifier.send(channel, ctx["recipient"], template,
                                        ctx["payload"])

    async def send_admins(self, registration_id: str,
                          template: Template) -> bool:
        if not self.admin_recipients:
            logger.warning("{} for {} but no admin recipients configured",
                           template.value, registration_id)
            return True
        ctx = await self._context(registration_id)
        if ctx is None:
            return False
        ok = True
        for admin in self.admin_recipients:
            sent = await self.notifier.send(Channel.EMAIL, admin, template,
                                            ctx["payload"])
            ok = ok and sent
        return ok

    # side-effect handlers: raising makes the queue retry
    async def notify_buyer(self, registration_id: str, template: str) -> None:
        if not await self.send_buyer(registration_id, Template(template)):
            raise RuntimeError(f"{template} not delivered")

    async def notify_admins(self, registration_id: str,
                            template: str) -> None:
        if not await self.send_admins(registration_id, Template(template)):
            raise RuntimeError(f"{template} not delivered to admins")
