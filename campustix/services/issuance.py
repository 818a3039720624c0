"""
Ticket issuance.

Assigning the ticket number and credential happens inside the transaction
that confirms the registration. Rendering and storing the artifacts and
sending the confirmation happen afterwards, from the side-effect queue, and
may be repeated safely.
"""
from __future__ import annotations
import asyncio
from typing import Callable, Optional

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from ..collaborators import BlobStore, Channel, Template
from ..credentials import CredentialCodec
from ..errors import RegistrationNotFound
from ..helpers import now_ts, new_ticket_number, to_iso
from ..infra.timings import timeit
from ..model import catalog, registrations as store
from ..model.db import Database
from ..model.orm import Registration, CONFIRMED, ATTENDED, TIX_VALID
from ..tickets import render_qr, render_ticket_pdf
from .messaging import Messenger

ISSUABLE = (CONFIRMED, ATTENDED)


def credential_payload(reg: Registration, ticket_number: str,
                       issued_at: float) -> dict:
    return {
        "ticketNumber": ticket_number,
        "registrationId": reg.id,
        "eventId": reg.event_id,
        "buyerId": reg.buyer_id,
        "issuedAt": issued_at,
    }


class TicketIssuer:
    def __init__(self, db: Database, codec: CredentialCodec,
                 blobs: BlobStore, messenger: Messenger,
                 clock: Callable[[], float] = now_ts) -> None:
        self.db = db
        self.codec = codec
        self.blobs = blobs
        self.messenger = messenger
        self.clock = clock

    async def issue(self, session: AsyncSession,
                    registration_id: str) -> Optional[str]:
        """Assign ticket number and credential once; returns the number."""
        reg = await store.get(session, registration_id, refresh=True)
        if reg is None:
            raise RegistrationNotFound()
        if reg.ticket_number:
            return reg.ticket_number

        now = self.clock()
        number = new_ticket_number(now)
        credential = self.codec.seal(credential_payload(reg, number, now))
        ok = await store.guarded_update(
            session, reg.id, ISSUABLE, dict(
                ticket_number=number, ticket_credential=credential,
                ticket_status=TIX_VALID, ticket_issued_at=now,
                updated_at=now,
            ),
            extra=[Registration.ticket_number.is_(None)],
        )
        if not ok:
            reg = await store.get(session, registration_id, refresh=True)
            return reg.ticket_number
        logger.info("issued ticket {} for registration {}", number, reg.id)
        return number

    async def materialize(self, registration_id: str) -> None:
        """Render, store and announce the ticket. Safe to repeat."""
        async with self.db.transaction() as tx:
            reg = await store.get(tx.session, registration_id)
            if reg is None or reg.status not in ISSUABLE:
                logger.info("skip artifacts for {}: not issuable",
                            registration_id)
                return
            if not reg.ticket_number:
                await self.issue(tx.session, reg.id)
                reg = await store.get(tx.session, reg.id, refresh=True)
            ev = await catalog.get_event(tx.session, reg.event_id)

        if not (reg.qr_url and reg.pdf_url):
            async with timeit("issuance.render"):
                qr_png = await asyncio.to_thread(render_qr,
                                                 reg.ticket_credential)
                pdf = await asyncio.to_thread(
                    render_ticket_pdf, qr_png, ev.title if ev else "Ticket", [
                        ("Ticket", reg.ticket_number),
                        ("Registration", reg.registration_number),
                        ("Name", (reg.participant or {}).get("full_name", "")),
                        ("Tier", reg.tier_name),
                        ("Quantity", str(reg.quantity)),
                        ("Starts", to_iso(ev.starts_at) if ev else "-"),
                        ("Venue", (ev.venue if ev else None) or "-"),
                    ],
                )
            async with timeit("issuance.store"):
                qr_url = await self.blobs.store(
                    qr_png, f"{reg.ticket_number}-qr.png")
                pdf_url = await self.blobs.store(
                    pdf, f"{reg.ticket_number}.pdf")
            async with self.db.transaction() as tx:
                await store.guarded_update(
                    tx.session, reg.id, ISSUABLE,
                    dict(qr_url=qr_url, pdf_url=pdf_url,
                         updated_at=self.clock()),
                    extra=[Registration.pdf_url.is_(None)],
                )

        await self.send_confirmation(reg.id)

    async def send_confirmation(self, registration_id: str) -> bool:
        async with self.db.transaction() as tx:
            claimed = await store.claim_flag(
                tx.session, registration_id, "confirmation_sent")
        if not claimed:
            return False
        sent = False
        try:
            sent = await self.messenger.send_buyer(
                registration_id, Template.REGISTRATION_CONFIRMED,
                Channel.EMAIL)
        finally:
            if not sent:
                # let the sweeper try again later
                async with self.db.transaction() as tx:
                    await store.release_flag(tx.session, registration_id,
                                             "confirmation_sent")
                logger.warning("confirmation for {} not delivered",
                               registration_id)
        return sent
