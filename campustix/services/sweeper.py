"""
Periodic maintenance.

Every job selects candidates in one short transaction and then handles each
candidate in its own transaction with a guarded update, so a webhook or a
check-in racing the sweep simply makes the sweep skip that item. One failing
item is logged and never stops the batch.
"""
from __future__ import annotations
import asyncio
from typing import Callable, List, Optional

from loguru import logger

from ..collaborators import Template
from ..helpers import now_ts
from ..model import catalog, registrations as store
from ..model.db import Database
from ..model.orm import (
    Event, Registration, EV_PUBLISHED, EV_COMPLETED,
    PENDING_PAYMENT, CONFIRMED, ATTENDED,
    PAY_EXPIRED, TIX_EXPIRED,
)
from ..sidefx import SideEffectQueue
from .lifecycle import Lifecycle

# artifacts younger than this are probably still being rendered
ISSUE_GRACE_SECONDS = 300


class ExpirySweeper:
    def __init__(self, db: Database, lifecycle: Lifecycle,
                 sidefx: SideEffectQueue, *,
                 reminder_window_hours: float = 6.0,
                 thank_you_window_hours: float = 48.0,
                 batch_size: int = 500,
                 clock: Callable[[], float] = now_ts) -> None:
        self.db = db
        self.lifecycle = lifecycle
        self.sidefx = sidefx
        self.reminder_window = reminder_window_hours * 3600
        self.thank_you_window = thank_you_window_hours * 3600
        self.batch_size = batch_size
        self.clock = clock

    async def _candidates(self, **kw) -> List[str]:
        async with self.db.transaction() as tx:
            regs = await store.find(tx.session, limit=self.batch_size, **kw)
            return [r.id for r in regs]

    async def expire_overdue(self, now: Optional[float] = None) -> int:
        now = self.clock() if now is None else now
        ids = await self._candidates(
            status=PENDING_PAYMENT,
            where=[Registration.expired_at.is_not(None),
                   Registration.expired_at <= now],
        )
        expired = 0
        for reg_id in ids:
            try:
                async with self.db.transaction() as tx:
                    reg = await store.get(tx.session, reg_id)
                    ok = await self.lifecycle.fail_pending(
                        tx, reg, payment_status=PAY_EXPIRED,
                        ticket_status=TIX_EXPIRED, by="system",
                        reason="payment window elapsed",
                    )
            except Exception as e:
                logger.error("expiring {} failed: {}", reg_id, e)
                continue
            if ok:
                expired += 1
                if reg.external_order_id:
                    self.sidefx.enqueue("cancel_intent",
                                        order_id=reg.external_order_id)
        if ids:
            logger.info("expired {} of {} overdue registrations", expired,
                        len(ids))
        return expired

    async def complete_ended_events(self, now: Optional[float] = None) -> int:
        now = self.clock() if now is None else now
        async with self.db.transaction() as tx:
            events: List[Event] = await catalog.ended_events(
                tx.session, now, [EV_PUBLISHED, EV_COMPLETED])
            for ev in events:
                await catalog.set_event_status(
                    tx.session, ev.id, [EV_PUBLISHED], EV_COMPLETED)
            event_ids = [ev.id for ev in events]

        marked = 0
        for event_id in event_ids:
            for reg_id in await self._candidates(event_id=event_id,
                                                 status=CONFIRMED):
                try:
                    async with self.db.transaction() as tx:
                        reg = await store.get(tx.session, reg_id)
                        if await self.lifecycle.mark_no_show(tx, reg):
                            marked += 1
                except Exception as e:
                    logger.error("no-show marking of {} failed: {}",
                                 reg_id, e)
        if marked:
            logger.info("marked {} registrations as no-show", marked)
        return marked

    async def send_payment_reminders(self, now: Optional[float] = None
                                     ) -> int:
        now = self.clock() if now is None else now
        ids = await self._candidates(
            status=PENDING_PAYMENT,
            where=[Registration.reminder_sent.is_(False),
                   Registration.expired_at > now,
                   Registration.expired_at <= now + self.reminder_window],
        )
        return await self._claim_and_notify(
            ids, "reminder_sent", Template.PAYMENT_REMINDER)

    async def send_thank_you(self, now: Optional[float] = None) -> int:
        now = self.clock() if now is None else now
        async with self.db.transaction() as tx:
            events = await catalog.ended_events(
                tx.session, now, [EV_PUBLISHED, EV_COMPLETED])
            recent = [ev.id for ev in events
                      if ev.ends_at >= now - self.thank_you_window]
        ids: List[str] = []
        for event_id in recent:
            ids += await self._candidates(
                event_id=event_id, status=ATTENDED,
                where=[Registration.thank_you_sent.is_(False)],
            )
        return await self._claim_and_notify(
            ids, "thank_you_sent", Template.THANK_YOU)

    async def _claim_and_notify(self, ids: List[str], flag: str,
                                template: Template) -> int:
        sent = 0
        for reg_id in ids:
            try:
                async with self.db.transaction() as tx:
                    claimed = await store.claim_flag(tx.session, reg_id, flag)
            except Exception as e:
                logger.error("claiming {} on {} failed: {}", flag, reg_id, e)
                continue
            if claimed:
                self.sidefx.enqueue("notify", registration_id=reg_id,
                                    template=template.value)
                sent += 1
        if sent:
            logger.info("queued {} {} messages", sent, template.value)
        return sent

    async def retry_unissued(self, now: Optional[float] = None) -> int:
        now = self.clock() if now is None else now
        ids = await self._candidates(
            statuses=[CONFIRMED, ATTENDED],
            where=[
                (Registration.pdf_url.is_(None)
                 | Registration.confirmation_sent.is_(False)),
                Registration.updated_at <= now - ISSUE_GRACE_SECONDS,
            ],
        )
        for reg_id in ids:
            self.sidefx.enqueue("issue_ticket", registration_id=reg_id)
        if ids:
            logger.info("re-queued issuance for {} registrations", len(ids))
        return len(ids)

    async def run_once(self, now: Optional[float] = None) -> dict:
        now = self.clock() if now is None else now
        out = {}
        for name, job in (
            ("expired", self.expire_overdue),
            ("no_show", self.complete_ended_events),
            ("reminders", self.send_payment_reminders),
            ("thank_you", self.send_thank_you),
            ("reissued", self.retry_unissued),
        ):
            try:
                out[name] = await job(now)
            except Exception as e:
                logger.exception("sweep job {} failed: {}", name, e)
                out[name] = None
        return out


class SweepScheduler:
    """Runs the sweeper every ``interval`` seconds next to the web workers."""

    def __init__(self, sweeper: ExpirySweeper, interval: float) -> None:
        self.sweeper = sweeper
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self.interval <= 0:
            logger.info("sweep scheduler disabled")
            return
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            counts = await self.sweeper.run_once()
            logger.debug("sweep finished: {}", counts)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
