# model/catalog.py
"""Events and their ticket tiers, as far as ticket state depends on them."""
from __future__ import annotations
import uuid
from typing import Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts
from .inventory import InventoryLedger
from .orm import Event, TicketTier, EV_PUBLISHED


async def get_event(db: AsyncSession, event_id: str) -> Optional[Event]:
    return await db.get(Event, event_id)


async def get_tier(db: AsyncSession, tier_id: str) -> Optional[TicketTier]:
    return await db.get(TicketTier, tier_id)


async def list_tiers(db: AsyncSession, event_id: str) -> List[TicketTier]:
    rows = await db.execute(
        select(TicketTier)
        .where(TicketTier.event_id == event_id)
        .order_by(TicketTier.sort_order, TicketTier.id)
    )
    return list(rows.scalars())


async def create_event(
    db: AsyncSession, ledger: InventoryLedger, *, title: str,
    organizer_id: str, registration_opens_at: float,
    registration_closes_at: float, starts_at: float, ends_at: float,
    tiers: Iterable[dict], organization_name: str = "",
    venue: Optional[str] = None, status: str = EV_PUBLISHED,
    payment_window_hours: Optional[float] = None,
    event_id: Optional[str] = None,
) -> Event:
    ev = Event(
        id=event_id or uuid.uuid4().hex,
        organizer_id=organizer_id,
        organization_name=organization_name,
        title=title,
        venue=venue,
        status=status,
        registration_opens_at=registration_opens_at,
        registration_closes_at=registration_closes_at,
        starts_at=starts_at,
        ends_at=ends_at,
        payment_window_hours=payment_window_hours,
        created_at=now_ts(),
    )
    db.add(ev)
    for i, t in enumerate(tiers):
        tier = TicketTier(
            id=t.get("id") or uuid.uuid4().hex,
            event_id=ev.id,
            name=t["name"],
            unit_price=int(t.get("unit_price", 0)),
            quota=int(t["quota"]),
            sold=0,
            reserved=0,
            is_active=bool(t.get("is_active", True)),
            sort_order=i,
        )
        db.add(tier)
        await db.flush()
        await ledger.provision_tier(ev.id, tier.id, tier.quota)
    await db.flush()
    return ev


async def set_event_status(db: AsyncSession, event_id: str,
                           from_statuses: Iterable[str], to_status: str) -> bool:
    res = await db.execute(
        update(Event)
        .where(Event.id == event_id, Event.status.in_(list(from_statuses)))
        .values(status=to_status)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


async def ended_events(db: AsyncSession, now: float,
                       statuses: Iterable[str]) -> List[Event]:
    rows = await db.execute(
        select(Event).where(
            Event.status.in_(list(statuses)), Event.ends_at <= now
        )
    )
    return list(rows.scalars())
