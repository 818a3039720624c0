# model/registrations.py
"""
Registration queries and the guarded status update every transition uses.

``guarded_update`` is a single ``UPDATE ... WHERE id = :id AND status IN
(...)``; callers treat zero affected rows as "someone else got there first".
"""
from __future__ import annotations
from typing import Any, Iterable, List, Optional, Sequence

from sqlalchemy import select, update, func, text
from sqlalchemy.ext.asyncio import AsyncSession

from .orm import Registration, CheckInAudit, CANCELLED


async def get(db: AsyncSession, registration_id: str,
              refresh: bool = False) -> Optional[Registration]:
    return await db.get(Registration, registration_id,
                        populate_existing=refresh)


async def get_by_order_id(db: AsyncSession,
                          order_id: str) -> Optional[Registration]:
    rows = await db.execute(
        select(Registration).where(Registration.external_order_id == order_id)
    )
    return rows.scalars().first()


async def live_exists(db: AsyncSession, buyer_id: str, event_id: str) -> bool:
    rows = await db.execute(
        select(Registration.id).where(
            Registration.buyer_id == buyer_id,
            Registration.event_id == event_id,
            Registration.status != CANCELLED,
        ).limit(1)
    )
    return rows.first() is not None


async def guarded_update(
    db: AsyncSession, registration_id: str, from_statuses: Iterable[str],
    values: dict, extra: Sequence[Any] = (),
) -> bool:
    stmt = (
        update(Registration)
        .where(
            Registration.id == registration_id,
            Registration.status.in_(list(from_statuses)),
            *extra,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    res = await db.execute(stmt)
    return res.rowcount == 1


async def claim_flag(db: AsyncSession, registration_id: str, flag: str,
                     values: Optional[dict] = None) -> bool:
    """Flip a boolean notification guard from false to true exactly once."""
    col = getattr(Registration, flag)
    res = await db.execute(
        update(Registration)
        .where(Registration.id == registration_id, col.is_(False))
        .values({flag: True, **(values or {})})
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


async def release_flag(db: AsyncSession, registration_id: str,
                       flag: str) -> None:
    await db.execute(
        update(Registration)
        .where(Registration.id == registration_id)
        .values({flag: False})
        .execution_options(synchronize_session=False)
    )


async def find(
    db: AsyncSession, *, buyer_id: Optional[str] = None,
    event_id: Optional[str] = None, status: Optional[str] = None,
    statuses: Optional[Iterable[str]] = None,
    checked_in: Optional[bool] = None, where: Sequence[Any] = (),
    limit: Optional[int] = None,
) -> List[Registration]:
    q = select(Registration)
    if buyer_id is not None:
        q = q.where(Registration.buyer_id == buyer_id)
    if event_id is not None:
        q = q.where(Registration.event_id == event_id)
    if status is not None:
        q = q.where(Registration.status == status)
    if statuses is not None:
        q = q.where(Registration.status.in_(list(statuses)))
    if checked_in is not None:
        q = q.where(Registration.checked_in.is_(checked_in))
    if where:
        q = q.where(*where)
    q = q.order_by(Registration.created_at.desc())
    if limit is not None:
        q = q.limit(limit)
    rows = await db.execute(q)
    return list(rows.scalars())


async def count_by(db: AsyncSession, event_id: str, column) -> dict:
    rows = await db.execute(
        select(column, func.count(Registration.id))
        .where(Registration.event_id == event_id)
        .group_by(column)
    )
    return {k: int(n) for k, n in rows.all()}


async def audit_trail(db: AsyncSession,
                      registration_id: str) -> List[CheckInAudit]:
    rows = await db.execute(
        select(CheckInAudit)
        .where(CheckInAudit.registration_id == registration_id)
        .order_by(CheckInAudit.undone_at)
    )
    return list(rows.scalars())


async def record_webhook_event(db: AsyncSession, key: str,
                               order_id: Optional[str], kind: str,
                               now: float) -> bool:
    """Returns False when this notification key was already applied."""
    row = (await db.execute(text("""
        INSERT INTO webhook_events (idempotency_key, order_id, kind, received_at)
        VALUES (:key, :order_id, :kind, :now)
        ON CONFLICT (idempotency_key) DO NOTHING
        RETURNING idempotency_key
    """), {"key": key, "order_id": order_id, "kind": kind, "now": now})).first()
    return row is not None


async def sold_amount_by_tier(db: AsyncSession, event_id: str,
                              statuses: Iterable[str]) -> dict:
    """Ticket revenue per tier at the prices the buyers actually paid."""
    rows = await db.execute(
        select(Registration.tier_id, func.sum(Registration.amount))
        .where(Registration.event_id == event_id,
               Registration.status.in_(list(statuses)))
        .group_by(Registration.tier_id)
    )
    return {k: int(n or 0) for k, n in rows.all()}
