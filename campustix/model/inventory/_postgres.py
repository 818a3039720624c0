# model/inventory/_postgres.py
"""
SQL inventory backend.

Counters live on the ``ticket_tiers`` row. Every change is one conditional
UPDATE, so two concurrent reservations for the last unit cannot both win:
the loser's WHERE clause no longer matches and it observes zero rows.
"""
from __future__ import annotations
import uuid
from typing import List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ...errors import (
    InsufficientInventory, InventoryUnderflow, TierNotFound
)
from ...infra.timings import timeit
from .base import Hold, InventoryLedger, TierSnapshot


SQL_ADJUST = r"""
UPDATE ticket_tiers
   SET sold = sold + :ds,
       reserved = reserved + :dr
 WHERE id = :tier
   AND event_id = :ev
   AND sold + :ds >= 0
   AND reserved + :dr >= 0
   AND sold + :ds + reserved + :dr <= quota
RETURNING quota, sold, reserved
"""

SQL_SNAPSHOT = r"""
SELECT id, quota, sold, reserved FROM ticket_tiers
 WHERE id = :tier AND event_id = :ev
"""


class SqlInventoryLedger(InventoryLedger):
    def __init__(self, db: AsyncSession) -> None:
        super().__init__()
        self.db = db

    async def adjust(
        self, event_id: str, tier_id: str, sold_delta: int,
        reserved_delta: int, hold_id: Optional[str] = None,
    ) -> TierSnapshot:
        async with timeit("ledger.adjust"):
            row = (await self.db.execute(text(SQL_ADJUST), {
                "ds": int(sold_delta),
                "dr": int(reserved_delta),
                "tier": tier_id,
                "ev": event_id,
            })).first()

        if row is None:
            # nothing matched: figure out which guard refused
            cur = await self.snapshot(event_id, tier_id)
            if cur.sold + sold_delta < 0 or cur.reserved + reserved_delta < 0:
                raise InventoryUnderflow()
            raise InsufficientInventory()

        self.touched.add(event_id)
        return TierSnapshot(
            tier_id=tier_id, quota=int(row[0]), sold=int(row[1]),
            reserved=int(row[2]),
        )

    async def try_reserve(
        self, event_id: str, tier_id: str, quantity: int
    ) -> Hold:
        snap = await self.adjust(event_id, tier_id, 0, quantity)
        return Hold(hold_id=uuid.uuid4().hex, snapshot=snap)

    async def snapshot(self, event_id: str, tier_id: str) -> TierSnapshot:
        row = (await self.db.execute(
            text(SQL_SNAPSHOT), {"tier": tier_id, "ev": event_id}
        )).first()
        if row is None:
            raise TierNotFound()
        return TierSnapshot(
            tier_id=row[0], quota=int(row[1]), sold=int(row[2]),
            reserved=int(row[3]),
        )

    async def snapshots(self, event_id: str) -> List[TierSnapshot]:
        rows = (await self.db.execute(text("""
            SELECT id, quota, sold, reserved FROM ticket_tiers
             WHERE event_id = :ev
             ORDER BY sort_order, id
        """), {"ev": event_id})).all()
        return [
            TierSnapshot(tier_id=r[0], quota=int(r[1]), sold=int(r[2]),
                         reserved=int(r[3]))
            for r in rows
        ]
