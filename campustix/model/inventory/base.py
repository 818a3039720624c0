from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from typing import List, Optional, Set


@dataclass
class TierSnapshot:
    tier_id: str
    quota: int
    sold: int
    reserved: int

    @property
    def available(self) -> int:
        return self.quota - self.sold - self.reserved

    def to_dict(self) -> dict:
        d = asdict(self)
        d["available"] = self.available
        d["sold_out"] = self.available <= 0
        return d


@dataclass
class Hold:
    hold_id: str
    snapshot: TierSnapshot


class InventoryLedger(ABC):
    """
    Per-tier counters bound to one store transaction.

    Invariant kept by every backend: sold >= 0, reserved >= 0 and
    sold + reserved <= quota after every mutation.
    """

    def __init__(self) -> None:
        # events whose stats must be invalidated once the tx commits
        self.touched: Set[str] = set()

    @abstractmethod
    async def adjust(
        self, event_id: str, tier_id: str, sold_delta: int,
        reserved_delta: int, hold_id: Optional[str] = None,
    ) -> TierSnapshot: ...

    @abstractmethod
    async def try_reserve(
        self, event_id: str, tier_id: str, quantity: int
    ) -> Hold: ...

    @abstractmethod
    async def snapshot(self, event_id: str, tier_id: str) -> TierSnapshot: ...

    @abstractmethod
    async def snapshots(self, event_id: str) -> List[TierSnapshot]: ...

    async def provision_tier(self, event_id: str, tier_id: str,
                             quota: int) -> None:
        return None

    async def commit(self) -> None:
        """Apply effects held back until the store tx committed."""
        return None

    async def rollback(self) -> None:
        """Undo non-transactional effects of an aborted store tx."""
        return None

    # -- lifecycle shorthands --
    async def convert(self, event_id: str, tier_id: str, quantity: int,
                      hold_id: Optional[str] = None) -> TierSnapshot:
        return await self.adjust(event_id, tier_id, quantity, -quantity,
                                 hold_id)

    async def release(self, event_id: str, tier_id: str, quantity: int,
                      hold_id: Optional[str] = None) -> TierSnapshot:
        return await self.adjust(event_id, tier_id, 0, -quantity, hold_id)

    async def release_sale(self, event_id: str, tier_id: str,
                           quantity: int) -> TierSnapshot:
        return await self.adjust(event_id, tier_id, -quantity, 0)
