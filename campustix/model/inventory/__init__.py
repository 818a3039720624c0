# model/inventory/__init__.py
from typing import Optional

import tigerbeetle as tb
from sqlalchemy.ext.asyncio import AsyncSession

from .base import Hold, InventoryLedger, TierSnapshot
from ._postgres import SqlInventoryLedger
from ._tigerbeetle import TigerBeetleInventoryLedger


def new_ledger(db: AsyncSession, *, backend: str = "pg",
               tb_client: Optional[tb.ClientAsync] = None) -> InventoryLedger:
    if backend == "tb":
        if tb_client is None:
            raise RuntimeError(
                "InventoryLedger(tb) requires tb_client=tb.ClientAsync"
            )
        return TigerBeetleInventoryLedger(tb_client, db)
    return SqlInventoryLedger(db)


__all__ = [
    "Hold", "InventoryLedger", "TierSnapshot", "SqlInventoryLedger",
    "TigerBeetleInventoryLedger", "new_ledger",
]
