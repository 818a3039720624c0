# model/inventory/_tigerbeetle.py
"""
TigerBeetle inventory backend.

Per tier:
  operator --quota--> budget   (funding, once)
  budget   --qty----> spent    (pending = reserved, posted = sold)
  spent    --qty----> budget   (sale released back to the pool)

Both budget and spent carry DEBITS_MUST_NOT_EXCEED_CREDITS, so TigerBeetle
itself refuses oversell (budget) and negative sales (spent).

Only movements that consume quota (opening a hold, a direct sale) hit
TigerBeetle inside the store transaction, and each one records the transfer
that undoes it. Posting or voiding a hold and returning a sale cannot be
undone there, so they wait for the store commit and are dropped on abort.
"""
from __future__ import annotations
import hashlib
from typing import Dict, List, Optional, Tuple

import tigerbeetle as tb
from loguru import logger
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ...errors import (
    InsufficientInventory, InventoryUnderflow, TierNotFound
)
from ...infra.timings import timeit
from .base import Hold, InventoryLedger, TierSnapshot

LedgerTickets = 2000
CodeTickets = 20
CodeFunding = 1

_GUARDED = tb.AccountFlags.DEBITS_MUST_NOT_EXCEED_CREDITS


def _account_id(tier_id: str, role: str) -> int:
    digest = hashlib.sha256(f"{tier_id}:{role}".encode()).digest()
    # 128-bit ids; 0 and 2^128-1 are reserved
    return (int.from_bytes(digest[:16], "big") % ((1 << 128) - 2)) + 1


def tier_accounts(tier_id: str) -> Dict[str, int]:
    return {
        "operator": _account_id(tier_id, "operator"),
        "budget": _account_id(tier_id, "budget"),
        "spent": _account_id(tier_id, "spent"),
    }


def _result_name(err) -> str:
    return getattr(err.result, "name", str(err.result))


class TigerBeetleInventoryLedger(InventoryLedger):
    def __init__(self, client: tb.ClientAsync, db: AsyncSession) -> None:
        super().__init__()
        self.client = client
        self.db = db
        # transfers that reverse what this tx already applied
        self._undo: List[tb.Transfer] = []
        # (tier_id, transfer, sold_delta, reserved_delta) applied on commit
        self._deferred: List[Tuple[str, tb.Transfer, int, int]] = []

    async def _tier_exists(self, event_id: str, tier_id: str) -> None:
        row = (await self.db.execute(text("""
            SELECT id FROM ticket_tiers WHERE id = :tier AND event_id = :ev
        """), {"tier": tier_id, "ev": event_id})).first()
        if row is None:
            raise TierNotFound()

    async def _submit(self, transfers: List[tb.Transfer]) -> List:
        async with timeit("ledger.tb.create_transfers"):
            return await self.client.create_transfers(transfers)

    async def provision_tier(self, event_id: str, tier_id: str,
                             quota: int) -> None:
        ids = tier_accounts(tier_id)
        errors = await self.client.create_accounts([
            tb.Account(id=ids["operator"], ledger=LedgerTickets,
                       code=CodeTickets),
            tb.Account(id=ids["budget"], ledger=LedgerTickets,
                       code=CodeTickets, flags=_GUARDED),
            tb.Account(id=ids["spent"], ledger=LedgerTickets,
                       code=CodeTickets, flags=_GUARDED),
        ])
        for err in errors:
            if _result_name(err) != "EXISTS":
                raise RuntimeError(f"tigerbeetle account error: {err}")

        errors = await self._submit([
            tb.Transfer(
                id=_account_id(tier_id, "funding"),
                debit_account_id=ids["operator"],
                credit_account_id=ids["budget"],
                amount=quota,
                ledger=LedgerTickets,
                code=CodeFunding,
            ),
        ])
        for err in errors:
            if _result_name(err) != "EXISTS":
                raise RuntimeError(f"tigerbeetle funding error: {err}")
        logger.info("provisioned tier {} with quota {}", tier_id, quota)

    def _transfer(self, debit: int, credit: int, amount: int, *,
                  transfer_id: Optional[int] = None, pending_id: int = 0,
                  flags=tb.TransferFlags.NONE) -> tb.Transfer:
        return tb.Transfer(
            id=transfer_id or tb.id(), debit_account_id=debit,
            credit_account_id=credit, amount=amount, pending_id=pending_id,
            ledger=LedgerTickets, code=CodeTickets, flags=flags,
        )

    def _projected(self, snap: TierSnapshot) -> TierSnapshot:
        for tier_id, _, ds, dr in self._deferred:
            if tier_id == snap.tier_id:
                snap.sold += ds
                snap.reserved += dr
        return snap

    async def _apply(self, t: tb.Transfer, tier_id: str) -> None:
        errors = await self._submit([t])
        if not errors:
            return
        name = _result_name(errors[0])
        logger.info("ledger refused {} on tier {}: {}", t.id, tier_id, name)
        if name.startswith("EXCEEDS_CREDITS"):
            raise InsufficientInventory()
        raise InventoryUnderflow(f"ledger refused movement: {name}")

    async def adjust(
        self, event_id: str, tier_id: str, sold_delta: int,
        reserved_delta: int, hold_id: Optional[str] = None,
    ) -> TierSnapshot:
        await self._tier_exists(event_id, tier_id)
        ids = tier_accounts(tier_id)
        budget, spent = ids["budget"], ids["spent"]
        ds, dr = int(sold_delta), int(reserved_delta)

        if ds == 0 and dr > 0:
            t = self._transfer(budget, spent, dr,
                               transfer_id=int(hold_id) if hold_id else None,
                               flags=tb.TransferFlags.PENDING)
            await self._apply(t, tier_id)
            self._undo.append(self._transfer(
                budget, spent, dr, pending_id=t.id,
                flags=tb.TransferFlags.VOID_PENDING_TRANSFER))
        elif ds > 0 and dr == 0:
            t = self._transfer(budget, spent, ds)
            await self._apply(t, tier_id)
            self._undo.append(self._transfer(spent, budget, ds))
        else:
            if ds > 0 and dr == -ds and hold_id:
                # reservation becomes a sale
                t = self._transfer(
                    budget, spent, ds, pending_id=int(hold_id),
                    flags=tb.TransferFlags.POST_PENDING_TRANSFER)
            elif ds == 0 and dr < 0 and hold_id:
                t = self._transfer(
                    budget, spent, -dr, pending_id=int(hold_id),
                    flags=tb.TransferFlags.VOID_PENDING_TRANSFER)
            elif ds < 0 and dr == 0:
                t = self._transfer(spent, budget, -ds)
            else:
                raise ValueError(
                    f"unsupported ledger movement sold={ds} reserved={dr}"
                )
            snap = self._projected(await self.snapshot(event_id, tier_id))
            if snap.sold + ds < 0 or snap.reserved + dr < 0:
                logger.info("ledger refused {} on tier {}: underflow",
                            t.id, tier_id)
                raise InventoryUnderflow()
            self._deferred.append((tier_id, t, ds, dr))

        self.touched.add(event_id)
        return self._projected(await self.snapshot(event_id, tier_id))

    async def try_reserve(
        self, event_id: str, tier_id: str, quantity: int
    ) -> Hold:
        hold_id = str(tb.id())
        snap = await self.adjust(event_id, tier_id, 0, quantity, hold_id)
        return Hold(hold_id=hold_id, snapshot=snap)

    async def snapshot(self, event_id: str, tier_id: str) -> TierSnapshot:
        ids = tier_accounts(tier_id)
        async with timeit("ledger.tb.lookup_accounts"):
            accounts = await self.client.lookup_accounts(
                [ids["budget"], ids["spent"]]
            )
        by_id = {a.id: a for a in accounts}
        budget = by_id.get(ids["budget"])
        spent = by_id.get(ids["spent"])
        if budget is None or spent is None:
            raise TierNotFound("tier has no ledger accounts")
        sold = spent.credits_posted - spent.debits_posted
        return TierSnapshot(
            tier_id=tier_id,
            quota=budget.credits_posted - spent.debits_posted,
            sold=sold,
            reserved=spent.credits_pending,
        )

    async def snapshots(self, event_id: str) -> List[TierSnapshot]:
        rows = (await self.db.execute(text("""
            SELECT id FROM ticket_tiers WHERE event_id = :ev
             ORDER BY sort_order, id
        """), {"ev": event_id})).all()
        return [await self.snapshot(event_id, r[0]) for r in rows]

    async def commit(self) -> None:
        self._undo = []
        if not self._deferred:
            return
        transfers = [t for _, t, _, _ in self._deferred]
        self._deferred = []
        errors = await self._submit(transfers)
        for err in errors:
            logger.error("ledger movement {} failed after commit: {}",
                         transfers[err.index].id, _result_name(err))

    async def rollback(self) -> None:
        self._deferred = []
        if not self._undo:
            return
        undo = list(reversed(self._undo))
        self._undo = []
        errors = await self._submit(undo)
        for err in errors:
            logger.error("could not undo ledger movement {} of aborted tx: "
                         "{}", undo[err.index].id, _result_name(err))
