from dataclasses import dataclass
from types import SimpleNamespace

import pytest
import pytest_asyncio
import tigerbeetle as tb

from campustix.errors import InsufficientInventory, InventoryUnderflow
from campustix.model.db import Database

from .conftest import make_event, snapshot

_PENDING = int(tb.TransferFlags.PENDING)
_POST = int(tb.TransferFlags.POST_PENDING_TRANSFER)
_VOID = int(tb.TransferFlags.VOID_PENDING_TRANSFER)
_GUARDED = int(tb.AccountFlags.DEBITS_MUST_NOT_EXCEED_CREDITS)


@dataclass
class Refusal:
    index: int
    result: str


class FakeTigerBeetle:
    """In-memory ClientAsync with the balance rules the ledger relies on."""

    def __init__(self) -> None:
        self.accounts = {}
        # transfer id -> (transfer, "pending" | "posted" | "voided")
        self.transfers = {}

    async def create_accounts(self, accounts):
        errors = []
        for i, a in enumerate(accounts):
            if a.id in self.accounts:
                errors.append(Refusal(i, "EXISTS"))
                continue
            self.accounts[a.id] = SimpleNamespace(
                id=a.id, flags=int(a.flags or 0), debits_pending=0,
                debits_posted=0, credits_pending=0, credits_posted=0,
            )
        return errors

    async def lookup_accounts(self, ids):
        return [self.accounts[i] for i in ids if i in self.accounts]

    async def create_transfers(self, transfers):
        errors = []
        for i, t in enumerate(transfers):
            result = self._apply(t)
            if result:
                errors.append(Refusal(i, result))
        return errors

    def state(self, transfer_id):
        return self.transfers[transfer_id][1]

    def _apply(self, t):
        if t.id in self.transfers:
            return "EXISTS"
        flags = int(t.flags or 0)
        if flags & (_POST | _VOID):
            if t.pending_id not in self.transfers:
                return "PENDING_TRANSFER_NOT_FOUND"
            pending, state = self.transfers[t.pending_id]
            if state != "pending":
                return f"PENDING_TRANSFER_ALREADY_{state.upper()}"
            dr = self.accounts[pending.debit_account_id]
            cr = self.accounts[pending.credit_account_id]
            dr.debits_pending -= pending.amount
            cr.credits_pending -= pending.amount
            if flags & _POST:
                dr.debits_posted += pending.amount
                cr.credits_posted += pending.amount
            self.transfers[pending.id] = (
                pending, "posted" if flags & _POST else "voided")
            self.transfers[t.id] = (t, "posted")
            return None

        dr = self.accounts[t.debit_account_id]
        cr = self.accounts[t.credit_account_id]
        if dr.flags & _GUARDED and (
            dr.debits_pending + dr.debits_posted + t.amount
            > dr.credits_posted
        ):
            return "EXCEEDS_CREDITS"
        if flags & _PENDING:
            dr.debits_pending += t.amount
            cr.credits_pending += t.amount
            self.transfers[t.id] = (t, "pending")
        else:
            dr.debits_posted += t.amount
            cr.credits_posted += t.amount
            self.transfers[t.id] = (t, "posted")
        return None


@pytest.fixture
def fake_tb():
    return FakeTigerBeetle()


@pytest_asyncio.fixture
async def tbdb(tmp_path, fake_tb):
    database = Database(f"sqlite+aiosqlite:///{tmp_path}/tb.db",
                        ledger_backend="tb", tb_client=fake_tb)
    await database.create_schema()
    yield database
    await database.dispose()


async def _tier(tbdb, clock, quota=5):
    ev, (tier,) = await make_event(tbdb, clock, tiers=[
        {"name": "Regular", "unit_price": 10000, "quota": quota}])
    return ev, tier


@pytest.mark.asyncio
async def test_hold_sale_and_return(tbdb, clock):
    ev, tier = await _tier(tbdb, clock)

    async with tbdb.transaction() as tx:
        hold = await tx.ledger.try_reserve(ev.id, tier.id, 2)
    assert (hold.snapshot.reserved, hold.snapshot.available) == (2, 3)

    async with tbdb.transaction() as tx:
        during = await tx.ledger.convert(ev.id, tier.id, 2, hold.hold_id)
        # the post waits for commit, the projection already shows it
        assert (during.sold, during.reserved) == (2, 0)
    s = await snapshot(tbdb, ev.id, tier.id)
    assert (s.sold, s.reserved, s.quota) == (2, 0, 5)

    async with tbdb.transaction() as tx:
        await tx.ledger.release_sale(ev.id, tier.id, 1)
    s = await snapshot(tbdb, ev.id, tier.id)
    assert (s.sold, s.reserved, s.available) == (1, 0, 4)


@pytest.mark.asyncio
async def test_oversell_is_refused(tbdb, clock):
    ev, tier = await _tier(tbdb, clock, quota=2)

    with pytest.raises(InsufficientInventory):
        async with tbdb.transaction() as tx:
            await tx.ledger.try_reserve(ev.id, tier.id, 3)
    s = await snapshot(tbdb, ev.id, tier.id)
    assert (s.sold, s.reserved) == (0, 0)


@pytest.mark.asyncio
async def test_aborted_tx_voids_its_holds(tbdb, clock, fake_tb):
    ev, tier = await _tier(tbdb, clock)

    with pytest.raises(RuntimeError):
        async with tbdb.transaction() as tx:
            hold = await tx.ledger.try_reserve(ev.id, tier.id, 2)
            raise RuntimeError("store write failed")

    assert fake_tb.state(int(hold.hold_id)) == "voided"
    s = await snapshot(tbdb, ev.id, tier.id)
    assert (s.sold, s.reserved) == (0, 0)


@pytest.mark.asyncio
async def test_aborted_convert_leaves_the_hold_open(tbdb, clock, fake_tb):
    ev, tier = await _tier(tbdb, clock)
    async with tbdb.transaction() as tx:
        hold = await tx.ledger.try_reserve(ev.id, tier.id, 1)

    with pytest.raises(RuntimeError):
        async with tbdb.transaction() as tx:
            await tx.ledger.convert(ev.id, tier.id, 1, hold.hold_id)
            raise RuntimeError("store write failed")

    assert fake_tb.state(int(hold.hold_id)) == "pending"
    s = await snapshot(tbdb, ev.id, tier.id)
    assert (s.sold, s.reserved) == (0, 1)

    # the registration still pointing at the hold can release it later
    async with tbdb.transaction() as tx:
        await tx.ledger.release(ev.id, tier.id, 1, hold.hold_id)
    assert fake_tb.state(int(hold.hold_id)) == "voided"
    s = await snapshot(tbdb, ev.id, tier.id)
    assert (s.sold, s.reserved) == (0, 0)


@pytest.mark.asyncio
async def test_aborted_return_keeps_the_sale(tbdb, clock):
    ev, tier = await _tier(tbdb, clock)
    async with tbdb.transaction() as tx:
        hold = await tx.ledger.try_reserve(ev.id, tier.id, 1)
        await tx.ledger.convert(ev.id, tier.id, 1, hold.hold_id)

    with pytest.raises(RuntimeError):
        async with tbdb.transaction() as tx:
            await tx.ledger.release_sale(ev.id, tier.id, 1)
            raise RuntimeError("store write failed")
    s = await snapshot(tbdb, ev.id, tier.id)
    assert s.sold == 1

    async with tbdb.transaction() as tx:
        await tx.ledger.release_sale(ev.id, tier.id, 1)
    with pytest.raises(InventoryUnderflow):
        async with tbdb.transaction() as tx:
            await tx.ledger.release_sale(ev.id, tier.id, 1)
    s = await snapshot(tbdb, ev.id, tier.id)
    assert (s.sold, s.reserved) == (0, 0)


@pytest.mark.asyncio
async def test_aborted_direct_sale_is_returned(tbdb, clock):
    ev, tier = await _tier(tbdb, clock, quota=3)

    with pytest.raises(RuntimeError):
        async with tbdb.transaction() as tx:
            await tx.ledger.adjust(ev.id, tier.id, 2, 0)
            raise RuntimeError("store write failed")
    s = await snapshot(tbdb, ev.id, tier.id)
    assert (s.sold, s.reserved, s.available) == (0, 0, 3)


@pytest.mark.asyncio
async def test_double_release_in_one_tx_underflows(tbdb, clock):
    ev, tier = await _tier(tbdb, clock)
    async with tbdb.transaction() as tx:
        hold = await tx.ledger.try_reserve(ev.id, tier.id, 1)

    with pytest.raises(InventoryUnderflow):
        async with tbdb.transaction() as tx:
            await tx.ledger.release(ev.id, tier.id, 1, hold.hold_id)
            await tx.ledger.release(ev.id, tier.id, 1, hold.hold_id)
    s = await snapshot(tbdb, ev.id, tier.id)
    assert s.reserved == 1
