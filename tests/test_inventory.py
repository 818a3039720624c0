import asyncio

import pytest

from campustix.errors import (
    InsufficientInventory, InventoryUnderflow, TierNotFound,
)

from .conftest import make_event, snapshot


@pytest.mark.asyncio
async def test_reserve_convert_release_keep_counters_consistent(db, clock):
    ev, (tier,) = await make_event(db, clock, tiers=[
        {"name": "Regular", "unit_price": 10000, "quota": 5}])

    async with db.transaction() as tx:
        hold = await tx.ledger.try_reserve(ev.id, tier.id, 2)
    assert hold.snapshot.reserved == 2
    assert hold.snapshot.available == 3

    async with db.transaction() as tx:
        await tx.ledger.convert(ev.id, tier.id, 2, hold.hold_id)
    s = await snapshot(db, ev.id, tier.id)
    assert (s.sold, s.reserved, s.available) == (2, 0, 3)

    async with db.transaction() as tx:
        await tx.ledger.release_sale(ev.id, tier.id, 1)
        h2 = await tx.ledger.try_reserve(ev.id, tier.id, 3)
        await tx.ledger.release(ev.id, tier.id, 3, h2.hold_id)
    s = await snapshot(db, ev.id, tier.id)
    assert (s.sold, s.reserved, s.quota) == (1, 0, 5)


@pytest.mark.asyncio
async def test_reserve_beyond_quota_is_refused(db, clock):
    ev, (tier,) = await make_event(db, clock, tiers=[
        {"name": "Regular", "unit_price": 10000, "quota": 2}])

    with pytest.raises(InsufficientInventory):
        async with db.transaction() as tx:
            await tx.ledger.try_reserve(ev.id, tier.id, 3)

    s = await snapshot(db, ev.id, tier.id)
    assert (s.sold, s.reserved) == (0, 0)


@pytest.mark.asyncio
async def test_release_without_reservation_underflows(db, clock):
    ev, (tier,) = await make_event(db, clock)

    with pytest.raises(InventoryUnderflow):
        async with db.transaction() as tx:
            await tx.ledger.release(ev.id, tier.id, 1)
    with pytest.raises(InventoryUnderflow):
        async with db.transaction() as tx:
            await tx.ledger.release_sale(ev.id, tier.id, 1)


@pytest.mark.asyncio
async def test_concurrent_reservations_never_oversell(db, clock):
    ev, (tier,) = await make_event(db, clock, tiers=[
        {"name": "Regular", "unit_price": 10000, "quota": 3}])

    async def reserve_one():
        async with db.transaction() as tx:
            return await tx.ledger.try_reserve(ev.id, tier.id, 1)

    results = await asyncio.gather(*[reserve_one() for _ in range(10)],
                                   return_exceptions=True)
    won = [r for r in results if not isinstance(r, Exception)]
    lost = [r for r in results if isinstance(r, InsufficientInventory)]
    assert len(won) == 3
    assert len(lost) == 7

    s = await snapshot(db, ev.id, tier.id)
    assert s.sold + s.reserved == 3
    assert s.available == 0


@pytest.mark.asyncio
async def test_unknown_tier(db, clock):
    ev, _ = await make_event(db, clock)
    with pytest.raises(TierNotFound):
        await snapshot(db, ev.id, "nope")


@pytest.mark.asyncio
async def test_snapshots_follow_tier_order(db, clock):
    ev, tiers = await make_event(db, clock, tiers=[
        {"name": "Early", "unit_price": 0, "quota": 10},
        {"name": "Regular", "unit_price": 20000, "quota": 20},
        {"name": "VIP", "unit_price": 90000, "quota": 2},
    ])
    async with db.transaction() as tx:
        snaps = await tx.ledger.snapshots(ev.id)
    assert [s.tier_id for s in snaps] == [t.id for t in tiers]
    assert [s.quota for s in snaps] == [10, 20, 2]
    assert snaps[2].to_dict()["sold_out"] is False


@pytest.mark.asyncio
async def test_ledger_movement_invalidates_cached_stats(db, clock):
    ev, (tier,) = await make_event(db, clock)
    await db.cache.put(ev.id, {"event_id": ev.id, "total_sold": 0})

    async with db.transaction() as tx:
        await tx.ledger.try_reserve(ev.id, tier.id, 1)

    assert await db.cache.get(ev.id) is None


@pytest.mark.asyncio
async def test_rolled_back_reservation_leaves_counters_untouched(db, clock):
    ev, (tier,) = await make_event(db, clock)

    with pytest.raises(RuntimeError):
        async with db.transaction() as tx:
            await tx.ledger.try_reserve(ev.id, tier.id, 4)
            raise RuntimeError("boom")

    s = await snapshot(db, ev.id, tier.id)
    assert (s.sold, s.reserved) == (0, 0)
