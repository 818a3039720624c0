"""
Create a published demo event with ticket tiers and provision its ledger
accounts.

    DATABASE_URL=sqlite:///./campustix.db LEDGER_BACKEND=pg \
        python seed_events.py --title "Campus Tech Fair" --tier Regular:25000:200
"""
import argparse
import asyncio

import tigerbeetle as tb
from loguru import logger

from campustix import config
from campustix.helpers import now_ts
from campustix.infra.log import setup_logging
from campustix.model import catalog
from campustix.model.db import Database


def parse_tier(raw: str) -> dict:
    # name:unit_price:quota
    name, price, quota = raw.rsplit(":", 2)
    return {"name": name, "unit_price": int(price), "quota": int(quota)}


async def seed(args) -> None:
    tb_client = None
    if config.LEDGER_BACKEND == "tb":
        tb_client = tb.ClientAsync(cluster_id=config.TB_CLUSTER_ID,
                                   replica_addresses=config.TB_ADDRESS)
    db = Database(config.DATABASE_URL, ledger_backend=config.LEDGER_BACKEND,
                  tb_client=tb_client, gate_limit=config.DB_GATE_LIMIT)
    try:
        await db.create_schema()
        now = now_ts()
        starts = now + args.starts_in_days * 86400
        async with db.transaction() as tx:
            ev = await catalog.create_event(
                tx.session, tx.ledger,
                title=args.title,
                organizer_id=args.organizer,
                organization_name=args.organization,
                venue=args.venue,
                registration_opens_at=now,
                registration_closes_at=starts,
                starts_at=starts,
                ends_at=starts + args.duration_hours * 3600,
                tiers=[parse_tier(t) for t in args.tier],
            )
            tiers = await catalog.list_tiers(tx.session, ev.id)
        logger.info("event {} created", ev.id)
        for t in tiers:
            logger.info("  tier {} {!r} price={} quota={}", t.id, t.name,
                        t.unit_price, t.quota)
    finally:
        await db.dispose()
        if tb_client is not None:
            await tb_client.close()


def main() -> None:
    p = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    p.add_argument("--title", default="Campus Tech Fair")
    p.add_argument("--organizer", default="org-1")
    p.add_argument("--organization", default="Student Union")
    p.add_argument("--venue", default="Main Hall")
    p.add_argument("--starts-in-days", type=float, default=14)
    p.add_argument("--duration-hours", type=float, default=4)
    p.add_argument("--tier", action="append",
                   default=None, help="name:unit_price:quota, repeatable")
    args = p.parse_args()
    if not args.tier:
        args.tier = ["Free:0:100", "Regular:25000:200", "VIP:75000:20"]
    setup_logging(config.LOG_LEVEL, config.LOG_JSON)
    asyncio.run(seed(args))


if __name__ == '__main__':
    main()
