import asyncio
import csv
import io

import pytest
from sqlalchemy import update

from campustix.collaborators import Template
from campustix.errors import (
    AlreadyCancelled, DuplicateRegistration, EventNotFound, EventNotPublished,
    Forbidden, InsufficientInventory, InvalidTransition,
    PaymentProviderUnavailable, RegistrationWindowClosed,
    TierInactiveOrSoldOut, ValidationFailed,
)
from campustix.model.orm import (
    TicketTier,
    EV_CANCELLED, EV_DRAFT, PENDING_PAYMENT, CONFIRMED, CANCELLED,
    PAY_PENDING, PAY_PAID, PAY_FAILED, TIX_VALID, TIX_CANCELLED,
    REFUND_PENDING, REFUND_NOT_APPLICABLE,
)
from campustix.model import catalog
from campustix.services.registration import CSV_COLUMNS

from .conftest import (
    ADMIN, DAY, HOUR, ORGANIZER, STAFF, buyer, make_event, notify_payment,
    participant, reload, snapshot,
)

FREE = [{"name": "Free", "unit_price": 0, "quota": 10}]


@pytest.mark.asyncio
async def test_paid_registration_holds_inventory(svc, db, clock):
    ev, (tier,) = await make_event(db, clock)

    reg, intent = await svc.registrations.create(
        buyer(1), ev.id, tier.id, 2, participant(1))

    assert reg.status == PENDING_PAYMENT
    assert reg.payment_status == PAY_PENDING
    assert reg.registration_number.startswith("CT-")
    assert reg.external_order_id.startswith("CT-ORDER-")
    assert reg.amount == 50000
    assert reg.total_amount == 50000
    assert reg.expired_at == clock() + 24 * HOUR
    assert reg.ticket_number is None
    assert intent.redirect_url == f"/mockpay/{reg.external_order_id}"
    assert reg.payment_redirect_url == intent.redirect_url

    s = await snapshot(db, ev.id, tier.id)
    assert (s.sold, s.reserved) == (0, 2)


@pytest.mark.asyncio
async def test_free_registration_is_confirmed_and_issued(svc, db, clock,
                                                         notifier, blobs):
    ev, (tier,) = await make_event(db, clock, tiers=FREE)

    reg, intent = await svc.registrations.create(
        buyer(1), ev.id, tier.id, 1, participant(1))

    assert intent is None
    assert reg.status == CONFIRMED
    assert reg.payment_status == PAY_PAID
    assert reg.payment_method == "free"
    assert reg.ticket_number.startswith("CT-TIX-")
    assert reg.ticket_status == TIX_VALID
    assert reg.ticket_credential

    s = await snapshot(db, ev.id, tier.id)
    assert (s.sold, s.reserved) == (1, 0)

    await svc.sidefx.join()
    reg = await reload(db, reg.id)
    assert reg.pdf_url in blobs.blobs
    assert reg.qr_url in blobs.blobs
    assert reg.confirmation_sent is True
    sent = notifier.of(Template.REGISTRATION_CONFIRMED)
    assert len(sent) == 1
    assert sent[0]["recipient"] == "student1@campus.test"
    assert sent[0]["payload"]["ticket_number"] == reg.ticket_number


@pytest.mark.asyncio
async def test_one_live_registration_per_buyer_and_event(svc, db, clock):
    ev, (tier,) = await make_event(db, clock)

    reg, _ = await svc.registrations.create(
        buyer(1), ev.id, tier.id, 1, participant(1))
    with pytest.raises(DuplicateRegistration):
        await svc.registrations.create(
            buyer(1), ev.id, tier.id, 1, participant(1))

    await svc.registrations.cancel(buyer(1), reg.id)
    again, _ = await svc.registrations.create(
        buyer(1), ev.id, tier.id, 1, participant(1))
    assert again.id != reg.id
    assert again.status == PENDING_PAYMENT


@pytest.mark.asyncio
async def test_registration_window(svc, db, clock):
    ev, (tier,) = await make_event(db, clock, starts_in=2 * DAY)

    # the close instant itself is still inside the window
    clock.advance(2 * DAY)
    reg, _ = await svc.registrations.create(
        buyer(1), ev.id, tier.id, 1, participant(1))
    assert reg.status == PENDING_PAYMENT

    clock.advance(1)
    with pytest.raises(RegistrationWindowClosed):
        await svc.registrations.create(
            buyer(2), ev.id, tier.id, 1, participant(2))


@pytest.mark.asyncio
async def test_unpublished_and_unknown_events(svc, db, clock):
    draft, (tier,) = await make_event(db, clock, status=EV_DRAFT)
    with pytest.raises(EventNotPublished):
        await svc.registrations.create(
            buyer(1), draft.id, tier.id, 1, participant(1))
    with pytest.raises(EventNotFound):
        await svc.registrations.create(
            buyer(1), "missing", tier.id, 1, participant(1))


@pytest.mark.asyncio
async def test_inactive_and_sold_out_tiers(svc, db, clock):
    ev, (closed, last) = await make_event(db, clock, tiers=[
        {"name": "Closed", "unit_price": 10000, "quota": 5,
         "is_active": False},
        {"name": "Last seat", "unit_price": 10000, "quota": 1},
    ])
    with pytest.raises(TierInactiveOrSoldOut):
        await svc.registrations.create(
            buyer(1), ev.id, closed.id, 1, participant(1))

    await svc.registrations.create(buyer(1), ev.id, last.id, 1,
                                   participant(1))
    with pytest.raises(InsufficientInventory):
        await svc.registrations.create(
            buyer(2), ev.id, last.id, 1, participant(2))


@pytest.mark.asyncio
async def test_quantity_larger_than_remaining(svc, db, clock):
    ev, (tier,) = await make_event(db, clock, tiers=[
        {"name": "Regular", "unit_price": 10000, "quota": 2}])
    with pytest.raises(InsufficientInventory):
        await svc.registrations.create(
            buyer(1), ev.id, tier.id, 3, participant(1))
    s = await snapshot(db, ev.id, tier.id)
    assert s.reserved == 0


@pytest.mark.asyncio
async def test_two_buyers_race_for_the_last_seat(svc, db, clock):
    ev, (tier,) = await make_event(db, clock, tiers=[
        {"name": "Last seat", "unit_price": 10000, "quota": 1}])

    results = await asyncio.gather(
        svc.registrations.create(buyer(1), ev.id, tier.id, 1, participant(1)),
        svc.registrations.create(buyer(2), ev.id, tier.id, 1, participant(2)),
        return_exceptions=True,
    )

    won = [r for r in results if not isinstance(r, Exception)]
    lost = [r for r in results if isinstance(r, Exception)]
    assert len(won) == 1 and len(lost) == 1
    assert won[0][0].status == PENDING_PAYMENT
    assert isinstance(lost[0], InsufficientInventory)
    s = await snapshot(db, ev.id, tier.id)
    assert (s.sold, s.reserved) == (0, 1)


@pytest.mark.asyncio
@pytest.mark.parametrize("quantity, details", [
    (0, participant(1)),
    (6, participant(1)),
    (1, dict(participant(1), email="not-an-email")),
    (1, dict(participant(1), full_name="  ")),
    (1, None),
])
async def test_rejects_bad_input(svc, db, clock, quantity, details):
    ev, (tier,) = await make_event(db, clock)
    with pytest.raises(ValidationFailed):
        await svc.registrations.create(
            buyer(1), ev.id, tier.id, quantity, details)


@pytest.mark.asyncio
async def test_provider_outage_unwinds_the_registration(failing_svc, db,
                                                        clock):
    ev, (tier,) = await make_event(db, clock)

    with pytest.raises(PaymentProviderUnavailable):
        await failing_svc.registrations.create(
            buyer(1), ev.id, tier.id, 2, participant(1))

    (reg,) = await failing_svc.registrations.list_for_buyer(buyer(1))
    assert reg.status == CANCELLED
    assert reg.payment_status == PAY_FAILED
    s = await snapshot(db, ev.id, tier.id)
    assert (s.sold, s.reserved) == (0, 0)


@pytest.mark.asyncio
async def test_rejected_intent_unwinds_the_registration(svc, db, clock,
                                                       monkeypatch):
    ev, (tier,) = await make_event(db, clock)

    async def reject(req):
        raise ValidationFailed("customer phone rejected by provider")

    monkeypatch.setattr(svc.payments.adapter, "create_intent", reject)
    with pytest.raises(ValidationFailed):
        await svc.registrations.create(
            buyer(1), ev.id, tier.id, 1, participant(1))

    (reg,) = await svc.registrations.list_for_buyer(buyer(1))
    assert reg.status == CANCELLED
    s = await snapshot(db, ev.id, tier.id)
    assert s.reserved == 0


@pytest.mark.asyncio
async def test_cancel_pending_releases_hold(svc, db, clock, notifier):
    ev, (tier,) = await make_event(db, clock)
    reg, _ = await svc.registrations.create(
        buyer(1), ev.id, tier.id, 2, participant(1))

    out = await svc.registrations.cancel(buyer(1), reg.id, "changed my mind")

    assert out.status == CANCELLED
    assert out.payment_status == PAY_FAILED
    assert out.ticket_status == TIX_CANCELLED
    assert out.cancel_reason == "changed my mind"
    assert out.cancelled_by == buyer(1).user_id
    s = await snapshot(db, ev.id, tier.id)
    assert (s.sold, s.reserved) == (0, 0)

    with pytest.raises(AlreadyCancelled):
        await svc.registrations.cancel(buyer(1), reg.id)

    await svc.sidefx.join()
    assert len(notifier.of(Template.REGISTRATION_CANCELLED)) == 1


@pytest.mark.asyncio
async def test_cancel_paid_registration_flags_refund(svc, db, clock,
                                                     notifier):
    ev, (tier,) = await make_event(db, clock)
    reg, _ = await svc.registrations.create(
        buyer(1), ev.id, tier.id, 1, participant(1))
    await notify_payment(svc, reg)

    out = await svc.registrations.cancel(buyer(1), reg.id)

    assert out.status == CANCELLED
    assert out.payment_status == PAY_PAID
    assert out.refund_status == REFUND_PENDING
    s = await snapshot(db, ev.id, tier.id)
    assert (s.sold, s.reserved) == (0, 0)

    await svc.sidefx.join()
    admins = notifier.of(Template.REFUND_REQUESTED)
    assert [m["recipient"] for m in admins] == ["admin@campus.test"]


@pytest.mark.asyncio
async def test_cancel_free_registration_needs_no_refund(svc, db, clock):
    ev, (tier,) = await make_event(db, clock, tiers=FREE)
    reg, _ = await svc.registrations.create(
        buyer(1), ev.id, tier.id, 1, participant(1))

    out = await svc.registrations.cancel(buyer(1), reg.id)
    assert out.refund_status == REFUND_NOT_APPLICABLE
    s = await snapshot(db, ev.id, tier.id)
    assert s.sold == 0


@pytest.mark.asyncio
async def test_attended_registration_cannot_be_cancelled(svc, db, clock):
    ev, (tier,) = await make_event(db, clock, tiers=FREE)
    reg, _ = await svc.registrations.create(
        buyer(1), ev.id, tier.id, 1, participant(1))
    await svc.checkin.check_in(STAFF, reg.id)

    with pytest.raises(InvalidTransition) as e:
        await svc.registrations.cancel(buyer(1), reg.id)
    assert e.value.current_status == "attended"


@pytest.mark.asyncio
async def test_only_owner_organizer_or_admin_may_cancel(svc, db, clock):
    ev, (tier,) = await make_event(db, clock)
    reg, _ = await svc.registrations.create(
        buyer(1), ev.id, tier.id, 1, participant(1))

    with pytest.raises(Forbidden):
        await svc.registrations.cancel(buyer(2), reg.id)
    with pytest.raises(Forbidden):
        await svc.registrations.cancel(STAFF, reg.id)

    out = await svc.registrations.cancel(ORGANIZER, reg.id)
    assert out.cancelled_by == ORGANIZER.user_id


@pytest.mark.asyncio
async def test_cancel_event_cascades(svc, db, clock):
    ev, (tier,) = await make_event(db, clock)
    pending, _ = await svc.registrations.create(
        buyer(1), ev.id, tier.id, 1, participant(1))
    paid, _ = await svc.registrations.create(
        buyer(2), ev.id, tier.id, 1, participant(2))
    await notify_payment(svc, paid)

    with pytest.raises(Forbidden):
        await svc.registrations.cancel_event(buyer(1), ev.id)

    out = await svc.registrations.cancel_event(ADMIN, ev.id, "venue flooded")
    assert out == {"event_id": ev.id, "cancelled": 2, "failed": []}

    async with db.transaction() as tx:
        assert (await catalog.get_event(tx.session, ev.id)).status == \
            EV_CANCELLED
    assert (await reload(db, pending.id)).status == CANCELLED
    paid = await reload(db, paid.id)
    assert paid.status == CANCELLED
    assert paid.refund_status == REFUND_PENDING
    assert paid.cancel_reason == "venue flooded"
    s = await snapshot(db, ev.id, tier.id)
    assert (s.sold, s.reserved) == (0, 0)

    with pytest.raises(EventNotPublished):
        await svc.registrations.create(
            buyer(3), ev.id, tier.id, 1, participant(3))


@pytest.mark.asyncio
async def test_statistics_and_export(svc, db, clock):
    ev, (tier,) = await make_event(db, clock)
    a, _ = await svc.registrations.create(
        buyer(1), ev.id, tier.id, 1, participant(1))
    b, _ = await svc.registrations.create(
        buyer(2), ev.id, tier.id, 1, participant(2))
    c, _ = await svc.registrations.create(
        buyer(3), ev.id, tier.id, 1, participant(3))
    await notify_payment(svc, a)
    await notify_payment(svc, b)
    await svc.checkin.check_in(STAFF, a.id)
    await svc.registrations.cancel(buyer(3), c.id)

    stats = await svc.registrations.statistics(ORGANIZER, ev.id)
    assert stats["total"] == 3
    assert stats["attended"] == 1
    assert stats["confirmed"] == 1
    assert stats["cancelled"] == 1
    assert stats["attendance_rate"] == 50.0

    pay = await svc.registrations.payment_statistics(ORGANIZER, ev.id)
    assert pay["total_revenue"] == 50000
    assert pay["by_method"]["mock_card"]["count"] == 2

    with pytest.raises(Forbidden):
        await svc.registrations.statistics(buyer(1), ev.id)

    body = await svc.registrations.export_csv(ORGANIZER, ev.id)
    rows = list(csv.reader(io.StringIO(body)))
    assert rows[0] == CSV_COLUMNS
    assert len(rows) == 4
    assert {r[0] for r in rows[1:]} == {
        a.registration_number, b.registration_number, c.registration_number}


@pytest.mark.asyncio
async def test_event_statistics_are_cached_until_inventory_moves(svc, db,
                                                                 clock):
    ev, (tier,) = await make_event(db, clock)

    first = await svc.registrations.event_statistics(ev.id)
    assert first["total_reserved"] == 0
    assert await db.cache.get(ev.id) == first

    await svc.registrations.create(buyer(1), ev.id, tier.id, 2,
                                   participant(1))
    assert await db.cache.get(ev.id) is None

    second = await svc.registrations.event_statistics(ev.id)
    assert second["total_reserved"] == 2
    assert second["tiers"][0]["available"] == 8


@pytest.mark.asyncio
async def test_price_edits_do_not_rewrite_past_sales(svc, db, clock,
                                                     monkeypatch):
    ev, (tier,) = await make_event(db, clock)
    reg, _ = await svc.registrations.create(
        buyer(1), ev.id, tier.id, 2, participant(1))
    assert (reg.tier_name, reg.unit_price) == ("Regular", 25000)
    assert reg.organizer_id == ORGANIZER.user_id
    await notify_payment(svc, reg)

    async with db.transaction() as tx:
        await tx.session.execute(
            update(TicketTier).where(TicketTier.id == tier.id)
            .values(unit_price=99000, name="Regular (late)")
        )

    stats = await svc.registrations.event_statistics(ev.id)
    assert stats["tiers"][0]["unit_price"] == 99000
    assert stats["tiers"][0]["revenue"] == 50000
    assert stats["total_revenue"] == 50000

    seen = []
    real = svc.payments.adapter.create_intent

    async def recording(req):
        seen.append(req)
        return await real(req)

    monkeypatch.setattr(svc.payments.adapter, "create_intent", recording)
    other, _ = await svc.registrations.create(
        buyer(2), ev.id, tier.id, 1, participant(2))
    assert other.unit_price == 99000

    # an intent rebuilt for the first order still bills the original price
    async with db.transaction() as tx:
        await tx.session.execute(
            update(TicketTier).where(TicketTier.id == tier.id)
            .values(unit_price=5000)
        )
    await svc.payments.create_payment_intent(other.id)
    item = seen[-1].items[0]
    assert item["price"] == 99000
    assert item["price"] * item["quantity"] == seen[-1].gross_amount
