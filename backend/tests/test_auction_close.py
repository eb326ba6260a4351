"""
Winner resolution and invoice consolidation at auction close.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from backend.app.core.exceptions import InvalidTransitionError, StateConflictError
from backend.app.domain.auction.winner_resolver import WinnerResolver
from backend.app.domain.bidding.bid_evaluator import BidEvaluator
from backend.app.domain.billing.invoice_consolidator import InvoiceConsolidator
from backend.app.domain.billing.numbering import (
    ensure_sequences,
    next_invoice_number,
    next_settlement_reference,
)
from backend.app.models.auction import Auction
from backend.app.models.auction_enums import AuctionStatus
from backend.app.models.auction_item import AuctionItem
from backend.app.models.enums import UserRole
from backend.app.models.invoice import Invoice, InvoiceLineItem
from backend.app.models.notification import DeliveryStatus, Notification, NotificationKind
from backend.app.services.notification_service import NotificationService


@pytest.fixture
def place_bid(session_factory, publisher, notifier):
    evaluator = BidEvaluator(publisher, NotificationService(notifier))

    async def _place_bid(item, bidder, amount):
        async with session_factory() as session:
            return await evaluator.place_bid(session, item.id, bidder.id, Decimal(amount))

    return _place_bid


@pytest.fixture
def resolver():
    return WinnerResolver()


async def _invoice_count(session):
    return (await session.execute(select(func.count(Invoice.id)))).scalar_one()


@pytest.mark.asyncio
async def test_close_consolidates_one_invoice_per_winner(
    db_session, resolver, place_bid, make_user, make_auction, make_item
):
    alice = await make_user()
    bob = await make_user()
    seller = await make_user(role=UserRole.SELLER)
    auction = await make_auction()
    vase = await make_item(auction, seller=seller, base_price="100", premium="10", tax="20")
    clock = await make_item(auction, seller=seller, base_price="300", premium="10", tax="20")
    lamp = await make_item(auction, seller=seller, base_price="50")
    unsold = await make_item(auction, seller=seller, base_price="80")

    await place_bid(vase, alice, "100")
    await place_bid(clock, alice, "300")
    await place_bid(lamp, bob, "50")

    result = await resolver.close_auction(db_session, auction.id)

    assert result.already_closed is False
    assert sorted(result.winner_set.winners) == [alice.id, bob.id]
    assert result.winner_set.item_count == 3
    assert len(result.invoices) == 2

    by_user = {invoice.user_id: invoice for invoice in result.invoices}
    alice_invoice = by_user[alice.id]
    assert alice_invoice.subtotal == Decimal("400.00")
    assert alice_invoice.total_amount == Decimal("528.00")
    assert sorted(line.line_total for line in alice_invoice.line_items) == [
        Decimal("132.00"), Decimal("396.00")
    ]
    assert by_user[bob.id].total_amount == Decimal("50.00")
    assert alice_invoice.invoice_number != by_user[bob.id].invoice_number
    assert alice_invoice.invoice_number.startswith("INV-")

    items = {
        item.id: item
        for item in (await db_session.execute(
            select(AuctionItem).execution_options(populate_existing=True)
        )).scalars().all()
    }
    assert items[vase.id].is_sold and items[vase.id].sold_price == Decimal("100.00")
    assert items[clock.id].winner_id == alice.id
    assert items[unsold.id].is_sold is False
    assert items[unsold.id].sold_price is None

    closed = await db_session.get(Auction, auction.id)
    await db_session.refresh(closed)
    assert closed.status == AuctionStatus.CLOSED
    assert closed.closed_at is not None


@pytest.mark.asyncio
async def test_closing_twice_returns_the_same_result(
    db_session, resolver, place_bid, make_user, make_auction, make_item
):
    alice = await make_user()
    auction = await make_auction()
    item = await make_item(auction, base_price="20")
    await place_bid(item, alice, "20")

    first = await resolver.close_auction(db_session, auction.id)
    second = await resolver.close_auction(db_session, auction.id)

    assert second.already_closed is True
    assert [i.id for i in second.invoices] == [i.id for i in first.invoices]
    assert second.winner_set.item_count == 1
    assert await _invoice_count(db_session) == 1


@pytest.mark.asyncio
async def test_repeat_close_reports_invoiced_amounts(
    db_session, session_factory, resolver, place_bid, make_user, make_auction, make_item
):
    alice = await make_user()
    auction = await make_auction()
    item = await make_item(auction, base_price="100", premium="10", tax="20")
    await place_bid(item, alice, "100")

    first = await resolver.close_auction(db_session, auction.id)
    [won] = first.winner_set.winners[alice.id].items
    assert (won.premium, won.line_total) == (Decimal("10.00"), Decimal("132.00"))

    async with session_factory() as session:
        stored = await session.get(AuctionItem, item.id)
        stored.buyers_premium_percent = Decimal("50")
        await session.commit()

    second = await resolver.close_auction(db_session, auction.id)
    [again] = second.winner_set.winners[alice.id].items

    assert second.already_closed is True
    assert again == won
    assert second.winner_set.winners[alice.id].total_amount == Decimal("132.00")
    assert (await resolver.winners(db_session, auction.id)).winners[alice.id].items == [won]


@pytest.mark.asyncio
async def test_close_notifies_each_winner_of_their_invoice(
    db_session, notifier, place_bid, make_user, make_auction, make_item
):
    alice = await make_user()
    bob = await make_user()
    auction = await make_auction()
    await place_bid(await make_item(auction, base_price="100"), alice, "100")
    await place_bid(await make_item(auction, base_price="40"), alice, "40")
    await place_bid(await make_item(auction, base_price="60"), bob, "60")
    resolver = WinnerResolver(notifications=NotificationService(notifier))

    result = await resolver.close_auction(db_session, auction.id)
    await resolver.close_auction(db_session, auction.id)

    issued = NotificationKind.INVOICE_ISSUED.value
    assert notifier.kinds_for(alice.id) == [issued]
    assert notifier.kinds_for(bob.id) == [issued]
    by_user = {invoice.user_id: invoice for invoice in result.invoices}
    [(_, _, payload)] = [sent for sent in notifier.sent if sent[0] == alice.id]
    assert payload["invoiceNumber"] == by_user[alice.id].invoice_number
    assert payload["totalAmount"] == "140.00"

    rows = (await db_session.execute(
        select(Notification)
        .where(Notification.kind == NotificationKind.INVOICE_ISSUED)
        .execution_options(populate_existing=True)
    )).scalars().all()
    assert sorted(row.user_id for row in rows) == [alice.id, bob.id]
    assert all(row.status == DeliveryStatus.SENT for row in rows)


@pytest.mark.asyncio
async def test_invoice_notices_wait_in_outbox_without_a_notifier(
    db_session, resolver, place_bid, make_user, make_auction, make_item
):
    alice = await make_user()
    auction = await make_auction()
    await place_bid(await make_item(auction, base_price="10"), alice, "10")

    await resolver.close_auction(db_session, auction.id)

    [row] = (await db_session.execute(
        select(Notification).where(Notification.user_id == alice.id)
    )).scalars().all()
    assert row.kind == NotificationKind.INVOICE_ISSUED
    assert row.status == DeliveryStatus.PENDING


@pytest.mark.asyncio
async def test_concurrent_closes_produce_one_set_of_invoices(
    session_factory, resolver, place_bid, make_user, make_auction, make_item
):
    alice = await make_user()
    bob = await make_user()
    auction = await make_auction()
    first_item = await make_item(auction, base_price="10")
    second_item = await make_item(auction, base_price="10")
    await place_bid(first_item, alice, "10")
    await place_bid(second_item, bob, "10")

    async def close():
        async with session_factory() as session:
            return await resolver.close_auction(session, auction.id)

    results = await asyncio.gather(close(), close(), close())

    assert sum(1 for r in results if not r.already_closed) == 1
    assert all(len(r.invoices) == 2 for r in results)
    async with session_factory() as session:
        assert await _invoice_count(session) == 2


@pytest.mark.asyncio
async def test_close_without_bids_yields_empty_winner_set(db_session, resolver, make_auction, make_item):
    auction = await make_auction()
    await make_item(auction)

    result = await resolver.close_auction(db_session, auction.id)

    assert result.winner_set.is_empty
    assert result.invoices == []
    assert await _invoice_count(db_session) == 0


@pytest.mark.asyncio
async def test_reserve_not_met_is_reported(db_session, resolver, place_bid, make_user, make_auction, make_item):
    alice = await make_user()
    auction = await make_auction()
    item = await make_item(auction, base_price="100", reserve_price="500")
    await place_bid(item, alice, "100")

    result = await resolver.close_auction(db_session, auction.id)

    won = result.winner_set.winners[alice.id].items[0]
    assert won.reserve_met is False
    assert won.hammer == Decimal("100.00")


@pytest.mark.asyncio
async def test_close_requires_live_or_ended(db_session, resolver, make_auction):
    now = datetime.now(timezone.utc)
    upcoming = await make_auction(
        status=AuctionStatus.UPCOMING,
        start_at=now + timedelta(hours=1),
        end_at=now + timedelta(hours=2),
    )
    with pytest.raises(StateConflictError):
        await resolver.close_auction(db_session, upcoming.id)

    cancelled = await make_auction(status=AuctionStatus.CANCELLED)
    with pytest.raises(InvalidTransitionError):
        await resolver.close_auction(db_session, cancelled.id)

    lapsed = await make_auction(
        status=AuctionStatus.UPCOMING,
        start_at=now - timedelta(hours=2),
        end_at=now - timedelta(hours=1),
    )
    result = await resolver.close_auction(db_session, lapsed.id)
    assert result.already_closed is False


@pytest.mark.asyncio
async def test_provisional_winners_for_open_auction(db_session, resolver, place_bid, make_user, make_auction, make_item):
    alice = await make_user()
    bob = await make_user()
    auction = await make_auction()
    item = await make_item(auction, base_price="10")
    await place_bid(item, alice, "10")
    await place_bid(item, bob, "12")

    winners = await resolver.winners(db_session, auction.id)

    assert winners.is_final is False
    assert list(winners.winners) == [bob.id]


@pytest.mark.asyncio
async def test_generate_invoices_requires_closed_auction(db_session, resolver, place_bid, make_user, make_auction, make_item):
    alice = await make_user()
    auction = await make_auction()
    item = await make_item(auction, base_price="10")
    await place_bid(item, alice, "10")

    with pytest.raises(StateConflictError):
        await resolver.generate_invoices(db_session, auction.id)

    closed = await resolver.close_auction(db_session, auction.id)
    again = await resolver.generate_invoices(db_session, auction.id)
    assert [i.id for i in again] == [i.id for i in closed.invoices]


@pytest.mark.asyncio
async def test_item_invoice_for_sold_item(db_session, make_user, make_auction, make_item):
    buyer = await make_user()
    auction = await make_auction(status=AuctionStatus.CLOSED)
    item = await make_item(auction, base_price="100", premium="10", tax="20")
    unsold = await make_item(auction, base_price="100")

    stored = await db_session.get(AuctionItem, item.id)
    stored.is_sold = True
    stored.sold_price = Decimal("100")
    stored.winner_id = buyer.id
    await db_session.commit()

    consolidator = InvoiceConsolidator()
    invoice = await consolidator.generate_item_invoice(db_session, item.id)

    assert invoice.auction_id is None
    assert invoice.item_id == item.id
    assert invoice.user_id == buyer.id
    assert invoice.bid_amount == Decimal("100.00")
    assert invoice.buyers_premium == Decimal("10.00")
    assert invoice.tax_amount == Decimal("22.00")
    assert invoice.total_amount == Decimal("132.00")
    assert invoice.line_items == []

    again = await consolidator.generate_item_invoice(db_session, item.id)
    assert again.id == invoice.id

    with pytest.raises(StateConflictError):
        await consolidator.generate_item_invoice(db_session, unsold.id)


@pytest.mark.asyncio
async def test_item_invoice_returns_consolidated_invoice(db_session, resolver, place_bid, make_user, make_auction, make_item):
    alice = await make_user()
    auction = await make_auction()
    item = await make_item(auction, base_price="10")
    await place_bid(item, alice, "10")
    closed = await resolver.close_auction(db_session, auction.id)

    invoice = await InvoiceConsolidator().generate_item_invoice(db_session, item.id)

    assert invoice.id == closed.invoices[0].id
    lines = (await db_session.execute(select(InvoiceLineItem))).scalars().all()
    assert len(lines) == 1


@pytest.mark.asyncio
async def test_close_and_winner_endpoints(client, auth_headers, place_bid, make_user, make_auction, make_item):
    admin = await make_user(role=UserRole.ADMIN)
    alice = await make_user()
    auction = await make_auction()
    item = await make_item(auction, base_price="100", premium="10", tax="20")
    await place_bid(item, alice, "100")

    response = await client.post(f"/v1/admin/auctions/{auction.id}/close", headers=auth_headers(alice))
    assert response.status_code == 403

    response = await client.post(f"/v1/admin/auctions/{auction.id}/close", headers=auth_headers(admin))
    assert response.status_code == 200
    data = response.json()
    assert data["already_closed"] is False
    assert len(data["invoices"]) == 1
    assert Decimal(data["invoices"][0]["total_amount"]) == Decimal("132")
    assert data["winner_set"]["winners"][0]["bidder_id"] == alice.id

    response = await client.post(f"/v1/admin/auctions/{auction.id}/close", headers=auth_headers(admin))
    assert response.status_code == 200
    assert response.json()["already_closed"] is True
    assert response.json()["invoices"][0]["id"] == data["invoices"][0]["id"]

    response = await client.get(f"/v1/auctions/{auction.id}/winners", headers=auth_headers(alice))
    assert response.status_code == 200
    winners = response.json()
    assert winners["is_final"] is True
    assert winners["winners"][0]["items"][0]["item_id"] == item.id

    response = await client.get("/v1/auctions/9999/winners", headers=auth_headers(alice))
    assert response.status_code == 404

    response = await client.get(
        "/v1/admin/ops/audit",
        params={"entity_type": "auction", "entity_id": auction.id},
        headers=auth_headers(admin),
    )
    assert response.status_code == 200
    actions = [entry["action"] for entry in response.json()]
    assert sorted(actions) == ["AUCTION_CLOSED", "INVOICES_GENERATED"]

    response = await client.get("/v1/admin/ops/audit", headers=auth_headers(alice))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_invoice_numbers_restart_each_year(db_session):
    december = datetime(2026, 12, 31, 23, 0, tzinfo=timezone.utc)
    january = datetime(2027, 1, 1, 0, 30, tzinfo=timezone.utc)

    await ensure_sequences(db_session, now=december)
    assert await next_invoice_number(db_session, december) == "INV-2026-000001"
    assert await next_invoice_number(db_session, december) == "INV-2026-000002"
    assert await next_invoice_number(db_session, january) == "INV-2027-000001"
    assert await next_settlement_reference(db_session, january) == "SET-2027-0001"
