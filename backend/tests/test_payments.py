"""
Payment reconciliation: exactly-once Paid transition, gateway events and
post-commit fan-out.
"""

import asyncio
import json
from decimal import Decimal

import pytest
from sqlalchemy import select

from backend.app.core.exceptions import ExternalServiceError, InvalidTransitionError, StateConflictError
from backend.app.domain.auction.winner_resolver import WinnerResolver
from backend.app.domain.bidding.bid_evaluator import BidEvaluator
from backend.app.domain.payments.payment_reconciler import (
    ADMIN_CHANNEL,
    INVOICE_PAID_EVENT,
    PaymentReconciler,
)
from backend.app.models.billing_enums import InvoiceStatus, ReconcileOutcome
from backend.app.models.dlq import DeadLetterQueue, DLQStatus
from backend.app.models.enums import UserRole
from backend.app.models.invoice import Invoice
from backend.app.models.notification import DeliveryStatus, Notification, NotificationKind
from backend.app.services.notification_service import DELIVERY_TASK, NotificationService


@pytest.fixture
def reconciler(publisher, notifier, documents, gateway):
    return PaymentReconciler(publisher, NotificationService(notifier), documents, gateway=gateway)


@pytest.fixture
async def admin(make_user):
    return await make_user(role=UserRole.ADMIN)


@pytest.fixture
async def unpaid_invoice(session_factory, publisher, notifier, make_user, make_auction, make_item):
    """A closed auction with one invoice (132.00) owed by the returned buyer."""
    buyer = await make_user()
    auction = await make_auction()
    item = await make_item(auction, base_price="100", premium="10", tax="20")

    evaluator = BidEvaluator(publisher, NotificationService(notifier))
    async with session_factory() as session:
        await evaluator.place_bid(session, item.id, buyer.id, Decimal("100"))
    async with session_factory() as session:
        result = await WinnerResolver().close_auction(session, auction.id)

    publisher.events.clear()
    return buyer, result.invoices[0]


async def _notifications(session, user_id, kind=NotificationKind.PAYMENT_RECEIPT):
    result = await session.execute(
        select(Notification)
        .where(Notification.user_id == user_id, Notification.kind == kind)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


def _event(event_type, obj, event_id="evt_1"):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


@pytest.mark.asyncio
async def test_reconcile_marks_paid_and_fans_out(
    db_session, reconciler, publisher, notifier, documents, admin, unpaid_invoice
):
    buyer, invoice = unpaid_invoice

    result = await reconciler.reconcile(db_session, invoice_id=invoice.id)

    assert result.outcome == ReconcileOutcome.APPLIED
    assert result.invoice.status == InvoiceStatus.PAID
    assert result.invoice.paid_at is not None

    assert notifier.kinds_for(buyer.id) == [NotificationKind.PAYMENT_RECEIPT.value]
    assert notifier.kinds_for(admin.id) == [NotificationKind.ADMIN_INVOICE_PAID.value]
    assert publisher.on(f"user-{buyer.id}")[0][0] == INVOICE_PAID_EVENT
    assert publisher.on(ADMIN_CHANNEL)[0][1]["invoiceId"] == invoice.id
    assert documents.rendered[0][0] == "invoice-receipt"
    assert documents.rendered[0][1]["total_amount"] == "132.00"


@pytest.mark.asyncio
async def test_duplicate_confirmations_apply_once(
    session_factory, reconciler, notifier, admin, unpaid_invoice
):
    buyer, invoice = unpaid_invoice

    async def confirm():
        async with session_factory() as session:
            return await reconciler.reconcile(session, invoice_id=invoice.id)

    results = await asyncio.gather(*(confirm() for _ in range(5)))

    outcomes = [r.outcome for r in results]
    assert outcomes.count(ReconcileOutcome.APPLIED) == 1
    assert outcomes.count(ReconcileOutcome.ALREADY_APPLIED) == 4
    assert len({r.invoice.paid_at for r in results}) == 1

    assert notifier.kinds_for(buyer.id) == [NotificationKind.PAYMENT_RECEIPT.value]
    async with session_factory() as session:
        receipts = await _notifications(session, buyer.id)
    assert len(receipts) == 1
    assert receipts[0].status == DeliveryStatus.SENT


@pytest.mark.asyncio
async def test_cancelled_invoice_cannot_be_paid(db_session, reconciler, unpaid_invoice):
    _, invoice = unpaid_invoice

    cancelled = await reconciler.cancel_invoice(db_session, invoice.id)
    assert cancelled.status == InvoiceStatus.CANCELLED
    assert cancelled.cancelled_at is not None

    with pytest.raises(InvalidTransitionError):
        await reconciler.reconcile(db_session, invoice_id=invoice.id)


@pytest.mark.asyncio
async def test_paid_invoice_cannot_be_cancelled(db_session, reconciler, unpaid_invoice):
    _, invoice = unpaid_invoice
    await reconciler.reconcile(db_session, invoice_id=invoice.id)

    with pytest.raises(InvalidTransitionError):
        await reconciler.cancel_invoice(db_session, invoice.id)


@pytest.mark.asyncio
async def test_notifier_failure_keeps_payment_and_is_retried(
    db_session, reconciler, notifier, unpaid_invoice
):
    buyer, invoice = unpaid_invoice
    notifier.fail = True

    result = await reconciler.reconcile(db_session, invoice_id=invoice.id)

    assert result.outcome == ReconcileOutcome.APPLIED
    stored = await reconciler.get_invoice(db_session, invoice.id)
    assert stored.status == InvoiceStatus.PAID

    [receipt] = await _notifications(db_session, buyer.id)
    assert receipt.status == DeliveryStatus.FAILED
    assert receipt.attempts == 1
    dead = (await db_session.execute(
        select(DeadLetterQueue).where(DeadLetterQueue.task_name == DELIVERY_TASK)
    )).scalar_one()
    assert dead.status == DLQStatus.FAILED
    assert dead.payload["notification_id"] == receipt.id

    notifier.fail = False
    sent = await NotificationService(notifier).retry_failed(db_session)

    assert sent == 1
    assert notifier.kinds_for(buyer.id) == [NotificationKind.PAYMENT_RECEIPT.value]
    [receipt] = await _notifications(db_session, buyer.id)
    assert receipt.status == DeliveryStatus.SENT
    await db_session.refresh(dead)
    assert dead.status == DLQStatus.PROCESSED
    assert dead.retry_count == 1

    # A second retry finds nothing to send
    assert await NotificationService(notifier).retry_failed(db_session) == 0


@pytest.mark.asyncio
async def test_document_and_publish_failures_do_not_block(
    db_session, reconciler, publisher, documents, unpaid_invoice
):
    _, invoice = unpaid_invoice
    publisher.fail = True
    documents.fail = True

    result = await reconciler.reconcile(db_session, invoice_id=invoice.id)

    assert result.outcome == ReconcileOutcome.APPLIED
    dead = (await db_session.execute(select(DeadLetterQueue))).scalars().all()
    # Real-time events are best-effort and never dead-lettered
    assert [d.task_name for d in dead] == ["receipt_document"]


@pytest.mark.asyncio
async def test_equivalent_gateway_events_reconcile_once(db_session, reconciler, notifier, unpaid_invoice):
    buyer, invoice = unpaid_invoice

    checkout = _event("checkout.session.completed", {
        "id": "cs_1",
        "payment_status": "paid",
        "payment_intent": "pi_1",
        "metadata": {"invoiceId": str(invoice.id), "invoiceNumber": invoice.invoice_number},
    })
    charge = _event("charge.succeeded", {
        "id": "ch_1",
        "payment_intent": "pi_1",
        "metadata": {"invoiceNumber": invoice.invoice_number},
    }, event_id="evt_2")

    first = await reconciler.reconcile_event(db_session, checkout)
    second = await reconciler.reconcile_event(db_session, charge)

    assert first.outcome == ReconcileOutcome.APPLIED
    assert first.invoice.checkout_session_id == "cs_1"
    assert first.invoice.payment_intent_id == "pi_1"
    assert second.outcome == ReconcileOutcome.ALREADY_APPLIED
    assert notifier.kinds_for(buyer.id) == [NotificationKind.PAYMENT_RECEIPT.value]


@pytest.mark.asyncio
async def test_unrelated_and_unpaid_events_are_ignored(db_session, reconciler, unpaid_invoice):
    _, invoice = unpaid_invoice
    metadata = {"invoiceId": str(invoice.id)}

    assert await reconciler.reconcile_event(
        db_session, _event("customer.created", {"id": "cus_1", "metadata": metadata})
    ) is None
    assert await reconciler.reconcile_event(
        db_session, _event("checkout.session.completed", {"id": "cs_1", "payment_status": "unpaid", "metadata": metadata})
    ) is None
    assert await reconciler.reconcile_event(
        db_session, _event("charge.succeeded", {"id": "ch_1", "metadata": {"invoiceId": "9999"}})
    ) is None

    stored = await reconciler.get_invoice(db_session, invoice.id)
    assert stored.status == InvoiceStatus.UNPAID


@pytest.mark.asyncio
async def test_payment_intent_event_is_correlated_through_gateway(
    db_session, reconciler, gateway, unpaid_invoice
):
    _, invoice = unpaid_invoice
    gateway.intents["pi_9"] = {
        "id": "pi_9",
        "status": "succeeded",
        "metadata": {"invoiceNumber": invoice.invoice_number},
    }

    result = await reconciler.reconcile_event(
        db_session, _event("payment_intent.succeeded", {"id": "pi_9", "metadata": {}})
    )

    assert gateway.lookups == ["pi_9"]
    assert result.outcome == ReconcileOutcome.APPLIED
    assert result.invoice.payment_intent_id == "pi_9"


@pytest.mark.asyncio
async def test_event_matched_by_stored_payment_intent(db_session, reconciler, gateway, unpaid_invoice):
    _, invoice = unpaid_invoice
    stored = await db_session.get(Invoice, invoice.id)
    stored.payment_intent_id = "pi_stored"
    await db_session.commit()
    gateway.intents["pi_stored"] = {"id": "pi_stored", "status": "succeeded", "metadata": {}}

    result = await reconciler.reconcile_event(
        db_session, _event("charge.succeeded", {"id": "ch_2", "payment_intent": "pi_stored"})
    )

    assert result.outcome == ReconcileOutcome.APPLIED
    assert result.invoice.id == invoice.id


@pytest.mark.asyncio
async def test_gateway_lookup_failure_propagates(db_session, reconciler, unpaid_invoice):
    with pytest.raises(ExternalServiceError):
        await reconciler.reconcile_event(
            db_session, _event("payment_intent.succeeded", {"id": "pi_unknown"})
        )


@pytest.mark.asyncio
async def test_stripe_webhook_endpoint(client, unpaid_invoice):
    _, invoice = unpaid_invoice
    body = json.dumps(_event("checkout.session.completed", {
        "id": "cs_1",
        "payment_status": "paid",
        "metadata": {"invoiceId": str(invoice.id)},
    }))

    response = await client.post("/v1/webhooks/stripe", content=body, headers={"Stripe-Signature": "forged"})
    assert response.status_code == 400

    response = await client.post("/v1/webhooks/stripe", content=body, headers={"Stripe-Signature": "valid"})
    assert response.status_code == 200
    assert response.json() == {"received": True, "outcome": "Applied", "invoice_id": invoice.id}

    response = await client.post("/v1/webhooks/stripe", content=body, headers={"Stripe-Signature": "valid"})
    assert response.status_code == 200
    assert response.json()["outcome"] == "AlreadyApplied"

    unrelated = json.dumps(_event("customer.created", {"id": "cus_1"}))
    response = await client.post("/v1/webhooks/stripe", content=unrelated, headers={"Stripe-Signature": "valid"})
    assert response.status_code == 200
    assert response.json()["outcome"] is None


@pytest.mark.asyncio
async def test_webhook_for_cancelled_invoice_is_acknowledged(client, auth_headers, admin, unpaid_invoice):
    _, invoice = unpaid_invoice

    response = await client.post(f"/v1/admin/invoices/{invoice.id}/cancel", headers=auth_headers(admin))
    assert response.status_code == 200
    assert response.json()["status"] == "Cancelled"

    body = json.dumps(_event("charge.succeeded", {"id": "ch_1", "metadata": {"invoiceId": str(invoice.id)}}))
    response = await client.post("/v1/webhooks/stripe", content=body, headers={"Stripe-Signature": "valid"})
    assert response.status_code == 200
    assert response.json()["outcome"] is None


@pytest.mark.asyncio
async def test_invoice_endpoints(client, auth_headers, gateway, make_user, admin, unpaid_invoice):
    buyer, invoice = unpaid_invoice
    stranger = await make_user()

    response = await client.get(f"/v1/invoices/{invoice.id}", headers=auth_headers(buyer))
    assert response.status_code == 200
    assert Decimal(response.json()["total_amount"]) == Decimal("132")
    assert len(response.json()["line_items"]) == 1

    response = await client.get(f"/v1/invoices/{invoice.id}", headers=auth_headers(stranger))
    assert response.status_code == 403

    # Owner without a gateway-confirmed payment
    response = await client.post(f"/v1/invoices/{invoice.id}/mark-paid", headers=auth_headers(buyer))
    assert response.status_code == 409

    gateway.intents["pi_ok"] = {"id": "pi_ok", "status": "succeeded", "metadata": {"invoiceId": str(invoice.id)}}
    response = await client.post(
        f"/v1/invoices/{invoice.id}/mark-paid",
        json={"payment_intent_id": "pi_ok"},
        headers=auth_headers(buyer),
    )
    assert response.status_code == 200
    assert response.json()["outcome"] == "Applied"
    assert response.json()["invoice"]["status"] == "Paid"

    response = await client.post(f"/v1/invoices/{invoice.id}/mark-paid", headers=auth_headers(admin))
    assert response.status_code == 200
    assert response.json()["outcome"] == "AlreadyApplied"

    response = await client.post(f"/v1/admin/invoices/{invoice.id}/cancel", headers=auth_headers(admin))
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_notification_and_ops_endpoints(client, auth_headers, notifier, admin, unpaid_invoice):
    buyer, invoice = unpaid_invoice
    notifier.fail = True

    body = json.dumps(_event("charge.succeeded", {"id": "ch_1", "metadata": {"invoiceId": str(invoice.id)}}))
    response = await client.post("/v1/webhooks/stripe", content=body, headers={"Stripe-Signature": "valid"})
    assert response.json()["outcome"] == "Applied"

    response = await client.get("/v1/admin/ops/dlq", params={"status": "FAILED"}, headers=auth_headers(admin))
    assert response.status_code == 200
    assert {entry["task_name"] for entry in response.json()} == {DELIVERY_TASK}

    notifier.fail = False
    response = await client.post("/v1/admin/ops/notifications/retry", headers=auth_headers(admin))
    assert response.status_code == 200
    assert response.json()["retried"] == 2

    response = await client.get("/v1/notifications", params={"kind": "PAYMENT_RECEIPT"}, headers=auth_headers(buyer))
    assert response.status_code == 200
    [receipt] = response.json()
    assert receipt["kind"] == "PAYMENT_RECEIPT"
    assert receipt["status"] == "SENT"

    response = await client.patch(f"/v1/notifications/{receipt['id']}/read", headers=auth_headers(buyer))
    assert response.status_code == 200
    response = await client.get("/v1/notifications", params={"unread_only": True}, headers=auth_headers(buyer))
    assert [n["kind"] for n in response.json()] == ["INVOICE_ISSUED"]

    response = await client.patch(f"/v1/notifications/{receipt['id']}/read", headers=auth_headers(admin))
    assert response.status_code == 404

    response = await client.get("/v1/notifications", params={"kind": "OUTBID"}, headers=auth_headers(buyer))
    assert response.json() == []

    response = await client.patch("/v1/notifications/read-all", headers=auth_headers(admin))
    assert response.json() == {"updated": 1}
    response = await client.get("/v1/notifications", params={"unread_only": True}, headers=auth_headers(admin))
    assert response.json() == []


@pytest.mark.asyncio
async def test_open_payment_creates_intent_and_link_once(db_session, reconciler, gateway, unpaid_invoice):
    _, invoice = unpaid_invoice

    first = await reconciler.open_payment(db_session, invoice.id)

    assert first.payment_intent_id == "pi_test_1"
    assert first.client_secret == "pi_test_1_secret"
    assert first.payment_link == "https://pay.test/plink_test_1"
    intent = gateway.intents["pi_test_1"]
    assert intent["amount"] == 13200
    assert intent["currency"] == "gbp"
    assert intent["metadata"] == {"invoiceId": str(invoice.id), "invoiceNumber": invoice.invoice_number}

    stored = await reconciler.get_invoice(db_session, invoice.id)
    assert stored.payment_intent_id == "pi_test_1"
    assert stored.payment_link == "https://pay.test/plink_test_1"

    again = await reconciler.open_payment(db_session, invoice.id)
    assert again == first
    assert len(gateway.intents) == 1
    assert len(gateway.links) == 1
    assert gateway.lookups == ["pi_test_1"]


@pytest.mark.asyncio
async def test_paid_or_cancelled_invoices_cannot_be_opened(db_session, reconciler, gateway, unpaid_invoice):
    _, invoice = unpaid_invoice
    await reconciler.cancel_invoice(db_session, invoice.id)

    with pytest.raises(StateConflictError):
        await reconciler.open_payment(db_session, invoice.id)
    assert gateway.intents == {}


@pytest.mark.asyncio
async def test_open_payment_endpoint(client, auth_headers, gateway, make_user, unpaid_invoice):
    buyer, invoice = unpaid_invoice
    stranger = await make_user()

    response = await client.post(f"/v1/invoices/{invoice.id}/payment", headers=auth_headers(stranger))
    assert response.status_code == 403
    assert gateway.intents == {}

    response = await client.post(f"/v1/invoices/{invoice.id}/payment", headers=auth_headers(buyer))
    assert response.status_code == 200
    body = response.json()
    assert body["invoice_id"] == invoice.id
    assert body["client_secret"] == f"{body['payment_intent_id']}_secret"

    response = await client.get(f"/v1/invoices/{invoice.id}", headers=auth_headers(buyer))
    assert response.json()["payment_link"] == body["payment_link"]

    # The intent opened here later reconciles the invoice through the gateway lookup
    gateway.intents[body["payment_intent_id"]]["status"] = "succeeded"
    response = await client.post(
        f"/v1/invoices/{invoice.id}/mark-paid",
        json={"payment_intent_id": body["payment_intent_id"]},
        headers=auth_headers(buyer),
    )
    assert response.json()["outcome"] == "Applied"
