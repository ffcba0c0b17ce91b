import asyncio
from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace

import httpx
import pytest
import stripe
from sqlalchemy.exc import OperationalError

from app.main import process_refunds_once, refund_worker
from app.models import Payment, RefundRequest
from app.services.order_service import OrderService
from app.services.refund_service import RefundService
from app.utils.dates import utcnow
from tests.helpers import actor_for, place_order


def refunds_with(db, notifier, handler):
    return RefundService(db, notifier=notifier, transport=httpx.MockTransport(handler))


def provider_down(request):
    raise httpx.ConnectTimeout("timed out", request=request)


def wompi_voided(request):
    return httpx.Response(200, json={"data": {"status": "VOIDED"}})


@pytest.fixture
async def paid_order(db, notifier, customer, menu):
    order = await place_order(db, notifier, customer, menu)
    payment = Payment(
        order_id=order.id, user_id=customer.id, amount=order.total, currency="COP",
        method="card", provider="wompi", status="completed",
        reference="QK-PAID-WOMPI", transaction_id="1234-1610641025-49201"
    )
    order.payment_status = "completed"
    db.add(payment)
    db.commit()
    return order


async def cancel_with(db, notifier, order, actor, refunds):
    service = OrderService(db, notifier=notifier, refund_service=refunds)
    return await service.cancel(order.id, actor, reason="Restaurante cerrado")


async def test_failed_attempt_keeps_cancellation_and_schedules_retry(db, notifier, owner, paid_order):
    before = utcnow()
    order = await cancel_with(db, notifier, paid_order, actor_for(owner), refunds_with(db, notifier, provider_down))

    assert order.status == "cancelled"
    assert order.payment_status == "completed"

    refund = db.query(RefundRequest).one()
    assert refund.status == "pending"
    assert refund.attempts == 1
    assert "Timeout" in refund.last_error
    assert refund.amount == Decimal("43500")
    assert refund.next_attempt_at >= before + timedelta(seconds=300)


async def test_retries_follow_backoff_until_failed(db, notifier, owner, paid_order):
    refunds = refunds_with(db, notifier, provider_down)
    await cancel_with(db, notifier, paid_order, actor_for(owner), refunds)
    refund = db.query(RefundRequest).one()

    # todavía no vence
    assert await refunds.process_due_refunds() == {"processed": 0, "completed": 0, "failed": 0, "pending": 0}

    second_try = refund.next_attempt_at + timedelta(seconds=1)
    summary = await refunds.process_due_refunds(now=second_try)
    assert summary == {"processed": 1, "completed": 0, "failed": 0, "pending": 1}
    assert refund.attempts == 2
    assert refund.next_attempt_at >= utcnow() + timedelta(seconds=1790)

    summary = await refunds.process_due_refunds(now=refund.next_attempt_at + timedelta(seconds=1))
    assert summary["failed"] == 1
    assert refund.status == "failed"
    assert refund.attempts == 3
    assert refund.next_attempt_at is None

    payment = db.query(Payment).one()
    assert payment.status == "completed"


async def test_retry_succeeds_and_refunds_payment(db, notifier, bus, owner, paid_order):
    await cancel_with(db, notifier, paid_order, actor_for(owner), refunds_with(db, notifier, provider_down))
    refund = db.query(RefundRequest).one()

    calls = []

    def handler(request):
        calls.append(request.url.path)
        return wompi_voided(request)

    summary = await refunds_with(db, notifier, handler).process_due_refunds(
        now=refund.next_attempt_at + timedelta(seconds=1)
    )

    assert summary["completed"] == 1
    assert calls == ["/v1/transactions/1234-1610641025-49201/void"]
    assert refund.status == "completed"
    assert refund.completed_at is not None
    payment = db.query(Payment).one()
    assert payment.status == "refunded"
    assert payment.refund_amount == Decimal("43500")
    assert payment.refund_reason == "Restaurante cerrado"
    db.refresh(paid_order)
    assert paid_order.payment_status == "refunded"
    rooms, _, payload = bus.named("payment_status_updated")[-1]
    assert payload["previousStatus"] == "completed"
    assert payload["newStatus"] == "refunded"


async def test_request_refund_is_idempotent(db, notifier, paid_order):
    refunds = refunds_with(db, notifier, provider_down)
    payment = db.query(Payment).one()

    first = refunds.request_refund(paid_order, payment, "duplicado")
    second = refunds.request_refund(paid_order, payment, "duplicado")
    assert first.id == second.id
    assert db.query(RefundRequest).count() == 1


async def test_stripe_refund_uses_payment_intent(db, notifier, customer, menu, monkeypatch):
    order = await place_order(db, notifier, customer, menu)
    payment = Payment(
        order_id=order.id, user_id=customer.id, amount=order.total, currency="COP",
        method="card", provider="stripe", status="completed",
        reference="QK-PAID-STRIPE", transaction_id="pi_3Quiklii"
    )
    order.payment_status = "completed"
    db.add(payment)
    db.commit()

    seen = {}

    def create(**kwargs):
        seen.update(kwargs)
        return SimpleNamespace(id="re_1", status="succeeded", amount=kwargs["amount"])

    monkeypatch.setattr(stripe.Refund, "create", create)

    refunds = refunds_with(db, notifier, provider_down)
    refund = refunds.request_refund(order, payment, "prueba")
    await refunds.attempt(refund)

    assert seen == {"payment_intent": "pi_3Quiklii", "amount": 4350000, "api_key": "sk_test_quiklii"}
    assert refund.status == "completed"
    assert payment.provider_payload == {"id": "re_1", "status": "succeeded", "amount": 4350000}


async def test_stripe_error_keeps_refund_pending(db, notifier, customer, menu, monkeypatch):
    order = await place_order(db, notifier, customer, menu)
    payment = Payment(
        order_id=order.id, user_id=customer.id, amount=order.total, currency="COP",
        method="card", provider="stripe", status="completed",
        reference="QK-PAID-STRIPE", transaction_id="pi_3Quiklii"
    )
    db.add(payment)
    db.commit()

    def create(**kwargs):
        raise stripe.APIConnectionError("Could not connect to Stripe")

    monkeypatch.setattr(stripe.Refund, "create", create)

    refunds = refunds_with(db, notifier, provider_down)
    refund = refunds.request_refund(order, payment, "prueba")
    await refunds.attempt(refund)

    assert refund.status == "pending"
    assert refund.attempts == 1
    assert "Could not connect" in refund.last_error
    assert payment.status == "completed"


# ============================================
# TAREA PERIÓDICA
# ============================================

async def test_refund_worker_survives_database_errors(session_factory, monkeypatch):
    calls = []

    async def flaky(self, now=None):
        calls.append(now)
        if len(calls) == 1:
            raise OperationalError("SELECT refund_requests", {}, Exception("database is locked"))
        return {"processed": 0, "completed": 0, "failed": 0, "pending": 0}

    monkeypatch.setattr(RefundService, "process_due_refunds", flaky)

    worker = asyncio.create_task(refund_worker(0, session_factory))
    for _ in range(100):
        if len(calls) >= 3:
            break
        await asyncio.sleep(0)

    assert len(calls) >= 3
    assert not worker.done()
    worker.cancel()
    with pytest.raises(asyncio.CancelledError):
        await worker


async def test_single_cycle_reports_summary_or_none(session_factory, monkeypatch):
    async def broken(self, now=None):
        raise RuntimeError("sin conexión")

    assert await process_refunds_once(session_factory) == {
        "processed": 0, "completed": 0, "failed": 0, "pending": 0
    }
    monkeypatch.setattr(RefundService, "process_due_refunds", broken)
    assert await process_refunds_once(session_factory) is None
