from datetime import datetime, timedelta
from decimal import Decimal

import httpx
import pytest
from sqlalchemy.exc import IntegrityError

from rallio.database.models import AuditEvent, Reservation
from rallio.database.payment_models import Payment, PaymentLock, ProcessedWebhookEvent
from rallio.errors import GatewayError, ReservationIntegrityError
from rallio.services import payment_service
from rallio.services.audit_service import status_history
from rallio.services.lock_service import DatabaseLockBackend, payment_charge_key
from rallio.services.payment_service import handle_webhook, parse_event
from rallio.services.paymongo_client import PayMongoClient
from tests.helpers import (
    MONDAY,
    FakeGateway,
    at,
    make_payment,
    make_reservation,
    webhook_body,
)


def _transitions(db, reservation_id):
    return [(h.from_status, h.to_status) for h in status_history(db, reservation_id)]


@pytest.fixture
def reservation(db, court, player):
    return make_reservation(db, court, player, at(MONDAY, 9), at(MONDAY, 11), status="pending_payment")


@pytest.fixture
def payment(db, reservation):
    return make_payment(db, reservation)


def chargeable(event_id="evt_src_1", source_id="src_test_1"):
    return webhook_body("source.chargeable", source_id, {"amount": 60000, "status": "chargeable"}, event_id=event_id)


def paid(event_id="evt_pay_1", amount=60000, reference="RLO-TEST0001"):
    return webhook_body(
        "payment.paid",
        "pay_remote_1",
        {"amount": amount, "status": "paid", "metadata": {"payment_reference": reference}},
        event_id=event_id,
    )


def failed(event_id="evt_fail_1"):
    return webhook_body(
        "payment.failed",
        "pay_remote_1",
        {
            "status": "failed",
            "source": {"id": "src_test_1", "type": "gcash"},
            "failed_code": "insufficient_funds",
            "failed_message": "Not enough balance",
        },
        event_id=event_id,
    )


# =====================================
# source.chargeable
# =====================================
@pytest.mark.asyncio
async def test_chargeable_source_charges_once_and_confirms(db, reservation, payment, gateway):
    outcome = await handle_webhook(db, chargeable(), gateway)

    assert outcome.status == "processed"
    assert len(gateway.payment_calls) == 1
    assert gateway.payment_calls[0]["amount"] == 60000
    assert gateway.payment_calls[0]["source_id"] == "src_test_1"

    db.refresh(payment)
    db.refresh(reservation)
    assert payment.status == "completed"
    assert payment.external_id == "pay_fake_1"
    assert payment.paid_at is not None
    assert reservation.status == "confirmed"
    assert reservation.amount_paid == Decimal("600")
    assert reservation.confirmed_at is not None
    assert _transitions(db, reservation.id) == [
        ("pending_payment", "paid"),
        ("paid", "confirmed"),
    ]
    # the lock is released afterwards
    assert db.query(PaymentLock).count() == 0


@pytest.mark.asyncio
async def test_redelivered_chargeable_event_does_not_charge_again(db, reservation, payment, gateway):
    await handle_webhook(db, chargeable(), gateway)
    outcome = await handle_webhook(db, chargeable(), gateway)

    assert outcome.status == "duplicate"
    assert len(gateway.payment_calls) == 1
    assert db.query(ProcessedWebhookEvent).count() == 1
    assert len(_transitions(db, reservation.id)) == 2


@pytest.mark.asyncio
async def test_live_lock_skips_without_side_effects(db, reservation, payment, gateway):
    other_worker = DatabaseLockBackend(db)
    assert await other_worker.acquire(payment_charge_key(payment.id), "other-worker", 300)

    outcome = await handle_webhook(db, chargeable(), gateway)

    assert outcome.status == "skipped"
    assert gateway.payment_calls == []
    db.refresh(payment)
    assert payment.status == "pending"
    assert db.query(ProcessedWebhookEvent).count() == 0


@pytest.mark.asyncio
async def test_stale_lock_is_taken_over(db, reservation, payment, gateway):
    db.add(PaymentLock(
        lock_key=payment_charge_key(payment.id),
        owner="crashed-worker",
        acquired_at=datetime.utcnow() - timedelta(minutes=10),
        expires_at=datetime.utcnow() - timedelta(minutes=5),
    ))
    db.commit()

    outcome = await handle_webhook(db, chargeable(), gateway)

    assert outcome.status == "processed"
    assert len(gateway.payment_calls) == 1


@pytest.mark.asyncio
async def test_gateway_failure_cancels_reservation(db, reservation, payment):
    gateway = FakeGateway(fail_with=GatewayError("Payment gateway unreachable"))

    outcome = await handle_webhook(db, chargeable(), gateway)

    assert outcome.status == "failed"
    db.refresh(payment)
    db.refresh(reservation)
    assert payment.status == "failed"
    assert reservation.status == "cancelled"
    assert reservation.cancellation_reason == "Payment processing failed"
    assert reservation.meta["cancelled_by_system"] is True

    again = await handle_webhook(db, chargeable(), gateway)
    assert again.status == "duplicate"
    assert len(gateway.payment_calls) == 1


@pytest.mark.asyncio
async def test_failed_charge_status_is_a_failure(db, reservation, payment):
    gateway = FakeGateway(charge_status="failed")
    outcome = await handle_webhook(db, chargeable(), gateway)
    assert outcome.status == "failed"
    db.refresh(reservation)
    assert reservation.status == "cancelled"


@pytest.mark.asyncio
async def test_chargeable_for_failed_payment_is_not_charged(db, reservation, gateway):
    make_payment(db, reservation, status="failed")
    outcome = await handle_webhook(db, chargeable(), gateway)
    assert outcome.status == "ignored"
    assert gateway.payment_calls == []


# =====================================
# payment.paid / payment.failed
# =====================================
@pytest.mark.asyncio
async def test_payment_paid_confirms_reservation(db, reservation, payment, gateway):
    outcome = await handle_webhook(db, paid(), gateway)

    assert outcome.status == "processed"
    db.refresh(payment)
    db.refresh(reservation)
    assert payment.status == "completed"
    assert payment.external_id == "pay_remote_1"
    assert reservation.status == "confirmed"
    assert reservation.amount_paid == Decimal("600")


@pytest.mark.asyncio
async def test_out_of_order_paid_then_chargeable(db, reservation, payment, gateway):
    await handle_webhook(db, paid(), gateway)
    outcome = await handle_webhook(db, chargeable(), gateway)

    assert outcome.status == "processed"
    assert gateway.payment_calls == []
    db.refresh(reservation)
    assert reservation.status == "confirmed"
    assert _transitions(db, reservation.id) == [
        ("pending_payment", "paid"),
        ("paid", "confirmed"),
    ]


@pytest.mark.asyncio
async def test_overpayment_is_clamped_to_total(db, reservation, payment, gateway):
    await handle_webhook(db, paid(amount=90000), gateway)
    db.refresh(reservation)
    assert reservation.amount_paid == Decimal("600")


@pytest.mark.asyncio
async def test_confirmed_reservation_gets_amount_reconciled(db, court, player, gateway):
    reservation = make_reservation(
        db, court, player, at(MONDAY, 14), at(MONDAY, 15), status="confirmed", amount_paid=0
    )
    make_payment(db, reservation, status="completed")

    outcome = await handle_webhook(db, paid(), gateway)

    assert outcome.status == "processed"
    db.refresh(reservation)
    assert reservation.amount_paid == Decimal("600")
    kinds = [e.kind for e in db.query(AuditEvent).filter(AuditEvent.reservation_id == reservation.id)]
    assert "amount_reconciled" in kinds
    assert _transitions(db, reservation.id) == []


@pytest.mark.asyncio
async def test_payment_failed_cancels_reservation(db, reservation, payment, gateway):
    outcome = await handle_webhook(db, failed(), gateway)

    assert outcome.status == "failed"
    db.refresh(payment)
    db.refresh(reservation)
    assert payment.status == "failed"
    assert payment.meta["failure_code"] == "insufficient_funds"
    assert reservation.status == "cancelled"
    assert reservation.cancellation_reason == "Payment failed"


@pytest.mark.asyncio
async def test_late_failure_never_downgrades_completed_payment(db, reservation, payment, gateway):
    await handle_webhook(db, chargeable(), gateway)
    outcome = await handle_webhook(db, failed(), gateway)

    assert outcome.status == "ignored"
    db.refresh(payment)
    db.refresh(reservation)
    assert payment.status == "completed"
    assert reservation.status == "confirmed"


# =====================================
# Confirmation edge cases
# =====================================
@pytest.mark.asyncio
async def test_paid_status_rejected_falls_back_to_confirmed(db, reservation, payment, gateway, monkeypatch):
    real_change_status = payment_service.change_status

    def rejecting_paid(db_, reservation_, to_status, **kwargs):
        if to_status == "paid":
            raise IntegrityError("UPDATE reservations", {}, Exception("status check"))
        return real_change_status(db_, reservation_, to_status, **kwargs)

    monkeypatch.setattr(payment_service, "change_status", rejecting_paid)

    outcome = await handle_webhook(db, chargeable(), gateway)

    assert outcome.status == "processed"
    db.refresh(reservation)
    assert reservation.status == "confirmed"
    assert reservation.amount_paid == Decimal("600")
    assert _transitions(db, reservation.id) == [("pending_payment", "confirmed")]


@pytest.mark.asyncio
async def test_payment_for_cancelled_reservation_is_an_integrity_error(db, court, player, gateway):
    reservation = make_reservation(db, court, player, at(MONDAY, 9), at(MONDAY, 11), status="cancelled")
    payment = make_payment(db, reservation)

    with pytest.raises(ReservationIntegrityError):
        await handle_webhook(db, paid(), gateway)

    # money was recorded even though the reservation could not be confirmed
    db.refresh(payment)
    assert payment.status == "completed"
    db.refresh(reservation)
    assert reservation.status == "cancelled"

    # every redelivery surfaces the problem again
    with pytest.raises(ReservationIntegrityError):
        await handle_webhook(db, paid(), gateway)


@pytest.mark.asyncio
async def test_confirmation_failure_does_not_lead_to_second_charge(db, reservation, payment, gateway, monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr(payment_service, "change_status", broken)

    with pytest.raises(ReservationIntegrityError):
        await handle_webhook(db, chargeable(), gateway)

    monkeypatch.undo()
    db.refresh(payment)
    assert payment.status == "completed"

    # redelivery retries confirmation only
    outcome = await handle_webhook(db, chargeable(), gateway)
    assert outcome.status == "duplicate"
    assert len(gateway.payment_calls) == 1
    assert db.query(Reservation).filter(Reservation.id == payment.reservation_id).one().status == "confirmed"


# =====================================
# Routing and lookup
# =====================================
@pytest.mark.asyncio
async def test_unknown_payment_is_ignored(db, reservation, payment, gateway):
    outcome = await handle_webhook(db, chargeable(source_id="src_nobody"), gateway)
    assert outcome.status == "ignored"
    assert outcome.detail == "payment not found"


@pytest.mark.asyncio
async def test_unhandled_event_type_is_ignored(db, gateway):
    outcome = await handle_webhook(db, webhook_body("checkout_session.payment.paid", "cs_1"), gateway)
    assert outcome.status == "ignored"


@pytest.mark.asyncio
async def test_lookup_falls_back_to_reservation_id(db, reservation, payment, gateway):
    body = webhook_body(
        "payment.paid",
        "pay_unknown",
        {"amount": 60000, "metadata": {"reservation_id": str(reservation.id)}},
    )
    outcome = await handle_webhook(db, body, gateway)
    assert outcome.payment_id == payment.id


@pytest.mark.parametrize("body", [[], {}, {"data": {"id": "evt_1"}}, {"data": {"attributes": {"type": "payment.paid"}}}])
def test_malformed_envelope_is_rejected(body):
    with pytest.raises(ValueError):
        parse_event(body)


def test_reported_amount_is_converted_from_centavos():
    event = parse_event(paid(amount=12345))
    assert event.reported_amount == Decimal("123.45")
    assert event.resource_id == "pay_remote_1"


@pytest.mark.asyncio
async def test_abandoned_source_failing_leaves_paid_booking_alone(db, reservation, gateway):
    abandoned = make_payment(db, reservation, source_id="src_first", reference="RLO-FIRST")
    make_payment(db, reservation, source_id="src_second", reference="RLO-SECOND")
    await handle_webhook(db, chargeable(source_id="src_second"), gateway)

    body = webhook_body(
        "payment.failed",
        "pay_remote_9",
        {"status": "failed", "source": {"id": "src_first"}, "failed_code": "expired"},
        event_id="evt_fail_first",
    )
    outcome = await handle_webhook(db, body, gateway)

    assert outcome.status == "failed"
    db.refresh(abandoned)
    db.refresh(reservation)
    assert abandoned.status == "failed"
    assert reservation.status == "confirmed"
    assert reservation.amount_paid == Decimal("600")
    assert reservation.cancellation_reason is None


@pytest.mark.asyncio
async def test_failure_with_completed_sibling_keeps_pending_reservation(db, court, player, gateway):
    reservation = make_reservation(db, court, player, at(MONDAY, 14), at(MONDAY, 15), status="pending")
    make_payment(db, reservation, status="completed", source_id="src_done", reference="RLO-DONE")
    make_payment(db, reservation, source_id="src_first", reference="RLO-FIRST")

    body = webhook_body("payment.failed", "pay_x", {"source": {"id": "src_first"}}, event_id="evt_fail_2")
    await handle_webhook(db, body, gateway)

    db.refresh(reservation)
    assert reservation.status == "pending"


@pytest.mark.asyncio
async def test_charge_reply_without_payment_id_is_never_completed(db, reservation, payment):
    transport = httpx.MockTransport(
        lambda request: httpx.Response(200, json={"data": {"attributes": {"status": "paid", "amount": 60000}}})
    )
    gateway = PayMongoClient(secret_key="sk_test", base_url="https://gateway.test/v1", transport=transport)

    outcome = await handle_webhook(db, chargeable(), gateway)

    assert outcome.status == "failed"
    db.refresh(payment)
    db.refresh(reservation)
    assert payment.status == "failed"
    assert payment.external_id == "src_test_1"
    assert reservation.status == "cancelled"
    assert reservation.amount_paid == Decimal("0")
