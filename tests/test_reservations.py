from datetime import datetime, timedelta
from decimal import Decimal

import pytest
import pytz

from rallio.database.models import Reservation
from rallio.database.payment_models import Payment
from rallio.errors import ConflictError, NotCancellable, NotFound, PolicyViolation
from rallio.services import reservation_service
from rallio.services.audit_service import status_history
from rallio.services.reservation_service import (
    ACTOR_ADMIN,
    ACTOR_USER,
    CancellationActor,
    cancel_reservation,
    create_reservation,
    list_user_reservations,
    start_checkout,
    validate_booking,
)
from tests.helpers import (
    MONDAY,
    FakeGateway,
    at,
    make_court,
    make_queue_session,
    make_reservation,
)


def test_create_reservation_is_pending_payment(db, court, player):
    reservation = create_reservation(db, court.id, player.id, at(MONDAY, 9), at(MONDAY, 11), 600)

    assert reservation.status == "pending_payment"
    assert reservation.total_amount == Decimal("600")
    assert reservation.amount_paid == Decimal("0")
    history = status_history(db, reservation.id)
    assert [(h.from_status, h.to_status) for h in history] == [(None, "pending_payment")]


def test_create_rejects_overlap_with_blocking_reservation(db, court, player, other_player):
    make_reservation(db, court, other_player, at(MONDAY, 10), at(MONDAY, 12), status="confirmed")

    with pytest.raises(ConflictError):
        create_reservation(db, court.id, player.id, at(MONDAY, 9), at(MONDAY, 11), 600)

    assert db.query(Reservation).count() == 1


def test_cancelled_reservation_frees_the_slot(db, court, player, other_player):
    make_reservation(db, court, other_player, at(MONDAY, 10), at(MONDAY, 12), status="cancelled")
    reservation = create_reservation(db, court.id, player.id, at(MONDAY, 10), at(MONDAY, 12), 600)
    assert reservation.id is not None


def test_back_to_back_reservations_are_allowed(db, court, player, other_player):
    create_reservation(db, court.id, player.id, at(MONDAY, 9), at(MONDAY, 10), 300)
    create_reservation(db, court.id, other_player.id, at(MONDAY, 10), at(MONDAY, 11), 300)
    assert db.query(Reservation).count() == 2


def test_partial_hour_booking_conflicts_with_next_hour(db, court, player, other_player):
    make_reservation(db, court, other_player, at(MONDAY, 13), at(MONDAY, 14, 30), status="confirmed")
    with pytest.raises(ConflictError):
        create_reservation(db, court.id, player.id, at(MONDAY, 14, 30), at(MONDAY, 15, 30), 300)


def test_queue_session_blocks_other_users(db, court, player, other_player):
    make_queue_session(db, court, at(MONDAY, 18), at(MONDAY, 20), organizer=other_player)
    with pytest.raises(ConflictError):
        create_reservation(db, court.id, player.id, at(MONDAY, 19), at(MONDAY, 20), 300)


def test_organizer_can_book_over_own_queue_session(db, court, player):
    make_queue_session(db, court, at(MONDAY, 18), at(MONDAY, 20), organizer=player)
    reservation = create_reservation(db, court.id, player.id, at(MONDAY, 18), at(MONDAY, 20), 600)
    assert reservation.status == "pending_payment"


def test_store_constraint_catches_race_past_the_recheck(db, court, player, other_player, monkeypatch):
    make_reservation(db, court, other_player, at(MONDAY, 9), at(MONDAY, 11), status="pending_payment")
    # simulate a writer whose re-check ran before the other insert committed
    monkeypatch.setattr(reservation_service, "find_conflicts", lambda *a, **k: [])

    with pytest.raises(ConflictError):
        create_reservation(db, court.id, player.id, at(MONDAY, 10), at(MONDAY, 12), 600)

    assert db.query(Reservation).count() == 1


@pytest.mark.parametrize("start, end, message", [
    (at(MONDAY, 11), at(MONDAY, 10), "before end"),
    (at(MONDAY, 10), at(MONDAY, 10), "before end"),
    (at(MONDAY, 21), at(MONDAY + timedelta(days=1), 1), "same day"),
    (at(MONDAY, 5), at(MONDAY, 7), "operating hours"),
    (at(MONDAY, 21), at(MONDAY, 22, 30), "operating hours"),
])
def test_create_enforces_booking_policy(db, court, player, start, end, message):
    with pytest.raises(PolicyViolation) as excinfo:
        create_reservation(db, court.id, player.id, start, end, 600)
    assert message in excinfo.value.message


def test_create_rejects_past_start(db, court, player):
    now = at(MONDAY, 12)
    with pytest.raises(PolicyViolation):
        create_reservation(db, court.id, player.id, at(MONDAY, 9), at(MONDAY, 10), 300, now=now)


def test_create_rejects_closed_day(db, player):
    from tests.helpers import make_venue

    venue = make_venue(db, opening_hours={"tuesday": {"open": "08:00", "close": "12:00"}})
    court = make_court(db, venue)
    with pytest.raises(PolicyViolation):
        create_reservation(db, court.id, player.id, at(MONDAY, 9), at(MONDAY, 10), 300)


def test_create_rejects_inactive_court_and_negative_total(db, venue, court, player):
    inactive = make_court(db, venue, is_active=False, name="Court 9")
    with pytest.raises(PolicyViolation):
        create_reservation(db, inactive.id, player.id, at(MONDAY, 9), at(MONDAY, 10), 300)
    with pytest.raises(PolicyViolation):
        create_reservation(db, court.id, player.id, at(MONDAY, 9), at(MONDAY, 10), -1)


def test_create_unknown_court(db, player):
    with pytest.raises(NotFound):
        create_reservation(db, 4242, player.id, at(MONDAY, 9), at(MONDAY, 10), 300)


def test_aware_times_are_stored_as_venue_wall_clock(db, court, player):
    manila = pytz.timezone("Asia/Manila")
    start = manila.localize(at(MONDAY, 9)).astimezone(pytz.utc)
    end = manila.localize(at(MONDAY, 10)).astimezone(pytz.utc)

    reservation = create_reservation(db, court.id, player.id, start, end, 300)

    assert reservation.start_time == at(MONDAY, 9)
    assert reservation.end_time == at(MONDAY, 10)


def test_validate_booking_reports_conflicting_hours(db, court, player, other_player):
    make_reservation(db, court, other_player, at(MONDAY, 9), at(MONDAY, 10))
    check = validate_booking(db, court.id, at(MONDAY, 8), at(MONDAY, 11), user_id=player.id)
    assert check.available is False
    assert check.conflicts == ["09:00"]


# =====================================
# Cancellation
# =====================================
def test_user_cancels_well_ahead(db, court, player):
    reservation = make_reservation(db, court, player, at(MONDAY, 9), at(MONDAY, 10), status="confirmed")
    now = at(MONDAY, 9) - timedelta(hours=48)

    cancelled = cancel_reservation(db, reservation.id, CancellationActor(ACTOR_USER, player.id), "Change of plans", now=now)

    assert cancelled.status == "cancelled"
    assert cancelled.cancellation_reason == "Change of plans"
    assert cancelled.cancelled_at is not None
    assert cancelled.meta["cancelled_by"] == {"kind": "user", "user_id": player.id}
    assert status_history(db, reservation.id)[-1].to_status == "cancelled"


def test_user_cannot_cancel_within_lead_time(db, court, player):
    reservation = make_reservation(db, court, player, at(MONDAY, 9), at(MONDAY, 10))
    now = at(MONDAY, 9) - timedelta(hours=24)
    with pytest.raises(PolicyViolation):
        cancel_reservation(db, reservation.id, CancellationActor(ACTOR_USER, player.id), "late", now=now)
    db.refresh(reservation)
    assert reservation.status == "confirmed"


def test_admin_cancels_without_lead_time(db, court, player, admin):
    reservation = make_reservation(db, court, player, at(MONDAY, 9), at(MONDAY, 10))
    now = at(MONDAY, 8, 30)
    cancelled = cancel_reservation(db, reservation.id, CancellationActor(ACTOR_ADMIN, admin.id), "Maintenance", now=now)
    assert cancelled.status == "cancelled"
    assert cancelled.meta["cancelled_by"]["kind"] == "admin"


def test_system_cancellation_is_flagged(db, court, player):
    reservation = make_reservation(db, court, player, at(MONDAY, 9), at(MONDAY, 10), status="pending_payment")
    cancelled = cancel_reservation(db, reservation.id, CancellationActor.system(), "Payment failed")
    assert cancelled.meta["cancelled_by_system"] is True


@pytest.mark.parametrize("status", ["cancelled", "completed", "no_show"])
def test_terminal_reservations_are_not_cancellable(db, court, player, status):
    reservation = make_reservation(db, court, player, at(MONDAY, 9), at(MONDAY, 10), status=status)
    with pytest.raises(NotCancellable):
        cancel_reservation(db, reservation.id, CancellationActor.system(), "again")


def test_user_cannot_cancel_someone_elses_reservation(db, court, player, other_player):
    reservation = make_reservation(db, court, player, at(MONDAY, 9), at(MONDAY, 10))
    with pytest.raises(NotFound):
        cancel_reservation(db, reservation.id, CancellationActor(ACTOR_USER, other_player.id), "mine now")


def test_list_user_reservations_newest_first(db, court, player, other_player):
    early = make_reservation(db, court, player, at(MONDAY, 9), at(MONDAY, 10))
    late = make_reservation(db, court, player, at(MONDAY, 15), at(MONDAY, 16))
    make_reservation(db, court, other_player, at(MONDAY, 12), at(MONDAY, 13))
    assert [r.id for r in list_user_reservations(db, player.id)] == [late.id, early.id]


# =====================================
# Checkout
# =====================================
@pytest.mark.asyncio
async def test_start_checkout_opens_source_and_records_payment(db, court, player, gateway):
    reservation = make_reservation(db, court, player, at(MONDAY, 9), at(MONDAY, 11), status="pending_payment")

    result = await start_checkout(db, reservation.id, player.id, "gcash", gateway)

    assert result["checkoutUrl"] == "https://pay.example/src_fake_1"
    assert result["amount"] == 600.0
    assert result["reference"].startswith("RLO-")
    assert gateway.source_calls[0]["amount"] == 60000
    assert gateway.source_calls[0]["metadata"]["reservation_id"] == str(reservation.id)

    payment = db.query(Payment).filter(Payment.id == result["paymentId"]).one()
    assert payment.status == "pending"
    assert payment.source_id == "src_fake_1"
    assert payment.amount == Decimal("600")


@pytest.mark.asyncio
async def test_checkout_charges_only_the_outstanding_balance(db, court, player, gateway):
    reservation = make_reservation(
        db, court, player, at(MONDAY, 9), at(MONDAY, 11), status="pending", amount_paid=200
    )
    result = await start_checkout(db, reservation.id, player.id, "paymaya", gateway)
    assert result["amount"] == 400.0
    assert gateway.source_calls[0]["type"] == "paymaya"


@pytest.mark.asyncio
async def test_checkout_rejects_confirmed_reservation(db, court, player, gateway):
    reservation = make_reservation(db, court, player, at(MONDAY, 9), at(MONDAY, 11), status="confirmed")
    with pytest.raises(PolicyViolation):
        await start_checkout(db, reservation.id, player.id, "gcash", gateway)
    assert gateway.source_calls == []


@pytest.mark.asyncio
async def test_checkout_rejects_unknown_method_and_foreign_reservation(db, court, player, other_player):
    gateway = FakeGateway()
    reservation = make_reservation(db, court, player, at(MONDAY, 9), at(MONDAY, 11), status="pending_payment")
    with pytest.raises(PolicyViolation):
        await start_checkout(db, reservation.id, player.id, "card", gateway)
    with pytest.raises(NotFound):
        await start_checkout(db, reservation.id, other_player.id, "gcash", gateway)
