# rallio/services/reservation_service.py
"""
Reservation lifecycle: create (re-validated at write time), cancel, checkout.

Status and balance only advance past pending_payment through the payment
reconciler in payment_service.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from rallio.core.config import CANCELLATION_LEAD_HOURS, PUBLIC_BASE_URL
from rallio.database.models import (
    AuditKind,
    Court,
    Reservation,
    ReservationStatus,
    RESERVATION_BLOCKING_STATUSES,
)
from rallio.database.payment_models import Payment, PaymentStatus
from rallio.errors import ConflictError, NotCancellable, NotFound, PolicyViolation
from rallio.services.audit_service import change_status, record_event
from rallio.services.availability_service import check_availability, find_conflicts, get_court
from rallio.services.blocking import requested_hours
from rallio.services.operating_hours import resolve_operating_hours, to_venue_time, venue_local_now
from rallio.services.paymongo_client import SUPPORTED_SOURCE_TYPES, PayMongoClient, to_centavos

logger = logging.getLogger(__name__)

CANCELLABLE_STATUSES = RESERVATION_BLOCKING_STATUSES

ACTOR_USER = "user"
ACTOR_ADMIN = "admin"
ACTOR_SYSTEM = "system"


@dataclass(frozen=True)
class CancellationActor:
    kind: str
    user_id: Optional[int] = None

    @classmethod
    def system(cls) -> "CancellationActor":
        return cls(kind=ACTOR_SYSTEM)


# =====================================
# ✅ Validation
# =====================================
def validate_booking_request(
    db: Session,
    court_id: int,
    start: datetime,
    end: datetime,
    now: Optional[datetime] = None,
) -> Tuple[Court, datetime, datetime]:
    """
    Policy checks that do not depend on other bookings. Returns the court and
    the requested bounds in venue wall-clock time.
    """
    court = get_court(db, court_id)
    venue = court.venue
    tz_name = venue.timezone if venue else None
    start = to_venue_time(start, tz_name)
    end = to_venue_time(end, tz_name)

    if start >= end:
        raise PolicyViolation("Start time must be before end time")
    if start.date() != end.date():
        raise PolicyViolation("Reservations must start and end on the same day")
    if not court.is_active:
        raise PolicyViolation("Court is not available for booking")

    local_now = venue_local_now(tz_name, now)
    if start < local_now:
        raise PolicyViolation("Cannot book a time in the past")

    hours = resolve_operating_hours(venue.opening_hours if venue else None, start.date())
    if hours is None:
        raise PolicyViolation("Venue is closed on that day")
    wanted = requested_hours(start, end)
    if wanted.start < hours.open_hour or wanted.stop > hours.close_hour:
        raise PolicyViolation(
            f"Requested time is outside operating hours ({hours.open_hour:02d}:00-{hours.close_hour:02d}:00)"
        )
    return court, start, end


def validate_booking(
    db: Session,
    court_id: int,
    start: datetime,
    end: datetime,
    user_id: Optional[int] = None,
    now: Optional[datetime] = None,
):
    _, start, end = validate_booking_request(db, court_id, start, end, now=now)
    return check_availability(db, court_id, start, end, user_id=user_id)


# =====================================
# ✅ Create
# =====================================
def create_reservation(
    db: Session,
    court_id: int,
    user_id: int,
    start: datetime,
    end: datetime,
    total_amount,
    payment_method: str = "gcash",
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Reservation:
    """
    Insert a pending_payment reservation after re-checking the slot inside the
    write transaction. A concurrent writer that slips past the check is stopped
    by the overlap constraint and reported as ConflictError.
    """
    total = Decimal(str(total_amount))
    if total < 0:
        raise PolicyViolation("Total amount cannot be negative")

    court, start, end = validate_booking_request(db, court_id, start, end, now=now)

    try:
        # serialise writers per court (no-op on SQLite)
        db.query(Court).filter(Court.id == court.id).with_for_update().first()

        conflicts = find_conflicts(db, court.id, start, end, user_id=user_id)
        if conflicts:
            logger.info(
                f"Reservation conflict on court {court.id} {start}-{end} for user {user_id}: "
                f"{[(c.source, c.source_id) for c in conflicts]}"
            )
            raise ConflictError("Slot no longer available")

        reservation = Reservation(
            court_id=court.id,
            user_id=user_id,
            start_time=start,
            end_time=end,
            status=ReservationStatus.pending_payment.value,
            total_amount=total,
            amount_paid=Decimal("0"),
            payment_method=payment_method,
            notes=notes,
            meta={},
        )
        db.add(reservation)
        db.flush()
        record_event(
            db,
            AuditKind.status_changed,
            reservation_id=reservation.id,
            from_status=None,
            to_status=reservation.status,
        )
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.info(f"Overlap constraint rejected reservation on court {court.id} {start}-{end}: {e.orig}")
        raise ConflictError("Slot no longer available") from e
    except ConflictError:
        db.rollback()
        raise
    except SQLAlchemyError:
        db.rollback()
        raise

    db.refresh(reservation)
    logger.info(f"✅ Reservation {reservation.id} created for user {user_id} on court {court.id} ({start} - {end})")
    return reservation


# =====================================
# ✅ Cancel
# =====================================
def apply_cancellation(db: Session, reservation: Reservation, actor: CancellationActor, reason: str) -> None:
    """Terminalize the reservation inside the caller's transaction."""
    meta = dict(reservation.meta or {})
    if actor.kind == ACTOR_SYSTEM:
        meta["cancelled_by_system"] = True
    else:
        meta["cancelled_by"] = {"kind": actor.kind, "user_id": actor.user_id}
    reservation.meta = meta
    reservation.cancelled_at = datetime.utcnow()
    reservation.cancellation_reason = reason
    change_status(db, reservation, ReservationStatus.cancelled.value, detail={"reason": reason, "actor": actor.kind})


def cancel_reservation(
    db: Session,
    reservation_id: int,
    actor: CancellationActor,
    reason: str,
    now: Optional[datetime] = None,
) -> Reservation:
    reservation = db.query(Reservation).filter(Reservation.id == reservation_id).first()
    if not reservation:
        raise NotFound("Reservation not found")
    if actor.kind == ACTOR_USER and reservation.user_id != actor.user_id:
        raise NotFound("Reservation not found")

    if reservation.status not in CANCELLABLE_STATUSES:
        raise NotCancellable(f"Reservation cannot be cancelled while {reservation.status}")

    if actor.kind == ACTOR_USER:
        venue = reservation.court.venue if reservation.court else None
        local_now = venue_local_now(venue.timezone if venue else None, now)
        if reservation.start_time - local_now <= timedelta(hours=CANCELLATION_LEAD_HOURS):
            raise PolicyViolation(
                f"Reservations can only be cancelled more than {CANCELLATION_LEAD_HOURS} hours before start"
            )

    try:
        apply_cancellation(db, reservation, actor, reason)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    db.refresh(reservation)
    logger.info(f"Reservation {reservation.id} cancelled by {actor.kind}: {reason}")
    return reservation


def list_user_reservations(db: Session, user_id: int) -> List[Reservation]:
    return (
        db.query(Reservation)
        .filter(Reservation.user_id == user_id)
        .order_by(Reservation.start_time.desc(), Reservation.id.desc())
        .all()
    )


# =====================================
# ✅ Checkout (gateway source)
# =====================================
def new_payment_reference() -> str:
    return f"RLO-{uuid.uuid4().hex[:16].upper()}"


async def start_checkout(
    db: Session,
    reservation_id: int,
    user_id: int,
    method: str,
    gateway: PayMongoClient,
) -> Dict[str, Any]:
    """
    Open a PayMongo e-wallet source for the outstanding balance and record a
    pending payment that webhooks will later resolve.
    """
    if method not in SUPPORTED_SOURCE_TYPES:
        raise PolicyViolation(f"Unsupported payment method: {method}")

    reservation = (
        db.query(Reservation)
        .filter(Reservation.id == reservation_id, Reservation.user_id == user_id)
        .first()
    )
    if not reservation:
        raise NotFound("Reservation not found")
    if reservation.status not in (ReservationStatus.pending_payment.value, ReservationStatus.pending.value):
        raise PolicyViolation("Reservation is not awaiting payment")

    amount = Decimal(str(reservation.total_amount)) - Decimal(str(reservation.amount_paid or 0))
    if amount <= 0:
        raise PolicyViolation("Nothing left to pay for this reservation")

    reference = new_payment_reference()
    base = PUBLIC_BASE_URL.rstrip("/")
    source = await gateway.create_source(
        amount_centavos=to_centavos(amount),
        source_type=method,
        success_url=f"{base}/reservations/{reservation.id}?payment=success",
        failed_url=f"{base}/reservations/{reservation.id}?payment=failed",
        metadata={"reservation_id": str(reservation.id), "payment_reference": reference},
    )

    payment = Payment(
        reservation_id=reservation.id,
        user_id=user_id,
        external_id=source.id,
        source_id=source.id,
        reference=reference,
        amount=amount,
        payment_method=method,
        status=PaymentStatus.pending.value,
        meta={"source": {"id": source.id, "status": source.status}},
    )
    try:
        db.add(payment)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    db.refresh(payment)

    logger.info(f"Checkout started for reservation {reservation.id}: payment {payment.id}, source {source.id}")
    return {
        "paymentId": payment.id,
        "reference": reference,
        "checkoutUrl": source.checkout_url,
        "amount": float(amount),
    }
