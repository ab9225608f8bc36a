# rallio/routers/reservation_routes.py
"""
Reservation routes: validate, book, list, cancel, checkout.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from rallio.auth import get_current_user, get_optional_user, require_role
from rallio.database import models
from rallio.database.database import get_db
from rallio.database.schemas import (
    AvailabilityRequest,
    AvailabilityResponse,
    CheckoutRequest,
    CheckoutResponse,
    ReservationCancel,
    ReservationCreate,
)
from rallio.errors import PolicyViolation
from rallio.services import reservation_service
from rallio.services.paymongo_client import PayMongoClient, get_gateway
from rallio.services.reservation_service import ACTOR_ADMIN, ACTOR_USER, CancellationActor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reservations", tags=["Reservations"])
admin_router = APIRouter(prefix="/admin/reservations", tags=["Admin"])


def _reservation_to_dict(r: models.Reservation) -> Dict[str, Any]:
    court = r.court
    return {
        "id": r.id,
        "courtId": r.court_id,
        "courtName": court.name if court else None,
        "userId": r.user_id,
        "startTime": r.start_time,
        "endTime": r.end_time,
        "status": r.status,
        "totalAmount": float(r.total_amount or 0),
        "amountPaid": float(r.amount_paid or 0),
        "paymentMethod": r.payment_method,
        "notes": r.notes,
        "confirmedAt": r.confirmed_at,
        "cancelledAt": r.cancelled_at,
        "cancellationReason": r.cancellation_reason,
        "createdAt": r.created_at,
    }


@router.post("/validate", response_model=AvailabilityResponse)
def validate_reservation(
    payload: AvailabilityRequest,
    db: Session = Depends(get_db),
    current_user: Optional[models.User] = Depends(get_optional_user),
):
    check = reservation_service.validate_booking(
        db,
        payload.court_id,
        payload.start,
        payload.end,
        user_id=current_user.id if current_user else None,
    )
    return {"available": check.available, "conflicts": check.conflicts}


@router.post("", status_code=201)
def create_reservation(
    payload: ReservationCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    user_id = payload.user_id or current_user.id
    if user_id != current_user.id and current_user.role != "admin":
        raise PolicyViolation("Cannot book on behalf of another user")

    reservation = reservation_service.create_reservation(
        db,
        court_id=payload.court_id,
        user_id=user_id,
        start=payload.start,
        end=payload.end,
        total_amount=Decimal(str(payload.total_amount)),
        payment_method=payload.payment_method,
        notes=payload.notes,
    )
    return {"success": True, "id": reservation.id, "status": reservation.status}


@router.get("/me")
def my_reservations(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    reservations = reservation_service.list_user_reservations(db, current_user.id)
    return [_reservation_to_dict(r) for r in reservations]


@router.post("/{reservation_id}/cancel")
def cancel_reservation(
    reservation_id: int,
    payload: Optional[ReservationCancel] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    reservation = reservation_service.cancel_reservation(
        db,
        reservation_id,
        CancellationActor(kind=ACTOR_USER, user_id=current_user.id),
        (payload or ReservationCancel()).reason,
    )
    return {"success": True, "id": reservation.id, "status": reservation.status}


@router.post("/{reservation_id}/checkout", response_model=CheckoutResponse)
async def checkout_reservation(
    reservation_id: int,
    payload: Optional[CheckoutRequest] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
    gateway: PayMongoClient = Depends(get_gateway),
):
    return await reservation_service.start_checkout(db, reservation_id, current_user.id, (payload or CheckoutRequest()).method, gateway)


# =====================================
# ✅ Admin
# =====================================
@admin_router.post("/{reservation_id}/cancel")
def admin_cancel_reservation(
    reservation_id: int,
    payload: Optional[ReservationCancel] = None,
    db: Session = Depends(get_db),
    admin: models.User = Depends(require_role("admin")),
):
    reservation = reservation_service.cancel_reservation(
        db,
        reservation_id,
        CancellationActor(kind=ACTOR_ADMIN, user_id=admin.id),
        (payload or ReservationCancel()).reason,
    )
    logger.info(f"Admin {admin.id} cancelled reservation {reservation.id}")
    return {"success": True, "id": reservation.id, "status": reservation.status}
