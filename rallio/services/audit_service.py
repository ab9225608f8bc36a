# rallio/services/audit_service.py
"""
Append-only audit log for reservations and payments.

Entries are only ever added, inside the caller's transaction; nothing here commits.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from rallio.database.models import AuditEvent, AuditKind, Reservation

logger = logging.getLogger(__name__)


def record_event(
    db: Session,
    kind: AuditKind,
    reservation_id: Optional[int] = None,
    payment_id: Optional[int] = None,
    event_id: Optional[str] = None,
    from_status: Optional[str] = None,
    to_status: Optional[str] = None,
    amount=None,
    detail: Optional[Dict[str, Any]] = None,
) -> AuditEvent:
    entry = AuditEvent(
        kind=AuditKind(kind).value,
        reservation_id=reservation_id,
        payment_id=payment_id,
        event_id=event_id,
        from_status=from_status,
        to_status=to_status,
        amount=amount,
        detail=detail,
    )
    db.add(entry)
    return entry


def change_status(
    db: Session,
    reservation: Reservation,
    to_status: str,
    event_id: Optional[str] = None,
    payment_id: Optional[int] = None,
    detail: Optional[Dict[str, Any]] = None,
) -> None:
    """Move a reservation to `to_status` and append the matching history entry."""
    from_status = reservation.status
    reservation.status = to_status
    record_event(
        db,
        AuditKind.status_changed,
        reservation_id=reservation.id,
        payment_id=payment_id,
        event_id=event_id,
        from_status=from_status,
        to_status=to_status,
        detail=detail,
    )
    logger.info(f"Reservation {reservation.id}: {from_status} -> {to_status}")


def status_history(db: Session, reservation_id: int) -> List[AuditEvent]:
    return (
        db.query(AuditEvent)
        .filter(
            AuditEvent.reservation_id == reservation_id,
            AuditEvent.kind == AuditKind.status_changed.value,
        )
        .order_by(AuditEvent.id)
        .all()
    )
