# rallio/services/blocking.py
"""
Reservations and queue sessions both occupy a court, with different status
vocabularies. Both are projected onto one BlockingInterval shape so availability
and conflict checks have a single code path.
"""
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from rallio.core.config import QUEUE_DRAFT_BLOCKS_COURT
from rallio.database.models import (
    QueueSession,
    QueueSessionStatus,
    Reservation,
    RESERVATION_BLOCKING_STATUSES,
)

RESERVATION_SOURCE = "reservation"
QUEUE_SOURCE = "queue_session"


@dataclass(frozen=True)
class BlockingInterval:
    court_id: int
    start: datetime
    end: datetime
    source: str
    source_id: int
    owner_id: Optional[int] = None


def queue_blocking_statuses(include_draft: Optional[bool] = None) -> Tuple[str, ...]:
    if include_draft is None:
        include_draft = QUEUE_DRAFT_BLOCKS_COURT
    statuses = [
        QueueSessionStatus.open.value,
        QueueSessionStatus.active.value,
        QueueSessionStatus.pending_approval.value,
    ]
    if include_draft:
        statuses.append(QueueSessionStatus.draft.value)
    return tuple(statuses)


def day_bounds(day: date) -> Tuple[datetime, datetime]:
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)


def collect_blocking_intervals(
    db: Session,
    court_id: int,
    window_start: datetime,
    window_end: datetime,
    exclude_reservation_id: Optional[int] = None,
) -> List[BlockingInterval]:
    """All blocking reservations and queue sessions on `court_id` intersecting the window."""
    intervals: List[BlockingInterval] = []

    query = db.query(Reservation).filter(
        Reservation.court_id == court_id,
        Reservation.status.in_(RESERVATION_BLOCKING_STATUSES),
        Reservation.start_time < window_end,
        Reservation.end_time > window_start,
    )
    if exclude_reservation_id is not None:
        query = query.filter(Reservation.id != exclude_reservation_id)
    for r in query.order_by(Reservation.start_time, Reservation.id).all():
        intervals.append(BlockingInterval(
            court_id=r.court_id,
            start=r.start_time,
            end=r.end_time,
            source=RESERVATION_SOURCE,
            source_id=r.id,
            owner_id=r.user_id,
        ))

    sessions = (
        db.query(QueueSession)
        .filter(
            QueueSession.court_id == court_id,
            QueueSession.status.in_(queue_blocking_statuses()),
            QueueSession.start_time < window_end,
            QueueSession.end_time > window_start,
        )
        .order_by(QueueSession.start_time, QueueSession.id)
        .all()
    )
    for s in sessions:
        intervals.append(BlockingInterval(
            court_id=s.court_id,
            start=s.start_time,
            end=s.end_time,
            source=QUEUE_SOURCE,
            source_id=s.id,
            owner_id=s.organizer_id,
        ))

    return intervals


def blocked_hours(interval: BlockingInterval, day: date) -> range:
    """
    Hours of `day` covered by the interval: [start.hour, ceil(end)).
    An end with a non-zero minute or second rounds up to the next hour, so a
    booking ending at 14:30 takes the whole 14:00 slot.
    """
    day_start, day_end = day_bounds(day)
    start = max(interval.start, day_start)
    end = min(interval.end, day_end)
    if start >= end:
        return range(0)

    start_hour = start.hour
    if end == day_end:
        end_hour = 24
    else:
        end_hour = end.hour
        if end.minute or end.second or end.microsecond:
            end_hour += 1
    return range(start_hour, end_hour)


def requested_hours(start: datetime, end: datetime) -> range:
    """Hours a same-day request [start, end) occupies, rounded the same way as blocks."""
    probe = BlockingInterval(court_id=0, start=start, end=end, source="request", source_id=0)
    return blocked_hours(probe, start.date())
