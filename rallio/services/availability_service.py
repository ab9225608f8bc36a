# rallio/services/availability_service.py
"""
Hourly slot availability for a court on a given date.

This is a read-side projection computed fresh on every call; it never reserves
anything. Writers re-check inside their own transaction.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Iterable, List, Optional, Set

from sqlalchemy.orm import Session

from rallio.database.models import Court
from rallio.errors import NotFound
from rallio.services.blocking import (
    QUEUE_SOURCE,
    BlockingInterval,
    blocked_hours,
    collect_blocking_intervals,
    day_bounds,
    requested_hours,
)
from rallio.services.operating_hours import resolve_operating_hours, venue_local_now

logger = logging.getLogger(__name__)


@dataclass
class Slot:
    time: str
    available: bool

    @property
    def hour(self) -> int:
        return int(self.time.split(":")[0])


@dataclass
class AvailabilityCheck:
    available: bool
    conflicts: List[str] = field(default_factory=list)


def format_hour(hour: int) -> str:
    return f"{hour:02d}:00"


def get_court(db: Session, court_id: int) -> Court:
    court = db.query(Court).filter(Court.id == court_id).first()
    if not court:
        raise NotFound("Court not found")
    return court


def _blocked_hour_set(intervals: Iterable[BlockingInterval], day: date) -> Set[int]:
    hours: Set[int] = set()
    for interval in intervals:
        hours.update(blocked_hours(interval, day))
    return hours


def get_available_slots(db: Session, court_id: int, day: date, now: Optional[datetime] = None) -> List[Slot]:
    """
    One slot per operating hour of `day`. A slot is unavailable when a blocking
    reservation or queue session covers it, or when it is the current or an
    earlier hour of the venue's today.
    """
    court = get_court(db, court_id)
    if not court.is_active:
        return []

    venue = court.venue
    hours = resolve_operating_hours(venue.opening_hours if venue else None, day)
    if hours is None:
        return []

    slots = [Slot(time=format_hour(h), available=True) for h in range(hours.open_hour, hours.close_hour)]

    local_now = venue_local_now(venue.timezone if venue else None, now)
    if day == local_now.date():
        for slot in slots:
            if slot.hour <= local_now.hour:
                slot.available = False

    day_start, day_end = day_bounds(day)
    intervals = collect_blocking_intervals(db, court.id, day_start, day_end)
    blocked = _blocked_hour_set(intervals, day)
    for slot in slots:
        if slot.hour in blocked:
            slot.available = False

    logger.debug(f"Slots for court {court_id} on {day}: {len(slots)} total, {len(blocked)} blocked hours")
    return slots


def find_conflicts(
    db: Session,
    court_id: int,
    start: datetime,
    end: datetime,
    user_id: Optional[int] = None,
    exclude_reservation_id: Optional[int] = None,
) -> List[BlockingInterval]:
    """
    Blocking intervals that take an hour of [start, end). A queue session run by
    `user_id` itself does not count against that user.
    """
    wanted = set(requested_hours(start, end))
    day = start.date()
    day_start, day_end = day_bounds(day)
    conflicts = []
    for interval in collect_blocking_intervals(db, court_id, day_start, day_end, exclude_reservation_id):
        if user_id is not None and interval.source == QUEUE_SOURCE and interval.owner_id == user_id:
            continue
        if wanted.intersection(blocked_hours(interval, day)):
            conflicts.append(interval)
    return conflicts


def check_availability(
    db: Session,
    court_id: int,
    start: datetime,
    end: datetime,
    user_id: Optional[int] = None,
) -> AvailabilityCheck:
    """Whether [start, end) is free on the court, listing the taken hours when it is not."""
    get_court(db, court_id)
    wanted = set(requested_hours(start, end))
    taken: Set[int] = set()
    for interval in find_conflicts(db, court_id, start, end, user_id=user_id):
        taken.update(wanted.intersection(blocked_hours(interval, start.date())))
    return AvailabilityCheck(available=not taken, conflicts=[format_hour(h) for h in sorted(taken)])
