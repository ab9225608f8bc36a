"""Shared factories and fakes for the test suite."""

import itertools
import json
import time
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from rallio.database.models import (
    Court,
    QueueParticipant,
    QueueSession,
    Reservation,
    User,
    Venue,
)
from rallio.database.payment_models import Payment
from rallio.services.paymongo_client import GatewayCharge, GatewaySource

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
ALL_WEEK = {day: {"open": "06:00", "close": "22:00"} for day in WEEKDAYS}

_JAN_1 = date(2030, 1, 1)
# a Monday comfortably in the future
MONDAY = _JAN_1 + timedelta(days=(7 - _JAN_1.weekday()) % 7)
TUESDAY = MONDAY + timedelta(days=1)

_seq = itertools.count(1)


def at(day: date, hour: int, minute: int = 0) -> datetime:
    return datetime(day.year, day.month, day.day, hour, minute)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------
def make_user(db, email: Optional[str] = None, role: str = "user", name: Optional[str] = None) -> User:
    n = next(_seq)
    user = User(email=email or f"user{n}@example.com", name=name or f"Player {n}", role=role)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_venue(db, opening_hours: Optional[Dict[str, Any]] = None, timezone: str = "Asia/Manila") -> Venue:
    venue = Venue(
        name="Rally Hub",
        timezone=timezone,
        opening_hours=ALL_WEEK if opening_hours is None else opening_hours,
    )
    db.add(venue)
    db.commit()
    db.refresh(venue)
    return venue


def make_court(db, venue: Venue, is_active: bool = True, hourly_rate: int = 300, name: str = "Court 1") -> Court:
    court = Court(venue_id=venue.id, name=name, hourly_rate=Decimal(hourly_rate), is_active=is_active)
    db.add(court)
    db.commit()
    db.refresh(court)
    return court


def make_reservation(
    db,
    court: Court,
    user: User,
    start: datetime,
    end: datetime,
    status: str = "confirmed",
    total_amount: int = 600,
    amount_paid: int = 0,
) -> Reservation:
    """Insert directly, bypassing the lifecycle checks."""
    reservation = Reservation(
        court_id=court.id,
        user_id=user.id,
        start_time=start,
        end_time=end,
        status=status,
        total_amount=Decimal(total_amount),
        amount_paid=Decimal(amount_paid),
        meta={},
    )
    db.add(reservation)
    db.commit()
    db.refresh(reservation)
    return reservation


def make_queue_session(
    db,
    court: Court,
    start: datetime,
    end: datetime,
    status: str = "open",
    organizer: Optional[User] = None,
    max_players: int = 12,
    cost_per_game: int = 150,
) -> QueueSession:
    session = QueueSession(
        court_id=court.id,
        organizer_id=organizer.id if organizer else None,
        start_time=start,
        end_time=end,
        status=status,
        max_players=max_players,
        cost_per_game=Decimal(cost_per_game),
    )
    db.add(session)
    db.commit()
    db.refresh(session)
    return session


def make_participant(
    db,
    session: QueueSession,
    user: User,
    joined_at: datetime,
    games_played: int = 0,
    amount_owed: int = 0,
    payment_status: str = "unpaid",
) -> QueueParticipant:
    participant = QueueParticipant(
        queue_session_id=session.id,
        user_id=user.id,
        joined_at=joined_at,
        games_played=games_played,
        amount_owed=Decimal(amount_owed),
        payment_status=payment_status,
    )
    db.add(participant)
    db.commit()
    db.refresh(participant)
    return participant


def make_payment(
    db,
    reservation: Reservation,
    amount: int = 600,
    status: str = "pending",
    source_id: str = "src_test_1",
    reference: str = "RLO-TEST0001",
) -> Payment:
    payment = Payment(
        reservation_id=reservation.id,
        user_id=reservation.user_id,
        external_id=source_id,
        source_id=source_id,
        reference=reference,
        amount=Decimal(amount),
        payment_method="gcash",
        status=status,
        meta={},
    )
    db.add(payment)
    db.commit()
    db.refresh(payment)
    return payment


def webhook_body(
    event_type: str,
    resource_id: str,
    attributes: Optional[Dict[str, Any]] = None,
    event_id: str = "evt_1",
) -> Dict[str, Any]:
    """A PayMongo-shaped event envelope."""
    return {
        "id": event_id,
        "data": {
            "id": event_id,
            "type": "event",
            "attributes": {
                "type": event_type,
                "livemode": False,
                "data": {
                    "id": resource_id,
                    "type": event_type.split(".")[0],
                    "attributes": attributes or {},
                },
            },
        },
    }


def raw(body: Dict[str, Any]) -> bytes:
    return json.dumps(body, separators=(",", ":")).encode()


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------
class FakeGateway:
    """Stands in for PayMongoClient; records every call."""

    def __init__(self, fail_with: Optional[Exception] = None, charge_status: str = "paid"):
        self.fail_with = fail_with
        self.charge_status = charge_status
        self.source_calls: List[Dict[str, Any]] = []
        self.payment_calls: List[Dict[str, Any]] = []

    async def create_source(self, amount_centavos, source_type, success_url, failed_url, metadata=None):
        self.source_calls.append({
            "amount": amount_centavos,
            "type": source_type,
            "success_url": success_url,
            "failed_url": failed_url,
            "metadata": metadata,
        })
        source_id = f"src_fake_{len(self.source_calls)}"
        return GatewaySource(id=source_id, status="pending", checkout_url=f"https://pay.example/{source_id}")

    async def create_payment(self, amount_centavos, source_id, description, metadata=None):
        self.payment_calls.append({
            "amount": amount_centavos,
            "source_id": source_id,
            "description": description,
            "metadata": metadata,
        })
        if self.fail_with is not None:
            raise self.fail_with
        return GatewayCharge(id=f"pay_fake_{len(self.payment_calls)}", status=self.charge_status, amount=amount_centavos)


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the lock backend."""

    def __init__(self):
        self.store: Dict[str, Any] = {}

    def _get(self, key):
        entry = self.store.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            del self.store[key]
            return None
        return value

    def expire_now(self, key):
        value = self._get(key)
        if value is not None:
            self.store[key] = (value, time.monotonic() - 1)

    async def set(self, key, value, nx=False, px=None, ex=None):
        if nx and self._get(key) is not None:
            return None
        ttl = px / 1000.0 if px else ex
        self.store[key] = (value, time.monotonic() + ttl if ttl else None)
        return True

    async def get(self, key):
        return self._get(key)

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self._get(key) is not None:
                del self.store[key]
                removed += 1
        return removed

    async def eval(self, script, numkeys, *args):
        # only the compare-and-delete release script is used
        key = args[0]
        owner = args[numkeys]
        if self._get(key) == owner:
            del self.store[key]
            return 1
        return 0

    async def ping(self):
        return True
