# rallio/database/models.py
import enum
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DDL,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    event,
    text,
)
from sqlalchemy.orm import relationship

from rallio.database.database import Base


# ==========================
# ✅ STATUS VOCABULARIES
# ==========================
class ReservationStatus(str, enum.Enum):
    pending_payment = "pending_payment"
    pending = "pending"
    paid = "paid"
    confirmed = "confirmed"
    cancelled = "cancelled"
    completed = "completed"
    no_show = "no_show"


# Statuses that occupy the court for availability purposes
RESERVATION_BLOCKING_STATUSES = (
    ReservationStatus.pending_payment.value,
    ReservationStatus.pending.value,
    ReservationStatus.paid.value,
    ReservationStatus.confirmed.value,
)

RESERVATION_TERMINAL_STATUSES = (
    ReservationStatus.cancelled.value,
    ReservationStatus.completed.value,
    ReservationStatus.no_show.value,
)


class QueueSessionStatus(str, enum.Enum):
    draft = "draft"
    pending_approval = "pending_approval"
    open = "open"
    active = "active"
    paused = "paused"
    closed = "closed"
    cancelled = "cancelled"


QUEUE_JOINABLE_STATUSES = (QueueSessionStatus.open.value, QueueSessionStatus.active.value)


class ParticipantStatus(str, enum.Enum):
    waiting = "waiting"
    playing = "playing"
    completed = "completed"
    left = "left"


class AuditKind(str, enum.Enum):
    status_changed = "status_changed"
    payment_completed = "payment_completed"
    payment_failed = "payment_failed"
    amount_reconciled = "amount_reconciled"
    charge_started = "charge_started"
    charge_created = "charge_created"
    charge_failed = "charge_failed"


def _in_list(values) -> str:
    return ", ".join(f"'{v}'" for v in values)


# ==========================
# ✅ USER MODEL
# ==========================
class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(100), unique=True, nullable=False, index=True)
    name = Column(String(100), nullable=True)
    role = Column(String(20), nullable=False, default="user")
    created_at = Column(DateTime, default=datetime.utcnow)

    reservations = relationship("Reservation", back_populates="user")


# ==========================
# ✅ VENUE / COURT MODELS
# ==========================
class Venue(Base):
    __tablename__ = "venues"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(150), nullable=False)
    timezone = Column(String(64), nullable=True)
    # {"monday": {"open": "06:00", "close": "22:00"}, ...}; a missing day means closed
    opening_hours = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    courts = relationship("Court", back_populates="venue")


class Court(Base):
    __tablename__ = "courts"

    id = Column(Integer, primary_key=True, index=True)
    venue_id = Column(Integer, ForeignKey("venues.id"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    hourly_rate = Column(Numeric(10, 2), nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)

    venue = relationship("Venue", back_populates="courts")
    reservations = relationship("Reservation", back_populates="court")
    queue_sessions = relationship("QueueSession", back_populates="court")


# ==========================
# ✅ RESERVATION MODEL
# ==========================
class Reservation(Base):
    __tablename__ = "reservations"
    __table_args__ = (
        CheckConstraint("start_time < end_time", name="ck_reservations_time_order"),
        CheckConstraint(
            f"status IN ({_in_list(s.value for s in ReservationStatus)})",
            name="ck_reservations_status",
        ),
        Index("ix_reservations_court_window", "court_id", "start_time", "end_time"),
    )

    id = Column(Integer, primary_key=True, index=True)
    court_id = Column(Integer, ForeignKey("courts.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    # Venue-local wall-clock times, half-open [start_time, end_time)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    status = Column(String(32), nullable=False, default=ReservationStatus.pending_payment.value)
    total_amount = Column(Numeric(10, 2), nullable=False, default=0)
    amount_paid = Column(Numeric(10, 2), nullable=False, default=0)
    payment_method = Column(String(32), nullable=True)
    notes = Column(Text, nullable=True)
    meta = Column("metadata", JSON, nullable=True)
    confirmed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    court = relationship("Court", back_populates="reservations")
    user = relationship("User", back_populates="reservations")
    payments = relationship("Payment", back_populates="reservation")
    audit_events = relationship(
        "AuditEvent", back_populates="reservation", order_by="AuditEvent.id"
    )

    @property
    def is_blocking(self) -> bool:
        return self.status in RESERVATION_BLOCKING_STATUSES


# The store itself refuses overlapping blocking reservations on one court, so two
# requests that both pass the availability re-check cannot both commit.
_BLOCKING_SQL = _in_list(RESERVATION_BLOCKING_STATUSES)

event.listen(
    Reservation.__table__,
    "before_create",
    DDL("CREATE EXTENSION IF NOT EXISTS btree_gist").execute_if(dialect="postgresql"),
)
event.listen(
    Reservation.__table__,
    "after_create",
    DDL(
        "ALTER TABLE reservations ADD CONSTRAINT ex_reservations_no_overlap "
        "EXCLUDE USING gist (court_id WITH =, tsrange(start_time, end_time, '[)') WITH &&) "
        f"WHERE (status IN ({_BLOCKING_SQL}))"
    ).execute_if(dialect="postgresql"),
)
event.listen(
    Reservation.__table__,
    "after_create",
    DDL(
        "CREATE TRIGGER tr_reservations_no_overlap_insert "
        "BEFORE INSERT ON reservations "
        f"WHEN NEW.status IN ({_BLOCKING_SQL}) "
        "BEGIN "
        "SELECT RAISE(ABORT, 'ex_reservations_no_overlap') "
        "WHERE EXISTS (SELECT 1 FROM reservations r "
        "WHERE r.court_id = NEW.court_id "
        f"AND r.status IN ({_BLOCKING_SQL}) "
        "AND r.start_time < NEW.end_time AND r.end_time > NEW.start_time); "
        "END"
    ).execute_if(dialect="sqlite"),
)
event.listen(
    Reservation.__table__,
    "after_create",
    DDL(
        "CREATE TRIGGER tr_reservations_no_overlap_update "
        "BEFORE UPDATE OF status, start_time, end_time, court_id ON reservations "
        f"WHEN NEW.status IN ({_BLOCKING_SQL}) "
        "BEGIN "
        "SELECT RAISE(ABORT, 'ex_reservations_no_overlap') "
        "WHERE EXISTS (SELECT 1 FROM reservations r "
        "WHERE r.court_id = NEW.court_id AND r.id != NEW.id "
        f"AND r.status IN ({_BLOCKING_SQL}) "
        "AND r.start_time < NEW.end_time AND r.end_time > NEW.start_time); "
        "END"
    ).execute_if(dialect="sqlite"),
)


# ==========================
# ✅ QUEUE MODELS
# ==========================
class QueueSession(Base):
    __tablename__ = "queue_sessions"

    id = Column(Integer, primary_key=True, index=True)
    court_id = Column(Integer, ForeignKey("courts.id"), nullable=False, index=True)
    organizer_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    status = Column(String(32), nullable=False, default=QueueSessionStatus.draft.value)
    max_players = Column(Integer, nullable=False, default=12)
    current_players = Column(Integer, nullable=False, default=0)
    cost_per_game = Column(Numeric(10, 2), nullable=False, default=0)
    mode = Column(String(20), nullable=False, default="casual")
    game_format = Column(String(20), nullable=False, default="doubles")
    is_public = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    court = relationship("Court", back_populates="queue_sessions")
    participants = relationship("QueueParticipant", back_populates="session")


class QueueParticipant(Base):
    __tablename__ = "queue_participants"
    __table_args__ = (
        # one present row per user and session; departed rows are history
        Index(
            "uq_queue_participants_present",
            "queue_session_id",
            "user_id",
            unique=True,
            sqlite_where=text("left_at IS NULL"),
            postgresql_where=text("left_at IS NULL"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    queue_session_id = Column(Integer, ForeignKey("queue_sessions.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    joined_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    left_at = Column(DateTime, nullable=True)
    status = Column(String(20), nullable=False, default=ParticipantStatus.waiting.value)
    games_played = Column(Integer, nullable=False, default=0)
    games_won = Column(Integer, nullable=False, default=0)
    amount_owed = Column(Numeric(10, 2), nullable=False, default=0)
    payment_status = Column(String(20), nullable=False, default="unpaid")

    session = relationship("QueueSession", back_populates="participants")
    user = relationship("User")


# ==========================
# ✅ AUDIT LOG
# ==========================
class AuditEvent(Base):
    """Append-only history of reservation status changes and payment events."""
    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True, index=True)
    reservation_id = Column(Integer, ForeignKey("reservations.id"), nullable=True, index=True)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=True, index=True)
    kind = Column(String(32), nullable=False)
    event_id = Column(String(100), nullable=True)
    from_status = Column(String(32), nullable=True)
    to_status = Column(String(32), nullable=True)
    amount = Column(Numeric(10, 2), nullable=True)
    detail = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    reservation = relationship("Reservation", back_populates="audit_events")
    payment = relationship("Payment", back_populates="audit_events")


# payment tables are referenced by name in the relationships above
from rallio.database import payment_models  # noqa: E402,F401
