# rallio/services/queue_service.py
"""
Queue sessions: join, leave, and derived positions.

Positions are never stored. A participant's position is the number of present
players (left_at IS NULL) who joined before them, plus one; ties on joined_at
fall back to row id so the ranking is always 1..N with no gaps.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from rallio.core.config import GAME_DURATION_MINUTES
from rallio.database.models import (
    ParticipantStatus,
    QueueParticipant,
    QueueSession,
    QUEUE_JOINABLE_STATUSES,
)
from rallio.errors import AlreadyJoined, NotFound, NotInQueue, NotJoinable, PaymentRequired, QueueFull

logger = logging.getLogger(__name__)


def estimated_wait_minutes(position: int) -> int:
    return position * GAME_DURATION_MINUTES


def _present(db: Session, session_id: int):
    return db.query(QueueParticipant).filter(
        QueueParticipant.queue_session_id == session_id,
        QueueParticipant.left_at.is_(None),
    )


def present_count(db: Session, session_id: int) -> int:
    return _present(db, session_id).count()


def present_participants(db: Session, session_id: int) -> List[QueueParticipant]:
    return _present(db, session_id).order_by(QueueParticipant.joined_at, QueueParticipant.id).all()


def participant_position(db: Session, participant: QueueParticipant) -> int:
    ahead = _present(db, participant.queue_session_id).filter(
        or_(
            QueueParticipant.joined_at < participant.joined_at,
            and_(
                QueueParticipant.joined_at == participant.joined_at,
                QueueParticipant.id < participant.id,
            ),
        )
    ).count()
    return ahead + 1


def _find_present(db: Session, session_id: int, user_id: int) -> Optional[QueueParticipant]:
    return _present(db, session_id).filter(QueueParticipant.user_id == user_id).first()


def _refresh_player_count(db: Session, session: QueueSession) -> int:
    db.flush()
    session.current_players = _present(db, session.id).count()
    return session.current_players


def _money(value) -> float:
    return float(Decimal(str(value or 0)))


def _participant_dict(p: QueueParticipant, position: int) -> Dict[str, Any]:
    return {
        "id": p.id,
        "userId": p.user_id,
        "playerName": (p.user.name if p.user else None) or "Unknown Player",
        "position": position,
        "joinedAt": p.joined_at,
        "gamesPlayed": p.games_played or 0,
        "gamesWon": p.games_won or 0,
        "status": p.status,
        "amountOwed": _money(p.amount_owed),
        "paymentStatus": p.payment_status,
    }


def _session_dict(session: QueueSession) -> Dict[str, Any]:
    court = session.court
    venue = court.venue if court else None
    return {
        "id": session.id,
        "courtId": session.court_id,
        "courtName": court.name if court else "Unknown Court",
        "venueName": venue.name if venue else "Unknown Venue",
        "status": session.status,
        "currentPlayers": session.current_players or 0,
        "maxPlayers": session.max_players or 12,
        "costPerGame": _money(session.cost_per_game),
        "startTime": session.start_time,
        "endTime": session.end_time,
        "mode": session.mode,
        "gameFormat": session.game_format,
    }


# =====================================
# ✅ Join / Leave
# =====================================
def join_queue(db: Session, session_id: int, user_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    # row lock serialises joins on one session
    session = db.query(QueueSession).filter(QueueSession.id == session_id).with_for_update().first()
    if not session:
        raise NotFound("Queue session not found")
    if session.status not in QUEUE_JOINABLE_STATUSES:
        raise NotJoinable(f"Queue is {session.status} and not accepting players")
    if present_count(db, session.id) >= (session.max_players or 0):
        raise QueueFull()
    if _find_present(db, session.id, user_id):
        raise AlreadyJoined()

    participant = QueueParticipant(
        queue_session_id=session.id,
        user_id=user_id,
        joined_at=now or datetime.utcnow(),
        status=ParticipantStatus.waiting.value,
        payment_status="unpaid",
        games_played=0,
        games_won=0,
        amount_owed=Decimal("0"),
    )
    try:
        db.add(participant)
        if _refresh_player_count(db, session) > (session.max_players or 0):
            raise QueueFull()
        db.commit()
    except QueueFull:
        db.rollback()
        logger.info(f"Queue {session_id} filled up while user {user_id} was joining")
        raise
    except IntegrityError as e:
        # the partial unique index caught a concurrent join by the same user
        db.rollback()
        raise AlreadyJoined() from e
    except SQLAlchemyError:
        db.rollback()
        raise

    db.refresh(participant)
    position = participant_position(db, participant)
    logger.info(f"User {user_id} joined queue {session.id} at position {position}")
    return {
        "participant": participant,
        "position": position,
        "estimatedWaitTime": estimated_wait_minutes(position),
    }


def leave_queue(db: Session, session_id: int, user_id: int, now: Optional[datetime] = None) -> QueueParticipant:
    participant = _find_present(db, session_id, user_id)
    if not participant:
        raise NotInQueue()

    owed = Decimal(str(participant.amount_owed or 0))
    if (participant.games_played or 0) >= 1 and owed > 0 and participant.payment_status != "paid":
        logger.info(f"User {user_id} tried to leave queue {session_id} owing {owed}")
        raise PaymentRequired(amount_owed=owed, games_played=participant.games_played)

    try:
        participant.left_at = now or datetime.utcnow()
        participant.status = ParticipantStatus.left.value
        _refresh_player_count(db, participant.session)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    db.refresh(participant)
    logger.info(f"User {user_id} left queue {session_id}")
    return participant


# =====================================
# ✅ Read models
# =====================================
def get_queue_details(db: Session, court_id: int, user_id: Optional[int] = None) -> Optional[Dict[str, Any]]:
    """Current open or active session on a court with its ordered players."""
    session = (
        db.query(QueueSession)
        .filter(QueueSession.court_id == court_id, QueueSession.status.in_(QUEUE_JOINABLE_STATUSES))
        .order_by(QueueSession.start_time, QueueSession.id)
        .first()
    )
    if not session:
        return None

    players = [
        _participant_dict(p, index + 1)
        for index, p in enumerate(present_participants(db, session.id))
    ]
    user_position = next((p["position"] for p in players if p["userId"] == user_id), None)
    estimated_wait = estimated_wait_minutes(user_position) if user_position else estimated_wait_minutes(len(players))

    details = _session_dict(session)
    details.update({
        "players": players,
        "userPosition": user_position,
        "estimatedWaitTime": estimated_wait,
    })
    return details


def get_my_queues(db: Session, user_id: int) -> List[Dict[str, Any]]:
    rows = (
        db.query(QueueParticipant)
        .join(QueueSession, QueueSession.id == QueueParticipant.queue_session_id)
        .filter(
            QueueParticipant.user_id == user_id,
            QueueParticipant.left_at.is_(None),
            QueueSession.status.in_(QUEUE_JOINABLE_STATUSES),
        )
        .order_by(QueueSession.start_time, QueueSession.id)
        .all()
    )
    queues = []
    for participant in rows:
        position = participant_position(db, participant)
        entry = _session_dict(participant.session)
        entry.update({
            "userPosition": position,
            "estimatedWaitTime": estimated_wait_minutes(position),
        })
        queues.append(entry)
    return queues


def calculate_queue_payment(db: Session, session_id: int, user_id: int) -> Dict[str, Any]:
    """What a participant owes: cost_per_game for every game played."""
    participant = (
        db.query(QueueParticipant)
        .filter(QueueParticipant.queue_session_id == session_id, QueueParticipant.user_id == user_id)
        .order_by(QueueParticipant.left_at.isnot(None), QueueParticipant.joined_at.desc())
        .first()
    )
    if not participant:
        raise NotInQueue("Participant not found")

    session = participant.session
    cost_per_game = Decimal(str(session.cost_per_game or 0))
    games_played = participant.games_played or 0
    total_owed = cost_per_game * games_played
    return {
        "participantId": participant.id,
        "sessionId": session.id,
        "gamesPlayed": games_played,
        "costPerGame": float(cost_per_game),
        "totalOwed": float(total_owed),
        "amountOwed": _money(participant.amount_owed),
        "paymentStatus": participant.payment_status,
    }
