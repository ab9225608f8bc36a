# rallio/routers/queue_routes.py
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from rallio.auth import get_current_user, get_optional_user
from rallio.database import models
from rallio.database.database import get_db
from rallio.services import queue_service

router = APIRouter(prefix="/queue", tags=["Queue"])


@router.get("/courts/{court_id}")
def queue_for_court(
    court_id: int,
    db: Session = Depends(get_db),
    current_user: Optional[models.User] = Depends(get_optional_user),
):
    queue = queue_service.get_queue_details(db, court_id, current_user.id if current_user else None)
    return {"success": True, "queue": queue}


@router.get("/me")
def my_queues(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    return {"success": True, "queues": queue_service.get_my_queues(db, current_user.id)}


@router.post("/{session_id}/join")
def join_queue(
    session_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    result = queue_service.join_queue(db, session_id, current_user.id)
    participant = result["participant"]
    return {
        "success": True,
        "participantId": participant.id,
        "position": result["position"],
        "estimatedWaitTime": result["estimatedWaitTime"],
    }


@router.post("/{session_id}/leave")
def leave_queue(
    session_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    participant = queue_service.leave_queue(db, session_id, current_user.id)
    return {"success": True, "participantId": participant.id, "leftAt": participant.left_at}


@router.get("/{session_id}/payment")
def queue_payment(
    session_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    return {"success": True, "payment": queue_service.calculate_queue_payment(db, session_id, current_user.id)}
