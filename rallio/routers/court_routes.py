# rallio/routers/court_routes.py
from datetime import date
from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from rallio.database.database import get_db
from rallio.database.schemas import SlotResponse
from rallio.services.availability_service import get_available_slots

router = APIRouter(prefix="/courts", tags=["Courts"])


@router.get("/{court_id}/slots", response_model=List[SlotResponse])
def court_slots(
    court_id: int,
    day: date = Query(..., alias="date", description="YYYY-MM-DD, venue-local"),
    db: Session = Depends(get_db),
):
    """Hourly slots for a court on one day; unavailable slots are included and flagged."""
    slots = get_available_slots(db, court_id, day)
    return [{"time": s.time, "available": s.available} for s in slots]
