# rallio/database/schemas.py
# =========================================================
# 🧩 Court Reservation Schemas (Pydantic v2 Compatible)
# =========================================================

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


# =========================================================
# ✅ Base Config (camelCase from the web/mobile clients)
# =========================================================
class ConfigModel(BaseModel):
    class Config:
        from_attributes = True
        populate_by_name = True


# =========================================================
# 🕒 Availability Schemas
# =========================================================
class SlotResponse(ConfigModel):
    time: str
    available: bool


class AvailabilityRequest(ConfigModel):
    court_id: int = Field(..., alias="courtId")
    start: datetime
    end: datetime


class AvailabilityResponse(BaseModel):
    available: bool
    conflicts: List[str] = []


# =========================================================
# 📅 Reservation Schemas
# =========================================================
class ReservationCreate(ConfigModel):
    court_id: int = Field(..., alias="courtId")
    user_id: Optional[int] = Field(None, alias="userId")
    start: datetime
    end: datetime
    total_amount: float = Field(..., alias="totalAmount", ge=0)
    payment_method: str = Field("gcash", alias="paymentMethod")
    notes: Optional[str] = Field(None, max_length=1000)


class ReservationCancel(ConfigModel):
    reason: str = Field("Cancelled by user", max_length=255)


class CheckoutRequest(ConfigModel):
    method: str = Field("gcash")


class CheckoutResponse(BaseModel):
    paymentId: int
    reference: str
    checkoutUrl: Optional[str] = None
    amount: float
