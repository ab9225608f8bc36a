# rallio/database/payment_models.py
"""
Payment-related database models
"""
import enum
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, Numeric, String, UniqueConstraint
from sqlalchemy.orm import relationship

from rallio.database.database import Base


class PaymentStatus(str, enum.Enum):
    pending = "pending"
    completed = "completed"
    failed = "failed"


class Payment(Base):
    """Payment transactions against the gateway"""
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    reservation_id = Column(Integer, ForeignKey("reservations.id"), nullable=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    external_id = Column(String(100), nullable=True, index=True)  # source id, then payment id once charged
    source_id = Column(String(100), nullable=True, index=True)  # chargeable source id, never overwritten
    reference = Column(String(100), unique=True, nullable=True, index=True)  # our reference, echoed in gateway metadata
    amount = Column(Numeric(10, 2), nullable=False)  # pesos
    currency = Column(String(10), default="PHP")
    payment_method = Column(String(32), nullable=True)  # gcash, paymaya, grab_pay
    status = Column(String(20), nullable=False, default=PaymentStatus.pending.value)
    paid_at = Column(DateTime, nullable=True)
    meta = Column(JSON, nullable=True)  # gateway payloads, failure code/message
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    reservation = relationship("Reservation", back_populates="payments")
    processed_events = relationship("ProcessedWebhookEvent", back_populates="payment")
    audit_events = relationship("AuditEvent", back_populates="payment", order_by="AuditEvent.id")


class ProcessedWebhookEvent(Base):
    """Gateway event ids already applied to a payment"""
    __tablename__ = "processed_webhook_events"
    __table_args__ = (
        UniqueConstraint("payment_id", "event_id", name="uq_processed_webhook_events"),
    )

    id = Column(Integer, primary_key=True, index=True)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=False, index=True)
    event_id = Column(String(100), nullable=False)
    event_type = Column(String(50), nullable=False)
    processed_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    payment = relationship("Payment", back_populates="processed_events")


class PaymentLock(Base):
    """Short-lived advisory lock row; an expired row may be taken over"""
    __tablename__ = "payment_locks"

    lock_key = Column(String(150), primary_key=True)
    owner = Column(String(100), nullable=False)
    acquired_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    expires_at = Column(DateTime, nullable=False)
