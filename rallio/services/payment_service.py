# rallio/services/payment_service.py
"""
PayMongo webhook reconciliation.

PayMongo delivers events at least once and in any order. Each event id is
recorded per payment in processed_webhook_events, so a redelivery has no further
side effects beyond re-checking that a paid reservation really got confirmed.
Creating the charge for a chargeable source happens under an advisory lock
(payment:{id}:charge) so two concurrent deliveries never charge twice.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from rallio.core.config import PAYMENT_PROCESSING_TTL_SECONDS
from rallio.database.models import (
    AuditKind,
    Reservation,
    ReservationStatus,
    RESERVATION_TERMINAL_STATUSES,
)
from rallio.database.payment_models import Payment, PaymentStatus, ProcessedWebhookEvent
from rallio.errors import GatewayError, ReservationIntegrityError
from rallio.services.audit_service import change_status, record_event
from rallio.services.lock_service import get_processing_lock, new_owner_token, payment_charge_key
from rallio.services.paymongo_client import PayMongoClient, from_centavos, to_centavos
from rallio.services.reservation_service import CancellationActor, apply_cancellation

logger = logging.getLogger(__name__)

SOURCE_CHARGEABLE = "source.chargeable"
PAYMENT_PAID = "payment.paid"
PAYMENT_FAILED = "payment.failed"

OUTCOME_PROCESSED = "processed"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_SKIPPED = "skipped"
OUTCOME_IGNORED = "ignored"
OUTCOME_FAILED = "failed"

REASON_PROCESSING_FAILED = "Payment processing failed"
REASON_PAYMENT_FAILED = "Payment failed"

# a failed payment only releases a reservation that is still waiting for money
AWAITING_PAYMENT_STATUSES = (ReservationStatus.pending_payment.value, ReservationStatus.pending.value)


@dataclass
class WebhookEvent:
    event_id: str
    event_type: str
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def resource_id(self) -> Optional[str]:
        return self.payload.get("id")

    @property
    def attributes(self) -> Dict[str, Any]:
        return self.payload.get("attributes") or {}

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.attributes.get("metadata") or {}

    @property
    def reported_amount(self) -> Optional[Decimal]:
        amount = self.attributes.get("amount")
        if amount is None:
            return None
        return from_centavos(amount)


@dataclass
class WebhookOutcome:
    status: str
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    payment_id: Optional[int] = None
    reservation_id: Optional[int] = None
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "eventId": self.event_id,
            "eventType": self.event_type,
            "detail": self.detail,
        }


def parse_event(body: Dict[str, Any]) -> WebhookEvent:
    """Unwrap {id, data: {id, attributes: {type, data}}}."""
    if not isinstance(body, dict):
        raise ValueError("Webhook body must be a JSON object")
    data = body.get("data") or {}
    attributes = data.get("attributes") or {}
    event_id = data.get("id") or body.get("id")
    event_type = attributes.get("type")
    if not event_id or not event_type:
        raise ValueError("Webhook event id or type missing")
    payload = attributes.get("data") or {}
    if not isinstance(payload, dict):
        raise ValueError("Webhook event data must be an object")
    return WebhookEvent(event_id=str(event_id), event_type=str(event_type), payload=payload)


# =====================================
# ✅ Payment lookup
# =====================================
def find_payment(db: Session, event: WebhookEvent) -> Optional[Payment]:
    """
    Strategies in fixed order, first match wins; newest payment first within one:
    gateway id, source id, our payment reference, reservation id.
    """
    attrs = event.attributes
    metadata = event.metadata
    source = attrs.get("source") or {}
    strategies = []

    if event.resource_id:
        strategies.append(("external_id", Payment.external_id == event.resource_id))

    source_id = source.get("id") or attrs.get("source_id")
    if source_id:
        strategies.append(("source_id", Payment.source_id == str(source_id)))
    if event.event_type == SOURCE_CHARGEABLE and event.resource_id:
        strategies.append(("source_id", Payment.source_id == event.resource_id))

    reference = metadata.get("payment_reference") or metadata.get("payment_id")
    if reference:
        strategies.append(("reference", Payment.reference == str(reference)))

    reservation_id = metadata.get("reservation_id")
    if reservation_id is not None and str(reservation_id).isdigit():
        strategies.append(("reservation_id", Payment.reservation_id == int(reservation_id)))

    for name, criterion in strategies:
        payment = (
            db.query(Payment)
            .filter(criterion)
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .first()
        )
        if payment:
            logger.debug(f"Webhook {event.event_id}: payment {payment.id} matched by {name}")
            return payment
    return None


def is_processed(db: Session, payment_id: int, event_id: str) -> bool:
    return (
        db.query(ProcessedWebhookEvent)
        .filter(ProcessedWebhookEvent.payment_id == payment_id, ProcessedWebhookEvent.event_id == event_id)
        .first()
        is not None
    )


def _mark_processed(db: Session, payment: Payment, event: WebhookEvent) -> None:
    db.add(ProcessedWebhookEvent(payment_id=payment.id, event_id=event.event_id, event_type=event.event_type))


def _merge_meta(payment: Payment, **values) -> None:
    meta = dict(payment.meta or {})
    meta.update(values)
    payment.meta = meta


def _outcome(status: str, event: WebhookEvent, payment: Optional[Payment] = None, detail: Optional[str] = None) -> WebhookOutcome:
    return WebhookOutcome(
        status=status,
        event_id=event.event_id,
        event_type=event.event_type,
        payment_id=payment.id if payment else None,
        reservation_id=payment.reservation_id if payment else None,
        detail=detail,
    )


def _commit_processed(db: Session, event: WebhookEvent, payment: Payment) -> bool:
    """Commit the pending changes; False when a concurrent delivery recorded the event first."""
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"Webhook {event.event_id} for payment {payment.id} recorded concurrently")
        return False
    except SQLAlchemyError:
        db.rollback()
        raise
    return True


# =====================================
# ✅ Reservation confirmation
# =====================================
def _settled_amount(reservation: Reservation, payment: Payment, reported: Optional[Decimal]) -> Decimal:
    amount = reported if reported is not None else Decimal(str(payment.amount))
    total = Decimal(str(reservation.total_amount))
    if amount > total:
        logger.warning(
            f"Payment {payment.id} amount {amount} exceeds reservation {reservation.id} total {total}; "
            f"recording {total}"
        )
        amount = total
    return amount


def mark_paid_and_confirmed(
    db: Session,
    payment: Payment,
    event_id: Optional[str] = None,
    reported_amount: Optional[Decimal] = None,
) -> Optional[Reservation]:
    """
    Drive the reservation behind a completed payment to confirmed.

    Tries `paid` first inside a savepoint; a store rejection of that status rolls
    back just the savepoint and confirmation continues. Anything that keeps the
    reservation from reaching confirmed raises ReservationIntegrityError.
    """
    if payment.reservation_id is None:
        logger.warning(f"Payment {payment.id} completed without a reservation; nothing to confirm")
        return None

    reservation = db.query(Reservation).filter(Reservation.id == payment.reservation_id).first()
    if reservation is None:
        logger.warning(f"Payment {payment.id} points at missing reservation {payment.reservation_id}")
        return None

    try:
        amount = _settled_amount(reservation, payment, reported_amount)

        if reservation.status == ReservationStatus.confirmed.value:
            paid_so_far = Decimal(str(reservation.amount_paid or 0))
            if paid_so_far < amount:
                reservation.amount_paid = amount
                record_event(
                    db,
                    AuditKind.amount_reconciled,
                    reservation_id=reservation.id,
                    payment_id=payment.id,
                    event_id=event_id,
                    amount=amount,
                    detail={"previous": str(paid_so_far)},
                )
                db.commit()
                logger.info(f"Reservation {reservation.id} already confirmed; amount_paid {paid_so_far} -> {amount}")
            return reservation

        if reservation.status in RESERVATION_TERMINAL_STATUSES:
            raise ReservationIntegrityError(
                f"Reservation is {reservation.status} but its payment completed"
            )

        if reservation.status != ReservationStatus.paid.value:
            try:
                with db.begin_nested():
                    reservation.amount_paid = amount
                    change_status(db, reservation, ReservationStatus.paid.value, event_id=event_id, payment_id=payment.id)
            except IntegrityError as e:
                logger.warning(
                    f"Reservation {reservation.id}: 'paid' status rejected by the store ({e.orig}); "
                    f"confirming directly"
                )

        reservation.amount_paid = amount
        reservation.confirmed_at = datetime.utcnow()
        change_status(db, reservation, ReservationStatus.confirmed.value, event_id=event_id, payment_id=payment.id)
        db.commit()
    except ReservationIntegrityError as e:
        db.rollback()
        logger.critical(
            f"❌ Payment {payment.id} completed but reservation {payment.reservation_id} cannot be confirmed: {e.message}"
        )
        raise
    except Exception as e:
        db.rollback()
        logger.critical(
            f"❌ Payment {payment.id} completed but reservation {payment.reservation_id} "
            f"failed to reach confirmed: {e}",
            exc_info=True,
        )
        raise ReservationIntegrityError() from e

    logger.info(f"✅ Reservation {reservation.id} confirmed (payment {payment.id}, amount {amount})")
    return reservation


def _has_completed_sibling(db: Session, payment: Payment) -> bool:
    return (
        db.query(Payment)
        .filter(
            Payment.reservation_id == payment.reservation_id,
            Payment.id != payment.id,
            Payment.status == PaymentStatus.completed.value,
        )
        .first()
        is not None
    )


def _fail_payment(
    db: Session,
    payment: Payment,
    event: WebhookEvent,
    kind: AuditKind,
    failure_code: Optional[str],
    failure_message: Optional[str],
    reason: str,
) -> None:
    """
    Mark the payment failed, in the caller's transaction. The reservation is
    cancelled only while it still awaits payment and no sibling payment completed.
    """
    payment.status = PaymentStatus.failed.value
    _merge_meta(payment, failure_code=failure_code, failure_message=failure_message, failed_event=event.event_id)
    _mark_processed(db, payment, event)
    record_event(
        db,
        kind,
        reservation_id=payment.reservation_id,
        payment_id=payment.id,
        event_id=event.event_id,
        amount=payment.amount,
        detail={"code": failure_code, "message": failure_message},
    )

    reservation = payment.reservation
    if reservation is None:
        return
    if reservation.status not in AWAITING_PAYMENT_STATUSES:
        logger.warning(f"Payment {payment.id} failed; reservation {reservation.id} already {reservation.status}, left as is")
        return
    if _has_completed_sibling(db, payment):
        logger.warning(f"Payment {payment.id} failed; reservation {reservation.id} is covered by another completed payment")
        return
    apply_cancellation(db, reservation, CancellationActor.system(), reason)


# =====================================
# ✅ Event handlers
# =====================================
async def handle_source_chargeable(
    db: Session,
    event: WebhookEvent,
    payment: Payment,
    gateway: PayMongoClient,
    lock=None,
) -> WebhookOutcome:
    if is_processed(db, payment.id, event.event_id):
        logger.info(f"Webhook {event.event_id} already applied to payment {payment.id}")
        if payment.status == PaymentStatus.completed.value:
            mark_paid_and_confirmed(db, payment, event.event_id)
        return _outcome(OUTCOME_DUPLICATE, event, payment)

    if payment.status == PaymentStatus.completed.value:
        _mark_processed(db, payment, event)
        _commit_processed(db, event, payment)
        mark_paid_and_confirmed(db, payment, event.event_id)
        return _outcome(OUTCOME_PROCESSED, event, payment, "payment already completed")

    if payment.status == PaymentStatus.failed.value:
        _mark_processed(db, payment, event)
        _commit_processed(db, event, payment)
        logger.info(f"Chargeable source for failed payment {payment.id}; not charging")
        return _outcome(OUTCOME_IGNORED, event, payment, "payment already failed")

    if lock is None:
        lock = await get_processing_lock(db)
    key = payment_charge_key(payment.id)
    owner = new_owner_token()
    if not await lock.acquire(key, owner, PAYMENT_PROCESSING_TTL_SECONDS):
        logger.info(f"Payment {payment.id} is being charged by another worker; skipping {event.event_id}")
        return _outcome(OUTCOME_SKIPPED, event, payment, "charge in progress")

    try:
        # another worker may have finished between our checks and the lock
        db.refresh(payment)
        if payment.status != PaymentStatus.pending.value or is_processed(db, payment.id, event.event_id):
            logger.info(f"Payment {payment.id} settled while waiting for the lock ({payment.status})")
            return _outcome(OUTCOME_DUPLICATE, event, payment)

        record_event(
            db,
            AuditKind.charge_started,
            reservation_id=payment.reservation_id,
            payment_id=payment.id,
            event_id=event.event_id,
            amount=payment.amount,
        )
        db.commit()

        source_id = payment.source_id or event.resource_id
        try:
            charge = await gateway.create_payment(
                amount_centavos=to_centavos(payment.amount),
                source_id=source_id,
                description=f"Court reservation #{payment.reservation_id}",
                metadata={
                    "reservation_id": str(payment.reservation_id),
                    "payment_reference": payment.reference,
                },
            )
            if charge.status == "failed":
                raise GatewayError(f"Charge {charge.id} failed")
        except GatewayError as e:
            logger.error(f"Charging source {source_id} for payment {payment.id} failed: {e.message}")
            _fail_payment(
                db, payment, event, AuditKind.charge_failed,
                failure_code="charge_failed",
                failure_message=e.message,
                reason=REASON_PROCESSING_FAILED,
            )
            _commit_processed(db, event, payment)
            return _outcome(OUTCOME_FAILED, event, payment, e.message)

        # the completed payment is committed on its own; a confirmation failure
        # below must never lead to a second charge on redelivery
        payment.status = PaymentStatus.completed.value
        payment.paid_at = datetime.utcnow()
        payment.external_id = charge.id
        _merge_meta(payment, charge={"id": charge.id, "status": charge.status, "amount": charge.amount})
        _mark_processed(db, payment, event)
        record_event(
            db,
            AuditKind.charge_created,
            reservation_id=payment.reservation_id,
            payment_id=payment.id,
            event_id=event.event_id,
            amount=payment.amount,
            detail={"charge_id": charge.id},
        )
        record_event(
            db,
            AuditKind.payment_completed,
            reservation_id=payment.reservation_id,
            payment_id=payment.id,
            event_id=event.event_id,
            amount=payment.amount,
        )
        db.commit()
        logger.info(f"✅ Payment {payment.id} charged ({charge.id})")

        mark_paid_and_confirmed(db, payment, event.event_id, from_centavos(charge.amount))
        return _outcome(OUTCOME_PROCESSED, event, payment)
    except SQLAlchemyError:
        db.rollback()
        raise
    finally:
        await lock.release(key, owner)


async def handle_payment_paid(db: Session, event: WebhookEvent, payment: Payment) -> WebhookOutcome:
    if is_processed(db, payment.id, event.event_id):
        logger.info(f"Webhook {event.event_id} already applied to payment {payment.id}")
        if payment.status == PaymentStatus.completed.value:
            mark_paid_and_confirmed(db, payment, event.event_id, event.reported_amount)
        return _outcome(OUTCOME_DUPLICATE, event, payment)

    if payment.status != PaymentStatus.completed.value:
        if payment.status == PaymentStatus.failed.value:
            logger.warning(f"payment.paid for payment {payment.id} previously marked failed")
        payment.status = PaymentStatus.completed.value
        payment.paid_at = datetime.utcnow()
        if event.resource_id:
            payment.external_id = event.resource_id
        record_event(
            db,
            AuditKind.payment_completed,
            reservation_id=payment.reservation_id,
            payment_id=payment.id,
            event_id=event.event_id,
            amount=event.reported_amount or payment.amount,
        )
    _mark_processed(db, payment, event)
    if not _commit_processed(db, event, payment):
        return _outcome(OUTCOME_DUPLICATE, event, payment)

    mark_paid_and_confirmed(db, payment, event.event_id, event.reported_amount)
    return _outcome(OUTCOME_PROCESSED, event, payment)


async def handle_payment_failed(db: Session, event: WebhookEvent, payment: Payment) -> WebhookOutcome:
    if is_processed(db, payment.id, event.event_id):
        logger.info(f"Webhook {event.event_id} already applied to payment {payment.id}")
        return _outcome(OUTCOME_DUPLICATE, event, payment)

    attrs = event.attributes
    failure_code = attrs.get("failed_code") or attrs.get("failure_code")
    failure_message = attrs.get("failed_message") or attrs.get("failure_message")

    if payment.status == PaymentStatus.completed.value:
        # a late failure never downgrades a completed payment
        _mark_processed(db, payment, event)
        record_event(
            db,
            AuditKind.payment_failed,
            reservation_id=payment.reservation_id,
            payment_id=payment.id,
            event_id=event.event_id,
            detail={"code": failure_code, "message": failure_message, "ignored": True},
        )
        _commit_processed(db, event, payment)
        logger.warning(f"payment.failed {event.event_id} for completed payment {payment.id}; ignored")
        return _outcome(OUTCOME_IGNORED, event, payment, "payment already completed")

    _fail_payment(
        db, payment, event, AuditKind.payment_failed,
        failure_code=failure_code,
        failure_message=failure_message,
        reason=REASON_PAYMENT_FAILED,
    )
    if not _commit_processed(db, event, payment):
        return _outcome(OUTCOME_DUPLICATE, event, payment)
    logger.info(f"Payment {payment.id} failed ({failure_code}); reservation {payment.reservation_id} released")
    return _outcome(OUTCOME_FAILED, event, payment, failure_message)


async def handle_webhook(
    db: Session,
    body: Dict[str, Any],
    gateway: PayMongoClient,
    lock=None,
) -> WebhookOutcome:
    """
    Apply one verified webhook envelope. Raises ValueError for a malformed body
    and ReservationIntegrityError when a completed payment cannot be confirmed.
    """
    event = parse_event(body)
    logger.info(f"Webhook received: {event.event_type} ({event.event_id})")

    if event.event_type not in (SOURCE_CHARGEABLE, PAYMENT_PAID, PAYMENT_FAILED):
        logger.info(f"Ignoring unhandled webhook type {event.event_type}")
        return _outcome(OUTCOME_IGNORED, event, detail="unhandled event type")

    payment = find_payment(db, event)
    if payment is None:
        logger.warning(f"No payment matches webhook {event.event_type} ({event.event_id}, resource {event.resource_id})")
        return _outcome(OUTCOME_IGNORED, event, detail="payment not found")

    if event.event_type == SOURCE_CHARGEABLE:
        outcome = await handle_source_chargeable(db, event, payment, gateway, lock)
    elif event.event_type == PAYMENT_PAID:
        outcome = await handle_payment_paid(db, event, payment)
    else:
        outcome = await handle_payment_failed(db, event, payment)

    logger.info(f"Webhook {event.event_id} -> {outcome.status} (payment {outcome.payment_id})")
    return outcome
