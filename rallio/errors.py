# rallio/errors.py
"""
Domain errors raised by the services and rendered by the API error handler.
"""
from decimal import Decimal
from typing import Any, Dict, Optional


class RallioError(Exception):
    code = "error"
    status_code = 500
    default_message = "Something went wrong"

    def __init__(self, message: Optional[str] = None, **extras: Any):
        self.message = message or self.default_message
        self.extras: Dict[str, Any] = extras
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body = {"success": False, "error": self.code, "message": self.message}
        for key, value in self.extras.items():
            body[key] = float(value) if isinstance(value, Decimal) else value
        return body


class ConflictError(RallioError):
    code = "conflict"
    status_code = 409
    default_message = "Slot no longer available"


class NotAuthenticated(RallioError):
    code = "not_authenticated"
    status_code = 401
    default_message = "Authentication required"


class NotFound(RallioError):
    code = "not_found"
    status_code = 404
    default_message = "Not found"


class PolicyViolation(RallioError):
    code = "policy_violation"
    status_code = 400
    default_message = "Request not allowed"


class NotCancellable(PolicyViolation):
    code = "not_cancellable"
    default_message = "Reservation cannot be cancelled"


class NotJoinable(PolicyViolation):
    code = "not_joinable"
    default_message = "Queue is not accepting players"


class QueueFull(PolicyViolation):
    code = "queue_full"
    default_message = "Queue is full"


class AlreadyJoined(PolicyViolation):
    code = "already_joined"
    default_message = "Already in this queue"


class NotInQueue(PolicyViolation):
    code = "not_in_queue"
    default_message = "Not in this queue"


class PaymentRequired(RallioError):
    code = "payment_required"
    status_code = 402
    default_message = "Please settle your balance before leaving the queue"

    def __init__(self, amount_owed, games_played: int, message: Optional[str] = None):
        self.amount_owed = amount_owed
        self.games_played = games_played
        super().__init__(message, amountOwed=amount_owed, gamesPlayed=games_played)


class GatewayError(RallioError):
    code = "gateway_error"
    status_code = 502
    default_message = "Payment gateway request failed"


class ReservationIntegrityError(RallioError):
    """Money was taken but the reservation could not be confirmed."""
    code = "integrity_error"
    status_code = 500
    default_message = "Payment recorded but reservation could not be confirmed"
