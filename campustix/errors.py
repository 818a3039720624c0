"""
Domain errors.

Every failure a caller can act on is a ``DomainError`` with a stable ``code``
and a ``kind``. The HTTP layer maps the kind to a status code; nothing below
it knows about HTTP.
"""
from __future__ import annotations
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    CONFLICT = "conflict"
    STATE = "state"
    EXTERNAL = "external"
    INTEGRITY = "integrity"


class DomainError(Exception):
    code = "domain_error"
    kind = ErrorKind.VALIDATION
    default_message = "request could not be processed"

    def __init__(self, message: Optional[str] = None, *,
                 current_status: Optional[str] = None):
        self.message = message or self.default_message
        self.current_status = current_status
        super().__init__(self.message)

    def to_dict(self) -> dict:
        # integrity failures never leak their cause
        if self.kind == ErrorKind.INTEGRITY:
            return {"error": "invalid", "code": "invalid"}
        body = {"error": self.message, "code": self.code}
        if self.current_status is not None:
            body["current_status"] = self.current_status
        return body


# ---- validation ----
class ValidationFailed(DomainError):
    code = "validation_failed"
    kind = ErrorKind.VALIDATION


class EventNotPublished(DomainError):
    code = "event_not_published"
    kind = ErrorKind.VALIDATION
    default_message = "event is not open for registration"


# ---- not found / forbidden ----
class EventNotFound(DomainError):
    code = "event_not_found"
    kind = ErrorKind.NOT_FOUND
    default_message = "event not found"


class TierNotFound(DomainError):
    code = "tier_not_found"
    kind = ErrorKind.NOT_FOUND
    default_message = "ticket tier not found"


class RegistrationNotFound(DomainError):
    code = "registration_not_found"
    kind = ErrorKind.NOT_FOUND
    default_message = "registration not found"


class Forbidden(DomainError):
    code = "forbidden"
    kind = ErrorKind.FORBIDDEN
    default_message = "not allowed"


# ---- conflicts ----
class RegistrationWindowClosed(DomainError):
    code = "registration_window_closed"
    kind = ErrorKind.CONFLICT
    default_message = "registration window is closed"


class TierInactiveOrSoldOut(DomainError):
    code = "tier_inactive_or_sold_out"
    kind = ErrorKind.CONFLICT
    default_message = "ticket tier is inactive or sold out"


class InsufficientInventory(DomainError):
    code = "insufficient_inventory"
    kind = ErrorKind.CONFLICT
    default_message = "not enough tickets left"


class InventoryUnderflow(DomainError):
    code = "inventory_underflow"
    kind = ErrorKind.CONFLICT
    default_message = "inventory counters would go negative"


class DuplicateRegistration(DomainError):
    code = "duplicate_registration"
    kind = ErrorKind.CONFLICT
    default_message = "buyer already holds a registration for this event"


class AlreadyCancelled(DomainError):
    code = "already_cancelled"
    kind = ErrorKind.CONFLICT
    default_message = "registration is already cancelled"


class AlreadyCheckedIn(DomainError):
    code = "already_checked_in"
    kind = ErrorKind.CONFLICT
    default_message = "ticket already used"


# ---- state ----
class InvalidTransition(DomainError):
    code = "invalid_transition"
    kind = ErrorKind.STATE
    default_message = "transition not allowed from the current status"


class NotYetConfirmed(DomainError):
    code = "not_yet_confirmed"
    kind = ErrorKind.STATE
    default_message = "registration is not confirmed"


class TicketCancelledOrExpired(DomainError):
    code = "ticket_cancelled_or_expired"
    kind = ErrorKind.STATE
    default_message = "ticket is cancelled or expired"


class NotCheckedIn(DomainError):
    code = "not_checked_in"
    kind = ErrorKind.STATE
    default_message = "registration is not checked in"


class RefundNotAllowed(DomainError):
    code = "refund_not_allowed"
    kind = ErrorKind.STATE
    default_message = "no captured payment to refund"


# ---- external / integrity ----
class PaymentProviderUnavailable(DomainError):
    code = "payment_provider_unavailable"
    kind = ErrorKind.EXTERNAL
    default_message = "payment provider unavailable"


class InvalidSignature(DomainError):
    code = "invalid_signature"
    kind = ErrorKind.INTEGRITY


class InvalidCredential(DomainError):
    code = "invalid_credential"
    kind = ErrorKind.INTEGRITY


HTTP_STATUS = {
    ErrorKind.VALIDATION: 422,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.CONFLICT: 409,
    ErrorKind.STATE: 409,
    ErrorKind.EXTERNAL: 502,
    ErrorKind.INTEGRITY: 400,
}
