"""Error taxonomy for webhook fulfillment and refunds.

Every error carries a stable code, a user-safe message, the HTTP status the
API answers with, and optional details that are safe to return to the caller.
"""

from enum import Enum
from typing import Any, Optional


class ErrorCode(Enum):
    """Stable error codes returned in API error bodies."""

    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    MALFORMED_PAYLOAD = "MALFORMED_PAYLOAD"
    MISSING_METADATA = "MISSING_METADATA"
    INVALID_METADATA = "INVALID_METADATA"
    UNRESOLVABLE_EVENT = "UNRESOLVABLE_EVENT"
    PARTIAL_FULFILLMENT = "PARTIAL_FULFILLMENT"
    CAPACITY_EXCEEDED = "CAPACITY_EXCEEDED"
    SALE_WINDOW_CLOSED = "SALE_WINDOW_CLOSED"
    EVENT_CANCELLED = "EVENT_CANCELLED"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    AMBIGUOUS_ORDER_REFERENCE = "AMBIGUOUS_ORDER_REFERENCE"
    UNAUTHENTICATED = "UNAUTHENTICATED"
    NOT_ORDER_OWNER = "NOT_ORDER_OWNER"
    FORBIDDEN = "FORBIDDEN"
    INVALID_ORDER_STATE = "INVALID_ORDER_STATE"
    ALREADY_REFUNDED = "ALREADY_REFUNDED"
    POLICY_MISMATCH = "POLICY_MISMATCH"
    DEADLINE_PASSED = "DEADLINE_PASSED"
    NOT_ONLINE_REFUNDABLE = "NOT_ONLINE_REFUNDABLE"
    NOTHING_TO_REFUND = "NOTHING_TO_REFUND"
    PROCESSOR_ERROR = "PROCESSOR_ERROR"
    PROCESSOR_OUTCOME_UNKNOWN = "PROCESSOR_OUTCOME_UNKNOWN"
    RECONCILIATION_REQUIRED = "RECONCILIATION_REQUIRED"
    DATASTORE_UNAVAILABLE = "DATASTORE_UNAVAILABLE"
    CONSTRAINT_VIOLATION = "CONSTRAINT_VIOLATION"
    NOT_CONFIGURED = "NOT_CONFIGURED"


class PaymentsError(Exception):
    """Base error with code, user-safe message and HTTP status."""

    status_code: int = 500
    code: ErrorCode = ErrorCode.DATASTORE_UNAVAILABLE

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = {k: v for k, v in details.items() if v is not None}

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code.value, **self.details}


# Input errors: rejected before any side effect.

class InvalidSignature(PaymentsError):
    status_code = 401
    code = ErrorCode.INVALID_SIGNATURE

    def __init__(self, message: str = "Invalid webhook signature") -> None:
        super().__init__(message)


class MalformedPayload(PaymentsError):
    status_code = 400
    code = ErrorCode.MALFORMED_PAYLOAD


class MissingMetadata(PaymentsError):
    status_code = 400
    code = ErrorCode.MISSING_METADATA

    def __init__(self, missing_fields: list[str]) -> None:
        super().__init__("Missing required metadata fields", missing_fields=missing_fields)
        self.missing_fields = missing_fields


class InvalidMetadata(PaymentsError):
    status_code = 400
    code = ErrorCode.INVALID_METADATA

    def __init__(self, message: str, errors: Optional[list[str]] = None) -> None:
        super().__init__(message, invalid_fields=errors)
        self.errors = errors or []


class UnresolvableEvent(PaymentsError):
    status_code = 404
    code = ErrorCode.UNRESOLVABLE_EVENT

    def __init__(self, event_ref: str) -> None:
        super().__init__("Invalid event identifier", event_id=event_ref)
        self.event_ref = event_ref


class OrderNotFound(PaymentsError):
    status_code = 404
    code = ErrorCode.ORDER_NOT_FOUND

    def __init__(self, message: str = "Order not found") -> None:
        super().__init__(message)


class AmbiguousOrderReference(PaymentsError):
    status_code = 400
    code = ErrorCode.AMBIGUOUS_ORDER_REFERENCE

    def __init__(self, order_ref: str) -> None:
        super().__init__("Multiple orders match this display id", order_id=order_ref)


# Authorization errors.

class Unauthenticated(PaymentsError):
    status_code = 401
    code = ErrorCode.UNAUTHENTICATED

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message)


class NotOrderOwner(PaymentsError):
    """Worded like a miss so callers cannot probe for other people's orders."""

    status_code = 403
    code = ErrorCode.NOT_ORDER_OWNER

    def __init__(self) -> None:
        super().__init__("Order not found for this account")


class Forbidden(PaymentsError):
    status_code = 403
    code = ErrorCode.FORBIDDEN

    def __init__(self, message: str = "Staff access required") -> None:
        super().__init__(message)


# Policy errors: expected, user-facing, never retried.

class CapacityExceeded(PaymentsError):
    status_code = 409
    code = ErrorCode.CAPACITY_EXCEEDED

    def __init__(self, message: str, order_id: Optional[str] = None,
                 ticket_type_id: Optional[str] = None, available: Optional[int] = None) -> None:
        super().__init__(message, order_id=order_id, ticket_type_id=ticket_type_id, available=available)
        self.order_id = order_id


class SaleWindowClosed(PaymentsError):
    status_code = 400
    code = ErrorCode.SALE_WINDOW_CLOSED

    def __init__(self, ticket_type_id: str) -> None:
        super().__init__("Ticket type is not on sale", ticket_type_id=ticket_type_id)


class EventCancelled(PaymentsError):
    status_code = 400
    code = ErrorCode.EVENT_CANCELLED

    def __init__(self) -> None:
        super().__init__("Event has been cancelled")


class InvalidOrderState(PaymentsError):
    status_code = 400
    code = ErrorCode.INVALID_ORDER_STATE

    def __init__(self, status: str) -> None:
        super().__init__("Only completed orders can be refunded", status=status)


class AlreadyRefunded(PaymentsError):
    status_code = 400
    code = ErrorCode.ALREADY_REFUNDED

    def __init__(self, message: str = "Order is already fully refunded") -> None:
        super().__init__(message)


class PolicyMismatch(PaymentsError):
    status_code = 400
    code = ErrorCode.POLICY_MISMATCH


class DeadlinePassed(PaymentsError):
    status_code = 400
    code = ErrorCode.DEADLINE_PASSED

    def __init__(self, cutoff_hours: int) -> None:
        super().__init__(
            f"Refund deadline has passed. Customer refunds must be requested "
            f"at least {cutoff_hours} hours before the event."
        )


class NotOnlineRefundable(PaymentsError):
    status_code = 400
    code = ErrorCode.NOT_ONLINE_REFUNDABLE

    def __init__(self) -> None:
        super().__init__("This order cannot be refunded online. Please contact support.")


class NothingToRefund(PaymentsError):
    status_code = 400
    code = ErrorCode.NOTHING_TO_REFUND

    def __init__(self) -> None:
        super().__init__("No refund amount calculated")


# Infrastructure errors: transient, safe for the caller to retry.

class DatastoreUnavailable(PaymentsError):
    status_code = 500
    code = ErrorCode.DATASTORE_UNAVAILABLE


class ConstraintViolation(DatastoreUnavailable):
    """A write was rejected by a uniqueness or check constraint on ``field``."""

    code = ErrorCode.CONSTRAINT_VIOLATION

    def __init__(self, field: Optional[str], message: str = "Constraint violation") -> None:
        super().__init__(message, field=field)
        self.field = field


class ProcessorError(PaymentsError):
    status_code = 500
    code = ErrorCode.PROCESSOR_ERROR

    def __init__(self, message: str = "Refund processing failed") -> None:
        super().__init__(message)


class ProcessorOutcomeUnknown(PaymentsError):
    """The processor call timed out or dropped; it may still have committed."""

    status_code = 500
    code = ErrorCode.PROCESSOR_OUTCOME_UNKNOWN

    def __init__(self) -> None:
        super().__init__(
            "Refund status is unknown. Do not retry; support will confirm the outcome."
        )


# Fatal for automation: the processor moved money but we could not record it.

class PartialFulfillment(PaymentsError):
    status_code = 500
    code = ErrorCode.PARTIAL_FULFILLMENT

    def __init__(self, order_id: str) -> None:
        super().__init__("Order created but tickets could not be issued", order_id=order_id)
        self.order_id = order_id


class ReconciliationRequired(PaymentsError):
    status_code = 500
    code = ErrorCode.RECONCILIATION_REQUIRED

    def __init__(self, order_id: str, stripe_refund_id: str) -> None:
        super().__init__(
            "Refund processed but database update failed",
            order_id=order_id,
            stripe_refund_id=stripe_refund_id
        )
        self.order_id = order_id
        self.stripe_refund_id = stripe_refund_id


class WebhookNotConfigured(PaymentsError):
    status_code = 500
    code = ErrorCode.NOT_CONFIGURED

    def __init__(self) -> None:
        super().__init__("Webhook secret not configured")
