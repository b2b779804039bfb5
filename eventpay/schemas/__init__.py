from eventpay.schemas.webhook import (
    WebhookEnvelope, PaymentIntentObject, ChargeObject, RefundObject,
    TicketItem, FulfillmentMetadata, parse_fulfillment_metadata
)
from eventpay.schemas.refund import RefundType, RefundRequest, RefundResponse
from eventpay.schemas.availability import AvailabilityCheck, EventAvailability
from eventpay.schemas.order import OrderSummary

__all__ = [
    "WebhookEnvelope", "PaymentIntentObject", "ChargeObject", "RefundObject",
    "TicketItem", "FulfillmentMetadata", "parse_fulfillment_metadata",
    "RefundType", "RefundRequest", "RefundResponse",
    "AvailabilityCheck", "EventAvailability",
    "OrderSummary"
]
