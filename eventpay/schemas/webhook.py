from pydantic import BaseModel, EmailStr, Field, Json, ValidationError, field_validator
from typing import Any, Optional

from eventpay.errors import InvalidMetadata, MalformedPayload, MissingMetadata

GUEST_MARKER = "guest"
REQUIRED_METADATA_FIELDS = ("event_id", "user_id", "ticket_items", "customer_email")
MAX_TICKETS_PER_ITEM = 100


class EventData(BaseModel):
    object: dict[str, Any]


class WebhookEnvelope(BaseModel):
    id: str
    type: str
    data: EventData


class PaymentIntentObject(BaseModel):
    id: str
    amount: int
    currency: str = "usd"
    metadata: dict[str, str] = Field(default_factory=dict)


class ChargeObject(BaseModel):
    id: str
    payment_intent: Optional[str] = None
    amount: int = 0
    amount_refunded: int = 0


class RefundObject(BaseModel):
    id: str
    charge: Optional[str] = None
    payment_intent: Optional[str] = None
    amount: int = 0
    status: Optional[str] = None
    reason: Optional[str] = None
    failure_reason: Optional[str] = None


class TicketItem(BaseModel):
    ticket_type_id: str = Field(min_length=1)
    quantity: int = Field(ge=1, le=MAX_TICKETS_PER_ITEM)
    unit_price: int = Field(ge=0)

    @property
    def line_total(self) -> int:
        return self.quantity * self.unit_price


class FulfillmentMetadata(BaseModel):
    event_id: str
    user_id: str
    ticket_items: Json[list[TicketItem]]
    customer_email: EmailStr
    customer_name: str = "Customer"

    @field_validator("ticket_items")
    @classmethod
    def at_least_one_item(cls, items: list[TicketItem]) -> list[TicketItem]:
        if not items:
            raise ValueError("ticket_items must not be empty")
        return items

    @property
    def is_guest(self) -> bool:
        return self.user_id == GUEST_MARKER

    @property
    def buyer_user_id(self) -> Optional[str]:
        return None if self.is_guest else self.user_id

    @property
    def ticket_count(self) -> int:
        return sum(item.quantity for item in self.ticket_items)

    @property
    def items_total(self) -> int:
        return sum(item.line_total for item in self.ticket_items)


def parse_envelope(payload: bytes) -> WebhookEnvelope:
    try:
        return WebhookEnvelope.model_validate_json(payload)
    except ValidationError as e:
        raise MalformedPayload("Malformed webhook payload", errors=_describe(e))


def parse_object(model: type[BaseModel], envelope: WebhookEnvelope) -> Any:
    try:
        return model.model_validate(envelope.data.object)
    except ValidationError as e:
        raise MalformedPayload(f"Malformed {envelope.type} object", errors=_describe(e))


def parse_fulfillment_metadata(metadata: dict[str, str]) -> FulfillmentMetadata:
    """
    Validate Stripe metadata in a single step.
    Returns a complete FulfillmentMetadata, or raises MissingMetadata listing
    every absent field, or InvalidMetadata listing every bad one.
    """
    present = {k: v for k, v in (metadata or {}).items() if v not in (None, "")}
    missing = [field for field in REQUIRED_METADATA_FIELDS if field not in present]
    if missing:
        raise MissingMetadata(missing)

    try:
        return FulfillmentMetadata.model_validate(present)
    except ValidationError as e:
        raise InvalidMetadata("Invalid metadata in payment intent", errors=_describe(e))


def _describe(error: ValidationError) -> list[str]:
    described = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "payload"
        described.append(f"{location}: {item['msg']}")
    return described
