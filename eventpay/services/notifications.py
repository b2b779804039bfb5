from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Union


@dataclass(frozen=True)
class TicketLine:
    ticket_type: str
    quantity: int
    total_paid: int


@dataclass(frozen=True)
class TicketConfirmation:
    to: str
    customer_name: str
    order_id: str
    payment_intent_id: str
    event_title: str
    event_start: Optional[datetime]
    event_end: Optional[datetime]
    event_location: Optional[str]
    total_paid: int
    currency: str
    tickets: tuple[TicketLine, ...] = ()
    confirmation_codes: tuple[str, ...] = ()

    @property
    def subject(self) -> str:
        return f"Your tickets for {self.event_title}"


@dataclass(frozen=True)
class RefundedLine:
    ticket_type: str
    quantity: int
    original_price: int
    refund_amount: int


@dataclass(frozen=True)
class RefundConfirmation:
    to: str
    customer_name: str
    order_id: str
    stripe_refund_id: str
    refund_type: str
    refund_reason: str
    total_refund_amount: int
    original_order_amount: int
    remaining_amount: int
    currency: str
    event_title: str
    event_start: Optional[datetime]
    event_location: Optional[str]
    event_slug: Optional[str]
    refunded_tickets: tuple[RefundedLine, ...] = field(default_factory=tuple)
    processing_timeframe: str = "5-10 business days"

    @property
    def subject(self) -> str:
        return f"Refund confirmed for {self.event_title}"


Notification = Union[TicketConfirmation, RefundConfirmation]
