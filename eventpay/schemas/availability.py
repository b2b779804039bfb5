from pydantic import BaseModel, Field
from typing import Optional


class AvailabilityItem(BaseModel):
    ticket_type_id: str
    quantity: int = Field(ge=1)


class AvailabilityCheck(BaseModel):
    items: list[AvailabilityItem] = Field(min_length=1)


class TicketTypeAvailability(BaseModel):
    ticket_type_id: str
    name: str
    price: int
    capacity: int
    sold_count: int
    remaining: int
    on_sale: bool


class EventAvailability(BaseModel):
    event_id: str
    cancelled: bool
    capacity: Optional[int]
    tickets_sold: int
    remaining: Optional[int]
    ticket_types: list[TicketTypeAvailability]
