import uuid

from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, CheckConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from eventpay.database import Base


def legacy_event_id(number: int) -> str:
    """Map a pre-UUID numeric event id onto its reserved UUID."""
    return f"00000000-0000-0000-0000-{number:012d}"


class Event(Base):
    __tablename__ = "events"
    __table_args__ = (
        CheckConstraint(
            "capacity IS NULL OR tickets_sold <= capacity",
            name="ck_events_tickets_sold_within_capacity"
        ),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    slug = Column(String(200), unique=True, nullable=False, index=True)
    title = Column(String(200), nullable=False)
    location = Column(String(500), nullable=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=True)
    capacity = Column(Integer, nullable=True)
    tickets_sold = Column(Integer, nullable=False, default=0)
    cancelled = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    ticket_types = relationship("TicketType", back_populates="event")
    orders = relationship("Order", back_populates="event")


class TicketType(Base):
    __tablename__ = "ticket_types"
    __table_args__ = (
        CheckConstraint("sold_count <= capacity", name="ck_ticket_types_sold_within_capacity"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    event_id = Column(String(36), ForeignKey("events.id"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    price = Column(Integer, nullable=False)
    capacity = Column(Integer, nullable=False)
    sold_count = Column(Integer, nullable=False, default=0)
    sale_start = Column(DateTime, nullable=True)
    sale_end = Column(DateTime, nullable=True)

    event = relationship("Event", back_populates="ticket_types")
    tickets = relationship("Ticket", back_populates="ticket_type")

    @property
    def remaining(self) -> int:
        return max(0, self.capacity - (self.sold_count or 0))

    def is_on_sale(self, at) -> bool:
        if self.sale_start and at < self.sale_start:
            return False
        if self.sale_end and at >= self.sale_end:
            return False
        return True
