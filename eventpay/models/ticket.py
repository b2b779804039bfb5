import uuid

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Enum
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from eventpay.database import Base
import enum


class TicketStatus(str, enum.Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"


class Ticket(Base):
    __tablename__ = "tickets"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    ticket_type_id = Column(String(36), ForeignKey("ticket_types.id"), nullable=False)
    event_id = Column(String(36), ForeignKey("events.id"), nullable=False)
    user_id = Column(String(64), nullable=True)
    unit_price = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    confirmation_code = Column(String(32), unique=True, nullable=False)
    status = Column(
        Enum(TicketStatus, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=TicketStatus.ACTIVE
    )
    customer_email = Column(String(320), nullable=True)
    customer_name = Column(String(200), nullable=True)
    attendee_email = Column(String(320), nullable=True)
    attendee_name = Column(String(200), nullable=True)
    purchased_at = Column(DateTime, server_default=func.now())

    order = relationship("Order", back_populates="tickets")
    ticket_type = relationship("TicketType", back_populates="tickets")
