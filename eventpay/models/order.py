import uuid

from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Enum, CheckConstraint, UniqueConstraint
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from eventpay.database import Base
import enum


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


PAYMENT_REFERENCE_CONSTRAINT = "uq_orders_stripe_payment_intent_id"


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("stripe_payment_intent_id", name=PAYMENT_REFERENCE_CONSTRAINT),
        CheckConstraint("refund_amount <= total_amount", name="ck_orders_refund_within_total"),
        CheckConstraint("refund_amount >= 0", name="ck_orders_refund_non_negative"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(64), nullable=True, index=True)
    guest_email = Column(String(320), nullable=True)
    guest_name = Column(String(200), nullable=True)
    event_id = Column(String(36), ForeignKey("events.id"), nullable=False, index=True)
    total_amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="usd")
    status = Column(
        Enum(OrderStatus, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=OrderStatus.PENDING
    )
    refund_amount = Column(Integer, nullable=False, default=0)
    stripe_payment_intent_id = Column(String(255), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
    refunded_at = Column(DateTime, nullable=True)

    event = relationship("Event", back_populates="orders")
    tickets = relationship("Ticket", back_populates="order")

    @property
    def display_id(self) -> str:
        return self.id[-8:]

    @property
    def remaining_amount(self) -> int:
        return self.total_amount - (self.refund_amount or 0)

    @property
    def is_guest(self) -> bool:
        return self.user_id is None
