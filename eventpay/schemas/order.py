from pydantic import BaseModel
from datetime import datetime
from typing import Optional

from eventpay.models.order import OrderStatus


class OrderSummary(BaseModel):
    id: str
    display_id: str
    event_id: str
    status: OrderStatus
    total_amount: int
    refund_amount: int
    currency: str
    stripe_payment_intent_id: Optional[str]
    created_at: Optional[datetime]

    class Config:
        from_attributes = True
