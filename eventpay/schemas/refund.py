from pydantic import BaseModel, Field
from enum import Enum


class RefundType(str, Enum):
    FULL_CANCELLATION = "full_cancellation"
    CUSTOMER_REQUEST = "customer_request"


class RefundRequest(BaseModel):
    order_id: str = Field(min_length=1)
    refund_type: RefundType
    reason: str = Field(min_length=1, max_length=500)


class RefundInfo(BaseModel):
    id: str
    amount: int
    status: str
    order_id: str
    refund_type: RefundType
    reason: str
    processing_time: str


class OrderRefundTotals(BaseModel):
    total_amount: int
    previous_refund_amount: int
    new_refund_amount: int
    remaining_amount: int


class RefundResponse(BaseModel):
    success: bool = True
    refund: RefundInfo
    order: OrderRefundTotals
