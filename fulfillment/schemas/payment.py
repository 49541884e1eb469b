from typing import List
from pydantic import BaseModel, Field

from fulfillment.schemas.order import OrderStatusResponse


class VerifyPaymentRequest(BaseModel):
    checkout_reference: str = Field(min_length=1, max_length=255)
    order_id: str = Field(min_length=1, max_length=36)


class VerifyPaymentResponse(BaseModel):
    paid: bool
    processor_status: str
    order: OrderStatusResponse
    batch: List[OrderStatusResponse]
