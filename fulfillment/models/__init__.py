from fulfillment.core.database import Base
from fulfillment.models.order import Order, PaymentStatus, GenerationState
from fulfillment.models.outbox import OutboxMessage
from fulfillment.models.redeem_code import RedeemCode

__all__ = ["Base", "Order", "PaymentStatus", "GenerationState", "OutboxMessage", "RedeemCode"]
