class FulfillmentError(Exception):
    """Base class for errors raised by the fulfillment pipeline."""


class InvalidRequestError(FulfillmentError):
    """Missing or malformed input; nothing was mutated."""


class OrderNotFoundError(FulfillmentError):
    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class PaymentProcessorUnavailableError(FulfillmentError):
    """The payment processor could not be reached. Safe to retry."""


class GenerationError(FulfillmentError):
    """A single generation attempt failed. The message becomes the order's last error."""


class RedeemCodeError(FulfillmentError):
    pass


class ReportNotReadyError(FulfillmentError):
    pass


class NotificationError(FulfillmentError):
    pass
