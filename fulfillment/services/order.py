import logging
import secrets
import uuid
from datetime import datetime, timezone
from typing import List

from fulfillment.core.clock import as_utc
from fulfillment.core.exceptions import InvalidRequestError, OrderNotFoundError, ReportNotReadyError
from fulfillment.models.order import GenerationState, Order, PaymentStatus
from fulfillment.repositories.order import OrderRepository
from fulfillment.schemas.order import (
    CheckoutBatchResponse,
    CheckoutCreate,
    Failed,
    FailedOrderResponse,
    Generated,
    Generating,
    NotStarted,
    OrderStatusResponse,
    ReportResponse,
    RetryScheduled,
)

logger = logging.getLogger(__name__)

FAILED_MESSAGE = (
    "We couldn't finish this report. Please contact support and we'll make it right."
)


def generation_view(order: Order):
    state = order.generation_state
    if state == GenerationState.GENERATING.value:
        return Generating(attempt=order.generation_attempt, started_at=as_utc(order.generation_started_at))
    if state == GenerationState.RETRY_SCHEDULED.value:
        return RetryScheduled(attempt=order.generation_attempt, retry_at=as_utc(order.retry_at))
    if state == GenerationState.GENERATED.value:
        return Generated(attempt=order.generation_attempt)
    if state == GenerationState.FAILED.value:
        return Failed(attempts=order.generation_attempt)
    return NotStarted()


def build_status_response(order: Order) -> OrderStatusResponse:
    if not order.is_paid:
        status, message = "awaiting_payment", None
    elif order.generation_state == GenerationState.GENERATED.value:
        status, message = "ready", None
    elif order.generation_state == GenerationState.FAILED.value:
        status, message = "failed", FAILED_MESSAGE
    else:
        status, message = "processing", None

    return OrderStatusResponse(
        id=order.id,
        checkout_batch_id=order.checkout_batch_id,
        pet_name=order.pet_name,
        payment_status=order.payment_status,
        status=status,
        generation=generation_view(order),
        message=message,
        created_at=order.created_at,
        updated_at=order.updated_at
    )


class OrderService:
    def __init__(self, repository: OrderRepository, max_batch_size: int = 10) -> None:
        self.repository = repository
        self.max_batch_size = max_batch_size

    async def create_checkout(self, checkout: CheckoutCreate) -> CheckoutBatchResponse:
        if len(checkout.pets) > self.max_batch_size:
            raise InvalidRequestError(f"A checkout can cover at most {self.max_batch_size} pets")

        batch_id = str(uuid.uuid4())
        orders = []
        for pet in checkout.pets:
            now = datetime.now(timezone.utc)
            order = Order(
                id=str(uuid.uuid4()),
                checkout_batch_id=batch_id,
                contact_email=checkout.contact_email,
                payment_status=PaymentStatus.PENDING.value,
                generation_state=GenerationState.NOT_STARTED.value,
                generation_attempt=0,
                language=checkout.language,
                occasion_mode=checkout.occasion_mode,
                share_token=secrets.token_hex(12),
                created_at=now,
                updated_at=now,
                **pet.model_dump()
            )
            orders.append(await self.repository.create(order))

        await self.repository.session.commit()
        logger.info(f"Checkout batch {batch_id} created with {len(orders)} orders")

        return CheckoutBatchResponse(
            checkout_batch_id=batch_id,
            orders=[build_status_response(order) for order in orders]
        )

    async def get_order(self, order_id: str) -> OrderStatusResponse:
        order = await self.repository.get_by_id(order_id)
        if not order:
            raise OrderNotFoundError(order_id)
        return build_status_response(order)

    async def get_report(self, order_id: str) -> ReportResponse:
        order = await self.repository.get_by_id(order_id)
        if not order:
            raise OrderNotFoundError(order_id)
        if not order.is_paid:
            raise ReportNotReadyError("This report has not been purchased yet")
        if order.generation_state == GenerationState.FAILED.value:
            raise ReportNotReadyError(FAILED_MESSAGE)
        if order.generation_state != GenerationState.GENERATED.value:
            raise ReportNotReadyError("Report is still being generated")

        return ReportResponse(
            id=order.id,
            pet_name=order.pet_name,
            species=order.species,
            breed=order.breed,
            share_token=order.share_token,
            report=order.report_content or {}
        )

    async def list_failed(self, limit: int = 100) -> List[FailedOrderResponse]:
        orders = await self.repository.list_failed(limit)
        return [
            FailedOrderResponse(
                id=order.id,
                checkout_batch_id=order.checkout_batch_id,
                contact_email=order.contact_email,
                pet_name=order.pet_name,
                attempts=order.generation_attempt,
                last_error=order.last_error,
                updated_at=order.updated_at
            )
            for order in orders
        ]
