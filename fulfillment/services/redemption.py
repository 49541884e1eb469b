import logging
import secrets
import uuid
from typing import Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.core.clock import as_utc, utcnow
from fulfillment.core.config import settings
from fulfillment.core.exceptions import RedeemCodeError
from fulfillment.models.order import GenerationState, Order, PaymentStatus
from fulfillment.repositories.order import OrderRepository
from fulfillment.repositories.redeem_code import RedeemCodeRepository
from fulfillment.schemas.redemption import RedeemRequest
from fulfillment.services.orchestrator import FulfillmentOrchestrator

logger = logging.getLogger(__name__)


class RedemptionService:
    """Creates an already-paid order from a promotional code.

    The order skips payment verification but goes through the same
    orchestrator and coordinator as a checked-out order.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        orchestrator: FulfillmentOrchestrator,
        await_generation: bool = settings.await_generation_on_verify
    ) -> None:
        self.session_maker = session_maker
        self.orchestrator = orchestrator
        self.await_generation = await_generation

    async def redeem(self, request: RedeemRequest) -> Tuple[str, Order]:
        now = utcnow()

        async with self.session_maker() as session:
            codes = RedeemCodeRepository(session)
            redeem_code = await codes.get_by_code(request.code)

            if not redeem_code:
                logger.info(f"Redeem code not found: {request.code}")
                raise RedeemCodeError("Invalid redeem code")
            if not redeem_code.is_active:
                raise RedeemCodeError("This code has been deactivated")
            if redeem_code.expires_at and as_utc(redeem_code.expires_at) < now:
                raise RedeemCodeError("This code has expired")
            if redeem_code.max_uses is not None and redeem_code.current_uses >= redeem_code.max_uses:
                raise RedeemCodeError("This code has reached its usage limit")

            if not await codes.consume(redeem_code.id, now):
                await session.rollback()
                raise RedeemCodeError("This code has reached its usage limit")

            tier = redeem_code.tier
            order = Order(
                id=str(uuid.uuid4()),
                contact_email=request.contact_email,
                payment_status=PaymentStatus.PAID.value,
                generation_state=GenerationState.NOT_STARTED.value,
                generation_attempt=0,
                language=request.language,
                occasion_mode=request.occasion_mode,
                share_token=secrets.token_hex(12),
                redeem_code=request.code,
                created_at=now,
                updated_at=now,
                **request.pet.model_dump()
            )
            await OrderRepository(session).create(order)
            await session.commit()

        logger.info(f"Code {request.code} redeemed for order {order.id} (tier: {tier})")

        if self.await_generation:
            await self.orchestrator.fulfil([order.id])
        else:
            await self.orchestrator.dispatch([order.id])

        async with self.session_maker() as session:
            current = await OrderRepository(session).get_by_id(order.id)

        return tier, current
