from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.core.config import settings
from fulfillment.core.database import get_db, get_session_maker
from fulfillment.repositories.order import OrderRepository
from fulfillment.services.coordinator import GenerationCoordinator, ReportGenerator
from fulfillment.services.generator import generator_client
from fulfillment.services.order import OrderService
from fulfillment.services.orchestrator import FulfillmentOrchestrator
from fulfillment.services.payment_gateway import payment_gateway
from fulfillment.services.payment_verifier import PaymentGateway, PaymentVerifier
from fulfillment.services.redemption import RedemptionService


def get_generator() -> ReportGenerator:
    return generator_client


def get_payment_gateway() -> PaymentGateway:
    return payment_gateway


def get_order_service(db: AsyncSession = Depends(get_db)) -> OrderService:
    return OrderService(OrderRepository(db), max_batch_size=settings.max_batch_size)


def get_orchestrator(
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
    generator: ReportGenerator = Depends(get_generator)
) -> FulfillmentOrchestrator:
    coordinator = GenerationCoordinator(session_maker, generator)
    return FulfillmentOrchestrator(session_maker, coordinator)


def get_payment_verifier(
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator)
) -> PaymentVerifier:
    return PaymentVerifier(session_maker, gateway, orchestrator)


def get_redemption_service(
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
    orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator)
) -> RedemptionService:
    return RedemptionService(session_maker, orchestrator)
