import html
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.core.clock import utcnow
from fulfillment.core.config import settings
from fulfillment.models.order import GenerationState, Order
from fulfillment.repositories.order import OrderRepository
from fulfillment.repositories.outbox import OutboxRepository
from fulfillment.schemas.events import ReportGeneratedEvent
from fulfillment.services.email import EmailClient

logger = logging.getLogger(__name__)

REPORT_GENERATED = "report.generated"


class NotificationTrigger:
    """Queues the delivery notification for an order that just became Generated.

    Must be called inside the same transaction as the Generated transition so
    the notification is queued exactly when that transition commits.
    """

    def __init__(self, outbox_repository: OutboxRepository) -> None:
        self.outbox_repository = outbox_repository

    async def enqueue(self, order_id: str, attempt: int) -> None:
        await self.outbox_repository.enqueue(
            order_id,
            REPORT_GENERATED,
            ReportGeneratedEvent(order_id=order_id, attempt=attempt)
        )


def build_report_email(order: Order, site_url: str) -> tuple[str, str]:
    pet_name = html.escape(order.pet_name)
    report_url = f"{site_url.rstrip('/')}/report?id={order.id}&token={order.share_token}"
    sun_sign = (order.report_content or {}).get("sunSign")

    subject = f"{order.pet_name}'s Cosmic Profile is Ready"
    sign_line = f"<p>Sun sign: {html.escape(str(sun_sign))}</p>" if sun_sign else ""
    body = (
        f"<h1>{pet_name}'s Cosmic Profile is Ready</h1>"
        f"<p>We've analyzed the stars and uncovered {pet_name}'s unique cosmic blueprint.</p>"
        f"{sign_line}"
        f'<p><a href="{html.escape(report_url)}">View {pet_name}\'s Reading</a></p>'
    )
    return subject, body


class NotificationService:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        email_client: EmailClient,
        site_url: str = settings.site_url
    ) -> None:
        self.session_maker = session_maker
        self.email_client = email_client
        self.site_url = site_url

    async def deliver(self, event: ReportGeneratedEvent) -> bool:
        """Sends the report email for a Generated order at most once.

        The order is claimed by stamping ``notified_at`` before the send, so
        concurrent copies of the same event cannot both email the customer.
        A failed send clears the stamp again.
        """
        claimed_at = utcnow()

        async with self.session_maker() as session:
            repository = OrderRepository(session)
            order = await repository.get_by_id(event.order_id)

            if not order:
                logger.error(f"Cannot notify for unknown order {event.order_id}")
                return False

            if order.generation_state != GenerationState.GENERATED.value:
                logger.warning(
                    f"Skipping notification for order {order.id} in state {order.generation_state}",
                    extra={"order_id": order.id}
                )
                return False

            if not await repository.claim_notification(order.id, claimed_at):
                await session.rollback()
                logger.info(f"Order {order.id} already notified, skipping (idempotency)", extra={"order_id": order.id})
                return False
            await session.commit()

        subject, body = build_report_email(order, self.site_url)

        try:
            await self.email_client.send(order.contact_email, subject, body)
        except Exception as e:
            logger.error(
                f"Notification delivery failed for order {order.id}: {e}",
                extra={"order_id": order.id},
                exc_info=True
            )
            async with self.session_maker() as session:
                await OrderRepository(session).release_notification(order.id, claimed_at)
                await session.commit()
            return False

        logger.info(f"Delivery notification sent for order {order.id}", extra={"order_id": order.id})
        return True
