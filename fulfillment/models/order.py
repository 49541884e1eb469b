from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import String, DateTime, JSON, Integer, Text, Index
from sqlalchemy.orm import Mapped, mapped_column

from fulfillment.core.database import Base


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


class GenerationState(str, Enum):
    NOT_STARTED = "not_started"
    GENERATING = "generating"
    RETRY_SCHEDULED = "retry_scheduled"
    GENERATED = "generated"
    FAILED = "failed"


TERMINAL_STATES = frozenset({GenerationState.GENERATED.value, GenerationState.FAILED.value})


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    checkout_batch_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    checkout_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    contact_email: Mapped[str] = mapped_column(String(320), nullable=False, index=True)
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False, default=PaymentStatus.PENDING.value)

    generation_state: Mapped[str] = mapped_column(String(20), nullable=False, default=GenerationState.NOT_STARTED.value)
    generation_attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    generation_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    report_content: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    notified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    pet_name: Mapped[str] = mapped_column(String(100), nullable=False)
    species: Mapped[str] = mapped_column(String(50), nullable=False)
    breed: Mapped[str | None] = mapped_column(String(100), nullable=True)
    gender: Mapped[str | None] = mapped_column(String(20), nullable=True)
    birth_date: Mapped[str | None] = mapped_column(String(20), nullable=True)
    birth_time: Mapped[str | None] = mapped_column(String(20), nullable=True)
    birth_location: Mapped[str | None] = mapped_column(String(255), nullable=True)
    soul_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    superpower: Mapped[str | None] = mapped_column(String(100), nullable=True)
    stranger_reaction: Mapped[str | None] = mapped_column(String(100), nullable=True)
    language: Mapped[str] = mapped_column(String(10), nullable=False, default="en")
    occasion_mode: Mapped[str] = mapped_column(String(20), nullable=False, default="discover")

    share_token: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    redeem_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index("idx_orders_generation_state", "generation_state", "retry_at"),
    )

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID.value

    @property
    def is_terminal(self) -> bool:
        return self.generation_state in TERMINAL_STATES

    def profile(self) -> dict[str, str]:
        return {
            "name": self.pet_name,
            "species": self.species,
            "breed": self.breed or "",
            "gender": self.gender or "",
            "dateOfBirth": self.birth_date or "",
            "birthTime": self.birth_time or "",
            "location": self.birth_location or "",
            "soulType": self.soul_type or "",
            "superpower": self.superpower or "",
            "strangerReaction": self.stranger_reaction or "",
        }
