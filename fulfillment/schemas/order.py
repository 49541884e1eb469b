from datetime import datetime
from typing import Annotated, List, Literal, Union
from pydantic import BaseModel, Field, field_validator

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class PetProfile(BaseModel):
    pet_name: str = Field(min_length=1, max_length=100)
    species: str = Field(min_length=1, max_length=50)
    breed: str | None = Field(default=None, max_length=100)
    gender: str | None = Field(default=None, max_length=20)
    birth_date: str | None = Field(default=None, max_length=20)
    birth_time: str | None = Field(default=None, max_length=20)
    birth_location: str | None = Field(default=None, max_length=255)
    soul_type: str | None = Field(default=None, max_length=100)
    superpower: str | None = Field(default=None, max_length=100)
    stranger_reaction: str | None = Field(default=None, max_length=100)


class CheckoutCreate(BaseModel):
    contact_email: str = Field(pattern=EMAIL_PATTERN, max_length=320)
    pets: List[PetProfile] = Field(min_length=1)
    language: str = Field(default="en", min_length=2, max_length=10)
    occasion_mode: str = Field(default="discover", max_length=20)

    @field_validator("contact_email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.strip().lower()


class NotStarted(BaseModel):
    kind: Literal["not_started"] = "not_started"


class Generating(BaseModel):
    kind: Literal["generating"] = "generating"
    attempt: int
    started_at: datetime


class RetryScheduled(BaseModel):
    kind: Literal["retry_scheduled"] = "retry_scheduled"
    attempt: int
    retry_at: datetime


class Generated(BaseModel):
    kind: Literal["generated"] = "generated"
    attempt: int


class Failed(BaseModel):
    kind: Literal["failed"] = "failed"
    attempts: int


GenerationStateView = Annotated[
    Union[NotStarted, Generating, RetryScheduled, Generated, Failed],
    Field(discriminator="kind")
]


class OrderStatusResponse(BaseModel):
    id: str
    checkout_batch_id: str | None = None
    pet_name: str
    payment_status: str
    status: Literal["awaiting_payment", "processing", "ready", "failed"]
    generation: GenerationStateView
    message: str | None = None
    created_at: datetime
    updated_at: datetime


class CheckoutBatchResponse(BaseModel):
    checkout_batch_id: str
    orders: List[OrderStatusResponse]


class ReportResponse(BaseModel):
    id: str
    pet_name: str
    species: str
    breed: str | None = None
    share_token: str
    report: dict


class FailedOrderResponse(BaseModel):
    id: str
    checkout_batch_id: str | None = None
    contact_email: str
    pet_name: str
    attempts: int
    last_error: str | None = None
    updated_at: datetime
