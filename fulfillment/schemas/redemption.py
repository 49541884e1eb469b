from pydantic import BaseModel, Field, field_validator

from fulfillment.schemas.order import EMAIL_PATTERN, OrderStatusResponse, PetProfile


class RedeemRequest(BaseModel):
    code: str = Field(min_length=1, max_length=50)
    contact_email: str = Field(pattern=EMAIL_PATTERN, max_length=320)
    pet: PetProfile
    language: str = Field(default="en", min_length=2, max_length=10)
    occasion_mode: str = Field(default="discover", max_length=20)

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        v = v.strip().upper()
        if not v:
            raise ValueError("Please enter a redeem code")
        return v


class RedeemResponse(BaseModel):
    tier: str
    order: OrderStatusResponse
