from datetime import datetime

from pydantic import BaseModel, field_validator


class PaymentRequestCreate(BaseModel):
    """Schema for submitting a coin top-up request."""

    package: str
    amount_usd: float
    coins: int
    screenshot: str | None = None
    note: str | None = None

    @field_validator("package")
    def validate_package(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Package is required")
        return v

    @field_validator("amount_usd")
    def validate_amount_usd(cls, v):
        if v <= 0:
            raise ValueError("Amount must be positive")
        return round(v, 2)

    @field_validator("coins")
    def validate_coins(cls, v):
        if v <= 0:
            raise ValueError("Coins must be positive")
        return v


class PaymentRequestCreated(BaseModel):
    id: int


class PaymentRequestResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: int
    package: str
    amount_usd: float
    coins: int
    note: str | None
    status: str
    created_at: datetime
    reviewed_at: datetime | None


class AdminPaymentRequestResponse(PaymentRequestResponse):
    screenshot: str | None
    username: str
    email: str
