from datetime import date, datetime

from pydantic import BaseModel, field_validator


class AdminAuth(BaseModel):
    password: str


class TopupRequest(BaseModel):
    amount: int

    @field_validator("amount")
    def validate_amount(cls, v):
        if v <= 0:
            raise ValueError("Amount must be positive")
        return v


class TopupResponse(BaseModel):
    new_coins: int


class AdminUserResponse(BaseModel):
    id: int
    username: str
    email: str
    name: str
    phone: str | None
    coins: int
    created_at: datetime
    active_bots: int


class AdminStatsResponse(BaseModel):
    total_users: int
    active_bots: int
    total_deployments: int
    total_coins: int
    recent_users: list[AdminUserResponse]


class BillingRunResponse(BaseModel):
    period: date
    charged: int
    deactivated: int
    skipped: int
    failed: int
