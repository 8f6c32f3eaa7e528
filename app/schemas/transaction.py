from datetime import datetime

from pydantic import BaseModel


class TransactionResponse(BaseModel):
    """Schema for a ledger entry (amount in coins, negative for charges)."""

    model_config = {"from_attributes": True}

    id: int
    amount: int
    type: str
    description: str | None
    created_at: datetime
