from datetime import datetime

from pydantic import BaseModel, field_validator


class DeployRequest(BaseModel):
    """Schema for deploying a bot for the authenticated user."""

    session_id: str
    app_name: str | None = None

    @field_validator("session_id")
    def validate_session_id(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("session_id is required")
        return v

    @field_validator("app_name")
    def validate_app_name(cls, v):
        if v is None:
            return v
        v = v.strip()
        if len(v) > 100:
            raise ValueError("app_name must be at most 100 characters")
        return v or None


class DeployResponse(BaseModel):
    handle: str
    coins_remaining: int


class DeploymentResponse(BaseModel):
    model_config = {"from_attributes": True}

    handle: str
    app_name: str | None
    session_preview: str | None
    status: str
    deployed_at: datetime
    stopped_at: datetime | None


class AdminDeploymentResponse(DeploymentResponse):
    username: str
    email: str


class UserSummaryResponse(BaseModel):
    id: int
    username: str
    email: str
    name: str
    coins: int
    total_bots: int
    active_bots: int
    inactive_bots: int
    active_deployment: DeploymentResponse | None
