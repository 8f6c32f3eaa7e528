from datetime import datetime
from pydantic import BaseModel, field_validator
import re

from app.core.constants import USERNAME_PATTERN


class UserRegister(BaseModel):
    username: str
    email: str
    name: str
    password: str
    phone: str | None = None

    @field_validator("username")
    def validate_username(cls, v):
        v = v.strip()
        if not re.match(USERNAME_PATTERN, v):
            raise ValueError(
                "Username must be 3-30 chars: lowercase, numbers, underscores only"
            )
        return v

    @field_validator("email")
    def validate_email(cls, v):
        # Basic regex validation
        if not re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", v.strip()):
            raise ValueError("Invalid email format")
        return v.lower().strip()

    @field_validator("name")
    def validate_name(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Name is required")
        return v

    @field_validator("password")
    def validate_password(cls, v):
        if len(v) < 8:
            raise ValueError("Password must be at least 8 characters")
        if not re.search(r"[A-Z]", v):
            raise ValueError("Password must contain uppercase letter")
        if not re.search(r"[a-z]", v):
            raise ValueError("Password must contain lowercase letter")
        if not re.search(r"\d", v):
            raise ValueError("Password must contain digit")
        if not re.search(r'[!@#$%^&*(),.?":{}|<>]', v):
            raise ValueError("Password must contain special character")
        return v


class UserLogin(BaseModel):
    """Schema for JSON-based login endpoint (username or email)."""

    login: str
    password: str


class Token(BaseModel):
    access_token: str
    token_type: str


class UserResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: int
    username: str
    email: str
    name: str
    coins: int
    created_at: datetime


class RegisterResponse(BaseModel):
    user: UserResponse
    access_token: str
    token_type: str
