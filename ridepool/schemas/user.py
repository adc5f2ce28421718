"""Pydantic schemas for auth: register, login, user response, token."""
import re

from pydantic import BaseModel, EmailStr, Field, field_validator

_PHONE_DISALLOWED = re.compile(r"[^0-9+]")


class UserCreate(BaseModel):
    """Request body for POST /auth/register. Phone is kept as digits with an optional leading +."""
    email: EmailStr
    password: str = Field(..., min_length=6)
    name: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, max_length=32)

    @field_validator("phone")
    @classmethod
    def normalize_phone(cls, v: str | None) -> str | None:
        if v is None:
            return None
        digits = _PHONE_DISALLOWED.sub("", v)
        if digits.count("+") > 1 or "+" in digits[1:]:
            raise ValueError("Invalid phone number")
        return digits or None


class UserResponse(BaseModel):
    """Identity handed to the ride services. Only `id` is required by them."""
    id: str
    email: str | None = None
    phone: str | None = None
    name: str | None = None

    class Config:
        from_attributes = True


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class LoginRequest(BaseModel):
    email: EmailStr
    password: str
