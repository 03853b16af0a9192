from pydantic import BaseModel, EmailStr, Field
from typing import Optional


class CustomerCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    email: EmailStr
    password: str = Field(min_length=6, max_length=128)


class CustomerLogin(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str


class EntitlementResponse(BaseModel):
    plan: str
    entitled: bool
    recipient_limit: Optional[int] = None  # None means unlimited
    trial_active: bool
    trial_end: Optional[str] = None
    trial_used: bool
    cancel_pending: bool
    subscription_end: Optional[str] = None


class CustomerResponse(BaseModel):
    id: int
    name: Optional[str] = None
    email: str
    created_at: Optional[str] = None
    entitlement: EntitlementResponse
