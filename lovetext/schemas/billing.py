from typing import Literal

from pydantic import BaseModel


class CheckoutRequest(BaseModel):
    product: Literal["free-trial", "love-basic", "love-plus"]


class CheckoutResponse(BaseModel):
    checkout_url: str
    session_id: str


class PortalResponse(BaseModel):
    portal_url: str


class ChangePlanRequest(BaseModel):
    plan: Literal["basic", "plus"]


class CancelRequest(BaseModel):
    at_period_end: bool = True
