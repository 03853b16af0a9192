from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field, model_validator

from lovetext.services.channels import DeliveryMethod
from lovetext.services.scheduler import Frequency, TimeOfDay

PHONE_PATTERN = r"^\+[1-9]\d{6,14}$"


def check_contact(delivery_method: DeliveryMethod, email: Optional[str], phone: Optional[str]) -> None:
    if delivery_method in (DeliveryMethod.EMAIL, DeliveryMethod.BOTH) and not email:
        raise ValueError("email is required for email delivery")
    if delivery_method in (DeliveryMethod.SMS, DeliveryMethod.BOTH) and not phone:
        raise ValueError("phone is required for SMS delivery")


class RecipientCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)
    delivery_method: DeliveryMethod = DeliveryMethod.EMAIL
    relationship: Optional[str] = Field(default=None, max_length=50)
    frequency: Frequency = Frequency.DAILY
    time_of_day: TimeOfDay = TimeOfDay.MORNING
    timezone: Optional[str] = Field(default=None, max_length=100)

    @model_validator(mode="after")
    def contact_matches_method(self):
        check_contact(self.delivery_method, self.email, self.phone)
        return self


class RecipientUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)
    delivery_method: Optional[DeliveryMethod] = None
    relationship: Optional[str] = Field(default=None, max_length=50)
    frequency: Optional[Frequency] = None
    time_of_day: Optional[TimeOfDay] = None
    timezone: Optional[str] = Field(default=None, max_length=100)
    is_active: Optional[bool] = None


class RecipientResponse(BaseModel):
    id: int
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    delivery_method: str
    relationship: Optional[str] = None
    frequency: str
    time_of_day: str
    timezone: Optional[str] = None
    next_delivery: Optional[datetime] = None
    last_sent: Optional[datetime] = None
    is_active: bool
    unsubscribed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class MessageLogResponse(BaseModel):
    channel: str
    address: str
    message: str
    kind: str
    delivered: bool
    sent_at: datetime

    class Config:
        from_attributes = True


class MessageHistoryResponse(BaseModel):
    messages: List[MessageLogResponse]


class FlowerRequest(BaseModel):
    note: Optional[str] = Field(default=None, max_length=280)
