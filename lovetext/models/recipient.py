from lovetext.utils.clock import utcnow
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey
from sqlalchemy.orm import relationship as orm_relationship
from lovetext.db.base import Base


class Recipient(Base):
    __tablename__ = "recipients"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True)

    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)  # E.164, e.g. +15555550123
    delivery_method = Column(String, nullable=False, default="email")  # email | sms | both
    relationship = Column(String, nullable=True)  # free text, mapped to a message bucket

    frequency = Column(String, nullable=False, default="daily")
    time_of_day = Column(String, nullable=False, default="morning")
    timezone = Column(String, nullable=True)  # stored for display only; scheduling is UTC

    next_delivery = Column(DateTime, nullable=True, index=True)
    last_sent = Column(DateTime, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    unsubscribe_token = Column(String, unique=True, nullable=False, index=True)
    unsubscribed_at = Column(DateTime, nullable=True)  # set by the recipient; the owner cannot reactivate

    created_at = Column(DateTime, default=utcnow)

    customer = orm_relationship("Customer", back_populates="recipients")
