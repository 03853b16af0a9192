from lovetext.utils.clock import utcnow
from sqlalchemy import Column, Integer, String, Boolean, DateTime
from sqlalchemy.orm import relationship
from lovetext.db.base import Base
from lovetext.core.plan_limits import Plan


class Customer(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=True)
    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)

    current_plan = Column(String, default=Plan.NONE.value, nullable=False)  # none | trial | basic | plus
    has_subscription = Column(Boolean, default=False, nullable=False)

    # Free trial (one per customer, ever)
    trial_active = Column(Boolean, default=False, nullable=False)
    trial_end = Column(DateTime, nullable=True)
    trial_used = Column(Boolean, default=False, nullable=False)

    # Stripe linkage
    external_customer_id = Column(String, unique=True, nullable=True, index=True)
    external_subscription_id = Column(String, nullable=True, index=True)
    # Set when a cancellation is scheduled: still entitled until this instant
    subscription_end = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    recipients = relationship(
        "Recipient",
        back_populates="customer",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Recipient.id",
    )
