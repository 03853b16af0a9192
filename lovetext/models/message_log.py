"""
Append-only log of every delivery attempt (scheduled, flowers, manual).
`delivered` is the transport result; the row is written whether or not the
provider accepted the message.
"""
from lovetext.utils.clock import utcnow
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Text
from lovetext.db.base import Base


class MessageLog(Base):
    __tablename__ = "message_logs"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True)
    # SET NULL keeps the audit row when a recipient is removed
    recipient_id = Column(Integer, ForeignKey("recipients.id", ondelete="SET NULL"), nullable=True, index=True)
    channel = Column(String, nullable=False)  # email | sms
    address = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    kind = Column(String, nullable=False, default="scheduled")  # scheduled | flowers | manual
    delivered = Column(Boolean, nullable=False, default=False)
    sent_at = Column(DateTime, default=utcnow, index=True)
