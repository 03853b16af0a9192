from lovetext.models.customer import Customer
from lovetext.models.recipient import Recipient
from lovetext.models.message_log import MessageLog

__all__ = [
    "Customer",
    "Recipient",
    "MessageLog",
]
