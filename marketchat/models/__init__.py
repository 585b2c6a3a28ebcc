"""SQLAlchemy models."""

from marketchat.models.conversation import Conversation
from marketchat.models.message import Message
from marketchat.models.notification import Notification

__all__ = [
    "Conversation",
    "Message",
    "Notification",
]
