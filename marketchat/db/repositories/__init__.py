"""Repository layer for database operations."""

from marketchat.db.repositories.base import BaseRepository
from marketchat.db.repositories.conversation import (
    ConversationRepository,
    conversation_to_schema,
)
from marketchat.db.repositories.message import MessageRepository, message_to_schema
from marketchat.db.repositories.notification import (
    NotificationRepository,
    notification_to_schema,
)

__all__ = [
    "BaseRepository",
    "ConversationRepository",
    "MessageRepository",
    "NotificationRepository",
    "conversation_to_schema",
    "message_to_schema",
    "notification_to_schema",
]
