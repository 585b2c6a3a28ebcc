"""Conversation engine services."""

from marketchat.services.backend_client import BackendClient, ConversationBackend
from marketchat.services.conversation_service import ConversationService
from marketchat.services.conversation_store import ConversationStore
from marketchat.services.local_cache import LocalCache
from marketchat.services.notification_dispatcher import NotificationDispatcher, NotificationInbox
from marketchat.services.presence import TypingTracker
from marketchat.services.queue import publish_notification
from marketchat.services.reconciliation import BackoffPolicy, CommitResult, CommitState, Reconciler

__all__ = [
    "BackendClient",
    "BackoffPolicy",
    "CommitResult",
    "CommitState",
    "ConversationBackend",
    "ConversationService",
    "ConversationStore",
    "LocalCache",
    "NotificationDispatcher",
    "NotificationInbox",
    "Reconciler",
    "TypingTracker",
    "publish_notification",
]
