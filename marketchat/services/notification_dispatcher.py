"""Notifications for the party who was not looking at the conversation."""

import asyncio
import logging
from typing import Any, Iterable

from marketchat.config import settings
from marketchat.core.identity import Actor, Role, normalize_identifier
from marketchat.schemas.conversation import Conversation
from marketchat.schemas.message import ChatMessage, MessageType
from marketchat.schemas.notification import Notification, NotificationTarget
from marketchat.services.proposals import format_inr
from marketchat.services.reconciliation import CommitResult, CreateNotification, Reconciler

logger = logging.getLogger(__name__)


def notification_text(
    conversation: Conversation,
    message: ChatMessage,
    sender_role: Role,
    preview_length: int | None = None,
) -> str:
    """Text of the notification announcing ``message``.

    Args:
        conversation: Conversation the message belongs to
        message: The committed message
        sender_role: Role of the participant who caused the message
        preview_length: Characters of the body to include

    Returns:
        "New offer from ..." for offers, "New message from ..." otherwise
    """
    sender = conversation.customer_name if sender_role is Role.CUSTOMER else "Seller"
    if message.type is MessageType.OFFER:
        return f"New offer from {sender}: ₹{format_inr(message.payload.price)}"
    length = preview_length if preview_length is not None else settings.NOTIFICATION_PREVIEW_LENGTH
    return f"New message from {sender}: {message.body[:length]}..."


class NotificationDispatcher:
    """Creates notifications for committed conversation events."""

    def __init__(self, reconciler: Reconciler, preview_length: int | None = None):
        self.reconciler = reconciler
        self.preview_length = preview_length

    def build(
        self, conversation: Conversation, message: ChatMessage, actor: Actor
    ) -> Notification:
        recipient_id = (
            conversation.seller_id if actor.role is Role.CUSTOMER else conversation.customer_id
        )
        return Notification(
            recipient_id=recipient_id,
            target_type=NotificationTarget.CONVERSATION,
            target_id=conversation.id,
            message=notification_text(conversation, message, actor.role, self.preview_length),
        )

    def dispatch(
        self,
        conversation: Conversation,
        message: ChatMessage,
        actor: Actor,
        recipient_active: bool = False,
    ) -> "asyncio.Task[CommitResult] | None":
        """Notify the counterpart of ``actor`` about ``message``.

        Nothing is sent when the counterpart is viewing the conversation, and
        the actor is never notified about their own action.
        """
        if recipient_active:
            logger.debug(f"Recipient is viewing {conversation.id}, notification suppressed")
            return None
        notification = self.build(conversation, message, actor)
        if normalize_identifier(notification.recipient_id) == actor.id:
            logger.debug(f"Not notifying {actor.id} about their own message")
            return None
        return self.reconciler.commit(CreateNotification(notification))


class NotificationInbox:
    """Notifications received by the current participant."""

    def __init__(self, recipient_id: str):
        self.recipient_id = normalize_identifier(recipient_id)
        self._items: dict[int, Notification] = {}

    def __len__(self) -> int:
        return len(self._items)

    def load(self, notifications: Iterable[Notification]) -> None:
        self._items = {n.id: n for n in notifications if n.id is not None}

    def merge(self, notifications: Iterable[Notification]) -> None:
        """Merge fetched notifications; a read notification never becomes unread."""
        for notification in notifications:
            if notification.id is None:
                continue
            local = self._items.get(notification.id)
            if local is not None and local.is_read and not notification.is_read:
                notification = notification.model_copy(update={"is_read": True})
            self._items[notification.id] = notification

    def get(self, notification_id: int) -> Notification | None:
        return self._items.get(notification_id)

    def all(self) -> list[Notification]:
        return sorted(self._items.values(), key=lambda n: n.created_at, reverse=True)

    def unread(self) -> list[Notification]:
        return [n for n in self.all() if not n.is_read]

    def mark_read(self, ids: Iterable[int]) -> list[int]:
        """Mark notifications read. Returns the ids that were actually unread."""
        flipped = []
        for notification_id in ids:
            notification = self._items.get(notification_id)
            if notification is None:
                logger.debug(f"Ignoring unknown notification {notification_id}")
                continue
            if notification.is_read:
                continue
            self._items[notification_id] = notification.model_copy(update={"is_read": True})
            flipped.append(notification_id)
        return flipped

    def mark_all_read(self) -> list[int]:
        return self.mark_read([n.id for n in self.unread()])

    def snapshot(self) -> list[dict[str, Any]]:
        return [n.to_wire() for n in self._items.values()]

    def restore(self, data: list[dict[str, Any]]) -> None:
        self.load(Notification.model_validate(item) for item in data)
