"""Notification endpoints."""

import logging

from fastapi import APIRouter, BackgroundTasks, Query, status

from marketchat.api.deps import CurrentActor, DbSession, require_participant
from marketchat.core.exceptions import NotFoundError, UnauthorizedError
from marketchat.core.identity import normalize_identifier
from marketchat.db.repositories import (
    ConversationRepository,
    NotificationRepository,
    notification_to_schema,
)
from marketchat.schemas import Notification, NotificationTarget
from marketchat.services.queue import publish_notification

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])


async def _publish(notification: Notification) -> None:
    """Push a notification to the queue without failing the request."""
    try:
        await publish_notification(notification)
    except Exception as e:
        logger.error(f"Failed to queue notification {notification.id}: {e}")


@router.get("", response_model=list[Notification])
async def list_notifications(
    db: DbSession,
    actor: CurrentActor,
    recipient_id: str | None = Query(None, alias="recipientId"),
    unread_only: bool = Query(False, alias="unreadOnly"),
    limit: int = Query(100, ge=1, le=500),
):
    """List notifications addressed to the acting user."""
    if recipient_id and normalize_identifier(recipient_id) != actor.id:
        raise UnauthorizedError("You can only list your own notifications")
    rows = await NotificationRepository(db).list_for_recipient(
        actor.id, unread_only=unread_only, limit=limit
    )
    return [notification_to_schema(row) for row in rows]


@router.post("", response_model=Notification, status_code=status.HTTP_201_CREATED)
async def create_notification(
    payload: Notification,
    db: DbSession,
    actor: CurrentActor,
    background_tasks: BackgroundTasks,
):
    """Store a notification and hand it to the push transport.

    A conversation notification may only be created by a participant of that
    conversation, for one of its participants.
    """
    if payload.target_type is NotificationTarget.CONVERSATION:
        conversation = await ConversationRepository(db).get(payload.target_id)
        if not conversation:
            raise NotFoundError("Conversation", payload.target_id)
        require_participant(actor, conversation)
        if payload.recipient_id not in (conversation.customer_id, conversation.seller_id):
            raise UnauthorizedError("Notification recipient is not a participant of this conversation")

    row = await NotificationRepository(db).create_from(payload)
    notification = notification_to_schema(row)
    background_tasks.add_task(_publish, notification)
    logger.info(f"Notification {row.id} created by {actor.id} for {row.recipient_id}")
    return notification


@router.post("/read-all")
async def mark_all_notifications_read(db: DbSession, actor: CurrentActor):
    """Mark every notification of the acting user as read."""
    updated = await NotificationRepository(db).mark_all_read(actor.id)
    return {"updated": updated}


@router.post("/{notification_id}/read", status_code=status.HTTP_204_NO_CONTENT)
async def mark_notification_read(notification_id: int, db: DbSession, actor: CurrentActor):
    """Mark a notification as read. Marking it twice is harmless."""
    repo = NotificationRepository(db)
    notification = await repo.get(notification_id)
    if not notification:
        raise NotFoundError("Notification", str(notification_id))
    if notification.recipient_id != actor.id:
        raise UnauthorizedError("This notification is addressed to someone else")
    await repo.mark_read(notification_id)
