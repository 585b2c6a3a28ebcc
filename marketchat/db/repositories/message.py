"""Message repository for the authoritative backend store."""

from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from marketchat.core.exceptions import ConflictError, InvalidDecisionError, NotFoundError
from marketchat.db.repositories.base import BaseRepository
from marketchat.models import Conversation, Message
from marketchat.schemas.common import utcnow
from marketchat.schemas.message import (
    ChatMessage,
    MessageStatusUpdate,
    MessageType,
    ProposalStatus,
    SenderRole,
    message_adapter,
)

logger = logging.getLogger(__name__)

PROPOSAL_TYPES = {MessageType.OFFER.value, MessageType.TEST_DRIVE_REQUEST.value}
APPEND_ATTEMPTS = 5


def message_to_schema(row: Message) -> ChatMessage:
    """Convert an ORM message to its tagged schema variant."""
    data = {
        "id": row.message_id,
        "client_ref": row.client_ref,
        "sender": row.sender,
        "type": row.type,
        "body": row.body,
        "timestamp": row.timestamp,
    }
    if row.payload is not None:
        data["payload"] = row.payload
    return message_adapter.validate_python(data)


class MessageRepository(BaseRepository[Message]):
    """Repository for message operations."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, Message)

    async def get_by_message_id(self, conversation_id: str, message_id: int) -> Message | None:
        result = await self.session.execute(
            select(Message).where(
                Message.conversation_id == conversation_id,
                Message.message_id == message_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_by_client_ref(self, conversation_id: str, client_ref: str) -> Message | None:
        result = await self.session.execute(
            select(Message).where(
                Message.conversation_id == conversation_id,
                Message.client_ref == client_ref,
            )
        )
        return result.scalar_one_or_none()

    async def next_message_id(self, conversation_id: str) -> int:
        """Get the next per-conversation message id (max + 1)."""
        result = await self.session.execute(
            select(func.max(Message.message_id)).where(
                Message.conversation_id == conversation_id
            )
        )
        return (result.scalar() or 0) + 1

    async def append(
        self, conversation: Conversation, message: ChatMessage
    ) -> tuple[Message, bool]:
        """Append a message to a conversation log.

        The backend assigns the authoritative id and timestamp. A message whose
        client_ref was already stored is returned unchanged, so a replayed
        append is harmless. When a concurrent append takes the allocated id,
        the id is allocated again.

        Args:
            conversation: Target conversation row
            message: Message as composed by the client

        Returns:
            Tuple of (message, created) where created is True if new

        Raises:
            ConflictError: The id was taken on every attempt
        """
        conversation_id = conversation.id
        payload = getattr(message, "payload", None)
        for attempt in range(1, APPEND_ATTEMPTS + 1):
            existing = await self.get_by_client_ref(conversation_id, message.client_ref)
            if existing:
                logger.debug(
                    f"Duplicate append {message.client_ref} in conversation {conversation_id}"
                )
                return existing, False

            now = utcnow()
            message_id = await self.next_message_id(conversation_id)
            row = Message(
                conversation_id=conversation_id,
                message_id=message_id,
                client_ref=message.client_ref,
                sender=message.sender.value,
                type=message.type.value,
                body=message.body,
                timestamp=now,
                payload=payload.to_wire() if payload is not None else None,
            )
            conversation.last_message_at = now
            if message.sender is SenderRole.CUSTOMER:
                conversation.is_read_by_customer = True
                conversation.is_read_by_seller = False
            elif message.sender is SenderRole.SELLER:
                conversation.is_read_by_seller = True
                conversation.is_read_by_customer = False

            self.session.add(row)
            try:
                await self.session.commit()
            except IntegrityError:
                # A concurrent append took the id or the client_ref
                await self.session.rollback()
                await self.session.refresh(conversation)
                logger.warning(
                    f"Message id {message_id} taken in conversation {conversation_id} "
                    f"(attempt {attempt}/{APPEND_ATTEMPTS})"
                )
                continue

            await self.session.refresh(row)
            logger.info(f"Appended message {message_id} to conversation {conversation_id}")
            return row, True

        raise ConflictError(
            f"Concurrent append to conversation {conversation_id}, retry the request"
        )

    async def update_status(
        self, conversation_id: str, message_id: int, update: MessageStatusUpdate
    ) -> Message:
        """Set the resolution of a pending offer or test-drive request.

        Writing the same resolution twice is a no-op; a different resolution
        for an already resolved proposal is a conflict.
        """
        row = await self.get_by_message_id(conversation_id, message_id)
        if not row:
            raise NotFoundError("Message", f"{conversation_id}/{message_id}")
        if row.type not in PROPOSAL_TYPES:
            raise InvalidDecisionError(f"Message {message_id} is not an offer or test drive request")

        payload = dict(row.payload or {})
        current = payload.get("status", ProposalStatus.PENDING.value)
        if current != ProposalStatus.PENDING.value:
            if current == update.status.value:
                return row
            raise ConflictError(f"Message {message_id} was already resolved as {current}")

        payload["status"] = update.status.value
        if update.counter_price is not None:
            payload["counterPrice"] = update.counter_price
        payload["resolvedAt"] = (update.resolved_at or utcnow()).isoformat()
        # Reassign so the JSON column is flagged dirty
        row.payload = payload
        await self.session.commit()
        await self.session.refresh(row)
        logger.info(
            f"Message {message_id} in conversation {conversation_id} resolved as {update.status.value}"
        )
        return row
