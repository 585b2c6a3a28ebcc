"""Conversation repository for the authoritative backend store."""

from __future__ import annotations

import logging

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from marketchat.core.identity import normalize_identifier
from marketchat.db.repositories.base import BaseRepository
from marketchat.db.repositories.message import message_to_schema
from marketchat.models import Conversation
from marketchat.schemas import conversation as schemas
from marketchat.schemas.common import as_utc

logger = logging.getLogger(__name__)

# Fields a client may overwrite on an existing conversation
MUTABLE_FIELDS = (
    "customer_name",
    "vehicle_name",
    "vehicle_price",
    "is_read_by_customer",
    "is_read_by_seller",
    "is_flagged",
    "flag_reason",
    "flagged_at",
)


def conversation_to_schema(row: Conversation) -> schemas.Conversation:
    """Convert an ORM conversation with loaded messages to its schema."""
    return schemas.Conversation(
        id=row.id,
        customer_id=row.customer_id,
        customer_name=row.customer_name,
        seller_id=row.seller_id,
        vehicle_id=row.vehicle_id,
        vehicle_name=row.vehicle_name,
        vehicle_price=row.vehicle_price,
        last_message_at=row.last_message_at,
        is_read_by_customer=row.is_read_by_customer,
        is_read_by_seller=row.is_read_by_seller,
        is_flagged=row.is_flagged,
        flag_reason=row.flag_reason,
        flagged_at=row.flagged_at,
        updated_at=row.updated_at,
        messages=[message_to_schema(message) for message in row.messages],
    )


class ConversationRepository(BaseRepository[Conversation]):
    """Repository for conversation operations."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, Conversation)

    async def get_with_messages(self, conversation_id: str) -> Conversation | None:
        """Get a conversation with its message log loaded."""
        stmt = (
            select(Conversation)
            .where(Conversation.id == conversation_id)
            .options(selectinload(Conversation.messages))
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_pair(self, customer_id: str, vehicle_id: int) -> Conversation | None:
        """Get the conversation for a (customer, vehicle) pair."""
        stmt = (
            select(Conversation)
            .where(
                Conversation.customer_id == normalize_identifier(customer_id),
                Conversation.vehicle_id == vehicle_id,
            )
            .options(selectinload(Conversation.messages))
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_participant(self, participant_id: str) -> list[Conversation]:
        """List conversations where the participant is customer or seller.

        Args:
            participant_id: Customer or seller identifier

        Returns:
            Conversations ordered by most recent message first
        """
        participant_id = normalize_identifier(participant_id)
        stmt = (
            select(Conversation)
            .where(
                or_(
                    Conversation.customer_id == participant_id,
                    Conversation.seller_id == participant_id,
                )
            )
            .options(selectinload(Conversation.messages))
            .order_by(Conversation.last_message_at.desc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def upsert(self, state: schemas.ConversationState) -> tuple[Conversation, bool]:
        """Insert or update a conversation by id.

        A new id for a (customer, vehicle) pair that already has a conversation
        does not create a second one; the existing conversation is returned.

        Args:
            state: Conversation metadata sent by a client

        Returns:
            Tuple of (conversation, created) where created is True if new
        """
        existing = await self.get_with_messages(state.id)
        if existing:
            for field in MUTABLE_FIELDS:
                setattr(existing, field, getattr(state, field))
            if state.last_message_at > as_utc(existing.last_message_at):
                existing.last_message_at = state.last_message_at
            await self.session.commit()
            return await self.get_with_messages(state.id), False

        paired = await self.get_by_pair(state.customer_id, state.vehicle_id)
        if paired:
            logger.info(
                f"Conversation {state.id} duplicates {paired.id} for "
                f"customer {state.customer_id} and vehicle {state.vehicle_id}"
            )
            return paired, False

        try:
            self.session.add(
                Conversation(
                    id=state.id,
                    customer_id=state.customer_id,
                    seller_id=state.seller_id,
                    vehicle_id=state.vehicle_id,
                    last_message_at=state.last_message_at,
                    **{field: getattr(state, field) for field in MUTABLE_FIELDS},
                )
            )
            await self.session.commit()
        except IntegrityError:
            # Race condition: another request created the pair first
            await self.session.rollback()
            paired = await self.get_by_pair(state.customer_id, state.vehicle_id)
            if paired:
                return paired, False
            raise

        logger.info(f"Created conversation {state.id}")
        return await self.get_with_messages(state.id), True
