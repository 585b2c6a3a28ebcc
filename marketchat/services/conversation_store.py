"""In-memory conversation store.

The store is the engine's single source of local truth: an arena of
conversations keyed by id, owned by one ``ConversationService`` and mutated
only from the event loop. Every mutation replaces the conversation with an
updated copy and re-materializes proposal status from the message log.
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from marketchat.core.exceptions import NotFoundError
from marketchat.core.identity import Role, normalize_identifier
from marketchat.schemas.common import utcnow
from marketchat.schemas.conversation import Conversation, VehicleSnapshot
from marketchat.schemas.message import (
    ChatMessage,
    DeliveryStatus,
    ProposalStatus,
    SenderRole,
    is_proposal,
    is_response,
)
from marketchat.services.proposals import materialize

logger = logging.getLogger(__name__)


def new_conversation_id() -> str:
    return f"conv_{uuid4().hex[:16]}"


def rewrite_references(message: ChatMessage, id_map: dict[int, int]) -> ChatMessage:
    """Point a response message at the new id of the proposal it resolves."""
    if is_response(message) and message.payload.original_message_id in id_map:
        payload = message.payload.model_copy(
            update={"original_message_id": id_map[message.payload.original_message_id]}
        )
        return message.model_copy(update={"payload": payload})
    return message


def merge_messages(
    primary: list[ChatMessage], secondary: list[ChatMessage]
) -> list[ChatMessage]:
    """Merge two logs of the same conversation, matching messages by client_ref.

    Messages in ``primary`` win. Messages only in ``secondary`` are kept; those
    whose id is taken are renumbered above every known id, and responses among
    them are pointed at the renumbered or primary ids.
    """
    by_ref = {message.client_ref: message for message in primary}
    taken = {message.id for message in primary}
    next_id = max([m.id for m in primary] + [m.id for m in secondary] + [0]) + 1

    id_map: dict[int, int] = {}
    extra: list[ChatMessage] = []
    for message in secondary:
        match = by_ref.get(message.client_ref)
        if match is not None:
            if match.id != message.id:
                id_map[message.id] = match.id
            continue
        if message.id in taken:
            id_map[message.id] = next_id
            message = message.model_copy(update={"id": next_id})
            next_id += 1
        taken.add(message.id)
        extra.append(message)

    extra = [rewrite_references(message, id_map) for message in extra]
    return sorted([*primary, *extra], key=lambda message: message.id)


class ConversationStore:
    """Arena of conversations keyed by id."""

    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}
        self._aliases: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._conversations)

    def __contains__(self, conversation_id: str) -> bool:
        return self.find(conversation_id) is not None

    def resolve_id(self, conversation_id: str) -> str:
        """Map a renamed conversation id to its current id."""
        return self._aliases.get(conversation_id, conversation_id)

    def find(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(self.resolve_id(conversation_id))

    def get(self, conversation_id: str) -> Conversation:
        conversation = self.find(conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation", conversation_id)
        return conversation

    def all(self) -> list[Conversation]:
        return list(self._conversations.values())

    def list_for(self, participant_id: str) -> list[Conversation]:
        """Conversations of a participant, most recent first."""
        participant_id = normalize_identifier(participant_id)
        conversations = [
            c
            for c in self._conversations.values()
            if participant_id in (c.customer_id, c.seller_id)
        ]
        return sorted(conversations, key=lambda c: c.last_message_at, reverse=True)

    def find_by_pair(self, customer_id: str, vehicle_id: int) -> Conversation | None:
        customer_id = normalize_identifier(customer_id)
        for conversation in self._conversations.values():
            if conversation.customer_id == customer_id and conversation.vehicle_id == vehicle_id:
                return conversation
        return None

    def put(self, conversation: Conversation) -> Conversation:
        """Insert or replace a conversation as given."""
        conversation = conversation.model_copy(
            update={"messages": materialize(list(conversation.messages))}
        )
        self._conversations[conversation.id] = conversation
        return conversation

    def find_or_create(
        self,
        customer_id: str,
        seller_id: str,
        vehicle: VehicleSnapshot,
        customer_name: str,
        conversation_id: str | None = None,
    ) -> tuple[Conversation, bool]:
        """Get the conversation for (customer, vehicle), creating it if missing.

        Args:
            customer_id: Customer identifier, compared normalized
            seller_id: Seller identifier
            vehicle: Vehicle snapshot taken when the conversation starts
            customer_name: Customer display name
            conversation_id: Id to use for a new conversation

        Returns:
            Tuple of (conversation, created) where created is True if new
        """
        existing = self.find_by_pair(customer_id, vehicle.id)
        if existing:
            return existing, False

        now = utcnow()
        conversation = Conversation(
            id=conversation_id or new_conversation_id(),
            customer_id=customer_id,
            customer_name=customer_name,
            seller_id=seller_id,
            vehicle_id=vehicle.id,
            vehicle_name=vehicle.name,
            vehicle_price=vehicle.price,
            last_message_at=now,
            is_read_by_customer=True,
            is_read_by_seller=False,
            updated_at=now,
        )
        self._conversations[conversation.id] = conversation
        logger.info(
            f"Created conversation {conversation.id} for customer {conversation.customer_id} "
            f"and vehicle {vehicle.id}"
        )
        return conversation, True

    def next_message_id(self, conversation_id: str) -> int:
        """Temporary id for a new message: one above the highest known id."""
        conversation = self.get(conversation_id)
        return max((m.id for m in conversation.messages), default=0) + 1

    def find_message(self, conversation_id: str, message_id: int) -> ChatMessage | None:
        conversation = self.find(conversation_id)
        if conversation is None:
            return None
        return next((m for m in conversation.messages if m.id == message_id), None)

    def find_by_client_ref(self, conversation_id: str, client_ref: str) -> ChatMessage | None:
        conversation = self.find(conversation_id)
        if conversation is None:
            return None
        return next((m for m in conversation.messages if m.client_ref == client_ref), None)

    def append_message(self, conversation_id: str, message: ChatMessage) -> Conversation:
        """Append a message and flip read flags for its sender.

        The sender's own flag becomes read and the other party's unread.
        System messages leave both flags alone. Appending a message whose
        client_ref is already in the log is a no-op.
        """
        conversation = self.get(conversation_id)
        if self.find_by_client_ref(conversation.id, message.client_ref):
            logger.debug(f"Message {message.client_ref} already in conversation {conversation.id}")
            return conversation

        update: dict[str, Any] = {
            "messages": materialize([*conversation.messages, message]),
            "last_message_at": max(conversation.last_message_at, message.timestamp),
            "updated_at": utcnow(),
        }
        if message.sender is SenderRole.CUSTOMER:
            update.update(is_read_by_customer=True, is_read_by_seller=False)
        elif message.sender is SenderRole.SELLER:
            update.update(is_read_by_seller=True, is_read_by_customer=False)

        conversation = conversation.model_copy(update=update)
        self._conversations[conversation.id] = conversation
        return conversation

    def set_read_state(self, conversation_id: str, role: Role) -> Conversation | None:
        """Mark the conversation read for ``role``. Idempotent."""
        conversation = self.find(conversation_id)
        if conversation is None:
            logger.debug(f"Ignoring read state for unknown conversation {conversation_id}")
            return None

        field = "is_read_by_customer" if Role(role) is Role.CUSTOMER else "is_read_by_seller"
        if getattr(conversation, field):
            return conversation
        conversation = conversation.model_copy(update={field: True, "updated_at": utcnow()})
        self._conversations[conversation.id] = conversation
        return conversation

    def set_flag(
        self, conversation_id: str, flagged: bool, reason: str | None = None
    ) -> Conversation:
        conversation = self.get(conversation_id)
        now = utcnow()
        conversation = conversation.model_copy(
            update={
                "is_flagged": flagged,
                "flag_reason": reason if flagged else None,
                "flagged_at": now if flagged else None,
                "updated_at": now,
            }
        )
        self._conversations[conversation.id] = conversation
        return conversation

    def mark_delivery(
        self, conversation_id: str, client_ref: str, delivery: DeliveryStatus
    ) -> ChatMessage | None:
        """Set the local delivery marker of a message."""
        conversation = self.find(conversation_id)
        message = self.find_by_client_ref(conversation_id, client_ref)
        if conversation is None or message is None:
            return None
        if message.delivery is delivery:
            return message

        updated = message.model_copy(update={"delivery": delivery})
        messages = [updated if m.client_ref == client_ref else m for m in conversation.messages]
        self._conversations[conversation.id] = conversation.model_copy(update={"messages": messages})
        return updated

    def confirm_message(
        self, conversation_id: str, authoritative: ChatMessage
    ) -> Conversation | None:
        """Replace an optimistic message with the backend's copy.

        The backend may assign a different id. References to the old id are
        rewritten, and a local message already holding the new id is moved
        above the highest id. Confirming the same copy twice changes nothing
        the second time.
        """
        conversation = self.find(conversation_id)
        if conversation is None:
            logger.warning(f"Cannot confirm message in unknown conversation {conversation_id}")
            return None

        confirmed = authoritative.model_copy(update={"delivery": DeliveryStatus.SENT})
        local = self.find_by_client_ref(conversation.id, authoritative.client_ref)
        messages = list(conversation.messages)

        if local is not None and is_proposal(local) and local.payload.status is not ProposalStatus.PENDING:
            if confirmed.payload.status is ProposalStatus.PENDING:
                confirmed = confirmed.model_copy(update={"payload": local.payload})

        if local is None:
            messages.append(confirmed)
        else:
            if local.id != confirmed.id:
                next_id = max([m.id for m in messages] + [confirmed.id]) + 1
                collider = next(
                    (m for m in messages if m.id == confirmed.id and m.client_ref != confirmed.client_ref),
                    None,
                )
                if collider is not None:
                    messages = [
                        rewrite_references(
                            m.model_copy(update={"id": next_id}) if m is collider else m,
                            {confirmed.id: next_id},
                        )
                        for m in messages
                    ]
                messages = [rewrite_references(m, {local.id: confirmed.id}) for m in messages]
            messages = [confirmed if m.client_ref == confirmed.client_ref else m for m in messages]

        messages.sort(key=lambda message: message.id)
        conversation = conversation.model_copy(
            update={
                "messages": materialize(messages),
                "last_message_at": max(conversation.last_message_at, confirmed.timestamp),
            }
        )
        self._conversations[conversation.id] = conversation
        return conversation

    def rename_conversation(self, old_id: str, new_id: str) -> Conversation | None:
        """Move a conversation to the id the backend knows it by.

        Happens when another device created the same customer/vehicle pair
        first. The old id stays resolvable as an alias.
        """
        old_id = self.resolve_id(old_id)
        if old_id == new_id:
            return self.find(new_id)
        conversation = self._conversations.pop(old_id, None)
        if conversation is None:
            return self.find(new_id)

        existing = self._conversations.get(new_id)
        if existing is not None:
            messages = merge_messages(list(existing.messages), list(conversation.messages))
            renamed = existing.model_copy(update={"messages": messages})
        else:
            renamed = conversation.model_copy(update={"id": new_id})
        renamed = renamed.model_copy(update={"messages": materialize(list(renamed.messages))})
        self._conversations[new_id] = renamed

        for alias, target in self._aliases.items():
            if target == old_id:
                self._aliases[alias] = new_id
        self._aliases[old_id] = new_id
        logger.info(f"Conversation {old_id} renamed to {new_id}")
        return renamed

    def snapshot(self) -> dict[str, Any]:
        """JSON-ready copy of the store, local delivery markers included."""
        return {
            "conversations": [c.to_wire() for c in self._conversations.values()],
            "aliases": dict(self._aliases),
        }

    def restore(self, data: dict[str, Any]) -> None:
        self._conversations = {}
        for item in data.get("conversations", []):
            conversation = Conversation.model_validate(item)
            self._conversations[conversation.id] = conversation
        self._aliases = dict(data.get("aliases", {}))
