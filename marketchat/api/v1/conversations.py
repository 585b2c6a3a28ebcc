"""Conversation and message endpoints (the persistence boundary)."""

import logging

from fastapi import APIRouter, Query, Response, status

from marketchat.api.deps import CurrentActor, DbSession, require_participant
from marketchat.core.exceptions import (
    BadRequestError,
    InvalidDecisionError,
    NotFoundError,
    UnauthorizedError,
)
from marketchat.core.identity import normalize_identifier
from marketchat.db.repositories import (
    ConversationRepository,
    MessageRepository,
    conversation_to_schema,
    message_to_schema,
)
from marketchat.schemas import (
    ChatMessageBody,
    Conversation,
    ConversationState,
    MessageStatusUpdate,
    ProposalStatus,
    SenderRole,
)
from marketchat.schemas.message import MessageType
from marketchat.services.proposals import RULES

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/conversations", tags=["conversations"])


async def _get_conversation(db: DbSession, actor: CurrentActor, conversation_id: str):
    conversation = await ConversationRepository(db).get_with_messages(conversation_id)
    if not conversation:
        raise NotFoundError("Conversation", conversation_id)
    require_participant(actor, conversation)
    return conversation


@router.get("", response_model=list[Conversation])
async def list_conversations(
    db: DbSession,
    actor: CurrentActor,
    participant_id: str | None = Query(None, alias="participantId"),
):
    """List conversations the acting user takes part in."""
    if participant_id and normalize_identifier(participant_id) != actor.id:
        raise UnauthorizedError("You can only list your own conversations")
    rows = await ConversationRepository(db).list_for_participant(actor.id)
    return [conversation_to_schema(row) for row in rows]


@router.put("/{conversation_id}", response_model=Conversation)
async def put_conversation(
    conversation_id: str,
    payload: ConversationState,
    db: DbSession,
    actor: CurrentActor,
    response: Response,
):
    """Upsert conversation metadata.

    If the customer already has a conversation about the vehicle under
    another id, that conversation is returned instead of creating a second.
    """
    if payload.id != conversation_id:
        raise BadRequestError("Conversation id in path and body differ")
    require_participant(actor, payload)

    repo = ConversationRepository(db)
    existing = await repo.get(conversation_id)
    if existing:
        require_participant(actor, existing)

    row, created = await repo.upsert(payload)
    if created:
        response.status_code = status.HTTP_201_CREATED
    return conversation_to_schema(row)


@router.post(
    "/{conversation_id}/messages",
    response_model=ChatMessageBody,
    status_code=status.HTTP_201_CREATED,
)
async def append_message(
    conversation_id: str,
    body: ChatMessageBody,
    db: DbSession,
    actor: CurrentActor,
    response: Response,
):
    """Append a message; the server assigns id and timestamp.

    Posting a message whose clientRef is already stored returns the stored
    copy with status 200.
    """
    conversation = await _get_conversation(db, actor, conversation_id)
    message = body.root
    if message.sender is not SenderRole.SYSTEM and message.sender.value != actor.role.value:
        raise UnauthorizedError("Message sender does not match the acting user")

    row, created = await MessageRepository(db).append(conversation, message)
    if not created:
        response.status_code = status.HTTP_200_OK
    return ChatMessageBody(message_to_schema(row))


@router.patch(
    "/{conversation_id}/messages/{message_id}/status",
    response_model=ChatMessageBody,
)
async def update_message_status(
    conversation_id: str,
    message_id: int,
    update: MessageStatusUpdate,
    db: DbSession,
    actor: CurrentActor,
):
    """Record the resolution of an offer or test drive request.

    Repeating the same resolution is a no-op; a different resolution of an
    already resolved proposal is rejected with 409.
    """
    await _get_conversation(db, actor, conversation_id)
    repo = MessageRepository(db)
    row = await repo.get_by_message_id(conversation_id, message_id)
    if not row:
        raise NotFoundError("Message", f"{conversation_id}/{message_id}")

    rule = RULES.get(MessageType(row.type))
    if rule is None:
        raise InvalidDecisionError(f"Message {message_id} is not an offer or test drive request")
    if update.status not in rule.decisions:
        raise InvalidDecisionError(
            f"'{update.status.value}' is not a valid response to a {rule.label.lower()}"
        )
    if update.status is ProposalStatus.COUNTERED and update.counter_price is None:
        raise InvalidDecisionError("Counter price is required when countering")
    if row.sender == actor.role.value:
        raise UnauthorizedError(f"Only the counterparty may respond to this {rule.label.lower()}")

    row = await repo.update_status(conversation_id, message_id, update)
    return ChatMessageBody(message_to_schema(row))
