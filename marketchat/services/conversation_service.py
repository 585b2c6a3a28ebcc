"""Conversation engine facade used by the UI layer."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from redis.exceptions import RedisError

from marketchat.core.exceptions import BadRequestError, UnauthorizedError
from marketchat.core.identity import Actor, Role
from marketchat.schemas.common import utcnow
from marketchat.schemas.conversation import Conversation, VehicleSnapshot
from marketchat.schemas.message import (
    ChatMessage,
    OfferMessage,
    OfferPayload,
    ProposalStatus,
    SenderRole,
    TestDrivePayload,
    TestDriveRequestMessage,
    TextMessage,
)
from marketchat.schemas.notification import Notification
from marketchat.services.backend_client import ConversationBackend
from marketchat.services.conversation_store import ConversationStore
from marketchat.services.local_cache import LocalCache
from marketchat.services.notification_dispatcher import NotificationDispatcher, NotificationInbox
from marketchat.services.presence import TypingTracker
from marketchat.services.proposals import (
    OFFER_RULE,
    TEST_DRIVE_RULE,
    ProposalRule,
    build_response,
    check_response,
    describe_offer,
    describe_test_drive,
)
from marketchat.services.reconciliation import (
    AppendMessage,
    BackoffPolicy,
    CommitResult,
    FlagConversation,
    LocalState,
    MarkConversationRead,
    MarkNotificationRead,
    PutConversation,
    Reconciler,
    UpdateMessageStatus,
)

logger = logging.getLogger(__name__)


class ConversationService:
    """Engine for one participant: store, negotiation, presence and sync.

    Every intent validates synchronously, applies its change to the local
    store and returns the local record at once. Backend persistence happens
    in the background through the reconciler.
    """

    def __init__(
        self,
        actor: Actor,
        backend: ConversationBackend,
        cache: LocalCache | None = None,
        *,
        policy: BackoffPolicy | None = None,
        typing_ttl: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_warning: Callable[[str], None] | None = None,
    ):
        self.actor = actor
        self.state = LocalState(
            conversations=ConversationStore(),
            notifications=NotificationInbox(actor.id),
        )
        self.reconciler = Reconciler(
            self.state, backend, cache, policy=policy, sleep=sleep, on_warning=on_warning
        )
        self.dispatcher = NotificationDispatcher(self.reconciler)
        self.typing = TypingTracker(typing_ttl)
        self._refresh_task: asyncio.Task | None = None

    @property
    def store(self) -> ConversationStore:
        return self.state.conversations

    @property
    def inbox(self) -> NotificationInbox:
        return self.state.notifications

    def conversations(self) -> list[Conversation]:
        """Conversations of the current participant, most recent first."""
        return self.store.list_for(self.actor.id)

    def get_conversation(self, conversation_id: str) -> Conversation:
        conversation = self.store.get(conversation_id)
        if not self.actor.participates_in(conversation):
            raise UnauthorizedError("You are not a participant of this conversation")
        return conversation

    # Conversations

    def start_conversation(
        self,
        seller_id: str,
        vehicle: VehicleSnapshot,
        customer_name: str,
        conversation_id: str | None = None,
    ) -> Conversation:
        """Open the conversation about ``vehicle``, reusing an existing one."""
        if self.actor.role is not Role.CUSTOMER:
            raise UnauthorizedError("Only customers can start a conversation")
        conversation, created = self.store.find_or_create(
            self.actor.id, seller_id, vehicle, customer_name, conversation_id
        )
        if created:
            self.reconciler.commit(PutConversation(conversation.id, conversation=conversation))
        return conversation

    def mark_read(self, conversation_id: str) -> Conversation | None:
        """Mark a conversation read by the current participant. Idempotent."""
        conversation = self.store.find(conversation_id)
        if conversation is None:
            logger.debug(f"Ignoring mark read for unknown conversation {conversation_id}")
            return None
        read = (
            conversation.is_read_by_customer
            if self.actor.role is Role.CUSTOMER
            else conversation.is_read_by_seller
        )
        if read:
            return conversation
        self.reconciler.commit(MarkConversationRead(conversation.id, self.actor.role))
        return self.store.get(conversation.id)

    def set_flag(
        self, conversation_id: str, flagged: bool = True, reason: str | None = None
    ) -> Conversation:
        conversation = self.get_conversation(conversation_id)
        self.reconciler.commit(FlagConversation(conversation.id, flagged, reason))
        return self.store.get(conversation.id)

    # Messages

    def send_message(
        self, conversation_id: str, body: str, *, recipient_active: bool = False
    ) -> ChatMessage:
        body = body.strip()
        if not body:
            raise BadRequestError("Message body cannot be empty")
        conversation = self.get_conversation(conversation_id)
        message = TextMessage(
            id=self.store.next_message_id(conversation.id),
            sender=self._sender,
            body=body,
            timestamp=utcnow(),
        )
        return self._post(conversation, message, recipient_active)

    def send_offer(
        self, conversation_id: str, price: int, *, recipient_active: bool = False
    ) -> ChatMessage:
        """Propose a price. A countered offer is followed up with a new offer."""
        if isinstance(price, bool) or not isinstance(price, int) or price <= 0:
            raise BadRequestError("Offer price must be a positive integer")
        conversation = self.get_conversation(conversation_id)
        message = OfferMessage(
            id=self.store.next_message_id(conversation.id),
            sender=self._sender,
            body=describe_offer(price),
            timestamp=utcnow(),
            payload=OfferPayload(price=price),
        )
        return self._post(conversation, message, recipient_active)

    def request_test_drive(
        self, conversation_id: str, date: str, time: str, *, recipient_active: bool = False
    ) -> ChatMessage:
        if self.actor.role is not Role.CUSTOMER:
            raise UnauthorizedError("Only customers can request a test drive")
        if not date.strip() or not time.strip():
            raise BadRequestError("Test drive date and time are required")
        conversation = self.get_conversation(conversation_id)
        message = TestDriveRequestMessage(
            id=self.store.next_message_id(conversation.id),
            sender=self._sender,
            body=describe_test_drive(date.strip(), time.strip()),
            timestamp=utcnow(),
            payload=TestDrivePayload(date=date.strip(), time=time.strip()),
        )
        return self._post(conversation, message, recipient_active)

    def respond_to_offer(
        self,
        conversation_id: str,
        message_id: int,
        decision: str | ProposalStatus,
        counter_price: int | None = None,
        *,
        recipient_active: bool = False,
    ) -> ChatMessage:
        """Accept, reject or counter a pending offer.

        Returns:
            The appended response message

        Raises:
            NotFoundError: Unknown conversation or message
            InvalidStateError: The offer is no longer pending
            UnauthorizedError: The actor made the offer
            InvalidDecisionError: Bad decision or counter price
        """
        return self._respond(
            OFFER_RULE, conversation_id, message_id, decision, counter_price, recipient_active
        )

    def respond_to_test_drive(
        self,
        conversation_id: str,
        message_id: int,
        decision: str | ProposalStatus,
        *,
        recipient_active: bool = False,
    ) -> ChatMessage:
        """Confirm or reject a pending test drive request."""
        return self._respond(
            TEST_DRIVE_RULE, conversation_id, message_id, decision, None, recipient_active
        )

    def _respond(
        self,
        rule: ProposalRule,
        conversation_id: str,
        message_id: int,
        decision: str | ProposalStatus,
        counter_price: int | None,
        recipient_active: bool,
    ) -> ChatMessage:
        conversation = self.store.get(conversation_id)
        proposal, status = check_response(
            conversation, message_id, decision, self.actor, rule, counter_price
        )
        response = build_response(
            rule,
            proposal,
            status,
            message_id=self.store.next_message_id(conversation.id),
            responder=self._sender,
            timestamp=utcnow(),
            counter_price=counter_price,
            vehicle_name=conversation.vehicle_name,
        )
        self.reconciler.commit(
            UpdateMessageStatus(
                conversation.id,
                proposal.client_ref,
                status,
                counter_price=response.payload.counter_price,
                resolved_at=response.timestamp,
            )
        )
        return self._post(conversation, response, recipient_active)

    def _post(
        self, conversation: Conversation, message: ChatMessage, recipient_active: bool
    ) -> ChatMessage:
        self.reconciler.commit(AppendMessage(conversation.id, message))
        self.typing.clear_typing(conversation.id, self.actor.role)
        conversation = self.store.get(conversation.id)
        self.dispatcher.dispatch(conversation, message, self.actor, recipient_active)
        return self.store.find_by_client_ref(conversation.id, message.client_ref)

    @property
    def _sender(self) -> SenderRole:
        return SenderRole(self.actor.role.value)

    # Presence

    def set_typing(self, conversation_id: str) -> None:
        self.typing.set_typing(self.store.resolve_id(conversation_id), self.actor.role)

    def clear_typing(self, conversation_id: str) -> None:
        self.typing.clear_typing(self.store.resolve_id(conversation_id), self.actor.role)

    def is_typing(self, conversation_id: str, role: Role | None = None) -> bool:
        """Whether ``role`` (the counterpart by default) is typing."""
        return self.typing.is_typing(
            self.store.resolve_id(conversation_id), role or self.actor.counterpart_role
        )

    # Notifications

    def notifications(self, unread_only: bool = False) -> list[Notification]:
        return self.inbox.unread() if unread_only else self.inbox.all()

    def mark_notifications_read(self, ids: list[int]) -> list[int]:
        """Mark notifications read; ids that are unknown or already read are skipped."""
        flipped = []
        for notification_id in ids:
            notification = self.inbox.get(notification_id)
            if notification is None or notification.is_read:
                logger.debug(f"Notification {notification_id} unknown or already read")
                continue
            self.reconciler.commit(MarkNotificationRead(notification_id))
            flipped.append(notification_id)
        return flipped

    def mark_all_notifications_read(self) -> list[int]:
        return self.mark_notifications_read([n.id for n in self.inbox.unread()])

    # Sync

    async def load(self) -> bool:
        """Restore local state from the cache, then refresh in the background.

        Returns:
            True if a cached snapshot was restored
        """
        restored = False
        cache = self.reconciler.cache
        if cache is not None:
            try:
                data = await cache.load()
            except (RedisError, OSError) as e:
                logger.warning(f"Local cache unavailable: {e}")
                data = None
            if data:
                self.reconciler.restore(data)
                restored = True
                logger.info(
                    f"Loaded {len(self.store)} conversation(s) from cache for {self.actor.id}"
                )
        self._refresh_task = asyncio.get_running_loop().create_task(self.refresh())
        return restored

    async def refresh(self) -> bool:
        return await self.reconciler.refresh(self.actor.id)

    async def retry_pending(self) -> list[CommitResult]:
        return await self.reconciler.retry_pending()

    def pending_status(self) -> dict[str, Any]:
        return self.reconciler.pending_status()

    def clear_pending(self) -> None:
        self.reconciler.clear_pending()

    async def flush(self) -> None:
        """Wait for the background refresh and every in-flight submission."""
        if self._refresh_task is not None:
            await asyncio.gather(self._refresh_task, return_exceptions=True)
            self._refresh_task = None
        await self.reconciler.flush()

    async def close(self) -> None:
        await self.flush()
        await self.reconciler.close()
