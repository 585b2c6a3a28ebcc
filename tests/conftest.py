"""Pytest configuration and fixtures."""

from collections.abc import AsyncGenerator
from typing import Any
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from marketchat.core.exceptions import BackendRejectedError, TransientBackendError
from marketchat.core.identity import Actor, Role
from marketchat.db.base import Base
from marketchat.models import Conversation as ConversationRow
from marketchat.schemas import (
    ChatMessage,
    Conversation,
    ConversationState,
    DeliveryStatus,
    MessageStatusUpdate,
    Notification,
    ProposalStatus,
    SenderRole,
    VehicleSnapshot,
    utcnow,
)
from marketchat.schemas.message import is_proposal
from marketchat.services import BackoffPolicy, ConversationService, LocalCache
from marketchat.services.backend_client import ConversationBackend


# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
async def async_engine():
    """Create async engine for testing."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_maker(async_engine):
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for testing."""
    async with session_maker() as session:
        yield session
        await session.rollback()


class FakeBackend(ConversationBackend):
    """In-memory persistence API with failure injection.

    ``failures`` are raised by the next calls, one per call, in order.
    ``offline`` makes every call raise a transient error.
    """

    def __init__(self):
        self.conversations: dict[str, Conversation] = {}
        self.notifications: dict[int, Notification] = {}
        self.calls: list[tuple[str, Any]] = []
        self.failures: list[Exception] = []
        self.offline = False

    def _call(self, name: str, arg: Any = None) -> None:
        self.calls.append((name, arg))
        if self.offline:
            raise TransientBackendError("connection refused")
        if self.failures:
            raise self.failures.pop(0)

    def calls_to(self, name: str) -> list[Any]:
        return [arg for call, arg in self.calls if call == name]

    def _conversation(self, conversation_id: str) -> Conversation:
        if conversation_id not in self.conversations:
            raise BackendRejectedError(404, f"Conversation {conversation_id} not found")
        return self.conversations[conversation_id]

    async def get_conversations_for(self, participant_id: str) -> list[Conversation]:
        self._call("get_conversations_for", participant_id)
        return [
            c
            for c in self.conversations.values()
            if participant_id in (c.customer_id, c.seller_id)
        ]

    async def put_conversation(self, conversation: ConversationState) -> Conversation:
        self._call("put_conversation", conversation.id)
        existing = self.conversations.get(conversation.id)
        if existing is None:
            for other in self.conversations.values():
                if (other.customer_id, other.vehicle_id) == (
                    conversation.customer_id,
                    conversation.vehicle_id,
                ):
                    return other
            stored = Conversation.model_validate({**conversation.model_dump(), "messages": []})
        else:
            stored = existing.model_copy(
                update={
                    "is_read_by_customer": conversation.is_read_by_customer,
                    "is_read_by_seller": conversation.is_read_by_seller,
                    "is_flagged": conversation.is_flagged,
                    "flag_reason": conversation.flag_reason,
                    "flagged_at": conversation.flagged_at,
                }
            )
        self.conversations[stored.id] = stored
        return stored

    async def append_message_remote(self, conversation_id: str, message: ChatMessage) -> ChatMessage:
        self._call("append_message_remote", message.client_ref)
        conversation = self._conversation(conversation_id)
        for stored in conversation.messages:
            if stored.client_ref == message.client_ref:
                return stored

        now = utcnow()
        stored = message.model_copy(
            update={
                "id": max((m.id for m in conversation.messages), default=0) + 1,
                "timestamp": now,
                "delivery": DeliveryStatus.SENT,
            }
        )
        update = {"messages": [*conversation.messages, stored], "last_message_at": now}
        if message.sender is SenderRole.CUSTOMER:
            update.update(is_read_by_customer=True, is_read_by_seller=False)
        elif message.sender is SenderRole.SELLER:
            update.update(is_read_by_seller=True, is_read_by_customer=False)
        self.conversations[conversation_id] = conversation.model_copy(update=update)
        return stored

    async def update_message_status(
        self, conversation_id: str, message_id: int, update: MessageStatusUpdate
    ) -> ChatMessage:
        self._call("update_message_status", message_id)
        conversation = self._conversation(conversation_id)
        message = next((m for m in conversation.messages if m.id == message_id), None)
        if message is None or not is_proposal(message):
            raise BackendRejectedError(422, f"Message {message_id} is not a proposal")
        current = message.payload.status
        if current is not ProposalStatus.PENDING:
            if current is update.status:
                return message
            raise BackendRejectedError(409, f"Message {message_id} already {current.value}")

        fields = {"status": update.status, "resolved_at": update.resolved_at or utcnow()}
        if hasattr(message.payload, "counter_price"):
            fields["counter_price"] = update.counter_price
        resolved = message.model_copy(update={"payload": message.payload.model_copy(update=fields)})
        self.conversations[conversation_id] = conversation.model_copy(
            update={"messages": [resolved if m.id == message_id else m for m in conversation.messages]}
        )
        return resolved

    async def create_notification(self, notification: Notification) -> Notification:
        self._call("create_notification", notification.recipient_id)
        stored = notification.model_copy(update={"id": len(self.notifications) + 1})
        self.notifications[stored.id] = stored
        return stored

    async def mark_notification_read(self, notification_id: int) -> None:
        self._call("mark_notification_read", notification_id)
        if notification_id not in self.notifications:
            raise BackendRejectedError(404, f"Notification {notification_id} not found")
        self.notifications[notification_id] = self.notifications[notification_id].model_copy(
            update={"is_read": True}
        )

    async def get_notifications_for(self, recipient_id: str) -> list[Notification]:
        self._call("get_notifications_for", recipient_id)
        return [n for n in self.notifications.values() if n.recipient_id == recipient_id]


class InMemoryRedis:
    """The subset of redis.asyncio.Redis used by LocalCache."""

    def __init__(self):
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int | None] = {}
        self.fail_writes = False

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> None:
        if self.fail_writes:
            raise RedisConnectionError("Connection refused")
        self.data[key] = value
        self.ttls[key] = ex

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def redis() -> InMemoryRedis:
    return InMemoryRedis()


@pytest.fixture
def sleep() -> AsyncMock:
    """Stand-in for asyncio.sleep so backoff waits are instant and recorded."""
    return AsyncMock()


@pytest.fixture
def policy() -> BackoffPolicy:
    return BackoffPolicy(retries=3, base_delay=1.0, max_delay=8.0, timeout=1.0)


@pytest.fixture
def customer() -> Actor:
    return Actor(id="  Asha.Buyer@Example.com ", role=Role.CUSTOMER)


@pytest.fixture
def seller() -> Actor:
    return Actor(id="Dealer@Motors.in", role=Role.SELLER)


@pytest.fixture
def vehicle() -> VehicleSnapshot:
    return VehicleSnapshot(id=42, name="Maruti Swift VXi", price=600000)


@pytest.fixture
def warnings() -> list[str]:
    return []


@pytest.fixture
async def customer_service(customer, backend, redis, policy, sleep, warnings):
    """Engine of the customer, backed by the fake backend and cache."""
    service = ConversationService(
        customer,
        backend,
        LocalCache(redis, customer.id),
        policy=policy,
        sleep=sleep,
        on_warning=warnings.append,
    )
    yield service
    await service.close()


@pytest.fixture
async def seller_service(seller, backend, policy, sleep):
    """Engine of the seller, sharing the customer's backend."""
    service = ConversationService(seller, backend, policy=policy, sleep=sleep)
    yield service
    await service.close()


@pytest.fixture
async def sample_conversation(db_session: AsyncSession) -> ConversationRow:
    """Create a sample conversation in the database."""
    conversation = ConversationRow(
        id="conv_sample",
        customer_id="asha.buyer@example.com",
        customer_name="Asha",
        seller_id="dealer@motors.in",
        vehicle_id=42,
        vehicle_name="Maruti Swift VXi",
        vehicle_price=600000,
        last_message_at=utcnow(),
        is_read_by_customer=True,
        is_read_by_seller=False,
    )
    db_session.add(conversation)
    await db_session.commit()
    await db_session.refresh(conversation)
    return conversation
