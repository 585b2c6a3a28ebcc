"""Optimistic updates and their reconciliation with the backend.

``Reconciler.commit`` applies a mutation to the local state immediately and
returns a task that submits it to the backend. Submissions of one
conversation run in commit order. Transient failures are retried with
exponential backoff; when retries run out the mutation is kept in a pending
queue for the next sync pass and the optimistic state stays in place. Later
changes of the same conversation wait in the queue behind it.
Outcomes are posted to a channel and applied to the local state by a single
pump task.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar
from uuid import uuid4

from fastapi import HTTPException, status
from redis.exceptions import RedisError

from marketchat.config import settings
from marketchat.core.exceptions import BackendRejectedError, NotFoundError, TransientBackendError
from marketchat.core.identity import Role
from marketchat.core.telemetry import get_tracer
from marketchat.schemas.common import as_utc, utcnow
from marketchat.schemas.conversation import Conversation
from marketchat.schemas.message import (
    ChatMessage,
    DeliveryStatus,
    MessageStatusUpdate,
    ProposalStatus,
    is_proposal,
    message_adapter,
)
from marketchat.schemas.notification import Notification
from marketchat.services.backend_client import ConversationBackend
from marketchat.services.conversation_store import ConversationStore, merge_messages
from marketchat.services.local_cache import LocalCache
from marketchat.services.proposals import materialize

if TYPE_CHECKING:
    from marketchat.services.notification_dispatcher import NotificationInbox

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

MUTATIONS: dict[str, type["Mutation"]] = {}


class CommitState(str, Enum):
    """Final outcome of a committed mutation."""

    SYNCED = "synced"
    QUEUED = "queued"
    FAILED = "failed"


@dataclass
class CommitResult:
    key: str
    state: CommitState
    attempts: int
    error: str | None = None
    value: Any = None

    @property
    def synced(self) -> bool:
        return self.state is CommitState.SYNCED


@dataclass(frozen=True)
class BackoffPolicy:
    """Retry schedule for backend submissions.

    One initial attempt plus ``retries`` retries, waiting ``base_delay``
    doubled after each retry and capped at ``max_delay``.
    """

    retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 8.0
    timeout: float = 6.0

    @classmethod
    def from_settings(cls) -> "BackoffPolicy":
        return cls(
            retries=settings.SYNC_RETRY_ATTEMPTS,
            base_delay=settings.SYNC_RETRY_BASE_DELAY,
            max_delay=settings.SYNC_RETRY_MAX_DELAY,
            timeout=settings.BACKEND_TIMEOUT_SECONDS,
        )

    def delay(self, retry: int) -> float:
        """Seconds to wait before retry number ``retry`` (1-based)."""
        return min(self.base_delay * 2 ** (retry - 1), self.max_delay)


@dataclass
class LocalState:
    """Everything the engine holds locally for the current participant."""

    conversations: ConversationStore = field(default_factory=ConversationStore)
    notifications: NotificationInbox | None = None


def new_mutation_id() -> str:
    return uuid4().hex


@dataclass
class Mutation(ABC):
    """A local change that must also reach the backend."""

    kind: ClassVar[str] = ""

    mutation_id: str = field(default_factory=new_mutation_id, kw_only=True)

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        if cls.kind:
            MUTATIONS[cls.kind] = cls

    @property
    def key(self) -> str:
        return f"{self.kind}:{self.mutation_id}"

    @property
    @abstractmethod
    def lane(self) -> str:
        """Mutations sharing a lane are submitted one after another."""

    def apply(self, state: LocalState) -> None:
        """Apply the change locally. Must be safe to call twice."""

    @abstractmethod
    async def submit(self, backend: ConversationBackend, state: LocalState) -> Any:
        """Send the change to the backend and return its answer."""

    def confirm(self, state: LocalState, value: Any) -> None:
        """Apply the backend's answer. Must be safe to call twice."""

    def fail(self, state: LocalState, error: str | None) -> None:
        """Mark the local change as not (yet) persisted."""

    def resume(self, state: LocalState) -> None:
        """Called before a queued mutation is submitted again."""

    def to_record(self) -> dict[str, Any]:
        return {"kind": self.kind, "mutationId": self.mutation_id, **self._fields()}

    @abstractmethod
    def _fields(self) -> dict[str, Any]: ...

    @staticmethod
    def from_record(record: dict[str, Any]) -> "Mutation":
        record = dict(record)
        mutation_class = MUTATIONS[record.pop("kind")]
        mutation_id = record.pop("mutationId")
        return mutation_class._from_fields(record, mutation_id)

    @classmethod
    @abstractmethod
    def _from_fields(cls, data: dict[str, Any], mutation_id: str) -> "Mutation": ...


@dataclass
class ConversationMutation(Mutation):
    conversation_id: str

    @property
    def lane(self) -> str:
        return f"conversation:{self.conversation_id}"

    def current_id(self, state: LocalState) -> str:
        return state.conversations.resolve_id(self.conversation_id)


@dataclass
class SyncConversation(ConversationMutation):
    """Base for changes persisted by upserting the conversation metadata."""

    async def submit(self, backend: ConversationBackend, state: LocalState) -> Conversation:
        current = state.conversations.get(self.current_id(state))
        return await backend.put_conversation(current.state())

    def confirm(self, state: LocalState, value: Conversation) -> None:
        store = state.conversations
        local_id = self.current_id(state)
        if value.id == local_id:
            return
        # Another device created this customer/vehicle pair first
        store.rename_conversation(local_id, value.id)
        renamed = store.get(value.id)
        store.put(
            renamed.model_copy(
                update={"messages": merge_messages(list(value.messages), list(renamed.messages))}
            )
        )


@dataclass
class PutConversation(SyncConversation):
    """Create a conversation on the backend."""

    kind: ClassVar[str] = "put_conversation"

    conversation: Conversation | None = None

    def apply(self, state: LocalState) -> None:
        if self.conversation is not None and self.conversation_id not in state.conversations:
            state.conversations.put(self.conversation)

    def _fields(self) -> dict[str, Any]:
        return {
            "conversationId": self.conversation_id,
            "conversation": self.conversation.to_wire() if self.conversation else None,
        }

    @classmethod
    def _from_fields(cls, data: dict[str, Any], mutation_id: str) -> "PutConversation":
        conversation = data.get("conversation")
        return cls(
            conversation_id=data["conversationId"],
            conversation=Conversation.model_validate(conversation) if conversation else None,
            mutation_id=mutation_id,
        )


@dataclass
class MarkConversationRead(SyncConversation):
    kind: ClassVar[str] = "mark_conversation_read"

    role: Role

    def apply(self, state: LocalState) -> None:
        state.conversations.set_read_state(self.conversation_id, self.role)

    def _fields(self) -> dict[str, Any]:
        return {"conversationId": self.conversation_id, "role": self.role.value}

    @classmethod
    def _from_fields(cls, data: dict[str, Any], mutation_id: str) -> "MarkConversationRead":
        return cls(
            conversation_id=data["conversationId"],
            role=Role(data["role"]),
            mutation_id=mutation_id,
        )


@dataclass
class FlagConversation(SyncConversation):
    kind: ClassVar[str] = "flag_conversation"

    flagged: bool
    reason: str | None = None

    def apply(self, state: LocalState) -> None:
        store = state.conversations
        conversation = store.get(self.conversation_id)
        if conversation.is_flagged != self.flagged or conversation.flag_reason != self.reason:
            store.set_flag(self.conversation_id, self.flagged, self.reason)

    def _fields(self) -> dict[str, Any]:
        return {
            "conversationId": self.conversation_id,
            "flagged": self.flagged,
            "reason": self.reason,
        }

    @classmethod
    def _from_fields(cls, data: dict[str, Any], mutation_id: str) -> "FlagConversation":
        return cls(
            conversation_id=data["conversationId"],
            flagged=data["flagged"],
            reason=data.get("reason"),
            mutation_id=mutation_id,
        )


@dataclass
class AppendMessage(ConversationMutation):
    """Append a message; the backend assigns its authoritative id."""

    kind: ClassVar[str] = "append_message"

    message: ChatMessage

    def apply(self, state: LocalState) -> None:
        state.conversations.append_message(
            self.conversation_id,
            self.message.model_copy(update={"delivery": DeliveryStatus.SENDING}),
        )

    async def submit(self, backend: ConversationBackend, state: LocalState) -> ChatMessage:
        conversation_id = self.current_id(state)
        # Send the current copy so rewritten references are picked up
        current = state.conversations.find_by_client_ref(conversation_id, self.message.client_ref)
        try:
            return await backend.append_message_remote(conversation_id, current or self.message)
        except BackendRejectedError as e:
            # Lost an id race with a concurrent append; resubmitting is safe
            if e.backend_status == status.HTTP_409_CONFLICT:
                raise TransientBackendError(e.detail) from e
            raise

    def confirm(self, state: LocalState, value: ChatMessage) -> None:
        state.conversations.confirm_message(self.current_id(state), value)

    def fail(self, state: LocalState, error: str | None) -> None:
        state.conversations.mark_delivery(
            self.current_id(state), self.message.client_ref, DeliveryStatus.FAILED
        )

    def resume(self, state: LocalState) -> None:
        store = state.conversations
        if store.find(self.conversation_id) is None:
            return
        if store.find_by_client_ref(self.current_id(state), self.message.client_ref) is None:
            self.apply(state)
        else:
            store.mark_delivery(self.current_id(state), self.message.client_ref, DeliveryStatus.SENDING)

    def _fields(self) -> dict[str, Any]:
        return {"conversationId": self.conversation_id, "message": self.message.to_wire()}

    @classmethod
    def _from_fields(cls, data: dict[str, Any], mutation_id: str) -> "AppendMessage":
        return cls(
            conversation_id=data["conversationId"],
            message=message_adapter.validate_python(data["message"]),
            mutation_id=mutation_id,
        )


@dataclass
class UpdateMessageStatus(ConversationMutation):
    """Record a proposal's resolution on the backend.

    Locally the status already follows from the appended response message,
    so there is nothing to apply.
    """

    kind: ClassVar[str] = "update_message_status"

    client_ref: str
    status: ProposalStatus
    counter_price: int | None = None
    resolved_at: datetime | None = None

    async def submit(self, backend: ConversationBackend, state: LocalState) -> ChatMessage:
        conversation_id = self.current_id(state)
        proposal = state.conversations.find_by_client_ref(conversation_id, self.client_ref)
        if proposal is None:
            raise NotFoundError("Message", f"{conversation_id}/{self.client_ref}")
        update = MessageStatusUpdate(
            status=self.status, counter_price=self.counter_price, resolved_at=self.resolved_at
        )
        return await backend.update_message_status(conversation_id, proposal.id, update)

    def confirm(self, state: LocalState, value: ChatMessage) -> None:
        state.conversations.confirm_message(self.current_id(state), value)

    def _fields(self) -> dict[str, Any]:
        return {
            "conversationId": self.conversation_id,
            "clientRef": self.client_ref,
            "status": self.status.value,
            "counterPrice": self.counter_price,
            "resolvedAt": self.resolved_at.isoformat() if self.resolved_at else None,
        }

    @classmethod
    def _from_fields(cls, data: dict[str, Any], mutation_id: str) -> "UpdateMessageStatus":
        resolved_at = data.get("resolvedAt")
        return cls(
            conversation_id=data["conversationId"],
            client_ref=data["clientRef"],
            status=ProposalStatus(data["status"]),
            counter_price=data.get("counterPrice"),
            resolved_at=as_utc(datetime.fromisoformat(resolved_at)) if resolved_at else None,
            mutation_id=mutation_id,
        )


@dataclass
class CreateNotification(Mutation):
    kind: ClassVar[str] = "create_notification"

    notification: Notification

    @property
    def lane(self) -> str:
        return f"conversation:{self.notification.target_id}"

    async def submit(self, backend: ConversationBackend, state: LocalState) -> Notification:
        return await backend.create_notification(self.notification)

    def _fields(self) -> dict[str, Any]:
        return {"notification": self.notification.to_wire()}

    @classmethod
    def _from_fields(cls, data: dict[str, Any], mutation_id: str) -> "CreateNotification":
        return cls(notification=Notification.model_validate(data["notification"]), mutation_id=mutation_id)


@dataclass
class MarkNotificationRead(Mutation):
    kind: ClassVar[str] = "mark_notification_read"

    notification_id: int

    @property
    def lane(self) -> str:
        return "notifications"

    def apply(self, state: LocalState) -> None:
        if state.notifications is not None:
            state.notifications.mark_read([self.notification_id])

    async def submit(self, backend: ConversationBackend, state: LocalState) -> None:
        await backend.mark_notification_read(self.notification_id)

    def _fields(self) -> dict[str, Any]:
        return {"notificationId": self.notification_id}

    @classmethod
    def _from_fields(cls, data: dict[str, Any], mutation_id: str) -> "MarkNotificationRead":
        return cls(notification_id=data["notificationId"], mutation_id=mutation_id)


def merge_conversation(
    local: Conversation,
    remote: Conversation,
    snapshot_at: datetime,
    keep_local_state: bool = False,
) -> Conversation:
    """Merge a fetched conversation into the local copy.

    The backend wins for every message it has, matched by client_ref, except
    a proposal the user resolved locally after the fetch started. Messages
    the backend does not have yet are kept. Conversation fields come from the
    backend unless a local metadata change is still unsynced.
    """
    local_by_ref = {message.client_ref: message for message in local.messages}
    primary = []
    for message in remote.messages:
        mine = local_by_ref.get(message.client_ref)
        if (
            mine is not None
            and is_proposal(mine)
            and mine.payload.status is not ProposalStatus.PENDING
            and mine.payload.resolved_at is not None
            and mine.payload.resolved_at > snapshot_at
        ):
            message = message.model_copy(update={"payload": mine.payload})
        primary.append(message)

    messages = materialize(merge_messages(primary, list(local.messages)))
    base = local if keep_local_state else remote
    return base.model_copy(
        update={
            "id": local.id,
            "messages": messages,
            "last_message_at": max(local.last_message_at, remote.last_message_at),
        }
    )


Outcome = tuple[Mutation, CommitResult, "asyncio.Future[CommitResult]"]


class Reconciler:
    """Commits mutations optimistically and syncs them with the backend."""

    def __init__(
        self,
        state: LocalState,
        backend: ConversationBackend,
        cache: LocalCache | None = None,
        policy: BackoffPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_warning: Callable[[str], None] | None = None,
    ):
        self.state = state
        self.backend = backend
        self.cache = cache
        self.policy = policy or BackoffPolicy.from_settings()
        self._sleep = sleep
        self._on_warning = on_warning

        self.pending: dict[str, Mutation] = {}
        self._inflight: dict[str, Mutation] = {}
        self._lanes: dict[str, asyncio.Task] = {}
        self._tasks: set[asyncio.Task] = set()
        self._outcomes: asyncio.Queue[Outcome] | None = None
        self._pump: asyncio.Task | None = None
        self._writer: asyncio.Task | None = None
        self._dirty = False

    # Committing

    def commit(self, mutation: Mutation) -> "asyncio.Task[CommitResult]":
        """Apply a mutation locally now and submit it in the background."""
        mutation.apply(self.state)
        self.mark_dirty()
        return self._schedule(mutation)

    def _schedule(self, mutation: Mutation) -> "asyncio.Task[CommitResult]":
        previous = self._lanes.get(mutation.lane)
        self._inflight[mutation.key] = mutation
        task = asyncio.get_running_loop().create_task(
            self._run(mutation, previous), name=f"reconcile:{mutation.key}"
        )
        self._lanes[mutation.lane] = task
        self._tasks.add(task)
        task.add_done_callback(lambda done: self._task_done(mutation, done))
        return task

    def _task_done(self, mutation: Mutation, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if self._lanes.get(mutation.lane) is task:
            del self._lanes[mutation.lane]

    async def _run(self, mutation: Mutation, previous: asyncio.Task | None) -> CommitResult:
        if previous is not None and not previous.done():
            await asyncio.wait({previous})
        blocked_by = self._queued_ahead(mutation)
        if blocked_by is not None:
            # Keep commit order: wait in the pending queue behind the earlier change
            logger.info(f"Holding {mutation.key} behind unsynced {blocked_by}")
            result = CommitResult(
                mutation.key, CommitState.QUEUED, 0, error=f"Waiting for {blocked_by}"
            )
        else:
            result = await self._submit_with_retry(mutation)
        return await self._report(mutation, result)

    def _queued_ahead(self, mutation: Mutation) -> str | None:
        """Key of a mutation of the same lane still waiting in the pending queue."""
        for key, queued in self.pending.items():
            if key != mutation.key and queued.lane == mutation.lane:
                return key
        return None

    async def _submit_with_retry(self, mutation: Mutation) -> CommitResult:
        error: str | None = None
        attempts = 0
        for retry in range(self.policy.retries + 1):
            if retry:
                delay = self.policy.delay(retry)
                logger.warning(
                    f"Retrying {mutation.key} in {delay}s "
                    f"(attempt {retry + 1}/{self.policy.retries + 1}): {error}"
                )
                await self._sleep(delay)

            attempts += 1
            with tracer.start_as_current_span("reconcile.submit") as span:
                span.set_attribute("mutation.kind", mutation.kind)
                span.set_attribute("mutation.attempt", attempts)
                try:
                    value = await asyncio.wait_for(
                        mutation.submit(self.backend, self.state), timeout=self.policy.timeout
                    )
                    return CommitResult(mutation.key, CommitState.SYNCED, attempts, value=value)
                except TransientBackendError as e:
                    error = e.detail
                    span.record_exception(e)
                except asyncio.TimeoutError as e:
                    error = f"Timed out after {self.policy.timeout}s"
                    span.record_exception(e)
                except BackendRejectedError as e:
                    logger.error(f"Backend rejected {mutation.key}: {e.detail}")
                    span.record_exception(e)
                    return CommitResult(mutation.key, CommitState.FAILED, attempts, error=e.detail)
                except HTTPException as e:
                    logger.error(f"Cannot submit {mutation.key}: {e.detail}")
                    span.record_exception(e)
                    return CommitResult(mutation.key, CommitState.FAILED, attempts, error=e.detail)
                except Exception as e:
                    # Unreadable answer; the change may or may not have been stored
                    logger.exception(f"Unexpected error submitting {mutation.key}: {e}")
                    span.record_exception(e)
                    return CommitResult(
                        mutation.key, CommitState.QUEUED, attempts, error=f"Unexpected error: {e}"
                    )

        return CommitResult(mutation.key, CommitState.QUEUED, attempts, error=error)

    async def _report(self, mutation: Mutation, result: CommitResult) -> CommitResult:
        if self._outcomes is None:
            self._outcomes = asyncio.Queue()
        if self._pump is None or self._pump.done():
            self._pump = asyncio.get_running_loop().create_task(
                self._pump_outcomes(), name="reconcile:outcomes"
            )
        done: asyncio.Future[CommitResult] = asyncio.get_running_loop().create_future()
        await self._outcomes.put((mutation, result, done))
        return await done

    async def _pump_outcomes(self) -> None:
        """Apply submission outcomes to the local state, one at a time."""
        while True:
            mutation, result, done = await self._outcomes.get()
            try:
                self._apply_outcome(mutation, result)
            except HTTPException as e:
                logger.warning(f"Could not apply outcome of {mutation.key}: {e.detail}")
            except Exception as e:
                logger.exception(f"Could not apply outcome of {mutation.key}: {e}")
            finally:
                self._outcomes.task_done()
                if not done.done():
                    done.set_result(result)

    def _apply_outcome(self, mutation: Mutation, result: CommitResult) -> None:
        self._inflight.pop(mutation.key, None)
        if result.state is CommitState.SYNCED:
            self.pending.pop(mutation.key, None)
            mutation.confirm(self.state, result.value)
            logger.info(f"Synced {mutation.key} after {result.attempts} attempt(s)")
        elif result.state is CommitState.QUEUED:
            self.pending[mutation.key] = mutation
            mutation.fail(self.state, result.error)
            self._warn(f"Could not reach the server, {mutation.kind} will be retried later")
        else:
            self.pending.pop(mutation.key, None)
            mutation.fail(self.state, result.error)
            self._warn(f"The server rejected {mutation.kind}: {result.error}")
        self.mark_dirty()

    def _warn(self, text: str) -> None:
        logger.warning(text)
        if self._on_warning is not None:
            self._on_warning(text)

    # Pending queue

    async def retry_pending(self) -> list[CommitResult]:
        """Submit every queued mutation again, in the order they were queued."""
        if not self.pending:
            return []
        mutations = list(self.pending.values())
        self.pending.clear()
        logger.info(f"Retrying {len(mutations)} pending mutation(s)")
        tasks = []
        for mutation in mutations:
            mutation.resume(self.state)
            tasks.append(self._schedule(mutation))
        self.mark_dirty()
        return list(await asyncio.gather(*tasks))

    def pending_status(self) -> dict[str, Any]:
        return {
            "count": len(self.pending),
            "kinds": dict(Counter(m.kind for m in self.pending.values())),
            "keys": list(self.pending),
        }

    def clear_pending(self) -> None:
        logger.info(f"Clearing {len(self.pending)} pending mutation(s)")
        self.pending.clear()
        self.mark_dirty()

    def has_unsynced(self, conversation_id: str, *kinds: type[Mutation]) -> bool:
        """Whether a conversation has an unsynced mutation of the given types."""
        store = self.state.conversations
        for mutation in [*self._inflight.values(), *self.pending.values()]:
            if (
                isinstance(mutation, kinds)
                and isinstance(mutation, ConversationMutation)
                and store.resolve_id(mutation.conversation_id) == store.resolve_id(conversation_id)
            ):
                return True
        return False

    # Backend refresh

    async def refresh(self, participant_id: str) -> bool:
        """Fetch the participant's conversations and merge them into the store.

        Returns False if the backend could not be reached; local state is left
        untouched in that case.
        """
        snapshot_at = utcnow()
        try:
            remote = await asyncio.wait_for(
                self.backend.get_conversations_for(participant_id), timeout=self.policy.timeout
            )
            notifications = None
            if self.state.notifications is not None:
                notifications = await asyncio.wait_for(
                    self.backend.get_notifications_for(participant_id), timeout=self.policy.timeout
                )
        except (TransientBackendError, BackendRejectedError) as e:
            self._warn(f"Could not refresh conversations: {e.detail}")
            return False
        except asyncio.TimeoutError:
            self._warn("Could not refresh conversations: timed out")
            return False
        except Exception as e:
            logger.exception(f"Unexpected error refreshing conversations for {participant_id}")
            self._warn(f"Could not refresh conversations: {e}")
            return False

        store = self.state.conversations
        for conversation in remote:
            local = store.find(conversation.id) or store.find_by_pair(
                conversation.customer_id, conversation.vehicle_id
            )
            if local is None:
                store.put(conversation)
                continue
            if local.id != conversation.id:
                local = store.rename_conversation(local.id, conversation.id)
            keep_local_state = self.has_unsynced(local.id, SyncConversation)
            store.put(merge_conversation(local, conversation, snapshot_at, keep_local_state))

        if notifications is not None:
            self.state.notifications.merge(notifications)
        logger.info(f"Refreshed {len(remote)} conversation(s) for {participant_id}")
        self.mark_dirty()
        return True

    # Local cache

    def snapshot(self) -> dict[str, Any]:
        data = {
            "conversations": self.state.conversations.snapshot(),
            "pending": [m.to_record() for m in [*self.pending.values(), *self._inflight.values()]],
        }
        if self.state.notifications is not None:
            data["notifications"] = self.state.notifications.snapshot()
        return data

    def restore(self, data: dict[str, Any]) -> None:
        """Load a cache snapshot into the local state and pending queue."""
        self.state.conversations.restore(data.get("conversations", {}))
        if self.state.notifications is not None and "notifications" in data:
            self.state.notifications.restore(data["notifications"])
        self.pending = {}
        for record in data.get("pending", []):
            try:
                mutation = Mutation.from_record(record)
            except (KeyError, ValueError) as e:
                logger.warning(f"Dropping unreadable pending mutation {record.get('kind')}: {e}")
                continue
            self.pending[mutation.key] = mutation

    def mark_dirty(self) -> None:
        """Schedule a cache write; writes are coalesced into one writer task."""
        if self.cache is None:
            return
        self._dirty = True
        if self._writer is None or self._writer.done():
            self._writer = asyncio.get_running_loop().create_task(
                self._write_cache(), name="reconcile:cache"
            )

    async def _write_cache(self) -> None:
        while self._dirty:
            self._dirty = False
            try:
                await self.cache.save(self.snapshot())
            except (RedisError, OSError) as e:
                logger.warning(f"Local cache write failed: {e}")

    # Lifecycle

    async def flush(self) -> None:
        """Wait until every in-flight submission and cache write has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self._writer is not None:
            await asyncio.gather(self._writer, return_exceptions=True)

    async def close(self) -> None:
        await self.flush()
        if self._pump is not None:
            self._pump.cancel()
            await asyncio.gather(self._pump, return_exceptions=True)
            self._pump = None
