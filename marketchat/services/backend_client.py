"""HTTP client for the conversation persistence API."""

import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx

from marketchat.config import settings
from marketchat.core.exceptions import BackendRejectedError, TransientBackendError
from marketchat.core.identity import Actor
from marketchat.schemas.conversation import Conversation, ConversationState
from marketchat.schemas.message import ChatMessage, MessageStatusUpdate, message_adapter
from marketchat.schemas.notification import Notification

logger = logging.getLogger(__name__)


class ConversationBackend(ABC):
    """Persistence and notification boundary used by the reconciler."""

    @abstractmethod
    async def get_conversations_for(self, participant_id: str) -> list[Conversation]: ...

    @abstractmethod
    async def put_conversation(self, conversation: ConversationState) -> Conversation: ...

    @abstractmethod
    async def append_message_remote(self, conversation_id: str, message: ChatMessage) -> ChatMessage: ...

    @abstractmethod
    async def update_message_status(
        self, conversation_id: str, message_id: int, update: MessageStatusUpdate
    ) -> ChatMessage: ...

    @abstractmethod
    async def create_notification(self, notification: Notification) -> Notification: ...

    @abstractmethod
    async def mark_notification_read(self, notification_id: int) -> None: ...

    @abstractmethod
    async def get_notifications_for(self, recipient_id: str) -> list[Notification]: ...


class BackendClient(ConversationBackend):
    """HTTP client for communicating with the persistence API server.

    Network errors, timeouts and 5xx responses raise ``TransientBackendError``
    so the caller can retry them; any other 4xx raises ``BackendRejectedError``.
    """

    def __init__(self, actor: Actor, base_url: str | None = None, timeout: float | None = None):
        self.actor = actor
        self.base_url = (base_url or settings.BACKEND_API_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.BACKEND_TIMEOUT_SECONDS
        logger.debug(f"BackendClient initialized: base_url={self.base_url}, actor={actor.id}")

    async def _request(
        self,
        method: str,
        path: str,
        **kwargs,
    ) -> Any:
        """Make an HTTP request to the persistence API."""
        url = f"{self.base_url}{path}"
        logger.debug(f"Backend request: {method} {url} (actor: {self.actor.id})")

        async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
            headers = kwargs.pop("headers", {})
            headers["X-User-Id"] = self.actor.id
            headers["X-User-Role"] = self.actor.role.value

            try:
                response = await client.request(method, url, headers=headers, **kwargs)
            except httpx.TimeoutException as e:
                logger.warning(f"Backend timeout: {method} {url}")
                raise TransientBackendError(f"Timeout: {e}") from e
            except httpx.RequestError as e:
                logger.warning(f"Backend connection error: {e}")
                raise TransientBackendError(f"Connection error: {e}") from e

            logger.debug(f"Backend response: {response.status_code}")

            if response.status_code >= 500:
                logger.warning(f"Backend error: {response.status_code} - {response.text}")
                raise TransientBackendError(f"{response.status_code} {response.text}")
            if response.status_code >= 400:
                logger.error(f"Backend rejected request: {response.status_code} - {response.text}")
                raise BackendRejectedError(response.status_code, response.text)

            if response.status_code == 204 or not response.content:
                return None
            return response.json()

    async def get_conversations_for(self, participant_id: str) -> list[Conversation]:
        """Get all conversations a participant takes part in."""
        data = await self._request("GET", "/conversations", params={"participantId": participant_id})
        return [Conversation.model_validate(item) for item in data]

    async def put_conversation(self, conversation: ConversationState) -> Conversation:
        """Upsert conversation metadata; the backend may answer with another id."""
        data = await self._request(
            "PUT",
            f"/conversations/{conversation.id}",
            json=conversation.to_wire(exclude={"messages"}),
        )
        return Conversation.model_validate(data)

    async def append_message_remote(self, conversation_id: str, message: ChatMessage) -> ChatMessage:
        """Append a message; returns it with the authoritative id and timestamp."""
        data = await self._request(
            "POST",
            f"/conversations/{conversation_id}/messages",
            json=message.to_wire(exclude={"delivery"}),
        )
        return message_adapter.validate_python(data)

    async def update_message_status(
        self, conversation_id: str, message_id: int, update: MessageStatusUpdate
    ) -> ChatMessage:
        """Record the resolution of an offer or test-drive request."""
        data = await self._request(
            "PATCH",
            f"/conversations/{conversation_id}/messages/{message_id}/status",
            json=update.to_wire(exclude_none=True),
        )
        return message_adapter.validate_python(data)

    async def create_notification(self, notification: Notification) -> Notification:
        data = await self._request("POST", "/notifications", json=notification.to_wire(exclude={"id"}))
        return Notification.model_validate(data)

    async def mark_notification_read(self, notification_id: int) -> None:
        await self._request("POST", f"/notifications/{notification_id}/read")

    async def get_notifications_for(self, recipient_id: str) -> list[Notification]:
        data = await self._request("GET", "/notifications", params={"recipientId": recipient_id})
        return [Notification.model_validate(item) for item in data]
