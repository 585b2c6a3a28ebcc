"""Notification schemas."""

from enum import Enum

from pydantic import Field

from marketchat.schemas.common import CamelModel, Identifier, UTCDateTime, utcnow


class NotificationTarget(str, Enum):
    """What a notification points at."""

    CONVERSATION = "conversation"
    VEHICLE = "vehicle"
    SYSTEM = "system"


class Notification(CamelModel):
    """A notice for a participant who was not looking at the conversation."""

    id: int | None = None
    recipient_id: Identifier
    target_type: NotificationTarget = NotificationTarget.CONVERSATION
    target_id: str
    message: str
    is_read: bool = False
    created_at: UTCDateTime = Field(default_factory=utcnow)
