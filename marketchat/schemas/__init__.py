"""Pydantic schemas for the wire shape and the in-memory domain."""

from marketchat.schemas.common import CamelModel, UTCDateTime, utcnow
from marketchat.schemas.conversation import (
    Conversation,
    ConversationState,
    VehicleSnapshot,
)
from marketchat.schemas.message import (
    ChatMessage,
    ChatMessageBody,
    DeliveryStatus,
    MessageStatusUpdate,
    MessageType,
    OfferMessage,
    OfferPayload,
    OfferResponseMessage,
    ProposalStatus,
    ResponsePayload,
    SenderRole,
    TestDrivePayload,
    TestDriveRequestMessage,
    TestDriveResponseMessage,
    TextMessage,
    message_adapter,
)
from marketchat.schemas.notification import Notification, NotificationTarget

__all__ = [
    "CamelModel",
    "ChatMessage",
    "ChatMessageBody",
    "Conversation",
    "ConversationState",
    "DeliveryStatus",
    "MessageStatusUpdate",
    "MessageType",
    "Notification",
    "NotificationTarget",
    "OfferMessage",
    "OfferPayload",
    "OfferResponseMessage",
    "ProposalStatus",
    "ResponsePayload",
    "SenderRole",
    "TestDrivePayload",
    "TestDriveRequestMessage",
    "TestDriveResponseMessage",
    "TextMessage",
    "UTCDateTime",
    "VehicleSnapshot",
    "message_adapter",
    "utcnow",
]
