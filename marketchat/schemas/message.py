"""Chat message schemas.

A chat entry is a tagged union keyed on ``type``. Each variant declares
exactly the payload it needs, so an offer always has a price and a response
always references the proposal it resolves.
"""

from enum import Enum
from typing import Annotated, Literal, Union
from uuid import uuid4

from pydantic import ConfigDict, Field, PositiveInt, RootModel, TypeAdapter

from marketchat.schemas.common import CamelModel, UTCDateTime


class SenderRole(str, Enum):
    """Who wrote a message."""

    CUSTOMER = "customer"
    SELLER = "seller"
    SYSTEM = "system"


class MessageType(str, Enum):
    """Message variant tag."""

    TEXT = "text"
    OFFER = "offer"
    OFFER_RESPONSE = "offer_response"
    TEST_DRIVE_REQUEST = "test_drive_request"
    TEST_DRIVE_RESPONSE = "test_drive_response"


class ProposalStatus(str, Enum):
    """Lifecycle status of an offer or test-drive request."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    COUNTERED = "countered"
    CONFIRMED = "confirmed"


class DeliveryStatus(str, Enum):
    """Local delivery marker; never sent to the backend."""

    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


def new_client_ref() -> str:
    return uuid4().hex


class FrozenModel(CamelModel):
    model_config = ConfigDict(frozen=True)


class OfferPayload(FrozenModel):
    price: PositiveInt
    status: ProposalStatus = ProposalStatus.PENDING
    counter_price: PositiveInt | None = None
    resolved_at: UTCDateTime | None = None


class TestDrivePayload(FrozenModel):
    __test__ = False  # not a pytest class

    date: str = Field(..., min_length=1)
    time: str = Field(..., min_length=1)
    status: ProposalStatus = ProposalStatus.PENDING
    resolved_at: UTCDateTime | None = None


class ResponsePayload(FrozenModel):
    original_message_id: int
    status: ProposalStatus
    counter_price: PositiveInt | None = None


ProposalPayload = OfferPayload | TestDrivePayload


class MessageBase(FrozenModel):
    """Fields common to every message variant.

    ``id``, ``sender``, ``timestamp`` and ``type`` never change once created;
    a confirmed message is replaced by its authoritative copy.
    """

    id: int
    client_ref: str = Field(default_factory=new_client_ref)
    sender: SenderRole
    body: str
    timestamp: UTCDateTime
    delivery: DeliveryStatus = DeliveryStatus.SENT


class TextMessage(MessageBase):
    type: Literal[MessageType.TEXT] = MessageType.TEXT


class OfferMessage(MessageBase):
    type: Literal[MessageType.OFFER] = MessageType.OFFER
    payload: OfferPayload


class OfferResponseMessage(MessageBase):
    type: Literal[MessageType.OFFER_RESPONSE] = MessageType.OFFER_RESPONSE
    payload: ResponsePayload


class TestDriveRequestMessage(MessageBase):
    __test__ = False

    type: Literal[MessageType.TEST_DRIVE_REQUEST] = MessageType.TEST_DRIVE_REQUEST
    payload: TestDrivePayload


class TestDriveResponseMessage(MessageBase):
    __test__ = False

    type: Literal[MessageType.TEST_DRIVE_RESPONSE] = MessageType.TEST_DRIVE_RESPONSE
    payload: ResponsePayload


ChatMessage = Annotated[
    Union[
        TextMessage,
        OfferMessage,
        OfferResponseMessage,
        TestDriveRequestMessage,
        TestDriveResponseMessage,
    ],
    Field(discriminator="type"),
]

ProposalMessage = OfferMessage | TestDriveRequestMessage
ResponseMessage = OfferResponseMessage | TestDriveResponseMessage

message_adapter: TypeAdapter[ChatMessage] = TypeAdapter(ChatMessage)


class ChatMessageBody(RootModel[ChatMessage]):
    """Request and response body carrying a single message."""


def is_proposal(message: MessageBase) -> bool:
    return isinstance(message, (OfferMessage, TestDriveRequestMessage))


def is_response(message: MessageBase) -> bool:
    return isinstance(message, (OfferResponseMessage, TestDriveResponseMessage))


class MessageStatusUpdate(CamelModel):
    """Body of a proposal status write (updateMessageStatus)."""

    status: ProposalStatus
    counter_price: PositiveInt | None = None
    resolved_at: UTCDateTime | None = None
