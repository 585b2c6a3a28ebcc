"""Conversation schemas."""

from pydantic import Field

from marketchat.schemas.common import CamelModel, Identifier, UTCDateTime, utcnow
from marketchat.schemas.message import ChatMessage


class VehicleSnapshot(CamelModel):
    """Vehicle details captured when the conversation starts."""

    id: int
    name: str
    price: int | None = None


class ConversationState(CamelModel):
    """Conversation metadata without its message log (putConversation body)."""

    id: str
    customer_id: Identifier
    customer_name: str
    seller_id: Identifier
    vehicle_id: int
    vehicle_name: str
    vehicle_price: int | None = None
    last_message_at: UTCDateTime = Field(default_factory=utcnow)
    is_read_by_customer: bool = True
    is_read_by_seller: bool = False
    is_flagged: bool = False
    flag_reason: str | None = None
    flagged_at: UTCDateTime | None = None
    updated_at: UTCDateTime = Field(default_factory=utcnow)


class Conversation(ConversationState):
    """A thread between one customer and one seller about one vehicle."""

    messages: list[ChatMessage] = Field(default_factory=list)

    def state(self) -> ConversationState:
        return ConversationState.model_validate(self.model_dump(exclude={"messages"}))
