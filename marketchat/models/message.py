"""Message model: one entry of a conversation log."""

from datetime import datetime

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from marketchat.db.base import Base
from marketchat.models.base import TimestampMixin


class Message(Base, TimestampMixin):
    """Represents a chat message as stored by the backend."""

    __tablename__ = "messages"

    pk: Mapped[int] = mapped_column("id", Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[str] = mapped_column(
        ForeignKey("conversations.id"), nullable=False
    )

    # Per-conversation id, monotonically increasing in backend write order
    message_id: Mapped[int] = mapped_column(Integer, nullable=False)
    client_ref: Mapped[str] = mapped_column(String(64), nullable=False)

    sender: Mapped[str] = mapped_column(String(20), nullable=False)  # customer, seller, system
    type: Mapped[str] = mapped_column(String(30), nullable=False, default="text")
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    payload: Mapped[dict | None] = mapped_column(JSON().with_variant(JSONB(), "postgresql"))

    # Relationships
    conversation: Mapped["Conversation"] = relationship(back_populates="messages")  # noqa: F821

    __table_args__ = (
        Index("ix_messages_conversation_message", "conversation_id", "message_id", unique=True),
        Index("ix_messages_conversation_client_ref", "conversation_id", "client_ref", unique=True),
    )
