"""Conversation model: one thread per customer and vehicle."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from marketchat.db.base import Base
from marketchat.models.base import TimestampMixin


class Conversation(Base, TimestampMixin):
    """Represents a conversation between a customer and a seller about a vehicle."""

    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    customer_id: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    seller_id: Mapped[str] = mapped_column(String(255), nullable=False)

    vehicle_id: Mapped[int] = mapped_column(Integer, nullable=False)
    vehicle_name: Mapped[str] = mapped_column(String(255), nullable=False)
    vehicle_price: Mapped[int | None] = mapped_column(Integer)

    last_message_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_read_by_customer: Mapped[bool] = mapped_column(Boolean, default=True)
    is_read_by_seller: Mapped[bool] = mapped_column(Boolean, default=False)

    is_flagged: Mapped[bool] = mapped_column(Boolean, default=False)
    flag_reason: Mapped[str | None] = mapped_column(Text)
    flagged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Relationships
    messages: Mapped[list["Message"]] = relationship(  # noqa: F821
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="Message.message_id",
    )

    __table_args__ = (
        Index("ix_conversations_customer_vehicle", "customer_id", "vehicle_id", unique=True),
        Index("ix_conversations_seller_last", "seller_id", "last_message_at"),
        Index("ix_conversations_customer_last", "customer_id", "last_message_at"),
    )
