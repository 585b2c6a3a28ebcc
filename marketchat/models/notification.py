"""Notification model."""

from sqlalchemy import Boolean, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from marketchat.db.base import Base
from marketchat.models.base import TimestampMixin


class Notification(Base, TimestampMixin):
    """Represents a notification addressed to a participant."""

    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    recipient_id: Mapped[str] = mapped_column(String(255), nullable=False)
    target_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default="conversation"
    )  # conversation, vehicle, system
    target_id: Mapped[str] = mapped_column(String(64), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)

    __table_args__ = (
        Index("ix_notifications_recipient", "recipient_id", "is_read"),
    )
