"""Notification repository."""

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from marketchat.core.identity import normalize_identifier
from marketchat.db.repositories.base import BaseRepository
from marketchat.models import Notification
from marketchat.schemas import notification as schemas


def notification_to_schema(row: Notification) -> schemas.Notification:
    return schemas.Notification(
        id=row.id,
        recipient_id=row.recipient_id,
        target_type=row.target_type,
        target_id=row.target_id,
        message=row.message,
        is_read=row.is_read,
        created_at=row.created_at,
    )


class NotificationRepository(BaseRepository[Notification]):
    """Repository for notification operations."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, Notification)

    async def create_from(self, notification: schemas.Notification) -> Notification:
        return await self.create(
            recipient_id=notification.recipient_id,
            target_type=notification.target_type.value,
            target_id=notification.target_id,
            message=notification.message,
            is_read=notification.is_read,
        )

    async def list_for_recipient(
        self, recipient_id: str, unread_only: bool = False, limit: int = 100
    ) -> list[Notification]:
        """List notifications for a recipient, newest first."""
        stmt = select(Notification).where(
            Notification.recipient_id == normalize_identifier(recipient_id)
        )
        if unread_only:
            stmt = stmt.where(Notification.is_read.is_(False))
        stmt = stmt.order_by(Notification.id.desc()).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def mark_read(self, notification_id: int) -> Notification | None:
        """Mark a notification as read. Already-read notifications are left as is."""
        notification = await self.get(notification_id)
        if notification and not notification.is_read:
            notification = await self.update(notification, is_read=True)
        return notification

    async def mark_all_read(self, recipient_id: str) -> int:
        """Mark every unread notification of a recipient as read."""
        result = await self.session.execute(
            update(Notification)
            .where(
                Notification.recipient_id == normalize_identifier(recipient_id),
                Notification.is_read.is_(False),
            )
            .values(is_read=True)
        )
        await self.session.commit()
        return result.rowcount
