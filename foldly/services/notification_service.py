"""
Upload notifications for link owners.

Every write path keeps ``links.unread_uploads`` equal to the number of unread
notifications for that link: the counter is adjusted in the same transaction
as the notification row, using SQL-side arithmetic so concurrent requests do
not lose updates. "Mark all read" resets affected counters to exactly zero.
"""

import uuid
from typing import Any, Dict, List, Optional, Sequence

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from foldly.db.models.link import Link
from foldly.db.models.notification import Notification
from foldly.exceptions import NotFoundError
from foldly.logger import get_logger
from foldly.services.realtime_service import (
    RealtimeBus,
    safe_publish,
    notifications_channel,
    link_files_channel,
    NOTIFICATION_EVENT,
    FILE_UPDATE_EVENT,
)
from foldly.utils.dates import utcnow
from foldly.utils.sql import decrement
from foldly.utils.types import NotificationType

logger = get_logger(__name__)

MAX_LIST_LIMIT = 50


class NotificationService:
    def __init__(self, db: AsyncSession, bus: Optional[RealtimeBus] = None):
        self.db = db
        self.bus = bus

    async def _owned(self, notification_id: uuid.UUID, user_id: str) -> Notification:
        notification = await self.db.scalar(
            sa.select(Notification).where(
                Notification.id == notification_id,
                Notification.user_id == user_id,
            )
        )
        if notification is None:
            raise NotFoundError("Notification not found.")
        return notification

    async def create_upload_notification(
            self,
            *,
            user_id: str,
            link_id: uuid.UUID,
            title: str,
            batch_id: Optional[uuid.UUID] = None,
            description: Optional[str] = None,
            details: Optional[Dict[str, Any]] = None,
            link_title: Optional[str] = None
    ) -> Notification:
        notification = Notification(
            user_id=user_id,
            link_id=link_id,
            batch_id=batch_id,
            type=NotificationType.UPLOAD,
            title=title,
            description=description,
            details=details or {},
        )
        self.db.add(notification)
        await self.db.flush()

        await self.db.execute(
            sa.update(Link)
            .where(Link.id == link_id)
            .values(
                unread_uploads=Link.unread_uploads + 1,
                last_notification_at=utcnow(),
            )
        )
        await self.db.commit()

        details = details or {}
        await safe_publish(self.bus, notifications_channel(user_id), NOTIFICATION_EVENT, {
            "type": "new_upload",
            "notificationId": str(notification.id),
            "linkId": str(link_id),
            "linkTitle": link_title,
            "batchId": str(batch_id) if batch_id else None,
            "fileCount": details.get("fileCount", 0),
            "folderCount": details.get("folderCount", 0),
            "uploaderName": details.get("uploaderName") or "Anonymous",
        })
        await safe_publish(self.bus, link_files_channel(link_id), FILE_UPDATE_EVENT, {
            "type": "batch_completed",
            "linkId": str(link_id),
            "batchId": str(batch_id) if batch_id else None,
            "userId": user_id,
        })

        logger.info("Notification %s created for link %s", notification.id, link_id)
        return notification

    async def mark_read(self, notification_id: uuid.UUID, user_id: str) -> bool:
        notification = await self._owned(notification_id, user_id)

        result = await self.db.execute(
            sa.update(Notification)
            .where(Notification.id == notification.id, Notification.is_read.is_(False))
            .values(is_read=True, read_at=utcnow())
        )
        changed = result.rowcount == 1
        if changed:
            await self.db.execute(
                sa.update(Link)
                .where(Link.id == notification.link_id)
                .values(unread_uploads=decrement(Link.unread_uploads, 1))
            )

        await self.db.commit()
        return changed

    async def _mark_where(self, user_id: str, *conditions) -> int:
        rows = (await self.db.execute(
            sa.select(Notification.id, Notification.link_id).where(
                Notification.user_id == user_id,
                Notification.is_read.is_(False),
                *conditions,
            )
        )).all()
        if not rows:
            return 0

        result = await self.db.execute(
            sa.update(Notification)
            .where(Notification.id.in_([row.id for row in rows]), Notification.is_read.is_(False))
            .values(is_read=True, read_at=utcnow())
        )
        await self.db.execute(
            sa.update(Link)
            .where(Link.id.in_({row.link_id for row in rows}), Link.user_id == user_id)
            .values(unread_uploads=0)
        )
        await self.db.commit()

        await safe_publish(self.bus, notifications_channel(user_id), NOTIFICATION_EVENT, {
            "type": "marked_read",
            "linkIds": sorted(str(row.link_id) for row in rows),
        })
        return result.rowcount

    async def mark_all_read(self, user_id: str) -> int:
        return await self._mark_where(user_id)

    async def mark_link_read(self, link_id: uuid.UUID, user_id: str) -> int:
        return await self._mark_where(user_id, Notification.link_id == link_id)

    async def delete(self, notification_id: uuid.UUID, user_id: str) -> None:
        notification = await self._owned(notification_id, user_id)

        if not notification.is_read:
            await self.db.execute(
                sa.update(Link)
                .where(Link.id == notification.link_id)
                .values(unread_uploads=decrement(Link.unread_uploads, 1))
            )

        await self.db.delete(notification)
        await self.db.commit()

    async def delete_many(self, notification_ids: Sequence[uuid.UUID], user_id: str) -> int:
        if not notification_ids:
            return 0

        rows = (await self.db.execute(
            sa.select(Notification.id, Notification.link_id, Notification.is_read).where(
                Notification.id.in_(list(notification_ids)),
                Notification.user_id == user_id,
            )
        )).all()
        if not rows:
            return 0

        unread_per_link: Dict[uuid.UUID, int] = {}
        for row in rows:
            if not row.is_read:
                unread_per_link[row.link_id] = unread_per_link.get(row.link_id, 0) + 1

        for link_id, count in unread_per_link.items():
            await self.db.execute(
                sa.update(Link)
                .where(Link.id == link_id)
                .values(unread_uploads=decrement(Link.unread_uploads, count))
            )

        await self.db.execute(
            sa.delete(Notification).where(Notification.id.in_([row.id for row in rows]))
        )
        await self.db.commit()
        return len(rows)

    async def list(self, user_id: str, limit: int = MAX_LIST_LIMIT, unread_only: bool = False) -> List[Dict[str, Any]]:
        stmt = (
            sa.select(Notification, Link.title)
            .join(Link, Notification.link_id == Link.id)
            .where(Notification.user_id == user_id)
            .order_by(Notification.created_at.desc())
            .limit(max(1, min(limit, MAX_LIST_LIMIT)))
        )
        if unread_only:
            stmt = stmt.where(Notification.is_read.is_(False))

        rows = (await self.db.execute(stmt)).all()
        return [
            {
                "id": str(n.id),
                "linkId": str(n.link_id),
                "linkTitle": link_title,
                "batchId": str(n.batch_id) if n.batch_id else None,
                "title": n.title,
                "description": n.description,
                "details": n.details,
                "isRead": n.is_read,
                "readAt": n.read_at.isoformat() if n.read_at else None,
                "createdAt": n.created_at.isoformat(),
            }
            for n, link_title in rows
        ]

    async def unread_counts(self, user_id: str) -> Dict[str, int]:
        rows = (await self.db.execute(
            sa.select(Link.id, Link.unread_uploads).where(
                Link.user_id == user_id,
                Link.unread_uploads > 0,
            )
        )).all()
        return {str(link_id): count for link_id, count in rows}
