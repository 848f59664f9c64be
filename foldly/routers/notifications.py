import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from foldly.db.models.user import User
from foldly.dependencies import get_notification_service
from foldly.exceptions import InvalidInputError
from foldly.services.auth_service import AuthService
from foldly.services.notification_service import NotificationService, MAX_LIST_LIMIT

router = APIRouter(prefix="/notifications", tags=["notifications"])


class NotificationDelete(BaseModel):
    notification_id: Optional[str] = Field(None, alias="notificationId")
    notification_ids: Optional[List[str]] = Field(None, alias="notificationIds")


def _parse_id(value: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError as e:
        raise InvalidInputError("Invalid notification id.") from e


@router.get("")
async def list_notifications(
    limit: int = Query(MAX_LIST_LIMIT, ge=1),
    unread_only: bool = Query(False, alias="unreadOnly"),
    notifications: NotificationService = Depends(get_notification_service),
    user: User = Depends(AuthService.get_current_user),
):
    return {"success": True, "notifications": await notifications.list(user.id, limit, unread_only)}


@router.get("/unread-counts")
async def unread_counts(
    notifications: NotificationService = Depends(get_notification_service),
    user: User = Depends(AuthService.get_current_user),
):
    return {"success": True, "data": await notifications.unread_counts(user.id)}


@router.delete("")
async def delete_notification(
    body: Optional[NotificationDelete] = None,
    notifications: NotificationService = Depends(get_notification_service),
    user: User = Depends(AuthService.get_current_user),
):
    if body is not None and body.notification_ids:
        ids = [_parse_id(v) for v in body.notification_ids]
        return {"success": True, "count": await notifications.delete_many(ids, user.id)}

    if body is None or not body.notification_id:
        raise InvalidInputError("Notification ID is required")

    await notifications.delete(_parse_id(body.notification_id), user.id)
    return {"success": True, "message": "Notification deleted"}


@router.post("/mark-all-read")
async def mark_all_read(
    notifications: NotificationService = Depends(get_notification_service),
    user: User = Depends(AuthService.get_current_user),
):
    return {"success": True, "count": await notifications.mark_all_read(user.id)}


@router.post("/links/{link_id}/read")
async def mark_link_read(
    link_id: uuid.UUID,
    notifications: NotificationService = Depends(get_notification_service),
    user: User = Depends(AuthService.get_current_user),
):
    return {"success": True, "count": await notifications.mark_link_read(link_id, user.id)}


@router.post("/{notification_id}/read")
async def mark_read(
    notification_id: uuid.UUID,
    notifications: NotificationService = Depends(get_notification_service),
    user: User = Depends(AuthService.get_current_user),
):
    return {"success": True, "changed": await notifications.mark_read(notification_id, user.id)}
