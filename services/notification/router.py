"""
services/notification/router.py
Staff review feed over the notification table the core appends to.
Reading is the only mutation allowed here.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.exceptions import NotFound
from shared.middleware.auth import require_staff
from shared.models.models import Notification, NotificationType, User
from shared.schemas.schemas import MessageResponse, NotificationResponse
from shared.utils.clock import utcnow

router = APIRouter(prefix="/notifications", tags=["Notifications"])

UNREAD = Notification.is_read.is_(False)


@router.get("", response_model=list[NotificationResponse])
async def list_notifications(
    unread_only: bool = Query(False),
    notification_type: Optional[NotificationType] = Query(None, alias="type"),
    booking_id: Optional[UUID] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    current_user: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    """Newest first. Filter by read state, event type or booking."""
    filters = []
    if unread_only:
        filters.append(UNREAD)
    if notification_type is not None:
        filters.append(Notification.type == notification_type)
    if booking_id is not None:
        filters.append(Notification.booking_id == booking_id)

    rows = await db.scalars(
        select(Notification)
        .where(*filters)
        .order_by(Notification.created_at.desc(), Notification.id)
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return [NotificationResponse.model_validate(n) for n in rows]


@router.get("/unread-count")
async def unread_count(
    current_user: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    count = await db.scalar(select(func.count(Notification.id)).where(UNREAD))
    return {"unread_count": count or 0}


@router.put("/read-all", response_model=MessageResponse)
async def mark_all_read(
    current_user: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(update(Notification).where(UNREAD).values(is_read=True, read_at=utcnow()))
    return MessageResponse(message=f"{result.rowcount} notifications marked as read")


@router.put("/{notification_id}/read", response_model=NotificationResponse)
async def mark_read(
    notification_id: UUID,
    current_user: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    notif = await db.get(Notification, notification_id)
    if notif is None:
        raise NotFound("Notification not found", details={"notification_id": str(notification_id)})
    # Keep the first read time
    if not notif.is_read:
        notif.is_read = True
        notif.read_at = utcnow()
        await db.flush()
    return NotificationResponse.model_validate(notif)
