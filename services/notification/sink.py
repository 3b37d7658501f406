"""
services/notification/sink.py
Append-only staff notification feed.

The core writes human-readable events here inside the caller's transaction
and never reads them back. A failed write is logged and swallowed: the
operation that triggered it still commits.
"""

import logging
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import Notification, NotificationType, User

logger = logging.getLogger(__name__)


class NotificationSink:
    """Fire-and-forget writer for the staff notification table."""

    async def emit(
        self,
        session: AsyncSession,
        notification_type: NotificationType,
        message: str,
        booking_id: Optional[UUID] = None,
        customer_id: Optional[UUID] = None,
    ) -> Optional[Notification]:
        try:
            # Savepoint: a failed lookup or insert rolls back only the notification.
            async with session.begin_nested():
                customer = await session.get(User, customer_id) if customer_id else None
                notif = Notification(
                    type=notification_type,
                    booking_id=booking_id,
                    customer_id=customer_id,
                    customer_name=customer.name if customer else None,
                    customer_email=customer.email if customer else None,
                    message=message,
                )
                session.add(notif)
            return notif
        except Exception as e:
            logger.error(f"Notification write failed ({notification_type.value}): {e}")
            return None
