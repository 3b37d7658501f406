"""
services/booking/transitions.py
The booking status graph and the single function allowed to move a booking
along it. Every move appends a BookingAuditLog row.

    PENDING ──payment──► CONFIRMED ──start──► IN_PROGRESS ──finish──► COMPLETED
    PENDING ──start──► IN_PROGRESS
    PENDING | CONFIRMED ──staff cancel──► CANCELLED
"""

import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from shared.exceptions import InvalidState
from shared.models.models import Booking, BookingAuditLog, BookingStatus

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    BookingStatus.PENDING: {
        BookingStatus.CONFIRMED,
        BookingStatus.IN_PROGRESS,
        BookingStatus.CANCELLED,
    },
    BookingStatus.CONFIRMED: {BookingStatus.IN_PROGRESS, BookingStatus.CANCELLED},
    BookingStatus.IN_PROGRESS: {BookingStatus.COMPLETED},
    BookingStatus.COMPLETED: set(),
    BookingStatus.CANCELLED: set(),
}

_TIMESTAMP_FIELD = {
    BookingStatus.CONFIRMED: "confirmed_at",
    BookingStatus.IN_PROGRESS: "started_at",
    BookingStatus.COMPLETED: "completed_at",
    BookingStatus.CANCELLED: "cancelled_at",
}


def can_transition(from_status: BookingStatus, to_status: BookingStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS[from_status]


def apply_transition(
    session: AsyncSession,
    booking: Booking,
    to_status: BookingStatus,
    now: datetime,
    actor_id: Optional[UUID] = None,
    reason: str = None,
) -> None:
    """Move the booking to `to_status` or raise InvalidState. Caller owns the transaction."""
    from_status = booking.status
    if not can_transition(from_status, to_status):
        raise InvalidState(
            f"Cannot move booking from '{from_status.value}' to '{to_status.value}'",
            details={"from": from_status.value, "to": to_status.value},
        )

    booking.status = to_status
    setattr(booking, _TIMESTAMP_FIELD[to_status], now)
    session.add(BookingAuditLog(
        booking_id=booking.id,
        from_status=from_status.value,
        to_status=to_status.value,
        changed_by_id=actor_id,
        reason=reason,
        created_at=now,
    ))
    logger.info(
        f"Booking {booking.booking_number}: {from_status.value} -> {to_status.value}",
        extra={"booking_id": booking.id},
    )
