"""
shared/utils/db.py
Row loaders shared by the booking core services.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.exceptions import NotFound
from shared.models.models import Booking


async def load_booking(
    session: AsyncSession,
    booking_id: UUID,
    for_update: bool = False,
) -> Booking:
    """Fetch a booking by id, optionally row-locked; NotFound if absent."""
    query = select(Booking).where(Booking.id == booking_id)
    if for_update:
        query = query.with_for_update()
    result = await session.execute(query)
    booking = result.scalar_one_or_none()
    if not booking:
        raise NotFound("Booking not found", details={"booking_id": str(booking_id)})
    return booking
