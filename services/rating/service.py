"""
services/rating/service.py
Post-trip ratings and the denormalized guide/driver aggregates.

One Rating row per booking holds up to two sub-ratings. Every write
re-scans the rated person's ratings and stores mean + count on their
profile; aggregates are never incremented in place.
"""

import logging
from decimal import Decimal
from typing import Optional, Type, Union
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shared.exceptions import Conflict, InvalidState, PermissionDenied
from shared.models.models import (
    Booking,
    BookingStatus,
    DriverProfile,
    Rating,
    TourGuideProfile,
)
from shared.schemas.schemas import RatingSubmitRequest
from shared.utils.db import load_booking

logger = logging.getLogger(__name__)


class RatingAggregator:

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def submit_rating(self, customer_id: UUID, data: RatingSubmitRequest) -> Rating:
        """
        Create or partially update the booking's rating, then recompute the
        aggregate of whoever was rated. Upsert and recomputation share one
        transaction.
        """
        try:
            async with self.session_factory() as session, session.begin():
                booking = await load_booking(session, data.booking_id, for_update=True)
                _check_rateable(booking, customer_id)

                result = await session.execute(
                    select(Rating).where(Rating.booking_id == booking.id).with_for_update()
                )
                rating = result.scalar_one_or_none()
                if rating is None:
                    rating = Rating(
                        booking_id=booking.id,
                        customer_id=customer_id,
                        tour_guide_id=booking.tour_guide_id,
                        driver_id=booking.driver_id,
                    )
                    session.add(rating)

                # Partial update: omitted fields keep their previous value
                if data.rating_tourguide is not None:
                    rating.rating_tourguide = data.rating_tourguide
                    rating.tour_guide_id = booking.tour_guide_id or rating.tour_guide_id
                if data.rating_driver is not None:
                    rating.rating_driver = data.rating_driver
                    rating.driver_id = booking.driver_id or rating.driver_id
                if data.review_tourguide is not None:
                    rating.review_tourguide = data.review_tourguide
                if data.review_driver is not None:
                    rating.review_driver = data.review_driver
                await session.flush()

                if data.rating_tourguide is not None and rating.tour_guide_id:
                    await self._recompute(session, TourGuideProfile, rating.tour_guide_id)
                if data.rating_driver is not None and rating.driver_id:
                    await self._recompute(session, DriverProfile, rating.driver_id)
        except IntegrityError as e:
            logger.warning(f"Concurrent rating insert for booking {data.booking_id}: {e.orig}")
            raise Conflict("A rating for this booking is already being submitted")

        logger.info(f"Rating {rating.id} saved for booking {data.booking_id}")
        return rating

    async def can_rate_booking(self, customer_id: UUID, booking_id: UUID) -> bool:
        """True only for the owner of a completed booking that has no rating yet."""
        async with self.session_factory() as session:
            booking = await session.get(Booking, booking_id)
            if not booking or booking.customer_id != customer_id:
                return False
            if booking.status != BookingStatus.COMPLETED:
                return False
            existing = await session.execute(
                select(Rating.id).where(Rating.booking_id == booking_id)
            )
            return existing.scalar_one_or_none() is None

    async def get_rating_for_booking(self, booking_id: UUID) -> Optional[Rating]:
        async with self.session_factory() as session:
            result = await session.execute(select(Rating).where(Rating.booking_id == booking_id))
            return result.scalar_one_or_none()

    # ── Aggregates ────────────────────────────────────────────

    async def _recompute(
        self,
        session: AsyncSession,
        profile_model: Type[Union[TourGuideProfile, DriverProfile]],
        person_id: UUID,
    ) -> None:
        if profile_model is TourGuideProfile:
            score, owner = Rating.rating_tourguide, Rating.tour_guide_id
        else:
            score, owner = Rating.rating_driver, Rating.driver_id

        avg_result = await session.execute(
            select(func.avg(score), func.count(score))
            .where(owner == person_id, score.is_not(None))
        )
        avg, count = avg_result.one()

        await session.execute(
            update(profile_model)
            .where(profile_model.user_id == person_id)
            .values(
                rating_avg=Decimal(str(round(float(avg or 0), 2))),
                rating_count=count,
            )
        )


def _check_rateable(booking: Booking, customer_id: UUID) -> None:
    if booking.customer_id != customer_id:
        raise PermissionDenied("You can only rate your own bookings")
    if booking.status != BookingStatus.COMPLETED:
        raise InvalidState(
            "Booking must be completed before rating",
            details={"status": booking.status.value},
        )
