"""
services/rating/router.py
Post-trip ratings for the tour guide and driver.
"""

from uuid import UUID

from fastapi import APIRouter, Depends

from services.booking.service import BookingStateMachine
from services.dependencies import get_booking_state_machine
from shared.middleware.auth import require_customer
from shared.models.models import User
from shared.schemas.schemas import RatingResponse, RatingStatusResponse, RatingSubmitRequest

router = APIRouter(prefix="/ratings", tags=["Ratings"])


@router.post("", response_model=RatingResponse)
async def submit_rating(
    data: RatingSubmitRequest,
    current_user: User = Depends(require_customer),
    core: BookingStateMachine = Depends(get_booking_state_machine),
):
    """
    Rate a completed booking. Re-submitting updates the same rating;
    omitted fields keep their previous values.
    """
    rating = await core.submit_rating(current_user.id, data)
    return RatingResponse.model_validate(rating)


@router.get("/booking/{booking_id}", response_model=RatingStatusResponse)
async def rating_status(
    booking_id: UUID,
    current_user: User = Depends(require_customer),
    core: BookingStateMachine = Depends(get_booking_state_machine),
):
    """Whether the caller may still rate this booking, plus any existing rating."""
    can_rate = await core.can_rate_booking(current_user.id, booking_id)
    rating = await core.get_rating_for_booking(booking_id)
    if rating is not None and rating.customer_id != current_user.id:
        rating = None
    return RatingStatusResponse(
        booking_id=booking_id,
        can_rate=can_rate,
        rating=RatingResponse.model_validate(rating) if rating else None,
    )
