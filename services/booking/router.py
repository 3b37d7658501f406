"""
services/booking/router.py
Booking lifecycle endpoints.
States: PENDING → CONFIRMED → IN_PROGRESS → COMPLETED
        PENDING | CONFIRMED → CANCELLED (staff)
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from services.booking.service import BookingStateMachine
from services.dependencies import get_booking_state_machine
from shared.middleware.auth import (
    get_current_user,
    require_customer,
    require_field_staff,
    require_staff,
    require_tour_guide,
)
from shared.models.models import User
from shared.schemas.schemas import (
    AssignmentRequest,
    AssignmentStatus,
    BookingCancelRequest,
    BookingCreateRequest,
    BookingResponse,
)

router = APIRouter(prefix="/bookings", tags=["Bookings"])


# ── Creation ──────────────────────────────────────────────────

@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: BookingCreateRequest,
    current_user: User = Depends(require_customer),
    core: BookingStateMachine = Depends(get_booking_state_machine),
):
    """
    Create a PENDING booking for a tour and/or vehicle.
    The total price is computed server side; payment is initialized separately.
    """
    booking = await core.create_booking(current_user.id, data)
    return BookingResponse.model_validate(booking)


# ── Trip Transitions (assigned tour guide) ────────────────────

@router.post("/{booking_id}/start", response_model=BookingResponse)
async def start_tour(
    booking_id: UUID,
    current_user: User = Depends(require_tour_guide),
    core: BookingStateMachine = Depends(get_booking_state_machine),
):
    """Assigned guide starts the tour. Status: PENDING|CONFIRMED → IN_PROGRESS."""
    booking = await core.start_tour(booking_id, current_user.id)
    return BookingResponse.model_validate(booking)


@router.post("/{booking_id}/finish", response_model=BookingResponse)
async def finish_tour(
    booking_id: UUID,
    current_user: User = Depends(require_tour_guide),
    core: BookingStateMachine = Depends(get_booking_state_machine),
):
    """Assigned guide finishes the tour. Unlocks rating."""
    booking = await core.finish_tour(booking_id, current_user.id)
    return BookingResponse.model_validate(booking)


# ── Staff ─────────────────────────────────────────────────────

@router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: UUID,
    data: BookingCancelRequest,
    current_user: User = Depends(require_staff),
    core: BookingStateMachine = Depends(get_booking_state_machine),
):
    booking = await core.cancel_booking(booking_id, current_user.id, data.reason)
    return BookingResponse.model_validate(booking)


@router.post("/{booking_id}/assign", response_model=BookingResponse)
async def assign_staff(
    booking_id: UUID,
    data: AssignmentRequest,
    current_user: User = Depends(require_staff),
    core: BookingStateMachine = Depends(get_booking_state_machine),
):
    """Assign tour guide and/or driver ahead of the trip."""
    booking = await core.assign_staff(booking_id, current_user.id, data)
    return BookingResponse.model_validate(booking)


# ── Read Endpoints ────────────────────────────────────────────

@router.get("/{booking_id}/assignment", response_model=AssignmentStatus)
async def check_assignment(
    booking_id: UUID,
    current_user: User = Depends(require_field_staff),
    core: BookingStateMachine = Depends(get_booking_state_machine),
):
    """Guide/driver: am I still on this booking, or was I replaced?"""
    return await core.check_assignment(booking_id, current_user.id, current_user.role.value)


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    core: BookingStateMachine = Depends(get_booking_state_machine),
):
    booking = await core.get_booking(booking_id, current_user)
    return BookingResponse.model_validate(booking)


@router.get("", response_model=list[BookingResponse])
async def list_bookings(
    status_filter: str = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=50),
    current_user: User = Depends(get_current_user),
    core: BookingStateMachine = Depends(get_booking_state_machine),
):
    """List bookings visible to the caller. Staff see all."""
    bookings = await core.list_bookings(current_user, status_filter, page, page_size)
    return [BookingResponse.model_validate(b) for b in bookings]
