"""
services/change_request/router.py
Customer requests to replace the tour guide and/or driver mid-trip,
and the staff queue that processes them.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, status

from services.booking.service import BookingStateMachine
from services.dependencies import get_booking_state_machine
from shared.middleware.auth import RoleRequired, require_customer, require_staff
from shared.models.models import User, UserRole
from shared.schemas.schemas import (
    ChangeRequestCreate,
    ChangeRequestDecision,
    ChangeRequestResponse,
    MessageResponse,
)

router = APIRouter(prefix="/change-requests", tags=["Change Requests"])

require_customer_or_staff = RoleRequired(UserRole.CUSTOMER, UserRole.STAFF, UserRole.ADMIN)


@router.post("", response_model=ChangeRequestResponse, status_code=status.HTTP_201_CREATED)
async def create_change_request(
    data: ChangeRequestCreate,
    current_user: User = Depends(require_customer),
    core: BookingStateMachine = Depends(get_booking_state_machine),
):
    """
    File a change request for an in-progress booking.
    Only one request per booking may be pending at a time.
    """
    change_request = await core.create_change_request(current_user.id, data)
    return ChangeRequestResponse.model_validate(change_request)


@router.get("", response_model=list[ChangeRequestResponse])
async def list_change_requests(
    current_user: User = Depends(require_customer_or_staff),
    core: BookingStateMachine = Depends(get_booking_state_machine),
):
    """Customers see their own requests; staff see the whole queue, pending first."""
    requests = await core.list_change_requests(current_user)
    return [ChangeRequestResponse.model_validate(r) for r in requests]


@router.put("/{request_id}", response_model=ChangeRequestResponse)
async def process_change_request(
    request_id: UUID,
    decision: ChangeRequestDecision,
    current_user: User = Depends(require_staff),
    core: BookingStateMachine = Depends(get_booking_state_machine),
):
    """Staff approve (with the new assignee ids) or reject a pending request."""
    change_request = await core.process_change_request(request_id, current_user.id, decision)
    return ChangeRequestResponse.model_validate(change_request)


@router.delete("/{request_id}", response_model=MessageResponse)
async def cancel_change_request(
    request_id: UUID,
    current_user: User = Depends(require_customer),
    core: BookingStateMachine = Depends(get_booking_state_machine),
):
    await core.cancel_change_request(request_id, current_user.id)
    return MessageResponse(message="Change request cancelled")
