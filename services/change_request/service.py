"""
services/change_request/service.py
Mid-trip replacement of a booking's tour guide and/or driver.

Lifecycle of a request:
    PENDING --approve--> COMPLETED   (booking reassigned in the same transaction)
    PENDING --reject---> REJECTED
    PENDING --withdraw-> row deleted
A booking has at most one PENDING request at a time.
"""

import logging
from typing import List
from uuid import UUID

from sqlalchemy import case, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.notification.sink import NotificationSink
from shared.exceptions import (
    ChangeRequestPending,
    InvalidState,
    MissingField,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from shared.models.models import (
    BookingStatus,
    ChangeRequest,
    ChangeRequestStatus,
    ChangeRequestType,
    DriverProfile,
    NotificationType,
    TourGuideProfile,
    User,
    UserRole,
)
from shared.schemas.schemas import (
    AssignmentStatus,
    ChangeRequestCreate,
    ChangeRequestDecision,
    ReplacementInfo,
)
from shared.utils.clock import Clock, utcnow
from shared.utils.db import load_booking

logger = logging.getLogger(__name__)

ASSIGNABLE_ROLES = ("tour_guide", "driver")

# Staff queue order: open work first
_STATUS_PRIORITY = case(
    *(
        (ChangeRequest.status == status, rank)
        for rank, status in enumerate((
            ChangeRequestStatus.PENDING,
            ChangeRequestStatus.APPROVED,
            ChangeRequestStatus.COMPLETED,
            ChangeRequestStatus.REJECTED,
        ))
    ),
    else_=4,
)


class ChangeRequestEngine:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        sink: NotificationSink = None,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.sink = sink or NotificationSink()
        self.clock = clock

    # ── Create ────────────────────────────────────────────────

    async def create_change_request(
        self, customer_id: UUID, data: ChangeRequestCreate
    ) -> ChangeRequest:
        """
        File a replacement request for an in-progress booking.
        The pending check and the insert run in one transaction with the
        booking row locked; the partial unique index backs it up.
        """
        request_type = ChangeRequestType(data.request_type)
        try:
            async with self.session_factory() as session, session.begin():
                booking = await load_booking(session, data.booking_id, for_update=True)
                if booking.customer_id != customer_id:
                    raise PermissionDenied("You can only request changes for your own bookings")
                if booking.status != BookingStatus.IN_PROGRESS:
                    raise InvalidState(
                        "Change requests can only be made for tours in progress",
                        details={"status": booking.status.value},
                    )
                if request_type.needs_driver and booking.driver_id is None:
                    raise ValidationError("This booking has no driver to replace")

                pending = await session.execute(
                    select(ChangeRequest.id).where(
                        ChangeRequest.booking_id == booking.id,
                        ChangeRequest.status == ChangeRequestStatus.PENDING,
                    )
                )
                if pending.first() is not None:
                    raise ChangeRequestPending()

                change_request = ChangeRequest(
                    booking_id=booking.id,
                    requester_id=customer_id,
                    request_type=request_type,
                    current_tour_guide_id=booking.tour_guide_id,
                    current_driver_id=booking.driver_id,
                    status=ChangeRequestStatus.PENDING,
                    reason=data.reason,
                    created_at=self.clock(),
                )
                session.add(change_request)
                await session.flush()

                message = (
                    f"Customer requested a {request_type.label} change "
                    f"for booking {booking.booking_number}"
                )
                if data.reason:
                    message += f". Reason: {data.reason}"
                await self.sink.emit(
                    session,
                    NotificationType.CHANGE_REQUEST,
                    message,
                    booking_id=booking.id,
                    customer_id=customer_id,
                )
        except IntegrityError:
            raise ChangeRequestPending()

        logger.info(
            f"Change request {change_request.id} ({request_type.value}) "
            f"filed for booking {data.booking_id}"
        )
        return change_request

    # ── Process (staff) ───────────────────────────────────────

    async def process_change_request(
        self, request_id: UUID, staff_id: UUID, decision: ChangeRequestDecision
    ) -> ChangeRequest:
        async with self.session_factory() as session, session.begin():
            change_request = await self._load_request(session, request_id)
            if change_request.status != ChangeRequestStatus.PENDING:
                raise InvalidState(
                    "Change request has already been processed",
                    details={"status": change_request.status.value},
                )

            if decision.action == "reject":
                change_request.status = ChangeRequestStatus.REJECTED
                change_request.processed_at = self.clock()
                change_request.processed_by_id = staff_id
                logger.info(f"Change request {request_id} rejected by {staff_id}")
                return change_request

            request_type = change_request.request_type
            if request_type.needs_tour_guide and decision.new_tour_guide_id is None:
                raise MissingField("new_tour_guide_id", "New tour guide ID is required")
            if request_type.needs_driver and decision.new_driver_id is None:
                raise MissingField("new_driver_id", "New driver ID is required")

            booking = await load_booking(session, change_request.booking_id, for_update=True)
            if booking.status != BookingStatus.IN_PROGRESS:
                raise InvalidState(
                    "Booking is no longer in progress",
                    details={"status": booking.status.value},
                )

            if request_type.needs_tour_guide:
                if await session.get(TourGuideProfile, decision.new_tour_guide_id) is None:
                    raise NotFound("Tour guide not found")
                booking.tour_guide_id = decision.new_tour_guide_id
                change_request.new_tour_guide_id = decision.new_tour_guide_id
            if request_type.needs_driver:
                if await session.get(DriverProfile, decision.new_driver_id) is None:
                    raise NotFound("Driver not found")
                booking.driver_id = decision.new_driver_id
                change_request.new_driver_id = decision.new_driver_id

            change_request.status = ChangeRequestStatus.COMPLETED
            change_request.processed_at = self.clock()
            change_request.processed_by_id = staff_id

        logger.info(f"Change request {request_id} approved; booking {booking.id} reassigned")
        return change_request

    # ── Withdraw (customer) ───────────────────────────────────

    async def cancel_change_request(self, request_id: UUID, customer_id: UUID) -> None:
        async with self.session_factory() as session, session.begin():
            change_request = await self._load_request(session, request_id)
            if change_request.requester_id != customer_id:
                raise PermissionDenied("You can only cancel your own change requests")
            if change_request.status != ChangeRequestStatus.PENDING:
                raise InvalidState("Only pending change requests can be cancelled")
            await session.delete(change_request)
        logger.info(f"Change request {request_id} withdrawn")

    # ── Reads ─────────────────────────────────────────────────

    async def check_assignment(
        self, booking_id: UUID, user_id: UUID, role: str
    ) -> AssignmentStatus:
        """
        Tell a guide or driver whether they are still on a booking.
        A participant displaced by a completed change request gets a
        soft "was replaced" notice; anyone else is refused.
        """
        if role not in ASSIGNABLE_ROLES:
            raise ValidationError("Role must be tour_guide or driver", details={"role": role})

        async with self.session_factory() as session:
            booking = await load_booking(session, booking_id)
            if role == "tour_guide":
                live = booking.tour_guide_id
                captured = ChangeRequest.current_tour_guide_id
                types = (ChangeRequestType.TOUR_GUIDE, ChangeRequestType.BOTH)
            else:
                live = booking.driver_id
                captured = ChangeRequest.current_driver_id
                types = (ChangeRequestType.DRIVER, ChangeRequestType.BOTH)

            if live == user_id:
                return AssignmentStatus(booking_id=booking_id, role=role, is_assigned=True)

            result = await session.execute(
                select(ChangeRequest)
                .where(
                    ChangeRequest.booking_id == booking_id,
                    ChangeRequest.status == ChangeRequestStatus.COMPLETED,
                    ChangeRequest.request_type.in_(types),
                    captured == user_id,
                )
                .order_by(ChangeRequest.processed_at.desc(), ChangeRequest.created_at.desc())
                .limit(1)
            )
            latest = result.scalar_one_or_none()

        if latest is not None:
            label = "tour guide" if role == "tour_guide" else "driver"
            return AssignmentStatus(
                booking_id=booking_id,
                role=role,
                is_assigned=False,
                was_replaced=True,
                replacement_info=ReplacementInfo(
                    role=role,
                    requested_at=latest.created_at,
                    replaced_at=latest.processed_at,
                    message=(
                        f"You have been replaced as the {label} for this booking "
                        "at the customer's request."
                    ),
                ),
            )

        raise PermissionDenied("You are not assigned to this booking")

    async def list_change_requests(self, actor: User) -> List[ChangeRequest]:
        query = select(ChangeRequest)
        if actor.role == UserRole.CUSTOMER:
            query = query.where(ChangeRequest.requester_id == actor.id).order_by(
                ChangeRequest.created_at.desc()
            )
        elif actor.role in (UserRole.STAFF, UserRole.ADMIN):
            query = query.order_by(_STATUS_PRIORITY, ChangeRequest.created_at.desc())
        else:
            raise PermissionDenied("Not authorized to view change requests")

        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars())

    # ── Helpers ───────────────────────────────────────────────

    async def _load_request(self, session: AsyncSession, request_id: UUID) -> ChangeRequest:
        result = await session.execute(
            select(ChangeRequest).where(ChangeRequest.id == request_id).with_for_update()
        )
        change_request = result.scalar_one_or_none()
        if not change_request:
            raise NotFound("Change request not found")
        return change_request
