"""
services/booking/service.py
Booking lifecycle orchestrator.

BookingStateMachine owns the booking transitions that actors trigger
directly (create, start, finish, staff cancel/assign) and is the single
entry point for the client-facing operations of the payment reconciler,
the change-request engine and the rating aggregator.
"""

import logging
import random
import string
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.booking.transitions import apply_transition
from services.change_request.service import ChangeRequestEngine
from services.payment.service import PaymentReconciler
from services.rating.service import RatingAggregator
from shared.exceptions import (
    Conflict,
    InvalidState,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from shared.models.models import (
    Booking,
    BookingAuditLog,
    BookingStatus,
    ChangeRequest,
    DriverProfile,
    Payment,
    Rating,
    Tour,
    TourGuideProfile,
    User,
    UserRole,
    Vehicle,
)
from shared.schemas.schemas import (
    AssignmentRequest,
    AssignmentStatus,
    BookingCreateRequest,
    ChangeRequestCreate,
    ChangeRequestDecision,
    PaymentInitializeResponse,
    RatingSubmitRequest,
    RefundRequestResult,
    VerificationResult,
    WebhookResult,
)
from shared.utils.clock import Clock, utcnow
from shared.utils.db import load_booking

logger = logging.getLogger(__name__)

PRE_TRIP_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)
ACTIVE_STATUSES = (BookingStatus.CONFIRMED, BookingStatus.IN_PROGRESS)


def _generate_booking_number(year: int) -> str:
    """Generate a human-readable booking number like TB-2026-X7K9M."""
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=5))
    return f"TB-{year}-{suffix}"


class BookingStateMachine:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        payments: PaymentReconciler,
        change_requests: ChangeRequestEngine,
        ratings: RatingAggregator,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.payments = payments
        self.change_requests = change_requests
        self.ratings = ratings
        self.clock = clock

    # ── Creation ──────────────────────────────────────────────

    async def create_booking(self, customer_id: UUID, data: BookingCreateRequest) -> Booking:
        """
        Create a PENDING booking for a tour, a vehicle, or both.
        Price is computed here from the catalogue, never taken from the client.
        No payment is taken and nothing is notified.
        """
        now = self.clock()
        if data.tour_id is None and data.vehicle_id is None:
            raise ValidationError("Either a tour or a vehicle must be selected")
        if data.end_date < data.start_date:
            raise ValidationError("End date must be on or after the start date")
        if data.start_date < now.date():
            raise ValidationError("Start date cannot be in the past")

        days = (data.end_date - data.start_date).days + 1
        total = Decimal("0.00")

        async with self.session_factory() as session, session.begin():
            if data.tour_id is not None:
                tour = await session.get(Tour, data.tour_id)
                if not tour:
                    raise NotFound("Tour not found")
                if not tour.is_active:
                    raise InvalidState("Tour is not currently offered")
                total += tour.price_per_person * data.people_count

            if data.vehicle_id is not None:
                vehicle = await session.get(Vehicle, data.vehicle_id)
                if not vehicle:
                    raise NotFound("Vehicle not found")
                if not vehicle.is_available:
                    raise InvalidState("Vehicle is not available")
                if data.people_count > vehicle.capacity:
                    raise ValidationError(
                        f"Vehicle seats at most {vehicle.capacity} people",
                        details={"capacity": vehicle.capacity},
                    )
                total += vehicle.daily_rate * days

            booking = Booking(
                booking_number=_generate_booking_number(now.year),
                customer_id=customer_id,
                tour_id=data.tour_id,
                vehicle_id=data.vehicle_id,
                start_date=data.start_date,
                end_date=data.end_date,
                people_count=data.people_count,
                special_requests=data.special_requests,
                total_price=total,
                status=BookingStatus.PENDING,
                created_at=now,
                updated_at=now,
            )
            session.add(booking)
            await session.flush()

            session.add(BookingAuditLog(
                booking_id=booking.id,
                from_status=None,
                to_status=BookingStatus.PENDING.value,
                changed_by_id=customer_id,
                created_at=now,
            ))

        logger.info(f"Booking {booking.booking_number} created by {customer_id} ({total})")
        return booking

    # ── Trip transitions (assigned guide) ─────────────────────

    async def start_tour(self, booking_id: UUID, guide_id: UUID) -> Booking:
        """
        PENDING or CONFIRMED → IN_PROGRESS. Starting before payment is
        recorded is allowed; staff do it in practice.
        """
        async with self.session_factory() as session, session.begin():
            booking = await load_booking(session, booking_id, for_update=True)
            if booking.tour_guide_id != guide_id:
                raise PermissionDenied("Only the assigned tour guide can start this tour")
            if booking.status not in PRE_TRIP_STATUSES:
                raise InvalidState(
                    f"Tour cannot be started from '{booking.status.value}' state",
                    details={"status": booking.status.value},
                )
            if booking.vehicle_id is not None and booking.driver_id is None:
                raise InvalidState("A driver must be assigned before the tour starts")

            apply_transition(session, booking, BookingStatus.IN_PROGRESS, self.clock(), guide_id)
        return booking

    async def finish_tour(self, booking_id: UUID, guide_id: UUID) -> Booking:
        async with self.session_factory() as session, session.begin():
            booking = await load_booking(session, booking_id, for_update=True)
            if booking.tour_guide_id != guide_id:
                raise PermissionDenied("Only the assigned tour guide can finish this tour")
            if booking.status != BookingStatus.IN_PROGRESS:
                raise InvalidState(
                    f"Tour cannot be finished from '{booking.status.value}' state",
                    details={"status": booking.status.value},
                )
            apply_transition(session, booking, BookingStatus.COMPLETED, self.clock(), guide_id)
        return booking

    # ── Staff actions ─────────────────────────────────────────

    async def cancel_booking(self, booking_id: UUID, staff_id: UUID, reason: str) -> Booking:
        async with self.session_factory() as session, session.begin():
            booking = await load_booking(session, booking_id, for_update=True)
            if booking.status not in PRE_TRIP_STATUSES:
                raise InvalidState(
                    f"Booking in '{booking.status.value}' state cannot be cancelled",
                    details={"status": booking.status.value},
                )
            booking.cancellation_reason = reason
            apply_transition(
                session, booking, BookingStatus.CANCELLED, self.clock(), staff_id, reason
            )
        return booking

    async def assign_staff(
        self, booking_id: UUID, staff_id: UUID, data: AssignmentRequest
    ) -> Booking:
        """Assign a tour guide and/or driver before the trip starts."""
        async with self.session_factory() as session, session.begin():
            booking = await load_booking(session, booking_id, for_update=True)
            if booking.status not in PRE_TRIP_STATUSES:
                raise InvalidState(
                    "Assignments can only be made before the tour starts; "
                    "use a change request instead",
                    details={"status": booking.status.value},
                )

            if data.tour_guide_id is not None:
                guide = await session.get(TourGuideProfile, data.tour_guide_id)
                if not guide:
                    raise NotFound("Tour guide not found")
                if not guide.is_available:
                    raise InvalidState("Tour guide is not available")
                await self._check_not_double_booked(
                    session, booking, Booking.tour_guide_id, data.tour_guide_id, "Tour guide"
                )
                booking.tour_guide_id = data.tour_guide_id

            if data.driver_id is not None:
                if booking.vehicle_id is None:
                    raise ValidationError("A driver can only be assigned to a vehicle booking")
                driver = await session.get(DriverProfile, data.driver_id)
                if not driver:
                    raise NotFound("Driver not found")
                if not driver.is_available:
                    raise InvalidState("Driver is not available")
                await self._check_not_double_booked(
                    session, booking, Booking.driver_id, data.driver_id, "Driver"
                )
                booking.driver_id = data.driver_id

        logger.info(
            f"Booking {booking.booking_number} assigned by {staff_id}: "
            f"guide={booking.tour_guide_id} driver={booking.driver_id}"
        )
        return booking

    async def _check_not_double_booked(
        self, session: AsyncSession, booking: Booking, column, person_id: UUID, label: str
    ) -> None:
        result = await session.execute(
            select(Booking.booking_number).where(
                column == person_id,
                Booking.id != booking.id,
                Booking.status.in_(ACTIVE_STATUSES),
                Booking.start_date <= booking.end_date,
                Booking.end_date >= booking.start_date,
            )
        )
        clash = result.scalars().first()
        if clash:
            raise Conflict(
                f"{label} is already assigned to an overlapping booking",
                details={"booking_number": clash},
            )

    # ── Reads ─────────────────────────────────────────────────

    async def get_booking(self, booking_id: UUID, actor: User) -> Booking:
        """Customers see their own, guides/drivers their assignments, staff all."""
        async with self.session_factory() as session:
            booking = await load_booking(session, booking_id)
        if not _can_view(booking, actor):
            raise PermissionDenied("Not authorized to view this booking")
        return booking

    async def list_bookings(
        self,
        actor: User,
        status: Optional[str] = None,
        page: int = 1,
        page_size: int = 10,
    ) -> List[Booking]:
        query = select(Booking)
        if actor.role == UserRole.CUSTOMER:
            query = query.where(Booking.customer_id == actor.id)
        elif actor.role == UserRole.TOUR_GUIDE:
            query = query.where(Booking.tour_guide_id == actor.id)
        elif actor.role == UserRole.DRIVER:
            query = query.where(Booking.driver_id == actor.id)

        if status:
            try:
                query = query.where(Booking.status == BookingStatus(status))
            except ValueError:
                raise ValidationError(f"Invalid status: {status}")

        query = (
            query.order_by(Booking.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars())

    # ── Payment facade ────────────────────────────────────────

    async def initialize_payment(
        self, booking_id: UUID, customer_id: UUID, method: str = "chapa"
    ) -> PaymentInitializeResponse:
        return await self.payments.initialize_payment(booking_id, customer_id, method)

    async def verify_payment(
        self, tx_ref: str, booking_id: UUID, customer_id: UUID
    ) -> VerificationResult:
        return await self.payments.verify_payment(tx_ref, booking_id, customer_id)

    async def apply_payment_webhook(
        self,
        tx_ref: str,
        status: str,
        reference: Optional[str] = None,
        signed: bool = False,
    ) -> WebhookResult:
        return await self.payments.apply_webhook(tx_ref, status, reference, signed=signed)

    async def request_refund(
        self, booking_id: UUID, customer_id: UUID, reason: Optional[str] = None
    ) -> RefundRequestResult:
        return await self.payments.request_refund(booking_id, customer_id, reason)

    async def approve_refund(self, payment_id: UUID, staff_id: UUID) -> Payment:
        return await self.payments.approve_refund(payment_id, staff_id)

    async def list_payments_for_booking(self, booking_id: UUID, actor: User) -> List[Payment]:
        return await self.payments.list_payments_for_booking(booking_id, actor)

    async def list_refund_requests(self) -> List[Payment]:
        return await self.payments.list_refund_requests()

    # ── Change-request facade ─────────────────────────────────

    async def create_change_request(
        self, customer_id: UUID, data: ChangeRequestCreate
    ) -> ChangeRequest:
        return await self.change_requests.create_change_request(customer_id, data)

    async def process_change_request(
        self, request_id: UUID, staff_id: UUID, decision: ChangeRequestDecision
    ) -> ChangeRequest:
        return await self.change_requests.process_change_request(request_id, staff_id, decision)

    async def cancel_change_request(self, request_id: UUID, customer_id: UUID) -> None:
        await self.change_requests.cancel_change_request(request_id, customer_id)

    async def list_change_requests(self, actor: User) -> List[ChangeRequest]:
        return await self.change_requests.list_change_requests(actor)

    async def check_assignment(
        self, booking_id: UUID, user_id: UUID, role: str
    ) -> AssignmentStatus:
        return await self.change_requests.check_assignment(booking_id, user_id, role)

    # ── Rating facade ─────────────────────────────────────────

    async def submit_rating(self, customer_id: UUID, data: RatingSubmitRequest) -> Rating:
        return await self.ratings.submit_rating(customer_id, data)

    async def can_rate_booking(self, customer_id: UUID, booking_id: UUID) -> bool:
        return await self.ratings.can_rate_booking(customer_id, booking_id)

    async def get_rating_for_booking(self, booking_id: UUID) -> Optional[Rating]:
        return await self.ratings.get_rating_for_booking(booking_id)


def _can_view(booking: Booking, actor: User) -> bool:
    if actor.role in (UserRole.STAFF, UserRole.ADMIN):
        return True
    if actor.role == UserRole.CUSTOMER:
        return booking.customer_id == actor.id
    if actor.role == UserRole.TOUR_GUIDE:
        return booking.tour_guide_id == actor.id
    if actor.role == UserRole.DRIVER:
        return booking.driver_id == actor.id
    return False
