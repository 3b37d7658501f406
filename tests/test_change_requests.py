"""
tests/test_change_requests.py
Mid-trip replacement requests: one pending request per booking,
staff approval and rejection, withdrawal, and the replaced-participant view.
"""

import uuid

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

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
    Notification,
    NotificationType,
    User,
)
from shared.schemas.schemas import ChangeRequestCreate, ChangeRequestDecision


@pytest.fixture
def trip(make_booking, guide: User, driver: User):
    """An in-progress booking with both a guide and a driver."""
    async def _make(**kwargs):
        return await make_booking(BookingStatus.IN_PROGRESS, guide=guide, driver=driver, **kwargs)
    return _make


def _request(booking, request_type: str, reason: str = None) -> ChangeRequestCreate:
    return ChangeRequestCreate(booking_id=booking.id, request_type=request_type, reason=reason)


# ── Create ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_change_request_captures_assignees(
    core, db: AsyncSession, trip, customer: User, guide: User, driver: User
):
    booking = await trip()

    change_request = await core.create_change_request(
        customer.id, _request(booking, "both", "Guide does not speak English")
    )

    assert change_request.status == ChangeRequestStatus.PENDING
    assert change_request.request_type == ChangeRequestType.BOTH
    assert change_request.current_tour_guide_id == guide.id
    assert change_request.current_driver_id == driver.id

    notification = (await db.execute(
        select(Notification).where(Notification.type == NotificationType.CHANGE_REQUEST)
    )).scalar_one()
    assert notification.booking_id == booking.id
    assert notification.customer_name == customer.name
    assert notification.customer_email == customer.email
    assert "tour guide and driver" in notification.message
    assert "Guide does not speak English" in notification.message


@pytest.mark.asyncio
async def test_second_pending_request_rejected(core, trip, customer: User):
    booking = await trip()
    await core.create_change_request(customer.id, _request(booking, "tour_guide"))

    with pytest.raises(ChangeRequestPending) as exc:
        await core.create_change_request(customer.id, _request(booking, "driver"))
    assert exc.value.status_code == 409


@pytest.mark.asyncio
async def test_one_pending_request_enforced_by_database(
    db: AsyncSession, trip, customer: User
):
    booking = await trip()
    for request_type in (ChangeRequestType.TOUR_GUIDE, ChangeRequestType.DRIVER):
        db.add(ChangeRequest(
            booking_id=booking.id,
            requester_id=customer.id,
            request_type=request_type,
            status=ChangeRequestStatus.PENDING,
        ))

    with pytest.raises(IntegrityError):
        await db.commit()
    await db.rollback()


@pytest.mark.asyncio
async def test_change_request_requires_trip_in_progress(core, make_booking, customer: User, guide: User):
    booking = await make_booking(BookingStatus.CONFIRMED, guide=guide)
    with pytest.raises(InvalidState):
        await core.create_change_request(customer.id, _request(booking, "tour_guide"))


@pytest.mark.asyncio
async def test_driver_change_without_driver_rejected(core, make_booking, customer: User, guide: User):
    booking = await make_booking(BookingStatus.IN_PROGRESS, guide=guide, with_vehicle=False)
    with pytest.raises(ValidationError):
        await core.create_change_request(customer.id, _request(booking, "driver"))


@pytest.mark.asyncio
async def test_change_request_for_other_customers_booking(core, trip, other_customer: User):
    booking = await trip()
    with pytest.raises(PermissionDenied):
        await core.create_change_request(other_customer.id, _request(booking, "tour_guide"))


# ── Process ───────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_approve_replaces_tour_guide(
    core, db: AsyncSession, trip, customer: User, staff: User, guide2: User, driver: User, clock
):
    booking = await trip()
    change_request = await core.create_change_request(customer.id, _request(booking, "tour_guide"))

    processed = await core.process_change_request(
        change_request.id,
        staff.id,
        ChangeRequestDecision(action="approve", new_tour_guide_id=guide2.id),
    )

    assert processed.status == ChangeRequestStatus.COMPLETED
    assert processed.new_tour_guide_id == guide2.id
    assert processed.processed_by_id == staff.id
    assert processed.processed_at == clock.now

    await db.refresh(booking)
    assert booking.tour_guide_id == guide2.id
    assert booking.driver_id == driver.id


@pytest.mark.asyncio
async def test_approve_both_requires_each_new_id(
    core, db: AsyncSession, trip, customer: User, staff: User, guide: User, guide2: User
):
    booking = await trip()
    change_request = await core.create_change_request(customer.id, _request(booking, "both"))

    with pytest.raises(MissingField) as exc:
        await core.process_change_request(
            change_request.id,
            staff.id,
            ChangeRequestDecision(action="approve", new_tour_guide_id=guide2.id),
        )
    assert exc.value.details == {"field": "new_driver_id"}
    assert exc.value.status_code == 400

    await db.refresh(booking)
    stored = await db.get(ChangeRequest, change_request.id)
    assert booking.tour_guide_id == guide.id
    assert stored.status == ChangeRequestStatus.PENDING


@pytest.mark.asyncio
async def test_approve_with_unknown_driver(
    core, db: AsyncSession, trip, customer: User, staff: User, driver: User
):
    booking = await trip()
    change_request = await core.create_change_request(customer.id, _request(booking, "driver"))

    with pytest.raises(NotFound):
        await core.process_change_request(
            change_request.id,
            staff.id,
            ChangeRequestDecision(action="approve", new_driver_id=uuid.uuid4()),
        )
    await db.refresh(booking)
    assert booking.driver_id == driver.id


@pytest.mark.asyncio
async def test_approve_after_trip_finished(
    core, db: AsyncSession, trip, customer: User, staff: User, guide: User, guide2: User
):
    booking = await trip()
    change_request = await core.create_change_request(customer.id, _request(booking, "tour_guide"))
    await core.finish_tour(booking.id, guide.id)

    with pytest.raises(InvalidState):
        await core.process_change_request(
            change_request.id,
            staff.id,
            ChangeRequestDecision(action="approve", new_tour_guide_id=guide2.id),
        )


@pytest.mark.asyncio
async def test_reject_then_new_request_allowed(
    core, trip, customer: User, staff: User
):
    booking = await trip()
    first = await core.create_change_request(customer.id, _request(booking, "tour_guide"))

    rejected = await core.process_change_request(
        first.id, staff.id, ChangeRequestDecision(action="reject")
    )
    assert rejected.status == ChangeRequestStatus.REJECTED
    assert rejected.processed_by_id == staff.id

    second = await core.create_change_request(customer.id, _request(booking, "driver"))
    assert second.status == ChangeRequestStatus.PENDING


@pytest.mark.asyncio
async def test_processed_request_cannot_be_processed_again(
    core, trip, customer: User, staff: User
):
    booking = await trip()
    change_request = await core.create_change_request(customer.id, _request(booking, "tour_guide"))
    await core.process_change_request(
        change_request.id, staff.id, ChangeRequestDecision(action="reject")
    )

    with pytest.raises(InvalidState):
        await core.process_change_request(
            change_request.id, staff.id, ChangeRequestDecision(action="reject")
        )


@pytest.mark.asyncio
async def test_process_missing_request(core, staff: User):
    with pytest.raises(NotFound):
        await core.process_change_request(
            uuid.uuid4(), staff.id, ChangeRequestDecision(action="reject")
        )


# ── Withdraw ──────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_cancel_pending_request_deletes_it(
    core, db: AsyncSession, trip, customer: User
):
    booking = await trip()
    change_request = await core.create_change_request(customer.id, _request(booking, "tour_guide"))

    await core.cancel_change_request(change_request.id, customer.id)

    assert await db.get(ChangeRequest, change_request.id) is None
    again = await core.create_change_request(customer.id, _request(booking, "tour_guide"))
    assert again.status == ChangeRequestStatus.PENDING


@pytest.mark.asyncio
async def test_cancel_someone_elses_request(core, trip, customer: User, other_customer: User):
    booking = await trip()
    change_request = await core.create_change_request(customer.id, _request(booking, "tour_guide"))

    with pytest.raises(PermissionDenied):
        await core.cancel_change_request(change_request.id, other_customer.id)


@pytest.mark.asyncio
async def test_cancel_processed_request(core, trip, customer: User, staff: User):
    booking = await trip()
    change_request = await core.create_change_request(customer.id, _request(booking, "tour_guide"))
    await core.process_change_request(
        change_request.id, staff.id, ChangeRequestDecision(action="reject")
    )

    with pytest.raises(InvalidState):
        await core.cancel_change_request(change_request.id, customer.id)


# ── Assignment check ──────────────────────────────────────────

@pytest.mark.asyncio
async def test_replaced_guide_sees_replacement_notice(
    core, trip, customer: User, staff: User, guide: User, guide2: User, driver: User, driver2: User
):
    booking = await trip()
    change_request = await core.create_change_request(customer.id, _request(booking, "tour_guide"))
    await core.process_change_request(
        change_request.id,
        staff.id,
        ChangeRequestDecision(action="approve", new_tour_guide_id=guide2.id),
    )

    replaced = await core.check_assignment(booking.id, guide.id, "tour_guide")
    assert replaced.is_assigned is False
    assert replaced.was_replaced is True
    assert replaced.replacement_info.role == "tour_guide"
    assert "replaced as the tour guide" in replaced.replacement_info.message

    current = await core.check_assignment(booking.id, guide2.id, "tour_guide")
    assert current.is_assigned is True
    assert current.was_replaced is False

    untouched = await core.check_assignment(booking.id, driver.id, "driver")
    assert untouched.is_assigned is True

    with pytest.raises(PermissionDenied):
        await core.check_assignment(booking.id, driver2.id, "driver")


@pytest.mark.asyncio
async def test_guide_replaced_twice_still_sees_own_notice(
    core, trip, customer: User, staff: User, guide: User, guide2: User, guide3: User, clock
):
    booking = await trip()
    first = await core.create_change_request(customer.id, _request(booking, "tour_guide"))
    await core.process_change_request(
        first.id, staff.id, ChangeRequestDecision(action="approve", new_tour_guide_id=guide2.id)
    )
    clock.advance(hours=3)
    second = await core.create_change_request(customer.id, _request(booking, "tour_guide"))
    await core.process_change_request(
        second.id, staff.id, ChangeRequestDecision(action="approve", new_tour_guide_id=guide3.id)
    )

    original = await core.check_assignment(booking.id, guide.id, "tour_guide")
    assert original.was_replaced is True
    assert original.replacement_info.replaced_at == first.processed_at

    middle = await core.check_assignment(booking.id, guide2.id, "tour_guide")
    assert middle.was_replaced is True
    assert middle.replacement_info.replaced_at == second.processed_at

    current = await core.check_assignment(booking.id, guide3.id, "tour_guide")
    assert current.is_assigned is True


@pytest.mark.asyncio
async def test_rejected_request_does_not_mark_replacement(
    core, trip, customer: User, staff: User, guide2: User
):
    booking = await trip()
    change_request = await core.create_change_request(customer.id, _request(booking, "tour_guide"))
    await core.process_change_request(
        change_request.id, staff.id, ChangeRequestDecision(action="reject")
    )

    with pytest.raises(PermissionDenied):
        await core.check_assignment(booking.id, guide2.id, "tour_guide")


@pytest.mark.asyncio
async def test_check_assignment_rejects_other_roles(core, trip, customer: User):
    booking = await trip()
    with pytest.raises(ValidationError):
        await core.check_assignment(booking.id, customer.id, "customer")


# ── Listing ───────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_staff_queue_lists_pending_first(
    core, make_booking, customer: User, staff: User, guide: User, driver: User, guide2: User
):
    done = await make_booking(BookingStatus.IN_PROGRESS, guide=guide, driver=driver)
    open_ = await make_booking(BookingStatus.IN_PROGRESS, guide=guide2, driver=driver)

    processed = await core.create_change_request(customer.id, _request(done, "tour_guide"))
    await core.process_change_request(processed.id, staff.id, ChangeRequestDecision(action="reject"))
    pending = await core.create_change_request(customer.id, _request(open_, "driver"))

    queue = await core.list_change_requests(staff)
    assert [r.id for r in queue] == [pending.id, processed.id]

    own = await core.list_change_requests(customer)
    assert {r.id for r in own} == {pending.id, processed.id}


@pytest.mark.asyncio
async def test_guides_cannot_list_change_requests(core, guide: User):
    with pytest.raises(PermissionDenied):
        await core.list_change_requests(guide)
