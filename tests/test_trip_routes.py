"""
tests/test_trip_routes.py
HTTP tests for change requests and post-trip ratings.
"""

import uuid

import pytest
from httpx import AsyncClient

from shared.models.models import BookingStatus, User
from tests.conftest import auth_headers


# ── Change Requests ───────────────────────────────────────────

@pytest.mark.asyncio
async def test_change_request_full_flow(
    client: AsyncClient,
    customer: User,
    staff: User,
    guide: User,
    guide2: User,
    driver: User,
    make_booking,
):
    booking = await make_booking(BookingStatus.IN_PROGRESS, guide=guide, driver=driver)

    response = await client.post(
        "/change-requests",
        headers=auth_headers(customer),
        json={"booking_id": str(booking.id), "request_type": "tour_guide", "reason": "Late every day"},
    )
    assert response.status_code == 201
    request_id = response.json()["id"]
    assert response.json()["status"] == "pending"
    assert response.json()["current_tour_guide_id"] == str(guide.id)

    response = await client.post(
        "/change-requests",
        headers=auth_headers(customer),
        json={"booking_id": str(booking.id), "request_type": "driver"},
    )
    assert response.status_code == 409
    assert response.json()["code"] == "change_request_pending"

    response = await client.get("/change-requests", headers=auth_headers(staff))
    assert [r["id"] for r in response.json()] == [request_id]

    response = await client.put(
        f"/change-requests/{request_id}",
        headers=auth_headers(staff),
        json={"action": "approve", "new_tour_guide_id": str(guide2.id)},
    )
    assert response.status_code == 200
    assert response.json()["status"] == "completed"

    response = await client.get(f"/bookings/{booking.id}/assignment", headers=auth_headers(guide))
    assert response.status_code == 200
    body = response.json()
    assert body["is_assigned"] is False
    assert body["was_replaced"] is True
    assert body["replacement_info"]["role"] == "tour_guide"

    response = await client.get(f"/bookings/{booking.id}/assignment", headers=auth_headers(guide2))
    assert response.json()["is_assigned"] is True


@pytest.mark.asyncio
async def test_approve_without_new_id_is_missing_field(
    client: AsyncClient, customer: User, staff: User, guide: User, driver: User, make_booking
):
    booking = await make_booking(BookingStatus.IN_PROGRESS, guide=guide, driver=driver)
    response = await client.post(
        "/change-requests",
        headers=auth_headers(customer),
        json={"booking_id": str(booking.id), "request_type": "driver"},
    )
    request_id = response.json()["id"]

    response = await client.put(
        f"/change-requests/{request_id}",
        headers=auth_headers(staff),
        json={"action": "approve"},
    )
    assert response.status_code == 400
    assert response.json()["code"] == "missing_field"
    assert response.json()["details"] == {"field": "new_driver_id"}


@pytest.mark.asyncio
async def test_unknown_request_type_rejected(
    client: AsyncClient, customer: User, guide: User, make_booking
):
    booking = await make_booking(BookingStatus.IN_PROGRESS, guide=guide)
    response = await client.post(
        "/change-requests",
        headers=auth_headers(customer),
        json={"booking_id": str(booking.id), "request_type": "chef"},
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_customer_withdraws_request(
    client: AsyncClient, customer: User, guide: User, make_booking
):
    booking = await make_booking(BookingStatus.IN_PROGRESS, guide=guide)
    response = await client.post(
        "/change-requests",
        headers=auth_headers(customer),
        json={"booking_id": str(booking.id), "request_type": "tour_guide"},
    )
    request_id = response.json()["id"]

    response = await client.delete(f"/change-requests/{request_id}", headers=auth_headers(customer))
    assert response.status_code == 200

    response = await client.get("/change-requests", headers=auth_headers(customer))
    assert response.json() == []


@pytest.mark.asyncio
async def test_guides_cannot_process_requests(client: AsyncClient, guide: User):
    response = await client.put(
        f"/change-requests/{uuid.uuid4()}",
        headers=auth_headers(guide),
        json={"action": "reject"},
    )
    assert response.status_code == 403


# ── Ratings ───────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_rating_flow(
    client: AsyncClient, customer: User, guide: User, driver: User, make_booking
):
    booking = await make_booking(BookingStatus.COMPLETED, guide=guide, driver=driver)

    response = await client.get(f"/ratings/booking/{booking.id}", headers=auth_headers(customer))
    assert response.json() == {"booking_id": str(booking.id), "can_rate": True, "rating": None}

    response = await client.post(
        "/ratings",
        headers=auth_headers(customer),
        json={"booking_id": str(booking.id), "rating_tourguide": 5, "rating_driver": 3},
    )
    assert response.status_code == 200
    assert response.json()["rating_driver"] == 3

    response = await client.post(
        "/ratings",
        headers=auth_headers(customer),
        json={"booking_id": str(booking.id), "rating_driver": 4},
    )
    assert response.json()["rating_tourguide"] == 5
    assert response.json()["rating_driver"] == 4

    response = await client.get(f"/ratings/booking/{booking.id}", headers=auth_headers(customer))
    body = response.json()
    assert body["can_rate"] is False
    assert body["rating"]["rating_driver"] == 4


@pytest.mark.asyncio
async def test_rating_unfinished_trip(client: AsyncClient, customer: User, guide: User, make_booking):
    booking = await make_booking(BookingStatus.IN_PROGRESS, guide=guide)

    response = await client.post(
        "/ratings",
        headers=auth_headers(customer),
        json={"booking_id": str(booking.id), "rating_tourguide": 4},
    )
    assert response.status_code == 400
    assert response.json()["code"] == "invalid_state"


@pytest.mark.asyncio
async def test_rating_requires_a_score(client: AsyncClient, customer: User, make_booking):
    booking = await make_booking(BookingStatus.COMPLETED)

    response = await client.post(
        "/ratings", headers=auth_headers(customer), json={"booking_id": str(booking.id)}
    )
    assert response.status_code == 422
