"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the platform.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, Literal, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, model_validator

from shared.models.models import ChangeRequestType
from shared.utils.clock import ensure_aware

# SQLite returns naive values; responses always carry UTC offsets
UTCDatetime = Annotated[datetime, AfterValidator(ensure_aware)]


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


# ── Booking ───────────────────────────────────────────────────

class BookingCreateRequest(BaseSchema):
    tour_id: Optional[uuid.UUID] = None
    vehicle_id: Optional[uuid.UUID] = None
    start_date: date
    end_date: date
    people_count: int = Field(..., ge=1, le=100)
    special_requests: Optional[str] = Field(None, max_length=1000)


class BookingResponse(BaseSchema):
    id: uuid.UUID
    booking_number: str
    customer_id: uuid.UUID
    tour_id: Optional[uuid.UUID]
    vehicle_id: Optional[uuid.UUID]
    driver_id: Optional[uuid.UUID]
    tour_guide_id: Optional[uuid.UUID]
    start_date: date
    end_date: date
    people_count: int
    special_requests: Optional[str]
    total_price: Decimal
    status: str
    cancellation_reason: Optional[str]
    confirmed_at: Optional[UTCDatetime]
    started_at: Optional[UTCDatetime]
    completed_at: Optional[UTCDatetime]
    cancelled_at: Optional[UTCDatetime]
    created_at: UTCDatetime
    updated_at: UTCDatetime


class BookingCancelRequest(BaseSchema):
    reason: str = Field(..., min_length=5, max_length=500)


class AssignmentRequest(BaseSchema):
    tour_guide_id: Optional[uuid.UUID] = None
    driver_id: Optional[uuid.UUID] = None

    @model_validator(mode="after")
    def require_one_assignee(self) -> "AssignmentRequest":
        if self.tour_guide_id is None and self.driver_id is None:
            raise ValueError("Provide tour_guide_id and/or driver_id")
        return self


# ── Payment ───────────────────────────────────────────────────

class PaymentInitializeRequest(BaseSchema):
    booking_id: uuid.UUID
    method: str = Field("chapa", max_length=50)


class PaymentInitializeResponse(BaseSchema):
    checkout_url: str
    tx_ref: str
    test_mode: bool
    payment_id: uuid.UUID


class VerificationResult(BaseSchema):
    success: bool
    status: str
    tx_ref: str
    booking_id: uuid.UUID
    payment_id: Optional[uuid.UUID] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    method: Optional[str] = None
    reference: Optional[str] = None
    paid_at: Optional[UTCDatetime] = None
    source: Literal["gateway", "test_mode", "persisted", "already_completed"] = "gateway"
    message: Optional[str] = None


class RefundRequestCreate(BaseSchema):
    booking_id: uuid.UUID
    reason: Optional[str] = Field(None, max_length=1000)


class RefundRequestResult(BaseSchema):
    success: bool = True
    payment_id: uuid.UUID
    booking_id: uuid.UUID
    refund_request: str
    refund_requested_at: UTCDatetime
    message: str = "Refund request submitted"


class PaymentWebhookPayload(BaseSchema):
    tx_ref: str
    status: str
    reference: Optional[str] = None


class WebhookResult(BaseSchema):
    tx_ref: str
    status: str
    changed: bool


class PaymentResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    amount: Decimal
    currency: str
    method: str
    transaction_ref: str
    gateway_reference: Optional[str]
    status: str
    is_test_mode: bool
    paid_at: Optional[UTCDatetime]
    refund_request: Optional[str]
    refund_reason: Optional[str]
    refund_requested_at: Optional[UTCDatetime]
    created_at: UTCDatetime


# ── Change Request ────────────────────────────────────────────

class ChangeRequestCreate(BaseSchema):
    booking_id: uuid.UUID
    request_type: ChangeRequestType
    reason: Optional[str] = Field(None, max_length=1000)


class ChangeRequestDecision(BaseSchema):
    action: Literal["approve", "reject"]
    new_tour_guide_id: Optional[uuid.UUID] = None
    new_driver_id: Optional[uuid.UUID] = None


class ChangeRequestResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    requester_id: uuid.UUID
    request_type: str
    current_tour_guide_id: Optional[uuid.UUID]
    current_driver_id: Optional[uuid.UUID]
    new_tour_guide_id: Optional[uuid.UUID]
    new_driver_id: Optional[uuid.UUID]
    status: str
    reason: Optional[str]
    created_at: UTCDatetime
    processed_at: Optional[UTCDatetime]
    processed_by_id: Optional[uuid.UUID]


class ReplacementInfo(BaseSchema):
    role: str
    requested_at: UTCDatetime
    replaced_at: Optional[UTCDatetime]
    message: str


class AssignmentStatus(BaseSchema):
    booking_id: uuid.UUID
    role: str
    is_assigned: bool
    was_replaced: bool = False
    replacement_info: Optional[ReplacementInfo] = None


# ── Rating ────────────────────────────────────────────────────

class RatingSubmitRequest(BaseSchema):
    booking_id: uuid.UUID
    rating_tourguide: Optional[int] = Field(None, ge=0, le=5)
    rating_driver: Optional[int] = Field(None, ge=0, le=5)
    review_tourguide: Optional[str] = Field(None, max_length=2000)
    review_driver: Optional[str] = Field(None, max_length=2000)

    @model_validator(mode="after")
    def require_one_rating(self) -> "RatingSubmitRequest":
        if self.rating_tourguide is None and self.rating_driver is None:
            raise ValueError("At least one rating is required")
        return self


class RatingResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    customer_id: uuid.UUID
    tour_guide_id: Optional[uuid.UUID]
    driver_id: Optional[uuid.UUID]
    rating_tourguide: Optional[int]
    rating_driver: Optional[int]
    review_tourguide: Optional[str]
    review_driver: Optional[str]
    created_at: UTCDatetime
    updated_at: UTCDatetime


class RatingStatusResponse(BaseSchema):
    booking_id: uuid.UUID
    can_rate: bool
    rating: Optional[RatingResponse] = None


# ── Notification ──────────────────────────────────────────────

class NotificationResponse(BaseSchema):
    id: uuid.UUID
    type: str
    booking_id: Optional[uuid.UUID]
    customer_id: Optional[uuid.UUID]
    customer_name: Optional[str]
    customer_email: Optional[str]
    message: str
    is_read: bool
    read_at: Optional[UTCDatetime]
    created_at: UTCDatetime


# ── Generic ───────────────────────────────────────────────────

class MessageResponse(BaseSchema):
    message: str
    success: bool = True


class ErrorResponse(BaseSchema):
    detail: str
    code: Optional[str] = None
    details: Dict[str, Any] = {}
    request_id: Optional[str] = None
