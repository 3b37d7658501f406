"""
services/payment/router.py
Chapa payment endpoints: initialize, verify, webhook, refund requests and approvals.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import ValidationError as PydanticValidationError

from config.settings import settings
from services.booking.service import BookingStateMachine
from services.dependencies import get_booking_state_machine
from shared.exceptions import ValidationError
from shared.middleware.auth import get_current_user, require_customer, require_staff
from shared.models.models import User
from shared.schemas.schemas import (
    PaymentInitializeRequest,
    PaymentInitializeResponse,
    PaymentResponse,
    PaymentWebhookPayload,
    RefundRequestCreate,
    RefundRequestResult,
    VerificationResult,
    WebhookResult,
)
from shared.utils.security import verify_gateway_webhook_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])


# ── Initialize ────────────────────────────────────────────────

@router.post("/initialize", response_model=PaymentInitializeResponse)
async def initialize_payment(
    data: PaymentInitializeRequest,
    current_user: User = Depends(require_customer),
    core: BookingStateMachine = Depends(get_booking_state_machine),
):
    """
    Open a checkout for a pending booking.
    `test_mode=true` in the response means no live gateway was used.
    """
    return await core.initialize_payment(data.booking_id, current_user.id, data.method)


# ── Verify (called from client after checkout) ────────────────

@router.get("/verify", response_model=VerificationResult)
async def verify_payment(
    tx_ref: str = Query(..., min_length=1, max_length=100),
    booking_id: UUID = Query(...),
    current_user: User = Depends(require_customer),
    core: BookingStateMachine = Depends(get_booking_state_machine),
):
    """
    Verify with the gateway and confirm the booking.
    Safe to call repeatedly; falls back to stored state if the gateway is down.
    """
    return await core.verify_payment(tx_ref, booking_id, current_user.id)


# ── Chapa Webhook ─────────────────────────────────────────────

@router.post("/webhook", response_model=WebhookResult, include_in_schema=False)
async def chapa_webhook(
    request: Request,
    core: BookingStateMachine = Depends(get_booking_state_machine),
):
    """
    Gateway push. HMAC signature is enforced when a webhook secret is configured;
    without one, success pushes are confirmed against the gateway first.
    """
    body = await request.body()

    signed = bool(settings.CHAPA_WEBHOOK_SECRET)
    if signed:
        signature = request.headers.get("Chapa-Signature") or request.headers.get(
            "X-Chapa-Signature"
        )
        if not verify_gateway_webhook_signature(body, signature):
            logger.warning("Rejected webhook with invalid signature")
            raise ValidationError("Invalid webhook signature", code="invalid_signature")

    try:
        payload = PaymentWebhookPayload.model_validate_json(body)
    except PydanticValidationError:
        raise ValidationError("tx_ref and status are required")

    return await core.apply_payment_webhook(
        payload.tx_ref, payload.status, payload.reference, signed=signed
    )


# ── Refund Request ────────────────────────────────────────────

@router.post(
    "/refund-request",
    response_model=RefundRequestResult,
    status_code=status.HTTP_201_CREATED,
)
async def request_refund(
    data: RefundRequestCreate,
    current_user: User = Depends(require_customer),
    core: BookingStateMachine = Depends(get_booking_state_machine),
):
    """Customer asks for a refund within 24 hours of booking. Staff execute it."""
    return await core.request_refund(data.booking_id, current_user.id, data.reason)


@router.post("/{payment_id}/refund-approve", response_model=PaymentResponse)
async def approve_refund(
    payment_id: UUID,
    current_user: User = Depends(require_staff),
    core: BookingStateMachine = Depends(get_booking_state_machine),
):
    """Staff: mark a requested refund as paid out and cancel the booking if not started."""
    payment = await core.approve_refund(payment_id, current_user.id)
    return PaymentResponse.model_validate(payment)


# ── Read Endpoints ────────────────────────────────────────────

@router.get("/refund-requests", response_model=list[PaymentResponse])
async def list_refund_requests(
    current_user: User = Depends(require_staff),
    core: BookingStateMachine = Depends(get_booking_state_machine),
):
    """Staff: open refund requests, newest first."""
    payments = await core.list_refund_requests()
    return [PaymentResponse.model_validate(p) for p in payments]


@router.get("/booking/{booking_id}", response_model=list[PaymentResponse])
async def booking_payment_history(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    core: BookingStateMachine = Depends(get_booking_state_machine),
):
    payments = await core.list_payments_for_booking(booking_id, current_user)
    return [PaymentResponse.model_validate(p) for p in payments]
