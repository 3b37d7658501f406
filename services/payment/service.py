"""
services/payment/service.py
Payment reconciliation between the Chapa gateway and Booking/Payment rows.

Rules this module keeps:
- A booking has at most one COMPLETED payment.
- The gateway is never called while a database transaction is open; each
  gateway answer is recorded afterwards in its own short transaction that
  re-reads the rows under lock.
- Verification is idempotent. When the gateway cannot be reached the
  persisted row decides (degraded verification).
- Refund requests only set a flag. Staff approval marks the payment refunded;
  the money itself is returned from the gateway dashboard.
"""

import logging
import math
import secrets
from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import settings
from services.booking.transitions import apply_transition
from services.notification.sink import NotificationSink
from services.payment.gateway import ChapaGateway
from shared.exceptions import (
    AlreadyRefunded,
    GatewayUnavailable,
    InvalidState,
    NotFound,
    PaymentAlreadyCompleted,
    PaymentNotFound,
    PermissionDenied,
    RefundAlreadyRequested,
    WindowExpired,
)
from shared.models.models import (
    Booking,
    BookingStatus,
    NotificationType,
    Payment,
    PaymentStatus,
    RefundRequestState,
    User,
    UserRole,
)
from shared.schemas.schemas import (
    PaymentInitializeResponse,
    RefundRequestResult,
    VerificationResult,
    WebhookResult,
)
from shared.utils.clock import Clock, hours_since, utcnow
from shared.utils.db import load_booking

logger = logging.getLogger(__name__)


def generate_tx_ref(booking_number: str) -> str:
    """Unique gateway reference like TOUR-TB-2026-X7K9M-9f3a1c2e."""
    return f"TOUR-{booking_number}-{secrets.token_hex(4)}"


class PaymentReconciler:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: ChapaGateway,
        sink: NotificationSink = None,
        clock: Clock = utcnow,
        allow_test_mode: bool = None,
        refund_window_hours: float = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.sink = sink or NotificationSink()
        self.clock = clock
        self.allow_test_mode = (
            settings.ALLOW_TEST_MODE_PAYMENTS if allow_test_mode is None else allow_test_mode
        )
        self.refund_window_hours = (
            settings.REFUND_WINDOW_HOURS if refund_window_hours is None else refund_window_hours
        )

    # ── Initialize ────────────────────────────────────────────

    async def initialize_payment(
        self, booking_id: UUID, customer_id: UUID, method: str = "chapa"
    ) -> PaymentInitializeResponse:
        """
        Open a checkout for a pending booking and record a PENDING payment.
        Falls back to a flagged test-mode checkout when the gateway is
        unconfigured or down and test mode is allowed.
        """
        async with self.session_factory() as session:
            booking = await load_booking(session, booking_id)
            await self._check_payable(session, booking, customer_id)
            customer = await session.get(User, customer_id)
            booking_number = booking.booking_number
            amount = booking.total_price

        tx_ref = generate_tx_ref(booking_number)
        checkout_url, test_mode = await self._open_checkout(
            tx_ref, booking_id, booking_number, amount, customer
        )

        try:
            async with self.session_factory() as session, session.begin():
                booking = await load_booking(session, booking_id, for_update=True)
                await self._check_payable(session, booking, customer_id)
                payment = Payment(
                    booking_id=booking.id,
                    amount=booking.total_price,
                    currency=settings.PAYMENT_CURRENCY,
                    method=method,
                    transaction_ref=tx_ref,
                    status=PaymentStatus.PENDING,
                    is_test_mode=test_mode,
                )
                session.add(payment)
                await session.flush()
        except IntegrityError as e:
            logger.error(f"Payment insert failed for booking {booking_id}: {e.orig}")
            raise PaymentAlreadyCompleted()

        logger.info(
            f"Payment {payment.id} initialized for booking {booking_number} "
            f"(tx_ref={tx_ref}, test_mode={test_mode})"
        )
        return PaymentInitializeResponse(
            checkout_url=checkout_url,
            tx_ref=tx_ref,
            test_mode=test_mode,
            payment_id=payment.id,
        )

    async def _check_payable(
        self, session: AsyncSession, booking: Booking, customer_id: UUID
    ) -> None:
        if booking.customer_id != customer_id:
            raise PermissionDenied("You can only pay for your own bookings")

        completed = await self._completed_payment_id(session, booking.id)
        if completed is not None:
            raise PaymentAlreadyCompleted(completed)

        if booking.status != BookingStatus.PENDING:
            raise InvalidState(
                f"Cannot initialize payment for booking in '{booking.status.value}' state",
                details={"status": booking.status.value},
            )

    async def _open_checkout(
        self,
        tx_ref: str,
        booking_id: UUID,
        booking_number: str,
        amount,
        customer: Optional[User],
    ) -> Tuple[str, bool]:
        app_url = settings.APP_URL or "http://localhost:3000"
        return_url = f"{app_url}/payment/verify?booking_id={booking_id}&tx_ref={tx_ref}"

        if self.gateway.is_configured:
            name_parts = (customer.name if customer else "Customer").split(" ", 1)
            try:
                checkout = await self.gateway.initialize(
                    tx_ref=tx_ref,
                    amount=amount,
                    currency=settings.PAYMENT_CURRENCY,
                    email=customer.email if customer else "",
                    first_name=name_parts[0],
                    last_name=name_parts[1] if len(name_parts) > 1 else "",
                    phone_number=customer.phone if customer else None,
                    return_url=return_url,
                    description=f"Payment for booking {booking_number}",
                )
                return checkout.checkout_url, False
            except GatewayUnavailable as e:
                if not self.allow_test_mode:
                    raise
                logger.warning(f"Gateway initialize failed for {tx_ref}, using test mode: {e.message}")
        elif not self.allow_test_mode:
            raise GatewayUnavailable("Payment gateway is not configured")
        else:
            logger.warning(f"Payment gateway not configured; test mode checkout for {tx_ref}")

        return f"{return_url}&test_mode=true", True

    # ── Verify ────────────────────────────────────────────────

    async def verify_payment(
        self, tx_ref: str, booking_id: UUID, customer_id: UUID
    ) -> VerificationResult:
        async with self.session_factory() as session:
            payment = await self._load_payment(session, tx_ref)
            if payment.booking_id != booking_id:
                raise NotFound("Payment not found for this booking")
            booking = await load_booking(session, booking_id)
            if booking.customer_id != customer_id:
                raise PermissionDenied("You can only verify payments for your own bookings")

        if payment.status == PaymentStatus.COMPLETED:
            return _result(payment, source="already_completed", message="Payment already verified")

        if payment.is_test_mode:
            if not self.allow_test_mode:
                raise InvalidState("Test mode payments are disabled")
            return await self._complete(tx_ref, source="test_mode", method="test_mode")

        try:
            verification = await self.gateway.verify(tx_ref)
        except GatewayUnavailable as e:
            return await self._degraded_verification(tx_ref, e)

        if not verification.success:
            logger.info(f"Gateway reports {verification.status} for {tx_ref}")
            return VerificationResult(
                success=False,
                status=verification.status,
                tx_ref=tx_ref,
                booking_id=booking_id,
                payment_id=payment.id,
                source="gateway",
                message=verification.message or "Payment verification failed",
            )

        return await self._complete(
            tx_ref,
            source="gateway",
            method=verification.method,
            reference=verification.reference,
        )

    async def _degraded_verification(
        self, tx_ref: str, cause: GatewayUnavailable
    ) -> VerificationResult:
        """
        Gateway unreachable: answer from the persisted row. A payment the
        webhook already completed is reported as success.
        """
        logger.warning(f"Degraded verification: {cause.message}", extra={"tx_ref": tx_ref})
        async with self.session_factory() as session:
            payment = await self._load_payment(session, tx_ref)

        if payment.status == PaymentStatus.COMPLETED:
            return _result(payment, source="persisted", message="Payment confirmed from records")

        raise GatewayUnavailable(
            "Payment gateway is unavailable and the payment is not yet confirmed",
            details={"tx_ref": tx_ref, "payment_status": payment.status.value},
        )

    async def _complete(
        self,
        tx_ref: str,
        source: str,
        method: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> VerificationResult:
        """Mark the payment completed and confirm its booking, atomically."""
        try:
            async with self.session_factory() as session, session.begin():
                payment = await self._load_payment(session, tx_ref, for_update=True)
                if payment.status == PaymentStatus.COMPLETED:
                    return _result(payment, source="already_completed")
                if payment.status not in (PaymentStatus.PENDING, PaymentStatus.FAILED):
                    raise InvalidState(
                        f"Payment in '{payment.status.value}' state cannot be completed",
                        details={"status": payment.status.value},
                    )

                other = await self._completed_payment_id(session, payment.booking_id)
                if other is not None:
                    raise PaymentAlreadyCompleted(other)

                booking = await load_booking(session, payment.booking_id, for_update=True)
                now = self.clock()
                payment.status = PaymentStatus.COMPLETED
                payment.paid_at = now
                if method:
                    payment.method = method
                if reference:
                    payment.gateway_reference = reference

                if booking.status == BookingStatus.PENDING:
                    apply_transition(
                        session, booking, BookingStatus.CONFIRMED, now,
                        reason=f"Payment {tx_ref} completed",
                    )
                else:
                    logger.warning(
                        f"Payment {tx_ref} completed for booking {booking.booking_number} "
                        f"in '{booking.status.value}' state; booking left unchanged"
                    )

                await self.sink.emit(
                    session,
                    NotificationType.PAYMENT_CONFIRMED,
                    f"Payment of {payment.amount} {payment.currency} confirmed "
                    f"for booking {booking.booking_number}",
                    booking_id=booking.id,
                    customer_id=booking.customer_id,
                )
        except IntegrityError:
            raise PaymentAlreadyCompleted()

        logger.info(f"Payment completed via {source}", extra={"tx_ref": tx_ref})
        return _result(payment, source=source, message="Payment verified successfully")

    # ── Webhook ───────────────────────────────────────────────

    async def apply_webhook(
        self,
        tx_ref: str,
        status: str,
        reference: Optional[str] = None,
        signed: bool = False,
    ) -> WebhookResult:
        """
        Apply a gateway push. Replays of an already-applied event change nothing.
        An unsigned "success" for a live payment is only trusted once the
        gateway's verify endpoint agrees.
        """
        async with self.session_factory() as session:
            payment = await self._load_payment(session, tx_ref)

        status = status.lower()
        if payment.status == PaymentStatus.COMPLETED:
            logger.info(f"Webhook for {tx_ref}: payment already completed")
            return WebhookResult(tx_ref=tx_ref, status=payment.status.value, changed=False)

        if status == "success":
            method = None
            if payment.is_test_mode and not self.allow_test_mode:
                raise InvalidState("Test mode payments are disabled")
            if not signed and not payment.is_test_mode:
                verification = await self.gateway.verify(tx_ref)
                if not verification.success:
                    logger.warning(
                        f"Unsigned webhook claimed success but gateway reports {verification.status}",
                        extra={"tx_ref": tx_ref},
                    )
                    return WebhookResult(tx_ref=tx_ref, status=payment.status.value, changed=False)
                method = verification.method
                reference = verification.reference or reference

            result = await self._complete(
                tx_ref, source="gateway", method=method, reference=reference
            )
            return WebhookResult(
                tx_ref=tx_ref,
                status=result.status,
                changed=result.source != "already_completed",
            )

        if status == "failed":
            async with self.session_factory() as session, session.begin():
                payment = await self._load_payment(session, tx_ref, for_update=True)
                if payment.status != PaymentStatus.PENDING:
                    return WebhookResult(tx_ref=tx_ref, status=payment.status.value, changed=False)
                payment.status = PaymentStatus.FAILED
            logger.info(f"Webhook marked payment {tx_ref} failed")
            return WebhookResult(tx_ref=tx_ref, status=PaymentStatus.FAILED.value, changed=True)

        logger.info(f"Webhook for {tx_ref} ignored (status={status})")
        return WebhookResult(tx_ref=tx_ref, status=payment.status.value, changed=False)

    # ── Refund request ────────────────────────────────────────

    async def request_refund(
        self, booking_id: UUID, customer_id: UUID, reason: Optional[str] = None
    ) -> RefundRequestResult:
        """
        Flag the booking's completed payment for refund. Only allowed within
        the refund window measured from booking creation, evaluated now.
        """
        async with self.session_factory() as session, session.begin():
            booking = await load_booking(session, booking_id, for_update=True)
            if booking.customer_id != customer_id:
                raise PermissionDenied("You can only request refunds for your own bookings")

            payment = await self._refundable_payment(session, booking.id)
            if payment is None:
                raise PaymentNotFound()
            if (
                payment.status == PaymentStatus.REFUNDED
                or payment.refund_request == RefundRequestState.APPROVED
            ):
                raise AlreadyRefunded()
            if payment.status != PaymentStatus.COMPLETED:
                raise InvalidState(
                    "Only completed payments can be refunded",
                    details={"payment_status": payment.status.value},
                )
            if payment.refund_request is not None:
                raise RefundAlreadyRequested()

            now = self.clock()
            hours = hours_since(booking.created_at, now)
            if hours > self.refund_window_hours:
                raise WindowExpired(
                    f"Refund requests are only accepted within "
                    f"{self.refund_window_hours:g} hours of booking",
                    details={
                        "hours_since_booking": math.floor(hours * 10) / 10,
                        "window_hours": self.refund_window_hours,
                    },
                )

            payment.refund_request = RefundRequestState.REQUESTED
            payment.refund_reason = reason
            payment.refund_requested_at = now

            await self.sink.emit(
                session,
                NotificationType.REFUND_REQUEST,
                f"Refund requested for booking {booking.booking_number} "
                f"({payment.amount} {payment.currency})"
                + (f". Reason: {reason}" if reason else ""),
                booking_id=booking.id,
                customer_id=customer_id,
            )

        logger.info(f"Refund requested (payment {payment.id})", extra={"booking_id": booking_id})
        return RefundRequestResult(
            payment_id=payment.id,
            booking_id=booking_id,
            refund_request=payment.refund_request.value,
            refund_requested_at=now,
        )

    async def approve_refund(self, payment_id: UUID, staff_id: UUID) -> Payment:
        """
        Staff sign-off on a requested refund. The payment becomes REFUNDED and
        a booking that has not started is cancelled, in one transaction.
        Moving the money back happens in the gateway dashboard.
        """
        async with self.session_factory() as session, session.begin():
            result = await session.execute(
                select(Payment).where(Payment.id == payment_id).with_for_update()
            )
            payment = result.scalar_one_or_none()
            if payment is None:
                raise PaymentNotFound("Payment not found")
            if payment.status == PaymentStatus.REFUNDED:
                raise AlreadyRefunded()
            if payment.status != PaymentStatus.COMPLETED:
                raise InvalidState(
                    "Only completed payments can be refunded",
                    details={"payment_status": payment.status.value},
                )
            if payment.refund_request != RefundRequestState.REQUESTED:
                raise InvalidState("No pending refund request for this payment")

            booking = await load_booking(session, payment.booking_id, for_update=True)
            now = self.clock()
            payment.status = PaymentStatus.REFUNDED
            payment.refund_request = RefundRequestState.APPROVED

            if booking.status in (BookingStatus.PENDING, BookingStatus.CONFIRMED):
                booking.cancellation_reason = "Refund approved"
                apply_transition(
                    session, booking, BookingStatus.CANCELLED, now,
                    actor_id=staff_id, reason=f"Refund approved for payment {payment.transaction_ref}",
                )
            else:
                logger.warning(
                    f"Refund approved for booking {booking.booking_number} "
                    f"in '{booking.status.value}' state; booking left unchanged"
                )

        logger.info(f"Refund approved by {staff_id}", extra={"booking_id": payment.booking_id})
        return payment

    # ── Reads ─────────────────────────────────────────────────

    async def list_payments_for_booking(self, booking_id: UUID, actor: User) -> List[Payment]:
        async with self.session_factory() as session:
            booking = await load_booking(session, booking_id)
            if actor.role not in (UserRole.STAFF, UserRole.ADMIN) and booking.customer_id != actor.id:
                raise PermissionDenied("Not authorized to view these payments")
            result = await session.execute(
                select(Payment)
                .where(Payment.booking_id == booking_id)
                .order_by(Payment.created_at.desc())
            )
            return list(result.scalars())

    async def list_refund_requests(self) -> List[Payment]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Payment)
                .where(Payment.refund_request == RefundRequestState.REQUESTED)
                .order_by(Payment.refund_requested_at.desc())
            )
            return list(result.scalars())

    # ── Helpers ───────────────────────────────────────────────

    async def _load_payment(
        self, session: AsyncSession, tx_ref: str, for_update: bool = False
    ) -> Payment:
        query = select(Payment).where(Payment.transaction_ref == tx_ref)
        if for_update:
            query = query.with_for_update()
        result = await session.execute(query)
        payment = result.scalar_one_or_none()
        if not payment:
            raise NotFound("Payment not found", details={"tx_ref": tx_ref})
        return payment

    async def _completed_payment_id(self, session: AsyncSession, booking_id: UUID) -> Optional[UUID]:
        result = await session.execute(
            select(Payment.id).where(
                Payment.booking_id == booking_id,
                Payment.status == PaymentStatus.COMPLETED,
            )
        )
        return result.scalars().first()

    async def _refundable_payment(self, session: AsyncSession, booking_id: UUID) -> Optional[Payment]:
        """The payment a refund request would apply to: completed first, then refunded, then latest."""
        result = await session.execute(
            select(Payment)
            .where(Payment.booking_id == booking_id)
            .order_by(Payment.created_at.desc())
            .with_for_update()
        )
        payments = list(result.scalars())
        for wanted in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED):
            for payment in payments:
                if payment.status == wanted:
                    return payment
        return payments[0] if payments else None


def _result(payment: Payment, source: str, message: str = None) -> VerificationResult:
    return VerificationResult(
        success=payment.status == PaymentStatus.COMPLETED,
        status=payment.status.value,
        tx_ref=payment.transaction_ref,
        booking_id=payment.booking_id,
        payment_id=payment.id,
        amount=payment.amount,
        currency=payment.currency,
        method=payment.method,
        reference=payment.gateway_reference,
        paid_at=payment.paid_at,
        source=source,
        message=message,
    )
