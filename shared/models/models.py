"""
shared/models/models.py
All SQLAlchemy ORM models for the Tour Booking Platform.
UUID primary keys throughout; portable column types so the same models run
on PostgreSQL (production) and SQLite (tests).
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from config.database import Base
from shared.utils.clock import utcnow


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    CUSTOMER = "customer"
    TOUR_GUIDE = "tour_guide"
    DRIVER = "driver"
    STAFF = "staff"
    ADMIN = "admin"


class BookingStatus(str, PyEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# A refund request leaves status COMPLETED and sets Payment.refund_request
class PaymentStatus(str, PyEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class RefundRequestState(str, PyEnum):
    REQUESTED = "REFUND_REQUESTED"
    APPROVED = "APPROVED"


class ChangeRequestType(str, PyEnum):
    TOUR_GUIDE = "tour_guide"
    DRIVER = "driver"
    BOTH = "both"

    @property
    def needs_tour_guide(self) -> bool:
        return self in (ChangeRequestType.TOUR_GUIDE, ChangeRequestType.BOTH)

    @property
    def needs_driver(self) -> bool:
        return self in (ChangeRequestType.DRIVER, ChangeRequestType.BOTH)

    @property
    def label(self) -> str:
        return {
            ChangeRequestType.TOUR_GUIDE: "tour guide",
            ChangeRequestType.DRIVER: "driver",
            ChangeRequestType.BOTH: "tour guide and driver",
        }[self]


class ChangeRequestStatus(str, PyEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"


class NotificationType(str, PyEnum):
    CHANGE_REQUEST = "change_request"
    REFUND_REQUEST = "refund_request"
    PAYMENT_CONFIRMED = "payment_confirmed"


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


# ── People ────────────────────────────────────────────────────

class User(TimestampMixin, Base):
    """Account record. Identity is issued elsewhere; we only read it."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole), nullable=False, default=UserRole.CUSTOMER
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (Index("ix_users_role", "role"),)

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.role})>"


class TourGuideProfile(TimestampMixin, Base):
    """Tour guide record. Holds the denormalized aggregate rating."""
    __tablename__ = "tour_guides"

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    languages: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True)

    # Rating (denormalized, recomputed on every rating write)
    rating_avg: Mapped[Decimal] = mapped_column(Numeric(3, 2), default=Decimal("0.00"))
    rating_count: Mapped[int] = mapped_column(Integer, default=0)


class DriverProfile(TimestampMixin, Base):
    """Driver record. Holds the denormalized aggregate rating."""
    __tablename__ = "drivers"

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    license_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True)

    rating_avg: Mapped[Decimal] = mapped_column(Numeric(3, 2), default=Decimal("0.00"))
    rating_count: Mapped[int] = mapped_column(Integer, default=0)


# ── Catalogue ─────────────────────────────────────────────────

class Tour(TimestampMixin, Base):
    __tablename__ = "tours"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    destination: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    price_per_person: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class Vehicle(TimestampMixin, Base):
    __tablename__ = "vehicles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    label: Mapped[str] = mapped_column(String(255), nullable=False)  # "Toyota Land Cruiser"
    capacity: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    daily_rate: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True)


# ── Booking ───────────────────────────────────────────────────

class Booking(TimestampMixin, Base):
    """
    Core booking entity. Status transitions:
    PENDING → CONFIRMED → IN_PROGRESS → COMPLETED, or PENDING|CONFIRMED → CANCELLED.
    COMPLETED and CANCELLED are terminal; bookings are never deleted.
    """
    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_number: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    customer_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    tour_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("tours.id"), nullable=True
    )
    vehicle_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("vehicles.id"), nullable=True
    )
    driver_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    tour_guide_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )

    # Schedule
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    people_count: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    special_requests: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Pricing
    total_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    # Status
    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus), nullable=False, default=BookingStatus.PENDING
    )
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint(
            "tour_id IS NOT NULL OR vehicle_id IS NOT NULL", name="ck_booking_tour_or_vehicle"
        ),
        CheckConstraint("people_count > 0", name="ck_booking_people_count"),
        Index("ix_bookings_customer_id", "customer_id"),
        Index("ix_bookings_tour_guide_id", "tour_guide_id"),
        Index("ix_bookings_driver_id", "driver_id"),
        Index("ix_bookings_status", "status"),
    )


class BookingAuditLog(Base):
    """Immutable log of all booking status transitions."""
    __tablename__ = "booking_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=False
    )
    from_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    to_status: Mapped[str] = mapped_column(String(30), nullable=False)
    changed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (Index("ix_booking_audit_logs_booking_id", "booking_id"),)


# ── Payment ───────────────────────────────────────────────────

class Payment(TimestampMixin, Base):
    """
    One row per payment attempt. A booking may have several attempts but
    at most one COMPLETED row (enforced by a partial unique index).
    """
    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="ETB")
    method: Mapped[str] = mapped_column(String(50), nullable=False, default="chapa")
    transaction_ref: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    gateway_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING
    )
    is_test_mode: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Refund request (execution is a staff action outside the core)
    refund_request: Mapped[Optional[RefundRequestState]] = mapped_column(
        Enum(RefundRequestState), nullable=True
    )
    refund_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refund_requested_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_payments_booking_id", "booking_id"),
        Index(
            "uq_payments_one_completed_per_booking",
            "booking_id",
            unique=True,
            postgresql_where=text("status = 'COMPLETED'"),
            sqlite_where=text("status = 'COMPLETED'"),
        ),
    )


# ── Change Request ────────────────────────────────────────────

class ChangeRequest(Base):
    """
    Customer ask to replace the driver and/or tour guide mid-trip.
    At most one PENDING request per booking (partial unique index).
    """
    __tablename__ = "change_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=False
    )
    requester_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    request_type: Mapped[ChangeRequestType] = mapped_column(
        Enum(ChangeRequestType), nullable=False
    )

    # Assignees as of request time
    current_tour_guide_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    current_driver_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    # Filled on approval
    new_tour_guide_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    new_driver_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    status: Mapped[ChangeRequestStatus] = mapped_column(
        Enum(ChangeRequestStatus), nullable=False, default=ChangeRequestStatus.PENDING
    )
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    processed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )

    __table_args__ = (
        Index("ix_change_requests_booking_id", "booking_id"),
        Index(
            "uq_change_requests_one_pending_per_booking",
            "booking_id",
            unique=True,
            postgresql_where=text("status = 'PENDING'"),
            sqlite_where=text("status = 'PENDING'"),
        ),
    )


# ── Rating ────────────────────────────────────────────────────

class Rating(TimestampMixin, Base):
    """Post-trip rating. One row per booking holding up to two sub-ratings."""
    __tablename__ = "ratings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), unique=True, nullable=False
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    tour_guide_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    driver_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    rating_tourguide: Mapped[Optional[int]] = mapped_column(SmallInteger, nullable=True)
    rating_driver: Mapped[Optional[int]] = mapped_column(SmallInteger, nullable=True)
    review_tourguide: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    review_driver: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "rating_tourguide IS NULL OR (rating_tourguide >= 0 AND rating_tourguide <= 5)",
            name="ck_rating_tourguide_range",
        ),
        CheckConstraint(
            "rating_driver IS NULL OR (rating_driver >= 0 AND rating_driver <= 5)",
            name="ck_rating_driver_range",
        ),
        Index("ix_ratings_tour_guide_id", "tour_guide_id"),
        Index("ix_ratings_driver_id", "driver_id"),
    )


# ── Notification ──────────────────────────────────────────────

class Notification(Base):
    """Append-only staff feed. The core writes here and never reads back."""
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    type: Mapped[NotificationType] = mapped_column(Enum(NotificationType), nullable=False)
    booking_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=True
    )
    customer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    customer_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_notifications_is_read", "is_read"),
        Index("ix_notifications_created_at", "created_at"),
    )
