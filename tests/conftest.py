"""
tests/conftest.py
Shared fixtures: a throwaway SQLite database per test, seeded people and
catalogue, a stub payment gateway, a fixed clock and an API client with
the database, Redis and gateway dependencies overridden.
"""

import os

# Settings are read at import time; provide the required ones first.
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("APP_ENV", "test")

import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from config.database import get_session_factory, init_db
from config.redis_client import get_redis
from main import app
from services.booking.service import BookingStateMachine
from services.change_request.service import ChangeRequestEngine
from services.dependencies import get_payment_gateway
from services.notification.sink import NotificationSink
from services.payment.gateway import CheckoutSession, GatewayVerification
from services.payment.service import PaymentReconciler
from services.rating.service import RatingAggregator
from shared.exceptions import GatewayUnavailable
from shared.models.models import (
    Booking,
    BookingStatus,
    DriverProfile,
    Payment,
    PaymentStatus,
    Tour,
    TourGuideProfile,
    User,
    UserRole,
    Vehicle,
)
from shared.utils.security import create_access_token


# ── Test doubles ──────────────────────────────────────────────

class FixedClock:
    """Callable clock the tests move by hand."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class StubGateway:
    """In-memory stand-in for ChapaGateway."""

    def __init__(self):
        self.configured = True
        self.unavailable = False
        self.verify_status = "success"
        self.initialized = []
        self.verified = []

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def initialize(self, tx_ref, amount, currency, email, first_name, return_url, **kwargs):
        if self.unavailable:
            raise GatewayUnavailable("Payment gateway unreachable")
        self.initialized.append(tx_ref)
        return CheckoutSession(checkout_url=f"https://checkout.chapa.test/{tx_ref}", tx_ref=tx_ref)

    async def verify(self, tx_ref):
        self.verified.append(tx_ref)
        if self.unavailable:
            raise GatewayUnavailable("Payment gateway unreachable")
        return GatewayVerification(
            success=self.verify_status == "success",
            status=self.verify_status,
            tx_ref=tx_ref,
            reference="CHK-REF-1",
            method="telebirr",
        )


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the auth deny-list."""

    def __init__(self):
        self.store = {}
        self.ttls = {}

    async def exists(self, key):
        return 1 if key in self.store else 0

    async def setex(self, key, ttl, value):
        self.store[key] = value
        self.ttls[key] = ttl

    async def ping(self):
        return True


# ── Database ──────────────────────────────────────────────────

@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    await init_db(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(
        bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# ── People ────────────────────────────────────────────────────

async def _make_user(db: AsyncSession, name: str, role: UserRole) -> User:
    user = User(
        id=uuid.uuid4(),
        email=f"{name.lower().replace(' ', '.')}@test.com",
        name=name,
        role=role,
        is_active=True,
    )
    db.add(user)
    await db.commit()
    return user


@pytest_asyncio.fixture
async def customer(db: AsyncSession) -> User:
    return await _make_user(db, "Abebe Kebede", UserRole.CUSTOMER)


@pytest_asyncio.fixture
async def other_customer(db: AsyncSession) -> User:
    return await _make_user(db, "Hana Tesfaye", UserRole.CUSTOMER)


@pytest_asyncio.fixture
async def staff(db: AsyncSession) -> User:
    return await _make_user(db, "Staff Member", UserRole.STAFF)


async def _make_guide(db: AsyncSession, name: str) -> User:
    user = await _make_user(db, name, UserRole.TOUR_GUIDE)
    db.add(TourGuideProfile(user_id=user.id, languages="am,en", is_available=True))
    await db.commit()
    return user


async def _make_driver(db: AsyncSession, name: str) -> User:
    user = await _make_user(db, name, UserRole.DRIVER)
    db.add(DriverProfile(user_id=user.id, license_number=f"DL-{name[:3]}", is_available=True))
    await db.commit()
    return user


@pytest_asyncio.fixture
async def guide(db: AsyncSession) -> User:
    return await _make_guide(db, "Guide One")


@pytest_asyncio.fixture
async def guide2(db: AsyncSession) -> User:
    return await _make_guide(db, "Guide Two")


@pytest_asyncio.fixture
async def guide3(db: AsyncSession) -> User:
    return await _make_guide(db, "Guide Three")


@pytest_asyncio.fixture
async def driver(db: AsyncSession) -> User:
    return await _make_driver(db, "Driver One")


@pytest_asyncio.fixture
async def driver2(db: AsyncSession) -> User:
    return await _make_driver(db, "Driver Two")


# ── Catalogue ─────────────────────────────────────────────────

@pytest_asyncio.fixture
async def tour(db: AsyncSession) -> Tour:
    tour = Tour(
        id=uuid.uuid4(),
        name="Lalibela Rock-Hewn Churches",
        destination="Lalibela",
        price_per_person=Decimal("4500.00"),
        is_active=True,
    )
    db.add(tour)
    await db.commit()
    return tour


@pytest_asyncio.fixture
async def vehicle(db: AsyncSession) -> Vehicle:
    vehicle = Vehicle(
        id=uuid.uuid4(),
        label="Toyota Land Cruiser",
        capacity=7,
        daily_rate=Decimal("5000.00"),
        is_available=True,
    )
    db.add(vehicle)
    await db.commit()
    return vehicle


# ── Bookings ──────────────────────────────────────────────────

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_booking(db: AsyncSession, customer: User, tour: Tour, vehicle: Vehicle):
    """Factory for bookings in any state, bypassing the lifecycle."""
    counter = {"n": 0}

    async def _make(
        status: BookingStatus = BookingStatus.PENDING,
        owner: User = None,
        guide: User = None,
        driver: User = None,
        with_vehicle: bool = True,
        created_at: datetime = NOW,
        start_date: date = date(2026, 3, 10),
        end_date: date = date(2026, 3, 12),
    ) -> Booking:
        counter["n"] += 1
        booking = Booking(
            id=uuid.uuid4(),
            booking_number=f"TB-2026-T{counter['n']:04d}",
            customer_id=(owner or customer).id,
            tour_id=tour.id,
            vehicle_id=vehicle.id if with_vehicle else None,
            tour_guide_id=guide.id if guide else None,
            driver_id=driver.id if driver else None,
            start_date=start_date,
            end_date=end_date,
            people_count=2,
            total_price=Decimal("24000.00"),
            status=status,
            created_at=created_at,
            updated_at=created_at,
        )
        db.add(booking)
        await db.commit()
        return booking

    return _make


@pytest.fixture
def make_payment(db: AsyncSession):
    async def _make(
        booking: Booking,
        status: PaymentStatus = PaymentStatus.PENDING,
        is_test_mode: bool = False,
        tx_ref: str = None,
    ) -> Payment:
        payment = Payment(
            id=uuid.uuid4(),
            booking_id=booking.id,
            amount=booking.total_price,
            currency="ETB",
            method="chapa",
            transaction_ref=tx_ref or f"TOUR-{booking.booking_number}-{uuid.uuid4().hex[:8]}",
            status=status,
            is_test_mode=is_test_mode,
            paid_at=NOW if status == PaymentStatus.COMPLETED else None,
        )
        db.add(payment)
        await db.commit()
        return payment

    return _make


# ── Core ──────────────────────────────────────────────────────

@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOW)


@pytest.fixture
def gateway() -> StubGateway:
    return StubGateway()


@pytest.fixture
def core(session_factory, gateway, clock) -> BookingStateMachine:
    sink = NotificationSink()
    return BookingStateMachine(
        session_factory,
        payments=PaymentReconciler(
            session_factory, gateway, sink, clock=clock, allow_test_mode=True
        ),
        change_requests=ChangeRequestEngine(session_factory, sink, clock=clock),
        ratings=RatingAggregator(session_factory),
        clock=clock,
    )


# ── API client ────────────────────────────────────────────────

@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest_asyncio.fixture
async def client(session_factory, gateway, fake_redis):
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_redis] = lambda: fake_redis
    app.dependency_overrides[get_payment_gateway] = lambda: gateway

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def auth_headers(user: User) -> dict:
    token, _ = create_access_token(str(user.id), user.role.value, user.email)
    return {"Authorization": f"Bearer {token}"}
