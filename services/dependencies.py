"""
services/dependencies.py
FastAPI providers that assemble the booking core per request.
The session factory and gateway are injected so tests can swap both.
"""

from functools import lru_cache

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.database import get_session_factory
from services.booking.service import BookingStateMachine
from services.change_request.service import ChangeRequestEngine
from services.notification.sink import NotificationSink
from services.payment.gateway import ChapaGateway
from services.payment.service import PaymentReconciler
from services.rating.service import RatingAggregator


@lru_cache()
def get_payment_gateway() -> ChapaGateway:
    """One gateway per process so the circuit breaker sees every call."""
    return ChapaGateway()


def get_booking_state_machine(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    gateway: ChapaGateway = Depends(get_payment_gateway),
) -> BookingStateMachine:
    sink = NotificationSink()
    return BookingStateMachine(
        session_factory,
        payments=PaymentReconciler(session_factory, gateway, sink),
        change_requests=ChangeRequestEngine(session_factory, sink),
        ratings=RatingAggregator(session_factory),
    )
