"""
main.py
Application factory for the tour booking core: routers, middleware,
error envelope and lifecycle hooks.

- Structured JSON logging
- Domain errors mapped to stable HTTP responses
- Rate limiting for unauthenticated callers (Redis, fails open)
- Prometheus metrics
"""

import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from logging import LogRecord

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from config.database import close_db, init_db, ping_database, verify_schema
from config.redis_client import RedisStore, close_redis, current_redis, init_redis, ping_redis
from config.settings import settings
from shared.exceptions import DomainException, GatewayUnavailable, NotAuthenticated
from shared.schemas.schemas import ErrorResponse

# Service routers
from services.auth.router import router as auth_router
from services.booking.router import router as booking_router
from services.change_request.router import router as change_request_router
from services.notification.router import router as notification_router
from services.payment.router import router as payment_router
from services.rating.router import router as rating_router


# ── Logging ──────────────────────────────────────────────────

class JSONFormatter(logging.Formatter):
    """One JSON object per line. Fields passed via `extra=` ride along."""

    CONTEXT_FIELDS = ("request_id", "booking_id", "tx_ref")

    def format(self, record: LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "env": settings.APP_ENV,
            "instance": os.getenv("INSTANCE_NAME", "unknown"),
        }
        for field in self.CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = str(value)
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def configure_logging() -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)


configure_logging()
logger = logging.getLogger(__name__)

# Never rate limited: health and metrics, docs, the gateway webhook
UNLIMITED_PATHS = frozenset(
    {"/health", "/metrics", "/docs", "/redoc", "/openapi.json", "/payments/webhook"}
)


# ── Lifespan (startup/shutdown) ───────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle handler."""
    logger.info(f"Starting {settings.APP_NAME} ({settings.APP_ENV})")

    # Schema: migrate in development, verify everywhere else
    if settings.APP_ENV == "development":
        await init_db()
        await seed_initial_data()
    else:
        await verify_schema()
    logger.info("Database ready")

    await init_redis()
    logger.info("Redis connected")

    if not settings.payment_gateway_configured:
        logger.warning(
            "Payment gateway not configured; "
            f"test mode payments {'enabled' if settings.ALLOW_TEST_MODE_PAYMENTS else 'disabled'}"
        )

    if settings.is_production and not settings.CHAPA_WEBHOOK_SECRET:
        logger.warning("CHAPA_WEBHOOK_SECRET not set; webhooks will be re-verified with the gateway")

    logger.info(f"{settings.APP_NAME} v{settings.APP_VERSION} is ready")
    yield

    # Cleanup
    await close_redis()
    await close_db()
    logger.info("Server shutdown complete")


# ── App Factory ───────────────────────────────────────────────

def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="""
## Tour Booking Platform API

Booking lifecycle and reconciliation core:
- **Bookings**: create, start, finish, staff cancel and assignment
- **Payments**: Chapa checkout, verification with stored-state fallback, refund requests
- **Change Requests**: mid-trip replacement of tour guide and/or driver
- **Ratings**: post-trip ratings with per-guide/driver aggregates
- **Notifications**: staff review feed

### Authentication
All protected endpoints require `Authorization: Bearer <access_token>` header.
Tokens are issued by the identity service.

### Roles
- `customer`: book, pay, request refunds and changes, rate
- `tour_guide`: start and finish assigned tours
- `driver`: check assignment
- `staff` / `admin`: assign, cancel, process change requests, review notifications
        """,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
        openapi_url="/openapi.json",
        responses={code: {"model": ErrorResponse} for code in (400, 401, 403, 404, 409, 503)},
        lifespan=lifespan,
    )

    # ── Middleware (last added runs first) ─────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time", "X-RateLimit-Remaining", "Retry-After"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)

    @app.middleware("http")
    async def anonymous_rate_limit(request: Request, call_next):
        """Per-IP budget for callers without a bearer token. Fails open."""
        redis = current_redis()
        if (
            redis is None
            or request.url.path in UNLIMITED_PATHS
            or request.headers.get("Authorization", "").startswith("Bearer ")
        ):
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        try:
            budget = await RedisStore(redis).hit(
                f"anon:{client_ip}", settings.RATE_LIMIT_UNAUTH_PER_MINUTE
            )
        except Exception as e:
            logger.error(f"Rate limit check failed: {e}")
            return await call_next(request)

        if not budget.allowed:
            logger.warning(f"Rate limit exceeded for IP {client_ip}")
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded. Please slow down.", "code": "rate_limited"},
                headers={"Retry-After": "60", "X-RateLimit-Remaining": "0"},
            )
        response = await call_next(request)
        response.headers["X-RateLimit-Remaining"] = str(budget.remaining)
        return response

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        """Tag the request with an id, time it, and log one line per mutation."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()

        response = await call_next(request)

        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{elapsed_ms}ms"
        if request.method != "GET":
            logger.info(
                f"{request.method} {request.url.path} -> {response.status_code} in {elapsed_ms}ms",
                extra={"request_id": request_id},
            )
        return response

    # ── Exception Handlers ─────────────────────────────────────────

    @app.exception_handler(DomainException)
    async def domain_exception_handler(request: Request, exc: DomainException):
        """Every rejected operation carries a stable code the client can branch on."""
        request_id = getattr(request.state, "request_id", None)
        level = logging.WARNING if exc.status_code >= 500 else logging.INFO
        logger.log(level, f"{exc.code}: {exc.message}", extra={"request_id": request_id})

        headers = None
        if isinstance(exc, GatewayUnavailable):
            headers = {"Retry-After": str(settings.GATEWAY_RETRY_AFTER_SECONDS)}
        elif isinstance(exc, NotAuthenticated):
            headers = {"WWW-Authenticate": "Bearer"}
        return JSONResponse(
            status_code=exc.status_code,
            content={**exc.to_dict(), "request_id": request_id},
            headers=headers,
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        """Anything that is not a domain error. Details stay in the log unless DEBUG."""
        request_id = getattr(request.state, "request_id", None)
        logger.exception(
            f"Unhandled error on {request.method} {request.url.path}",
            extra={"request_id": request_id},
        )
        body = ErrorResponse(
            detail=str(exc) if settings.DEBUG else "An internal server error occurred",
            code="internal_error",
            request_id=request_id,
        )
        return JSONResponse(status_code=500, content=body.model_dump())

    # ── Routes ────────────────────────────────────────────────────

    @app.get("/health", tags=["Health"], include_in_schema=False)
    async def health_check():
        """Liveness plus dependency checks. 503 when storage is unreachable."""
        checks = {
            "status": "ok",
            "version": settings.APP_VERSION,
            "payment_gateway": "configured" if settings.payment_gateway_configured else "test_mode",
        }
        for name, ping in (("database", ping_database), ("redis", ping_redis)):
            try:
                checks[name] = await ping() or "ok"
            except Exception as e:
                logger.error(f"Health check {name} failed: {e}")
                checks[name] = "error"
                checks["status"] = "degraded"

        return JSONResponse(content=checks, status_code=200 if checks["status"] == "ok" else 503)

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": None if settings.is_production else "/docs",
            "health": "/health",
        }

    for router in (
        auth_router,
        booking_router,
        payment_router,
        change_request_router,
        rating_router,
        notification_router,
    ):
        app.include_router(router)

    # ── Prometheus Metrics ─────────────────────────────────────────
    Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Monitoring"])

    return app


# ── Dev Data Seeder ───────────────────────────────────────────

DEV_TOURS = (
    ("Lalibela Rock-Hewn Churches", "Lalibela", "4500.00"),
    ("Simien Mountains Trek", "Debark", "6200.00"),
    ("Danakil Depression Expedition", "Afar", "9800.00"),
    ("Gondar Castles Day Tour", "Gondar", "2500.00"),
)
DEV_VEHICLES = (
    ("Toyota Land Cruiser", 7, "5000.00"),
    ("Toyota HiAce Minibus", 12, "6500.00"),
)


async def seed_initial_data():
    """Give a fresh development database something to book."""
    from decimal import Decimal
    from sqlalchemy import select
    from config.database import AsyncSessionLocal
    from shared.models.models import Tour, Vehicle

    async with AsyncSessionLocal() as db, db.begin():
        if await db.scalar(select(Tour.id).limit(1)) is not None:
            return
        db.add_all(
            Tour(name=name, destination=destination, price_per_person=Decimal(price))
            for name, destination, price in DEV_TOURS
        )
        db.add_all(
            Vehicle(label=label, capacity=capacity, daily_rate=Decimal(rate))
            for label, capacity, rate in DEV_VEHICLES
        )
    logger.info(f"Seeded {len(DEV_TOURS)} tours and {len(DEV_VEHICLES)} vehicles")


# ── Entry Point ───────────────────────────────────────────────

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1 if settings.DEBUG else settings.WORKERS,
        log_config=None,    # keep the JSON handler installed above
    )
