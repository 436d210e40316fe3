from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .database import init_db, SessionLocal, engine
from .routes import admin_rate_limits, health, payments, reservations

# Import centralized configuration
from vibewell.config import settings

# Import observability components
from vibewell.obs.logging import setup_logging, get_logger
from vibewell.obs.tracing import setup_tracing, instrument_fastapi, instrument_sqlalchemy
from vibewell.obs.middleware import ObservabilityMiddleware
from vibewell.obs.errors import register_error_handlers
from vibewell.obs.sentry import setup_sentry
from vibewell.services.expiry_sweeper import ReservationSweeper
from vibewell.services.kv_store import KeyValueStore
from vibewell.services.payment_gateway import StripeGateway
from vibewell.services.rate_limiter import RateLimiter

# Setup observability
setup_logging()
setup_tracing()
setup_sentry()  # Initialize Sentry for error tracking
instrument_sqlalchemy(engine)

logger = get_logger(__name__)

app = FastAPI(title="VibeWell Booking Core")

# Instrument FastAPI with OpenTelemetry
instrument_fastapi(app)

# Register error handlers
register_error_handlers(app)

# CORS middleware configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Retry-After", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "X-Request-Id"],
)

# Observability middleware (must be early in the stack)
app.add_middleware(ObservabilityMiddleware)

# Include routers
app.include_router(health.router)  # Health checks first
app.include_router(reservations.router)
app.include_router(payments.router)
app.include_router(admin_rate_limits.router)


# Build shared clients and the expiry sweeper on startup
@app.on_event("startup")
async def startup_event():
    init_db()

    kv_store = None
    if settings.REDIS_URL:
        kv_store = KeyValueStore.from_url(
            settings.REDIS_URL,
            socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
            connect_timeout=settings.REDIS_CONNECT_TIMEOUT,
        )
    else:
        logger.warning("REDIS_URL not configured, rate limiting disabled")

    app.state.kv_store = kv_store
    app.state.rate_limiter = RateLimiter.from_settings(kv_store)
    app.state.payment_gateway = StripeGateway()

    app.state.sweeper = None
    if settings.ENABLE_RESERVATION_SWEEPER:
        app.state.sweeper = ReservationSweeper(SessionLocal, settings.RESERVATION_SWEEP_INTERVAL_SECONDS)
        app.state.sweeper.start()

    logger.info(
        "Booking core started",
        extra={'action': 'startup', 'status': 'rate_limiting=%s' % app.state.rate_limiter.enabled},
    )


@app.on_event("shutdown")
async def shutdown_event():
    sweeper = getattr(app.state, "sweeper", None)
    if sweeper is not None:
        await sweeper.stop()

    kv_store = getattr(app.state, "kv_store", None)
    if kv_store is not None:
        kv_store.close()
    logger.info("Booking core stopped")
