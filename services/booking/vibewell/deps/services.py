"""
Dependencies exposing the process-wide clients built at startup.

main.py constructs the KV store, rate limiter and payment gateway once and
stores them on ``app.state``; routes receive them through these functions,
and tests replace them with ``app.dependency_overrides``.
"""
from fastapi import Depends, Request
from sqlalchemy.orm import Session

from vibewell.database import get_db
from vibewell.obs.errors import TransientFailure
from vibewell.services.payment_gateway import PaymentGateway
from vibewell.services.payment_service import PaymentCoordinator
from vibewell.services.rate_limiter import RateLimiter
from vibewell.services.reservation_service import ReservationService


def get_rate_limiter(request: Request) -> RateLimiter:
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        # Startup has not run (or Redis is not configured): limiter stays disabled
        limiter = RateLimiter(None, enabled=False)
        request.app.state.rate_limiter = limiter
    return limiter


def get_payment_gateway(request: Request) -> PaymentGateway:
    gateway = getattr(request.app.state, "payment_gateway", None)
    if gateway is None:
        raise TransientFailure("Payment gateway is not configured")
    return gateway


def get_reservation_service(db: Session = Depends(get_db)) -> ReservationService:
    return ReservationService(db)


def get_payment_coordinator(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> PaymentCoordinator:
    return PaymentCoordinator(db, gateway)
